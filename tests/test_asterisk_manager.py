import asyncio

import pytest

from call_bridge import asterisk_manager as asterisk_manager_module
from call_bridge.asterisk_manager import AsteriskManager
from call_bridge.config import Settings
from call_bridge.errors import UpstreamRejected
from call_bridge.events import EventPipeline
from call_bridge.relay import EventRelay

from .test_events import AmiEvent


class FakeResponse:
    def __init__(self, status="Success", keys=None):
        self.status = status
        self.keys = keys or {}

    def is_error(self):
        return self.status.lower() == "error"


class FakeFuture:
    def __init__(self, response):
        self.response = response


class FakeAMIClient:
    def __init__(self, response):
        self.response = response
        self.sent = []

    def send_action(self, action):
        self.sent.append(action)
        return FakeFuture(self.response)


@pytest.fixture
def manager(settings, tracker):
    return AsteriskManager(settings, EventPipeline(tracker, EventRelay(tracker)))


def connected(manager, response):
    manager.client = FakeAMIClient(response)
    manager.connected = True
    return manager.client


@pytest.mark.asyncio
async def test_send_action_when_disconnected(manager):
    with pytest.raises(UpstreamRejected):
        await manager.send_action("Hangup", Channel="PJSIP/100-1")


@pytest.mark.asyncio
async def test_send_action_returns_response_keys(manager):
    client = connected(manager, FakeResponse("Success", {"Message": "Redirect successful"}))

    result = await manager.send_action("Redirect", Channel="PJSIP/100-1", Context="default",
                                       Exten="hold", Priority=1)

    assert result == {"Message": "Redirect successful", "Response": "Success"}
    assert len(client.sent) == 1


@pytest.mark.asyncio
async def test_send_action_error_response(manager):
    connected(manager, FakeResponse("Error", {"Message": "No such channel"}))

    with pytest.raises(UpstreamRejected) as excinfo:
        await manager.send_action("Hangup", Channel="PJSIP/100-1")
    assert "No such channel" in str(excinfo.value)


@pytest.mark.asyncio
async def test_send_action_timeout(manager):
    connected(manager, None)

    with pytest.raises(UpstreamRejected):
        await manager.send_action("Hangup", Channel="PJSIP/100-1")


@pytest.mark.asyncio
async def test_events_from_reader_thread_reach_tracker_in_order(manager, tracker):
    manager._loop = asyncio.get_running_loop()
    manager._consumer = asyncio.create_task(manager._consume())

    manager._on_ami_event(AmiEvent("Newchannel", {"Uniqueid": "1.1", "Channel": "PJSIP/100-1"}))
    manager._on_ami_event(AmiEvent("DialBegin", {"Uniqueid": "1.1", "DialString": "200"}))
    manager._on_ami_event(AmiEvent("DialEnd", {"Uniqueid": "1.1", "DialStatus": "ANSWER"}))

    for _ in range(50):
        if len(tracker) and (await tracker.get("1.1")).state == "answered":
            break
        await asyncio.sleep(0.01)

    call = await tracker.get("1.1")
    assert call.state == "answered"
    assert call.destination == "200"

    await manager.disconnect()
    assert manager._consumer is None


@pytest.mark.asyncio
async def test_connect_failure_is_reported(manager, monkeypatch):
    class RefusingClient:
        def __init__(self, **kwargs):
            pass

        def add_event_listener(self, listener):
            pass

        def login(self, **kwargs):
            raise ConnectionRefusedError("connection refused")

    monkeypatch.setattr(asterisk_manager_module, "AMIClient", RefusingClient)
    monkeypatch.setattr(asterisk_manager_module, "AutoReconnect", lambda client, **kwargs: None)

    assert await manager.connect() is False
    assert manager.get_status()["connected"] is False
    assert manager._retry is not None

    await manager.disconnect()
    assert manager._retry is None


@pytest.mark.asyncio
async def test_failed_first_login_is_retried(tracker, monkeypatch):
    attempts = []

    class FlakyClient:
        def __init__(self, **kwargs):
            self.logged_off = False

        def add_event_listener(self, listener):
            pass

        def login(self, **kwargs):
            attempts.append(self)
            if len(attempts) == 1:
                raise ConnectionRefusedError("connection refused")
            return FakeFuture(FakeResponse("Success"))

        def logoff(self):
            self.logged_off = True

    monkeypatch.setattr(asterisk_manager_module, "AMIClient", FlakyClient)
    monkeypatch.setattr(asterisk_manager_module, "AutoReconnect", lambda client, **kwargs: None)
    settings = Settings(environ={"AMI_RETRY_DELAY": "0.01"})
    manager = AsteriskManager(settings, EventPipeline(tracker, EventRelay(tracker)))

    assert await manager.connect() is False
    for _ in range(100):
        if manager.connected:
            break
        await asyncio.sleep(0.01)

    assert manager.connected is True
    assert len(attempts) == 2
    assert manager._retry is None

    await manager.disconnect()
    assert attempts[1].logged_off is True
