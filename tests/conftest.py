import asyncio
import json

import pytest

from call_bridge.config import Settings
from call_bridge.errors import UpstreamRejected
from call_bridge.tracker import CallTracker


class FakeControl:
    """Stands in for AsteriskManager.send_action; records every action."""

    def __init__(self):
        self.actions = []
        self.fail_with = None

    async def send_action(self, name, **fields):
        self.actions.append((name, fields))
        if self.fail_with:
            raise UpstreamRejected(self.fail_with)
        return {"Response": "Success"}


class FakeManager(FakeControl):
    def __init__(self, settings, pipeline):
        super().__init__()
        self.settings = settings
        self.pipeline = pipeline
        self.connected = False

    async def connect(self):
        self.connected = True
        return True

    async def disconnect(self):
        self.connected = False

    def get_status(self):
        return {"connected": self.connected, "host": "test", "port": 5038}


class FakeWebSocket:
    """Collects decoded frames; send_text blocks while ``hold`` is set."""

    def __init__(self, fail=False):
        self.sent = []
        self.fail = fail
        self.hold = None
        self.close_code = None

    async def send_text(self, text):
        if self.fail:
            raise ConnectionError("socket gone")
        if self.hold is not None:
            await self.hold.wait()
        self.sent.append(json.loads(text))

    async def close(self, code=1000):
        self.close_code = code

    def types(self):
        return [message["type"] for message in self.sent]


async def settle(rounds=5):
    for _ in range(rounds):
        await asyncio.sleep(0)


@pytest.fixture
def settings():
    return Settings(environ={})


@pytest.fixture
def tracker():
    return CallTracker()


@pytest.fixture
def control():
    return FakeControl()


@pytest.fixture
def updates(tracker):
    """Every (update type, call dict) the tracker reports, in order."""
    seen = []
    tracker.add_listener(lambda update_type, call: seen.append((update_type.value, call.to_dict())))
    return seen
