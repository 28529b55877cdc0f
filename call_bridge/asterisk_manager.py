import asyncio
import logging
from typing import Any, Dict, Optional

from asterisk.ami import AMIClient, AutoReconnect, SimpleAction

from .config import Settings
from .errors import UpstreamRejected
from .events import EventPipeline, ami_event_fields

logger = logging.getLogger(__name__)


class AsteriskManager:
    """Owns the AMI connection: feeds its events to the pipeline and sends actions.

    ``asterisk.ami`` delivers events on its own reader thread. They are
    handed to the event loop through one queue and applied by a single
    consumer task, so events reach the tracker one at a time in arrival
    order.
    """

    def __init__(self, settings: Settings, pipeline: EventPipeline):
        self.settings = settings
        self.host = settings.asterisk_host
        self.port = settings.asterisk_port
        self.pipeline = pipeline
        self.client: Optional[AMIClient] = None
        self.connected = False
        self._logged_in = False
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._events: asyncio.Queue = asyncio.Queue()
        self._consumer: Optional[asyncio.Task] = None
        self._retry: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        """Connect to Asterisk AMI, retrying in the background if the first login fails."""
        self._loop = asyncio.get_running_loop()
        if self._consumer is None:
            self._consumer = asyncio.create_task(self._consume())

        if await self._login():
            return True
        if self._retry is None:
            self._retry = asyncio.create_task(self._retry_login())
        return False

    async def _login(self) -> bool:
        try:
            self.client = AMIClient(address=self.host, port=self.port,
                                    timeout=self.settings.ami_timeout)
            # Wraps login/logoff: after the first successful login the client
            # is reconnected on its own thread until logoff.
            AutoReconnect(self.client,
                          on_disconnect=self._on_disconnect,
                          on_reconnect=self._on_reconnect)
            self.client.add_event_listener(self._on_ami_event)
            future = await self._loop.run_in_executor(
                None,
                lambda: self.client.login(username=self.settings.asterisk_username,
                                          secret=self.settings.asterisk_password),
            )
            response = await self._loop.run_in_executor(None, lambda: future.response)
            if response is None or response.is_error():
                raise UpstreamRejected(f"AMI login rejected: {response}")
        except Exception as e:
            logger.error(f"Failed to connect to Asterisk AMI: {e}")
            self._close_client()
            self.connected = False
            return False

        self.connected = True
        self._logged_in = True
        logger.info(f"Connected to Asterisk AMI at {self.host}:{self.port}")
        return True

    async def _retry_login(self):
        delay = self.settings.ami_retry_delay
        while True:
            logger.info(f"Retrying AMI login in {delay:g}s")
            await asyncio.sleep(delay)
            if await self._login():
                break
            delay = min(delay * 2, self.settings.ami_retry_max_delay)
        self._retry = None

    def _close_client(self):
        if self.client is None:
            return
        try:
            self.client.disconnect()
        except Exception as e:
            logger.debug(f"Closing failed AMI client: {e}")
        self.client = None

    async def disconnect(self):
        """Disconnect from Asterisk AMI"""
        for task in (self._retry, self._consumer):
            if task is None:
                continue
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._retry = None
        self._consumer = None

        if self.client and self._logged_in:
            try:
                self.client.logoff()
            except Exception as e:
                logger.warning(f"AMI logoff failed: {e}")
            self._logged_in = False
            self.connected = False
            logger.info("Disconnected from Asterisk AMI")

    def _on_disconnect(self, *args):
        # Tracked calls are kept; the PBX stays the source of truth.
        self.connected = False
        logger.warning("Lost connection to Asterisk AMI, reconnecting")

    def _on_reconnect(self, *args):
        self.connected = True
        logger.info(f"Reconnected to Asterisk AMI at {self.host}:{self.port}")

    def _on_ami_event(self, event, **kwargs):
        """Handle incoming AMI events (runs on the AMI reader thread)."""
        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(self._events.put_nowait, ami_event_fields(event))

    async def _consume(self):
        while True:
            fields = await self._events.get()
            try:
                await self.pipeline.ingest_ami(fields)
            except Exception as e:
                logger.error(f"Error handling AMI event {fields.get('Event')}: {e}")

    async def send_action(self, name: str, **fields: Any) -> Dict[str, Any]:
        """Send one AMI action and wait for its response.

        Raises UpstreamRejected if not connected, on an error response, or
        if Asterisk does not answer within the configured timeout.
        """
        if not self.connected or not self.client:
            raise UpstreamRejected("Not connected to Asterisk AMI")

        loop = asyncio.get_running_loop()
        action = SimpleAction(name, **fields)
        try:
            future = self.client.send_action(action)
            response = await loop.run_in_executor(None, lambda: future.response)
        except Exception as e:
            logger.error(f"AMI action {name} failed: {e}")
            raise UpstreamRejected(f"{name} failed: {e}") from e

        if response is None:
            logger.error(f"AMI action {name} timed out")
            raise UpstreamRejected(f"{name} timed out")
        if response.is_error():
            message = response.keys.get("Message", "")
            logger.error(f"AMI action {name} rejected: {message}")
            raise UpstreamRejected(f"{name} rejected: {message}")

        result = dict(response.keys)
        result["Response"] = response.status
        return result

    def get_status(self) -> Dict:
        """Get Asterisk manager status"""
        return {
            "connected": self.connected,
            "host": self.host,
            "port": self.port,
        }
