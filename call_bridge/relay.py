import asyncio
import json
import logging
from typing import Any, Dict, List, Optional

from fastapi import WebSocket

from .models import CallRecord, UpdateType, call_update
from .tracker import CallTracker

logger = logging.getLogger(__name__)

# Close code sent to a client whose queue overflowed ("try again later").
OVERFLOW_CLOSE_CODE = 1013


class ClientConnection:
    """One connected WebSocket and its outbound queue.

    Messages are written by a dedicated sender task so a slow socket only
    ever delays itself.
    """

    def __init__(self, websocket: WebSocket, max_queue: int):
        self.websocket = websocket
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue)
        self.task: Optional[asyncio.Task] = None
        self.closed = False

    def offer(self, message: Dict[str, Any]) -> bool:
        if self.closed:
            return False
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            return False
        return True

    async def drain(self):
        if not self.closed:
            await self.queue.join()


class EventRelay:
    def __init__(self, tracker: CallTracker, max_queue: int = 100):
        self.tracker = tracker
        self.max_queue = max_queue
        self._clients: List[ClientConnection] = []
        tracker.add_listener(self._on_call_update)

    @property
    def client_count(self) -> int:
        return len(self._clients)

    async def connect(self, websocket: WebSocket) -> ClientConnection:
        """Register a client; its first message is the current call snapshot."""
        client = ClientConnection(websocket, self.max_queue)
        async with self.tracker.snapshot_locked() as calls:
            client.offer({"type": "active-calls", "calls": calls})
            self._clients.append(client)
        client.task = asyncio.create_task(self._pump(client))
        logger.info(f"WebSocket client added. Total clients: {len(self._clients)}")
        return client

    async def disconnect(self, client: ClientConnection):
        self._discard(client)
        if client.task and client.task is not asyncio.current_task():
            client.task.cancel()
            try:
                await client.task
            except asyncio.CancelledError:
                pass

    def broadcast(self, event_type: str, payload: Dict[str, Any]):
        """Queue a message for every client without waiting on any of them."""
        message = {"type": event_type}
        message.update(payload)
        for client in list(self._clients):
            if not client.offer(message):
                logger.warning("WebSocket client queue full, dropping client")
                self._drop(client)

    def broadcast_raw(self, event: Dict[str, Any]):
        self.broadcast("asterisk-event", {"event": event})

    def send_personal(self, client: ClientConnection, message: Dict[str, Any]) -> bool:
        if client not in self._clients:
            return False
        if not client.offer(message):
            self._drop(client)
            return False
        return True

    async def drain(self):
        """Wait until every queued message has been written."""
        await asyncio.gather(*(client.drain() for client in list(self._clients)))

    async def close(self):
        for client in list(self._clients):
            await self.disconnect(client)

    def _on_call_update(self, update_type: UpdateType, call: CallRecord):
        message = call_update(update_type, call)
        self.broadcast(message["type"], {"call": message["call"]})

    async def _pump(self, client: ClientConnection):
        while True:
            message = await client.queue.get()
            try:
                await client.websocket.send_text(json.dumps(message, default=str))
            except Exception as e:
                logger.error(f"Failed to send to WebSocket: {e}")
                self._discard(client)
                return
            finally:
                client.queue.task_done()

    def _discard(self, client: ClientConnection):
        client.closed = True
        if client in self._clients:
            self._clients.remove(client)
            logger.info(f"WebSocket client removed. Total clients: {len(self._clients)}")
        # Release anyone waiting in drain() on messages that will never be sent.
        while not client.queue.empty():
            client.queue.get_nowait()
            client.queue.task_done()

    def _drop(self, client: ClientConnection):
        self._discard(client)
        if client.task:
            client.task.cancel()
        asyncio.ensure_future(self._close_socket(client.websocket))

    async def _close_socket(self, websocket: WebSocket):
        try:
            await websocket.close(code=OVERFLOW_CLOSE_CODE)
        except Exception as e:
            logger.debug(f"Closing dropped WebSocket failed: {e}")
