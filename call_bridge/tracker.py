"""
In-memory table of in-flight calls.

The tracker is the only writer of call state. PBX events and the results of
successful control commands are applied as field-level patches under a
single lock, and every mutation is reported to listeners while that lock is
held so observers see mutations in the order they were applied.
"""

import asyncio
import logging
from collections import OrderedDict
from contextlib import asynccontextmanager
from typing import Callable, Dict, List, Optional, Set

from .errors import CallNotFound, RecordingAlreadyActive, TransientEventRace
from .models import (
    CallRecord,
    CallState,
    CallTerminated,
    ChannelCreated,
    CommandKind,
    CommandOutcome,
    DialBegan,
    DialEnded,
    HangupRequested,
    PbxEvent,
    StateChanged,
    UnrecognizedEvent,
    UpdateType,
    utcnow,
)

logger = logging.getLogger(__name__)

Listener = Callable[[UpdateType, CallRecord], None]

# How many ended call ids are remembered to refuse late creation events.
ENDED_HISTORY = 4096


class CallTracker:
    def __init__(self):
        self._calls: Dict[str, CallRecord] = {}
        self._listeners: List[Listener] = []
        self._ended: "OrderedDict[str, None]" = OrderedDict()
        self._recording_pending: Set[str] = set()
        self._lock = asyncio.Lock()

    def __len__(self):
        return len(self._calls)

    def add_listener(self, listener: Listener):
        self._listeners.append(listener)

    def remove_listener(self, listener: Listener):
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def apply_event(self, event: PbxEvent) -> Optional[CallRecord]:
        """Apply one PBX event; returns the affected record, if any."""
        async with self._lock:
            try:
                return self._dispatch(event)
            except TransientEventRace as e:
                logger.debug(f"Ignoring event: {e}")
                return None

    async def apply_command_result(self, call_id: str, outcome: CommandOutcome) -> CallRecord:
        async with self._lock:
            if outcome.kind is CommandKind.ORIGINATED:
                return self._originated(call_id, outcome)

            call = self._calls.get(call_id)
            if call is None:
                raise CallNotFound(call_id)

            if outcome.kind is CommandKind.HELD:
                call.state = CallState.HOLD.value
                self._notify(UpdateType.CALL_HELD, call)
            elif outcome.kind is CommandKind.RESUMED:
                call.state = CallState.ANSWERED.value
                self._notify(UpdateType.CALL_UNHELD, call)
            elif outcome.kind is CommandKind.HANGUP_REQUESTED:
                call.state = CallState.HANGUP.value
                call.recording = None
                self._notify(UpdateType.CALL_HANGUP_REQUESTED, call)
            elif outcome.kind is CommandKind.RECORDING_STARTED:
                self._recording_pending.discard(call_id)
                if call.recording is not None:
                    raise RecordingAlreadyActive(call_id, call.recording.filename)
                call.recording = outcome.recording
                self._notify(UpdateType.RECORDING_STARTED, call)
            elif outcome.kind is CommandKind.RECORDING_STOPPED:
                call.recording = None
                self._notify(UpdateType.RECORDING_STOPPED, call)
            return call.copy()

    async def reserve_recording(self, call_id: str) -> CallRecord:
        """Claim the right to start a recording before the PBX is asked to.

        Fails with RecordingAlreadyActive while a recording runs or another
        start is in flight. Released by RECORDING_STARTED or release_recording().
        """
        async with self._lock:
            call = self._calls.get(call_id)
            if call is None:
                raise CallNotFound(call_id)
            if call.recording is not None:
                raise RecordingAlreadyActive(call_id, call.recording.filename)
            if call_id in self._recording_pending:
                raise RecordingAlreadyActive(call_id)
            self._recording_pending.add(call_id)
            return call.copy()

    def release_recording(self, call_id: str):
        self._recording_pending.discard(call_id)

    async def snapshot(self) -> List[Dict]:
        async with self._lock:
            return self._snapshot()

    @asynccontextmanager
    async def snapshot_locked(self):
        """Yield the current snapshot with mutations held off until exit."""
        async with self._lock:
            yield self._snapshot()

    async def get(self, call_id: str) -> CallRecord:
        async with self._lock:
            call = self._calls.get(call_id)
            if call is None:
                raise CallNotFound(call_id)
            return call.copy()

    def _snapshot(self) -> List[Dict]:
        return [call.to_dict() for call in self._calls.values()]

    def _require(self, call_id: str, kind: str) -> CallRecord:
        call = self._calls.get(call_id)
        if call is None:
            raise TransientEventRace(call_id, kind)
        return call

    def _dispatch(self, event: PbxEvent) -> Optional[CallRecord]:
        if isinstance(event, ChannelCreated):
            return self._channel_created(event)

        if isinstance(event, UnrecognizedEvent):
            return None

        call = self._require(event.call_id, type(event).__name__)

        if isinstance(event, DialBegan):
            call.state = CallState.DIALING.value
            call.destination = event.destination
            self._notify(UpdateType.CALL_DIALING, call)

        elif isinstance(event, DialEnded):
            if event.dial_status.upper() == "ANSWER":
                call.state = CallState.ANSWERED.value
            else:
                call.state = CallState.FAILED.value
            self._notify(UpdateType.CALL_STATUS_CHANGED, call)

        elif isinstance(event, StateChanged):
            call.state = event.state.lower()
            self._notify(UpdateType.CALL_STATUS_CHANGED, call)

        elif isinstance(event, HangupRequested):
            call.state = CallState.HANGUP.value
            call.recording = None
            self._notify(UpdateType.CALL_HANGUP_REQUESTED, call)

        elif isinstance(event, CallTerminated):
            call.state = CallState.ENDED.value
            call.end_time = utcnow()
            call.recording = None
            self._notify(UpdateType.CALL_ENDED, call)
            del self._calls[call.id]
            self._recording_pending.discard(call.id)
            self._remember_ended(call.id)
            logger.info(f"Call ended: {call.id} ({call.channel})")

        return call.copy()

    def _channel_created(self, event: ChannelCreated) -> Optional[CallRecord]:
        if event.call_id in self._ended:
            raise TransientEventRace(event.call_id, "ChannelCreated after end")
        existing = self._calls.get(event.call_id)
        if existing is not None:
            # Identity (id, state, start time, source) stays with the first writer.
            logger.warning(f"Duplicate channel creation for call {event.call_id}")
            for attr in ("channel", "caller_id_num", "caller_id_name", "destination"):
                if not getattr(existing, attr):
                    setattr(existing, attr, getattr(event, attr))
            return existing.copy()

        call = CallRecord(
            id=event.call_id,
            state=event.initial_state,
            channel=event.channel,
            caller_id_num=event.caller_id_num,
            caller_id_name=event.caller_id_name,
            destination=event.destination,
            source=event.source,
        )
        self._calls[call.id] = call
        logger.info(f"New call: {call.caller_id_num} -> {call.destination or '?'} ({call.channel})")
        self._notify(UpdateType.NEW_CALL, call)
        return call.copy()

    def _originated(self, call_id: str, outcome: CommandOutcome) -> CallRecord:
        if call_id in self._ended:
            raise TransientEventRace(call_id, "Originate result after end")
        call = self._calls.get(call_id)
        if call is None:
            call = CallRecord(
                id=call_id,
                state=CallState.STARTED.value,
                caller_id_num=outcome.caller_id_num,
                destination=outcome.destination,
                source="local",
            )
            self._calls[call_id] = call
        elif not call.destination:
            call.destination = outcome.destination
        self._notify(UpdateType.CALL_ORIGINATED, call)
        return call.copy()

    def _remember_ended(self, call_id: str):
        self._ended[call_id] = None
        while len(self._ended) > ENDED_HISTORY:
            self._ended.popitem(last=False)

    def _notify(self, update_type: UpdateType, call: CallRecord):
        for listener in list(self._listeners):
            try:
                listener(update_type, call)
            except Exception as e:
                logger.error(f"Call update listener failed: {e}")
