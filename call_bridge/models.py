import copy
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional, Union


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class CallState(str, Enum):
    RINGING = "ringing"
    DIALING = "dialing"
    ANSWERED = "answered"
    HOLD = "hold"
    FAILED = "failed"
    ENDED = "ended"
    STARTED = "started"
    UP = "up"
    HANGUP = "hangup"


class UpdateType(str, Enum):
    """Kinds of call-update messages pushed to WebSocket clients."""
    NEW_CALL = "new-call"
    CALL_ORIGINATED = "call-originated"
    CALL_DIALING = "call-dialing"
    CALL_STATUS_CHANGED = "call-status-changed"
    CALL_HELD = "call-held"
    CALL_UNHELD = "call-unheld"
    CALL_HANGUP_REQUESTED = "call-hangup-requested"
    CALL_ENDED = "call-ended"
    RECORDING_STARTED = "recording-started"
    RECORDING_STOPPED = "recording-stopped"


class Recording:
    def __init__(self, filename: str, start_time: Optional[datetime] = None):
        self.filename = filename
        self.start_time = start_time or utcnow()

    def to_dict(self):
        return {
            "filename": self.filename,
            "startTime": _iso(self.start_time),
        }


class CallRecord:
    def __init__(self, id: str, state: str, channel: str = "",
                 caller_id_num: str = "", caller_id_name: str = "",
                 destination: str = "", source: str = "ami",
                 start_time: Optional[datetime] = None):
        self.id = id
        self.state = state
        self.channel = channel
        self.caller_id_num = caller_id_num
        self.caller_id_name = caller_id_name
        self.destination = destination
        self.source = source
        self.start_time = start_time or utcnow()
        self.end_time: Optional[datetime] = None
        self.recording: Optional[Recording] = None

    def copy(self) -> "CallRecord":
        return copy.deepcopy(self)

    def to_dict(self):
        return {
            "id": self.id,
            "channel": self.channel,
            "state": self.state,
            "startTime": _iso(self.start_time),
            "endTime": _iso(self.end_time),
            "callerIdNum": self.caller_id_num,
            "callerIdName": self.caller_id_name,
            "destination": self.destination,
            "recording": self.recording.to_dict() if self.recording else None,
            "source": self.source,
        }


# Inbound PBX events, decoded from AMI or ARI payloads by call_bridge.events.

@dataclass(frozen=True)
class ChannelCreated:
    call_id: str
    channel: str = ""
    caller_id_num: str = ""
    caller_id_name: str = ""
    destination: str = ""
    initial_state: str = CallState.RINGING.value
    source: str = "ami"


@dataclass(frozen=True)
class DialBegan:
    call_id: str
    destination: str = ""


@dataclass(frozen=True)
class DialEnded:
    call_id: str
    dial_status: str = ""


@dataclass(frozen=True)
class StateChanged:
    call_id: str
    state: str


@dataclass(frozen=True)
class HangupRequested:
    call_id: str
    cause: str = ""


@dataclass(frozen=True)
class CallTerminated:
    call_id: str
    cause: str = ""


@dataclass(frozen=True)
class UnrecognizedEvent:
    kind: str
    call_id: str = ""


PbxEvent = Union[ChannelCreated, DialBegan, DialEnded, StateChanged,
                 HangupRequested, CallTerminated, UnrecognizedEvent]


class CommandKind(Enum):
    ORIGINATED = "originated"
    HELD = "held"
    RESUMED = "resumed"
    HANGUP_REQUESTED = "hangup_requested"
    RECORDING_STARTED = "recording_started"
    RECORDING_STOPPED = "recording_stopped"


@dataclass(frozen=True)
class CommandOutcome:
    """Result of a PBX control request that succeeded.

    `recording` is set for RECORDING_STARTED; `caller_id_num` and
    `destination` for ORIGINATED.
    """
    kind: CommandKind
    recording: Optional[Recording] = None
    caller_id_num: str = ""
    destination: str = ""


def call_update(update_type: UpdateType, call: CallRecord) -> Dict[str, Any]:
    return {"type": update_type.value, "call": call.to_dict()}
