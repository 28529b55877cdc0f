"""
Decoding of raw PBX events into the typed event variants the tracker applies.

AMI events arrive as flat ``Key: Value`` mappings whose key casing depends on
the Asterisk version; ARI events are JSON objects with nested channel
resources. Both are reduced to the same small set of variants, anything
else becomes an ``UnrecognizedEvent``.
"""

from typing import Any, Callable, Dict, Mapping, Optional

from .models import (
    CallState,
    CallTerminated,
    ChannelCreated,
    DialBegan,
    DialEnded,
    HangupRequested,
    PbxEvent,
    StateChanged,
    UnrecognizedEvent,
)
from .relay import EventRelay
from .tracker import CallTracker


AMI_HANGUP_REQUESTS = ("hanguprequest", "softhanguprequest")


def ami_event_fields(event) -> Dict[str, str]:
    """Flatten an ``asterisk.ami`` Event (or a plain mapping) into a dict."""
    if isinstance(event, Mapping):
        return dict(event)
    fields = dict(event.keys)
    fields.setdefault("Event", event.name)
    return fields


def decode_ami_event(fields: Mapping[str, Any]) -> PbxEvent:
    lowered = {str(k).lower(): v for k, v in fields.items()}

    def get(key: str) -> str:
        value = lowered.get(key)
        return "" if value is None else str(value)

    kind = get("event")
    call_id = get("uniqueid")
    name = kind.lower()

    if not call_id:
        return UnrecognizedEvent(kind=kind)

    if name == "newchannel":
        return ChannelCreated(
            call_id=call_id,
            channel=get("channel"),
            caller_id_num=get("calleridnum"),
            caller_id_name=get("calleridname"),
            destination=get("exten"),
            initial_state=CallState.RINGING.value,
            source="ami",
        )
    if name == "dialbegin":
        return DialBegan(call_id=call_id, destination=get("dialstring"))
    if name == "dialend":
        return DialEnded(call_id=call_id, dial_status=get("dialstatus"))
    if name in AMI_HANGUP_REQUESTS:
        return HangupRequested(call_id=call_id, cause=get("cause"))
    if name == "hangup":
        return CallTerminated(call_id=call_id, cause=get("cause-txt") or get("cause"))
    return UnrecognizedEvent(kind=kind, call_id=call_id)


def _resource(container: Mapping[str, Any], key: str) -> Optional[Mapping[str, Any]]:
    """Return a nested ARI object, ``{}`` when absent, or None when it is not an object."""
    value = container.get(key)
    if value is None:
        return {}
    if isinstance(value, Mapping):
        return value
    return None


def _text(container: Mapping[str, Any], key: str) -> str:
    value = container.get(key)
    return "" if value is None else str(value)


def decode_ari_event(payload: Mapping[str, Any]) -> PbxEvent:
    kind = _text(payload, "type")
    channel = _resource(payload, "channel")
    if channel is None:
        return UnrecognizedEvent(kind=kind)
    call_id = _text(channel, "id")

    if kind == "StasisStart" and call_id:
        caller = _resource(channel, "caller")
        dialplan = _resource(channel, "dialplan")
        if caller is None or dialplan is None:
            return UnrecognizedEvent(kind=kind, call_id=call_id)
        return ChannelCreated(
            call_id=call_id,
            channel=_text(channel, "name"),
            caller_id_num=_text(caller, "number"),
            caller_id_name=_text(caller, "name"),
            destination=_text(dialplan, "exten"),
            initial_state=CallState.STARTED.value,
            source="ari",
        )
    if kind == "ChannelStateChange" and call_id:
        return StateChanged(call_id=call_id, state=_text(channel, "state"))
    if kind == "ChannelHangupRequest" and call_id:
        return HangupRequested(call_id=call_id, cause=_text(payload, "cause"))
    if kind == "StasisEnd" and call_id:
        return CallTerminated(call_id=call_id)
    if kind == "Dial":
        # The tracked leg is the calling channel; originations have no caller.
        caller = _resource(payload, "caller")
        peer = _resource(payload, "peer")
        leg = caller or peer
        if caller is None or peer is None or not leg:
            return UnrecognizedEvent(kind=kind)
        dial_id = _text(leg, "id")
        if not dial_id:
            return UnrecognizedEvent(kind=kind)
        status = _text(payload, "dialstatus")
        if status:
            return DialEnded(call_id=dial_id, dial_status=status)
        return DialBegan(call_id=dial_id, destination=_text(payload, "dialstring"))
    return UnrecognizedEvent(kind=kind, call_id=call_id)


class EventPipeline:
    """Applies raw PBX events to the tracker, then relays them unmodified."""

    def __init__(self, tracker: CallTracker, relay: EventRelay):
        self.tracker = tracker
        self.relay = relay

    async def ingest(self, raw: Dict[str, Any],
                     decoder: Callable[[Mapping[str, Any]], PbxEvent]) -> PbxEvent:
        event = decoder(raw)
        await self.tracker.apply_event(event)
        self.relay.broadcast_raw(raw)
        return event

    async def ingest_ami(self, fields: Dict[str, Any]) -> PbxEvent:
        return await self.ingest(fields, decode_ami_event)

    async def ingest_ari(self, payload: Dict[str, Any]) -> PbxEvent:
        return await self.ingest(payload, decode_ari_event)
