import logging
import re
import time
import uuid
from typing import Optional

from .config import Settings
from .errors import CallNotFound, TransientEventRace, ValidationError
from .models import CallRecord, CommandKind, CommandOutcome, Recording
from .tracker import CallTracker

logger = logging.getLogger(__name__)

PHONE_NUMBER = re.compile(r"[0-9]{10}")


def validate_phone_number(value: Optional[str], field: str) -> str:
    if not value:
        raise ValidationError(f"{field} is required")
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be a string of digits")
    if not PHONE_NUMBER.fullmatch(value):
        raise ValidationError("Please enter valid 10-digit phone numbers")
    return value


class CommandGateway:
    """Translates user actions into AMI actions.

    Every command checks the call exists, sends exactly one action through
    ``control`` (an AsteriskManager, or anything with the same
    ``send_action`` coroutine) and only then updates the tracker. Failures
    propagate as BridgeError subclasses and leave the tracker untouched.
    """

    def __init__(self, tracker: CallTracker, control, settings: Settings):
        self.tracker = tracker
        self.control = control
        self.settings = settings

    async def originate(self, self_number: Optional[str], customer_number: Optional[str]) -> str:
        if not self_number or not customer_number:
            raise ValidationError("Self number and customer number are required")
        validate_phone_number(self_number, "selfNumber")
        validate_phone_number(customer_number, "customerNumber")

        call_id = str(uuid.uuid4())
        context = self.settings.originate_context
        await self.control.send_action(
            "Originate",
            Channel=f"Local/{self_number}@{context}",
            Context=context,
            Exten=customer_number,
            Priority=1,
            CallerID=f'"{self_number}" <{self_number}>',
            Timeout=self.settings.originate_timeout_ms,
            ChannelId=call_id,
            Variable=f"CUSTOMER_NUMBER={customer_number},SELF_NUMBER={self_number}",
            Async="true",
        )
        logger.info(f"Originated call {call_id}: {self_number} -> {customer_number}")

        try:
            await self.tracker.apply_command_result(call_id, CommandOutcome(
                kind=CommandKind.ORIGINATED,
                caller_id_num=self_number,
                destination=customer_number,
            ))
        except TransientEventRace:
            logger.info(f"Call {call_id} ended before its originate result was applied")
        return call_id

    async def hold(self, call_id: str) -> CallRecord:
        call = await self._controllable(call_id)
        await self.control.send_action(
            "Redirect",
            Channel=call.channel,
            Context=self.settings.hold_context,
            Exten=self.settings.hold_exten,
            Priority=1,
        )
        logger.info(f"Call {call_id} put on hold")
        return await self.tracker.apply_command_result(call_id, CommandOutcome(CommandKind.HELD))

    async def resume(self, call_id: str) -> CallRecord:
        call = await self._controllable(call_id)
        await self.control.send_action(
            "Redirect",
            Channel=call.channel,
            Context=self.settings.hold_context,
            Exten=call.destination or self.settings.resume_fallback_exten,
            Priority=1,
        )
        logger.info(f"Call {call_id} resumed")
        return await self.tracker.apply_command_result(call_id, CommandOutcome(CommandKind.RESUMED))

    async def hangup(self, call_id: str) -> CallRecord:
        call = await self._controllable(call_id)
        await self.control.send_action("Hangup", Channel=call.channel)
        logger.info(f"Hung up call {call_id}")
        try:
            return await self.tracker.apply_command_result(
                call_id, CommandOutcome(CommandKind.HANGUP_REQUESTED))
        except CallNotFound:
            # The Hangup event already ended the call.
            return call

    async def start_recording(self, call_id: str) -> str:
        await self._controllable(call_id)
        call = await self.tracker.reserve_recording(call_id)
        try:
            filename = f"recording_{call_id}_{int(time.time() * 1000)}"
            await self.control.send_action(
                "Monitor",
                Channel=call.channel,
                File=filename,
                Format=self.settings.recording_format,
                Mix="true",
            )
            logger.info(f"Recording call {call_id} to {filename}")
            await self.tracker.apply_command_result(call_id, CommandOutcome(
                kind=CommandKind.RECORDING_STARTED,
                recording=Recording(filename),
            ))
        finally:
            self.tracker.release_recording(call_id)
        return filename

    async def stop_recording(self, call_id: str) -> CallRecord:
        call = await self._controllable(call_id)
        if call.recording is None:
            raise ValidationError("No active recording")
        await self.control.send_action("StopMonitor", Channel=call.channel)
        logger.info(f"Stopped recording call {call_id}")
        return await self.tracker.apply_command_result(
            call_id, CommandOutcome(CommandKind.RECORDING_STOPPED))

    async def _controllable(self, call_id: str) -> CallRecord:
        call = await self.tracker.get(call_id)
        if not call.channel:
            raise ValidationError("Call has no channel yet")
        return call
