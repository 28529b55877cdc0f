class BridgeError(Exception):
    """Base class for failures reported back to API callers."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class CallNotFound(BridgeError):
    status_code = 404

    def __init__(self, call_id: str):
        super().__init__("Call not found")
        self.call_id = call_id


class ValidationError(BridgeError):
    status_code = 400


class UpstreamRejected(BridgeError):
    """The PBX refused a control request, or it never answered."""

    status_code = 502


class RecordingAlreadyActive(BridgeError):
    status_code = 409

    def __init__(self, call_id: str, filename: str = ""):
        if filename:
            super().__init__(f"Recording already active: {filename}")
        else:
            super().__init__("Recording is already starting")
        self.call_id = call_id
        self.filename = filename


class TransientEventRace(BridgeError):
    """An event referenced a call that is not (or no longer) tracked.

    Raised inside the tracker and logged there; never reaches a caller.
    """

    def __init__(self, call_id: str, kind: str):
        super().__init__(f"{kind} for untracked call {call_id}")
        self.call_id = call_id
        self.kind = kind
