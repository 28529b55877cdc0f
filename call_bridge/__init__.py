"""
Asterisk Call Bridge

A FastAPI application that tracks in-progress Asterisk calls from AMI events
and pushes call state to browsers over WebSockets.
"""

__version__ = "1.0.0"

from .models import CallRecord, CallState, UpdateType
from .tracker import CallTracker
from .relay import EventRelay
from .gateway import CommandGateway

__all__ = [
    "CallRecord",
    "CallState",
    "UpdateType",
    "CallTracker",
    "EventRelay",
    "CommandGateway",
]
