"""Failure types raised inside the device.

Every one of these is handled by the call session machine; none is meant to
escape to the event loop.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class CallError(Exception):
    """Base class for call-path failures."""


class MediaErrorReason(str, Enum):
    PERMISSION_DENIED = "PermissionDenied"
    DEVICE_NOT_FOUND = "DeviceNotFound"
    DEVICE_BUSY = "DeviceBusy"
    OTHER = "Other"


class MediaAcquisitionError(CallError):
    """Capture device could not be opened. Terminal for the call attempt."""

    def __init__(self, reason: MediaErrorReason, message: str = ""):
        super().__init__(f"{reason.value}: {message}" if message else reason.value)
        self.reason = reason
        self.message = message


class NegotiationError(CallError):
    """Malformed or out-of-order session description."""


class CandidateParseError(CallError):
    """A single connectivity candidate could not be used."""


class TransportDisconnected(CallError):
    """The signaling socket is down; nothing could be sent."""


class PeerConnectionFailure(CallError):
    def __init__(self, state: str, source: Optional[str] = None):
        super().__init__(f"peer connection {state}" + (f" ({source})" if source else ""))
        self.state = state
        self.source = source
