"""Per-participant voice capture for Discord voice channels."""

from .connector import VoiceChannelConnector
from .errors import (
    AlreadyActiveError,
    CaptureCancelledError,
    CaptureError,
    DecodeError,
    SubscriptionError,
    VoiceConnectionError,
    WriteError,
)
from .models import FixedDuration, Manual, SessionResult, SilenceGap, StopReason
from .recorder import VoiceRecorder

__all__ = [
    "AlreadyActiveError",
    "CaptureCancelledError",
    "CaptureError",
    "DecodeError",
    "FixedDuration",
    "Manual",
    "SessionResult",
    "SilenceGap",
    "StopReason",
    "SubscriptionError",
    "VoiceChannelConnector",
    "VoiceConnectionError",
    "VoiceRecorder",
    "WriteError",
]
