"""Exception hierarchy for voice capture."""

from __future__ import annotations

from typing import Any


class CaptureError(Exception):
    """Base exception for voice capture failures."""


class VoiceConnectionError(CaptureError):
    """Raised when the bot cannot join a voice channel."""

    def __init__(self, room_id: int, message: str) -> None:
        self.room_id = room_id
        super().__init__(f"Cannot connect to voice in guild {room_id}: {message}")


class SubscriptionError(CaptureError):
    """Raised when a per-participant frame stream cannot be opened."""

    def __init__(self, room_id: int, participant_id: int, message: str) -> None:
        self.room_id = room_id
        self.participant_id = participant_id
        super().__init__(
            f"Cannot subscribe to participant {participant_id} in guild {room_id}: {message}"
        )


class DecodeError(CaptureError):
    """A single frame could not be turned into valid PCM.

    Recoverable: the session skips the frame and keeps listening.
    """


class WriteError(CaptureError):
    """Storage failure while writing a container. Fatal to the session."""

    def __init__(self, path: Any, message: str) -> None:
        self.path = path
        super().__init__(f"Cannot write {path}: {message}")


class AlreadyActiveError(CaptureError):
    """Raised by the registry when a capture for the key is already live."""

    def __init__(self, room_id: int, participant_id: int) -> None:
        self.room_id = room_id
        self.participant_id = participant_id
        super().__init__(
            f"Participant {participant_id} in guild {room_id} is already being recorded"
        )


class CaptureCancelledError(CaptureError):
    """Raised when a capture is abandoned before any session was admitted."""


__all__ = [
    "AlreadyActiveError",
    "CaptureCancelledError",
    "CaptureError",
    "DecodeError",
    "SubscriptionError",
    "VoiceConnectionError",
    "WriteError",
]
