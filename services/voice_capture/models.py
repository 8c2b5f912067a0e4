"""Data types shared across the capture pipeline."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, NamedTuple


class SessionKey(NamedTuple):
    """Registry key: one live capture per participant per guild."""

    room_id: int
    participant_id: int


@dataclass(frozen=True, slots=True)
class FixedDuration:
    """Stop after ``seconds`` of wall time, regardless of incoming audio."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("FixedDuration.seconds must be positive")


@dataclass(frozen=True, slots=True)
class SilenceGap:
    """Stop once no frame has arrived for ``seconds``."""

    seconds: float

    def __post_init__(self) -> None:
        if self.seconds <= 0:
            raise ValueError("SilenceGap.seconds must be positive")


@dataclass(frozen=True, slots=True)
class Manual:
    """Run until stopped explicitly or the frame stream closes."""


EndCondition = FixedDuration | SilenceGap | Manual


def describe_end_condition(end_condition: EndCondition) -> str:
    if isinstance(end_condition, FixedDuration):
        return f"fixed_duration:{end_condition.seconds:g}s"
    if isinstance(end_condition, SilenceGap):
        return f"silence_gap:{end_condition.seconds * 1000:g}ms"
    return "manual"


class SessionState(str, Enum):
    LISTENING = "listening"
    DRAINING = "draining"
    FINALIZED = "finalized"


class StopReason(str, Enum):
    """What moved a session from LISTENING to DRAINING."""

    DURATION = "duration"
    SILENCE = "silence"
    MANUAL = "manual"
    STREAM_CLOSED = "stream_closed"
    MAX_DURATION = "max_duration"
    WRITE_ERROR = "write_error"
    CANCELLED = "cancelled"


class SampleVerdict(str, Enum):
    ACCEPTED = "accepted"
    LOW_INFORMATION = "low_information"


@dataclass(slots=True)
class DecodedSamples:
    """Interleaved signed 16-bit PCM for one frame."""

    pcm: bytes
    channels: int
    sample_rate: int
    sample_count: int
    zero_ratio: float
    min_sample: int
    max_sample: int
    verdict: SampleVerdict = SampleVerdict.ACCEPTED

    @property
    def frame_count(self) -> int:
        """Samples per channel."""
        return self.sample_count // self.channels

    @property
    def duration(self) -> float:
        return self.frame_count / float(self.sample_rate)

    @property
    def near_silent(self) -> bool:
        return self.verdict is SampleVerdict.LOW_INFORMATION


@dataclass(slots=True)
class SessionResult:
    """Outcome of one capture, delivered when the session is finalized."""

    room_id: int
    participant_id: int
    output_path: Path | None
    frames_accepted: int
    frames_rejected: int
    frames_near_silent: int
    error_flag: bool
    duration_actual: float
    bytes_written: int
    stop_reason: StopReason | None
    error: str | None = None

    @property
    def ok(self) -> bool:
        """False when the capture failed fatally (storage error or cancellation)."""
        return self.error is None

    @property
    def captured(self) -> bool:
        return self.output_path is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "room_id": self.room_id,
            "participant_id": self.participant_id,
            "output_path": str(self.output_path) if self.output_path else None,
            "frames_accepted": self.frames_accepted,
            "frames_rejected": self.frames_rejected,
            "frames_near_silent": self.frames_near_silent,
            "error_flag": self.error_flag,
            "duration_actual": round(self.duration_actual, 3),
            "bytes_written": self.bytes_written,
            "stop_reason": self.stop_reason.value if self.stop_reason else None,
            "error": self.error,
        }


__all__ = [
    "DecodedSamples",
    "EndCondition",
    "FixedDuration",
    "Manual",
    "SampleVerdict",
    "SessionKey",
    "SessionResult",
    "SessionState",
    "SilenceGap",
    "StopReason",
    "describe_end_condition",
]
