"""Per-session Opus frame decoding and PCM validation."""

from __future__ import annotations

from typing import Any, Protocol

import discord
import numpy as np

from .errors import DecodeError
from .models import DecodedSamples, SampleVerdict


class FrameCodec(Protocol):
    """Stateful compressed-frame to PCM codec.

    ``decode`` returns interleaved little-endian int16 bytes or a numpy array of
    integer or floating point samples.
    """

    def decode(self, data: bytes) -> Any: ...


class OpusCodec:
    """Adapter over ``discord.opus.Decoder`` (48 kHz stereo only)."""

    CHANNELS = discord.opus.Decoder.CHANNELS
    SAMPLE_RATE = discord.opus.Decoder.SAMPLING_RATE

    @classmethod
    def supports(cls, channels: int, sample_rate: int) -> bool:
        return channels == cls.CHANNELS and sample_rate == cls.SAMPLE_RATE

    def __init__(self, channels: int = 2, sample_rate: int = 48000) -> None:
        if not self.supports(channels, sample_rate):
            raise ValueError(
                f"discord.opus.Decoder produces {self.CHANNELS} ch @ {self.SAMPLE_RATE} Hz, "
                f"not {channels} ch @ {sample_rate} Hz"
            )
        self._decoder = discord.opus.Decoder()

    def decode(self, data: bytes) -> bytes:
        return self._decoder.decode(data, fec=False)


class AudioFrameDecoder:
    """Turns compressed frames into validated 16-bit PCM.

    One instance per capture session: the wrapped codec carries inter-frame state,
    so frames must be fed in arrival order and the instance must never be
    recreated mid-session.
    """

    def __init__(
        self,
        channels: int,
        sample_rate: int,
        codec: FrameCodec | None = None,
        *,
        near_silent_ratio: float = 0.95,
    ) -> None:
        if channels < 1:
            raise ValueError("channels must be >= 1")
        self.channels = channels
        self.sample_rate = sample_rate
        self.near_silent_ratio = near_silent_ratio
        self._codec: FrameCodec = (
            codec if codec is not None else OpusCodec(channels, sample_rate)
        )

    def decode(self, frame: bytes) -> DecodedSamples:
        """Decode one frame.

        Raises:
            DecodeError: the frame is empty, the codec rejects it, or the output is
                empty, misaligned or contains non-finite samples.
        """
        if not frame:
            raise DecodeError("empty frame")
        try:
            raw = self._codec.decode(frame)
        except Exception as exc:
            raise DecodeError(f"codec failure: {type(exc).__name__}: {exc}") from exc
        samples = self._to_int16(raw)
        if samples.size == 0:
            raise DecodeError("codec produced no samples")
        if samples.size % self.channels:
            raise DecodeError(
                f"{samples.size} samples do not divide into {self.channels} channels"
            )

        zero_count = int(samples.size - np.count_nonzero(samples))
        zero_ratio = zero_count / samples.size
        verdict = (
            SampleVerdict.LOW_INFORMATION
            if zero_ratio >= self.near_silent_ratio
            else SampleVerdict.ACCEPTED
        )
        return DecodedSamples(
            pcm=samples.astype("<i2", copy=False).tobytes(),
            channels=self.channels,
            sample_rate=self.sample_rate,
            sample_count=int(samples.size),
            zero_ratio=zero_ratio,
            min_sample=int(samples.min()),
            max_sample=int(samples.max()),
            verdict=verdict,
        )

    @staticmethod
    def _to_int16(raw: Any) -> np.ndarray:
        if raw is None:
            raise DecodeError("codec returned nothing")
        if isinstance(raw, (bytes, bytearray, memoryview)):
            if len(raw) % 2:
                raise DecodeError(f"odd PCM byte length {len(raw)}")
            return np.frombuffer(raw, dtype="<i2")

        samples = np.asarray(raw).reshape(-1)
        if np.issubdtype(samples.dtype, np.floating):
            if not np.all(np.isfinite(samples)):
                raise DecodeError("non-finite sample values in decoded PCM")
            return (np.clip(samples, -1.0, 1.0) * 32767.0).astype(np.int16)
        if np.issubdtype(samples.dtype, np.integer):
            return np.clip(samples, -32768, 32767).astype(np.int16)
        raise DecodeError(f"unsupported sample dtype {samples.dtype}")


__all__ = ["AudioFrameDecoder", "FrameCodec", "OpusCodec"]
