"""Test fixtures for voice capture tests."""

from __future__ import annotations

from collections.abc import Callable
from pathlib import Path
from typing import Any
from unittest.mock import AsyncMock, MagicMock, Mock

import numpy as np
import pytest

from services.voice_capture.config import CaptureConfig, DiscordConfig
from services.voice_capture.container import ContainerWriter
from services.voice_capture.decoder import AudioFrameDecoder
from services.voice_capture.models import EndCondition, SessionKey
from services.voice_capture.session import CaptureSession, FinalizedCallback


SAMPLES_PER_CHANNEL = 960  # 20 ms at 48 kHz
CHANNELS = 2
FRAME_PCM_BYTES = SAMPLES_PER_CHANNEL * CHANNELS * 2


class FakeCodec:
    """Stand-in for libopus.

    The first payload byte becomes the value of every decoded sample, so
    ``b"\\x00..."`` decodes to digital silence. Payloads starting with ``b"bad"``
    make the codec raise, like a corrupted Opus packet.
    """

    def __init__(self, channels: int = CHANNELS, samples_per_channel: int = SAMPLES_PER_CHANNEL):
        self.channels = channels
        self.samples_per_channel = samples_per_channel
        self.calls: list[bytes] = []

    def decode(self, data: bytes) -> Any:
        self.calls.append(data)
        if data.startswith(b"bad"):
            raise ValueError("corrupted stream")
        if data.startswith(b"nan"):
            return np.full(self.samples_per_channel * self.channels, np.nan, dtype=np.float32)
        value = data[0]
        return np.full(
            self.samples_per_channel * self.channels, value, dtype="<i2"
        ).tobytes()


def _opus_frame(value: int = 7) -> bytes:
    return bytes([value]) + b"opus-payload"


@pytest.fixture
def opus_frame() -> Callable[[int], bytes]:
    """Fake compressed frame whose decoded samples all equal ``value``."""
    return _opus_frame


@pytest.fixture
def fake_codec() -> FakeCodec:
    return FakeCodec()


@pytest.fixture
def sine_pcm() -> Callable[[float, int], bytes]:
    """Interleaved stereo int16 sine wave at 48 kHz."""

    def build(duration: float = 0.02, frequency: int = 440) -> bytes:
        sample_rate = 48000
        t = np.linspace(0, duration, int(sample_rate * duration), False)
        mono = (np.sin(2 * np.pi * frequency * t) * 0.5 * 32767).astype(np.int16)
        return np.repeat(mono, CHANNELS).tobytes()

    return build


@pytest.fixture
def make_session(tmp_path: Path) -> Callable[..., CaptureSession]:
    """Build a CaptureSession writing to ``tmp_path`` with a fake codec."""

    def build(
        end_condition: EndCondition,
        *,
        filename: str = "capture.wav",
        codec: Any | None = None,
        max_duration: float | None = None,
        on_finalized: FinalizedCallback | None = None,
        key: SessionKey = SessionKey(1, 42),
    ) -> CaptureSession:
        decoder = AudioFrameDecoder(CHANNELS, 48000, codec or FakeCodec())
        writer = ContainerWriter(tmp_path / filename, CHANNELS, 48000, 16)
        return CaptureSession(
            key,
            end_condition,
            decoder,
            writer,
            max_duration=max_duration,
            on_finalized=on_finalized,
        )

    return build


@pytest.fixture
def capture_config(tmp_path: Path) -> CaptureConfig:
    return CaptureConfig(
        recordings_dir=str(tmp_path / "recordings"),
        silence_gap_ms=100,
        default_duration_seconds=0.3,
        max_session_seconds=10.0,
        first_speaker_timeout_seconds=0.2,
    )


@pytest.fixture
def discord_config() -> DiscordConfig:
    return DiscordConfig(
        voice_connect_timeout_seconds=1.0,
        voice_connect_max_attempts=2,
        voice_reconnect_initial_backoff_seconds=0.0,
        voice_reconnect_max_backoff_seconds=0.0,
        idle_disconnect_seconds=0.0,
    )


@pytest.fixture
def voice_client() -> MagicMock:
    """Mock VoiceRecvClient that reports itself connected."""
    client = MagicMock()
    client.is_connected.return_value = True
    client.is_listening.return_value = True
    client.disconnect = AsyncMock()
    return client


@pytest.fixture
def voice_channel(voice_client: MagicMock) -> Mock:
    """Mock discord.VoiceChannel in guild 1 whose connect returns ``voice_client``."""
    guild = Mock()
    guild.id = 1
    guild.voice_client = None
    channel = Mock()
    channel.id = 100
    channel.guild = guild
    channel.connect = AsyncMock(return_value=voice_client)
    return channel
