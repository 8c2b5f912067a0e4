"""Tests for the caller-facing recorder."""

import asyncio

import pytest

from services.common.config import ConfigError
from services.voice_capture.config import CaptureConfig
from services.voice_capture.connector import VoiceChannelConnector
from services.voice_capture.container import read_header
from services.voice_capture.errors import (
    AlreadyActiveError,
    CaptureCancelledError,
    SubscriptionError,
)
from services.voice_capture.models import FixedDuration, Manual, StopReason
from services.voice_capture.recorder import VoiceRecorder


@pytest.fixture
def recorder(discord_config, capture_config, fake_codec):
    connector = VoiceChannelConnector(discord_config)
    return VoiceRecorder(connector, capture_config, codec_factory=lambda ch, sr: fake_codec)


async def _wait_until(predicate, timeout=2.0):
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


def _router(recorder, room_id=1):
    return recorder.connector.connection_for(room_id).router


class TestStartRecording:
    @pytest.mark.unit
    def test_recordings_directory_created(self, recorder, capture_config):
        assert capture_config.recordings_path.is_dir()

    @pytest.mark.unit
    @pytest.mark.parametrize("channels,sample_rate", [(1, 48000), (2, 16000), (1, 16000)])
    def test_format_opus_cannot_produce_is_rejected_up_front(
        self, discord_config, tmp_path, channels, sample_rate
    ):
        config = CaptureConfig(
            recordings_dir=str(tmp_path / "rec"), channels=channels, sample_rate=sample_rate
        )

        with pytest.raises(ConfigError, match="CAPTURE_SAMPLE_RATE"):
            VoiceRecorder(VoiceChannelConnector(discord_config), config)
        assert not (tmp_path / "rec").exists()

    @pytest.mark.unit
    def test_other_formats_allowed_with_custom_codec(self, discord_config, tmp_path, fake_codec):
        config = CaptureConfig(recordings_dir=str(tmp_path), channels=1, sample_rate=16000)

        recorder = VoiceRecorder(
            VoiceChannelConnector(discord_config), config, codec_factory=lambda ch, sr: fake_codec
        )

        assert recorder.config.sample_rate == 16000

    @pytest.mark.unit
    def test_default_format_uses_opus(self, discord_config, capture_config):
        recorder = VoiceRecorder(VoiceChannelConnector(discord_config), capture_config)

        assert recorder.config.channels == 2

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_fixed_duration_recording(self, recorder, voice_channel, opus_frame):
        task = await recorder.start_recording(voice_channel, 42, FixedDuration(0.2))
        assert recorder.is_recording(1, 42)

        router = _router(recorder)
        for _ in range(5):
            router.dispatch_frame(42, opus_frame(3))
            await asyncio.sleep(0.02)
        result = await task

        assert result.stop_reason is StopReason.DURATION
        assert result.frames_accepted == 5
        assert result.output_path.parent == recorder.recordings_path
        assert result.output_path.name.startswith("recording-42-")
        assert read_header(result.output_path).data_size == 5 * 3840
        assert not recorder.is_recording(1, 42)
        assert 42 not in router.streams

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_default_end_condition_uses_configured_duration(self, recorder, voice_channel):
        task = await recorder.start_recording(voice_channel, 42)

        assert recorder.registry.get(1, 42).end_condition == FixedDuration(0.3)
        result = await task
        assert result.stop_reason is StopReason.DURATION
        assert result.output_path is None

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_duplicate_recording_rejected(self, recorder, voice_channel):
        task = await recorder.start_recording(voice_channel, 42, Manual())

        with pytest.raises(AlreadyActiveError):
            await recorder.start_recording(voice_channel, 42, Manual())

        recorder.stop_recording(1, 42)
        await task

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_concurrent_participants(self, recorder, voice_channel, opus_frame):
        first = await recorder.start_recording(voice_channel, 42, Manual())
        second = await recorder.start_recording(voice_channel, 43, Manual())
        router = _router(recorder)
        router.dispatch_frame(42, opus_frame(1))
        router.dispatch_frame(43, opus_frame(2))
        router.dispatch_frame(43, opus_frame(2))
        await asyncio.sleep(0.01)

        recorder.stop_recording(1, 42)
        recorder.stop_recording(1, 43)
        results = await asyncio.gather(first, second)

        assert [r.frames_accepted for r in results] == [1, 2]
        assert results[0].output_path != results[1].output_path

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_stop_recording_twice_is_noop(self, recorder, voice_channel, opus_frame):
        task = await recorder.start_recording(voice_channel, 42, Manual())
        _router(recorder).dispatch_frame(42, opus_frame(1))

        assert recorder.stop_recording(1, 42) is True
        assert recorder.stop_recording(1, 42) is False
        result = await task

        assert result.ok
        assert result.stop_reason is StopReason.MANUAL
        assert recorder.stop_recording(1, 42) is False

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_subscription_failure_admits_nothing(
        self, recorder, voice_channel, voice_client
    ):
        connection = await recorder.connector.join(voice_channel)
        voice_client.is_connected.return_value = False

        with pytest.raises(SubscriptionError):
            recorder._admit(connection, 42, Manual(), "x.wav")

        assert len(recorder.registry) == 0

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_leaving_channel_ends_session(self, recorder, voice_channel, opus_frame):
        task = await recorder.start_recording(voice_channel, 42, Manual())
        _router(recorder).dispatch_frame(42, opus_frame(1))
        await asyncio.sleep(0.01)

        await recorder.connector.leave(1)
        result = await task

        assert result.stop_reason is StopReason.STREAM_CLOSED
        assert result.frames_accepted == 1

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_cancelling_task_before_it_runs_releases_key(self, recorder, voice_channel):
        task = await recorder.start_recording(voice_channel, 42, Manual())
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        assert not recorder.is_recording(1, 42)
        assert 42 not in _router(recorder).streams


class TestFirstSpeaker:
    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_timeout_cancels_without_admitting(self, recorder, voice_channel):
        with pytest.raises(CaptureCancelledError):
            await recorder.record_first_speaker(voice_channel, wait_timeout=0.05)

        assert len(recorder.registry) == 0
        assert _router(recorder).subscriptions == []

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_default_wait_uses_configured_timeout(self, recorder, voice_channel):
        loop = asyncio.get_running_loop()
        started = loop.time()
        with pytest.raises(CaptureCancelledError):
            await recorder.record_first_speaker(voice_channel)

        assert loop.time() - started == pytest.approx(0.2, abs=0.15)

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_records_first_participant_to_speak(self, recorder, voice_channel):
        await recorder.connector.join(voice_channel)
        router = _router(recorder)
        loop = asyncio.get_running_loop()
        loop.call_later(0.02, router.dispatch_speaking, 77)

        task = await recorder.record_first_speaker(
            voice_channel, FixedDuration(0.05), wait_timeout=1.0
        )

        assert recorder.is_recording(1, 77)
        result = await task
        assert result.participant_id == 77


class TestAutoCapture:
    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_speaking_starts_silence_terminated_capture(
        self, recorder, voice_channel, opus_frame
    ):
        results = []
        assert await recorder.start_auto_capture(voice_channel, on_result=results.append)
        router = _router(recorder)

        router.dispatch_speaking(42)
        await _wait_until(lambda: recorder.is_recording(1, 42))
        for _ in range(5):
            router.dispatch_frame(42, opus_frame(4))
            await asyncio.sleep(0.02)
        await _wait_until(lambda: results)

        result = results[0]
        assert result.stop_reason is StopReason.SILENCE
        assert result.frames_accepted == 5
        assert result.output_path.name.startswith("42-")
        await recorder.stop_auto_capture(1)

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_repeated_speaking_does_not_duplicate_session(self, recorder, voice_channel):
        await recorder.start_auto_capture(voice_channel, silence_gap=1.0)
        router = _router(recorder)

        router.dispatch_speaking(42)
        router.dispatch_speaking(42)
        await _wait_until(lambda: recorder.is_recording(1, 42))
        await asyncio.sleep(0.02)

        assert len(recorder.registry) == 1
        await recorder.stop_auto_capture(1)

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_async_result_callback(self, recorder, voice_channel):
        seen = []

        async def on_result(result):
            seen.append(result.participant_id)

        await recorder.start_auto_capture(voice_channel, on_result=on_result, silence_gap=0.05)
        _router(recorder).dispatch_speaking(9)

        await _wait_until(lambda: seen == [9])
        await recorder.stop_auto_capture(1)

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_start_is_idempotent_per_room(self, recorder, voice_channel):
        assert await recorder.start_auto_capture(voice_channel) is True
        assert await recorder.start_auto_capture(voice_channel) is False
        await recorder.stop_auto_capture(1)

    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_stop_auto_capture_stops_sessions(self, recorder, voice_channel):
        await recorder.start_auto_capture(voice_channel, silence_gap=5.0)
        router = _router(recorder)
        router.dispatch_speaking(42)
        await _wait_until(lambda: recorder.is_recording(1, 42))

        assert await recorder.stop_auto_capture(1) is True
        await _wait_until(lambda: not recorder.is_recording(1, 42))
        assert router.subscriptions == []
        assert await recorder.stop_auto_capture(1) is False


class TestShutdown:
    @pytest.mark.component
    @pytest.mark.asyncio
    async def test_shutdown_finalizes_sessions_and_leaves(
        self, recorder, voice_channel, voice_client, opus_frame
    ):
        await recorder.start_recording(voice_channel, 42, Manual())
        await recorder.start_auto_capture(voice_channel)
        _router(recorder).dispatch_frame(42, opus_frame(6))
        await asyncio.sleep(0.01)

        results = await recorder.shutdown()

        assert [r.participant_id for r in results] == [42]
        assert results[0].stop_reason is StopReason.MANUAL
        assert results[0].output_path.exists()
        assert len(recorder.registry) == 0
        voice_client.disconnect.assert_awaited_once_with(force=True)
