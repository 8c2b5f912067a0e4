"""Caller-facing capture orchestration."""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from datetime import datetime, timezone

import discord

from services.common.config import ConfigError
from services.common.structured_logging import get_logger

from .config import CaptureConfig
from .connector import FrameStream, SpeakingSubscription, VoiceChannelConnector, VoiceConnection
from .container import ContainerWriter
from .decoder import AudioFrameDecoder, FrameCodec, OpusCodec
from .errors import AlreadyActiveError, CaptureCancelledError
from .models import EndCondition, FixedDuration, SessionKey, SessionResult, SilenceGap
from .registry import SessionRegistry
from .session import CaptureSession, FinalizedCallback


ResultCallback = Callable[[SessionResult], Awaitable[None] | None]
CodecFactory = Callable[[int, int], FrameCodec]


def _timestamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")


class VoiceRecorder:
    """Starts, stops and tracks per-participant captures.

    Each recorder owns its registry, so two recorders in one process never see
    each other's sessions.
    """

    def __init__(
        self,
        connector: VoiceChannelConnector,
        config: CaptureConfig,
        *,
        codec_factory: CodecFactory | None = None,
    ) -> None:
        if codec_factory is None and not OpusCodec.supports(
            config.channels, config.sample_rate
        ):
            raise ConfigError(
                f"Opus decoding produces {OpusCodec.CHANNELS} ch @ {OpusCodec.SAMPLE_RATE} Hz; "
                f"CAPTURE_CHANNELS={config.channels} and "
                f"CAPTURE_SAMPLE_RATE={config.sample_rate} need a custom codec_factory"
            )
        self.connector = connector
        self.config = config
        self.recordings_path = config.recordings_path
        self.recordings_path.mkdir(parents=True, exist_ok=True)
        self._codec_factory = codec_factory
        self.registry = SessionRegistry(self._build_session)
        self._tasks: dict[SessionKey, asyncio.Task[SessionResult]] = {}
        self._auto: dict[int, tuple[SpeakingSubscription, asyncio.Task[None]]] = {}
        self._logger = get_logger(__name__, service_name="voice_capture")

    def _build_session(
        self,
        key: SessionKey,
        end_condition: EndCondition,
        release: FinalizedCallback,
        *,
        connection: VoiceConnection,
        filename: str,
    ) -> CaptureSession:
        codec = (
            self._codec_factory(self.config.channels, self.config.sample_rate)
            if self._codec_factory is not None
            else None
        )
        decoder = AudioFrameDecoder(
            self.config.channels,
            self.config.sample_rate,
            codec,
            near_silent_ratio=self.config.near_silent_ratio,
        )
        writer = ContainerWriter(
            self.recordings_path / filename,
            self.config.channels,
            self.config.sample_rate,
            self.config.bits_per_sample,
        )
        stream: FrameStream | None = None

        def finalized(session: CaptureSession) -> None:
            if stream is not None:
                stream.close()
            release(session)

        session = CaptureSession(
            key,
            end_condition,
            decoder,
            writer,
            max_duration=self.config.max_session_seconds,
            progress_log_interval=self.config.progress_log_interval,
            on_finalized=finalized,
        )
        stream = self.connector.subscribe(
            connection,
            key.participant_id,
            end_condition,
            on_frame=session.feed,
            on_close=session.close_stream,
        )
        return session

    def _admit(
        self,
        connection: VoiceConnection,
        participant_id: int,
        end_condition: EndCondition,
        filename: str,
    ) -> asyncio.Task[SessionResult]:
        session = self.registry.admit(
            connection.room_id,
            participant_id,
            end_condition,
            connection=connection,
            filename=filename,
        )
        task = asyncio.get_running_loop().create_task(
            session.run(), name=f"capture-{connection.room_id}-{participant_id}"
        )
        self._tasks[session.key] = task
        task.add_done_callback(lambda t, s=session: self._forget(s, t))
        return task

    def _forget(self, session: CaptureSession, task: asyncio.Task[SessionResult]) -> None:
        if self._tasks.get(session.key) is task:
            del self._tasks[session.key]
        # cancelled before the first step: run() never got to finalize
        session.abandon()

    async def start_recording(
        self,
        channel: discord.VoiceChannel,
        participant_id: int,
        end_condition: EndCondition | None = None,
    ) -> asyncio.Task[SessionResult]:
        """Join ``channel`` if needed and start capturing one participant.

        Returns the task producing the ``SessionResult``.

        Raises:
            VoiceConnectionError: the voice channel could not be joined.
            AlreadyActiveError: the participant is already being recorded here.
            SubscriptionError: the participant's frame stream could not be opened.
        """
        if end_condition is None:
            end_condition = FixedDuration(self.config.default_duration_seconds)
        connection = await self.connector.join(channel)
        self.connector.touch(connection.room_id)
        filename = f"recording-{participant_id}-{_timestamp()}.wav"
        task = self._admit(connection, participant_id, end_condition, filename)
        self._logger.info(
            "recorder.recording_started",
            room_id=connection.room_id,
            channel_id=channel.id,
            participant_id=participant_id,
            filename=filename,
        )
        return task

    def stop_recording(self, room_id: int, participant_id: int) -> bool:
        session = self.registry.get(room_id, participant_id)
        if session is None:
            return False
        return session.stop()

    def is_recording(self, room_id: int, participant_id: int) -> bool:
        return self.registry.is_active(room_id, participant_id)

    async def record_first_speaker(
        self,
        channel: discord.VoiceChannel,
        end_condition: EndCondition | None = None,
        wait_timeout: float | None = None,
    ) -> asyncio.Task[SessionResult]:
        """Wait for anyone in ``channel`` to start speaking and record them.

        Raises:
            CaptureCancelledError: nobody spoke within the wait timeout.
        """
        if wait_timeout is None:
            wait_timeout = self.config.first_speaker_timeout_seconds
        connection = await self.connector.join(channel)
        self.connector.touch(connection.room_id)
        subscription = self.connector.on_speaking_start(connection)
        try:
            participant_id = await asyncio.wait_for(
                self._next_free_speaker(connection.room_id, subscription),
                timeout=wait_timeout,
            )
        except TimeoutError:
            self._logger.info(
                "recorder.first_speaker_timeout",
                room_id=connection.room_id,
                wait_timeout=wait_timeout,
            )
            raise CaptureCancelledError(
                f"Nobody spoke in guild {connection.room_id} within {wait_timeout:g}s"
            ) from None
        finally:
            subscription.close()
        if participant_id is None:
            raise CaptureCancelledError(
                f"Voice connection for guild {connection.room_id} closed while waiting"
            )
        return await self.start_recording(channel, participant_id, end_condition)

    async def _next_free_speaker(
        self, room_id: int, subscription: SpeakingSubscription
    ) -> int | None:
        async for participant_id in subscription:
            if not self.is_recording(room_id, participant_id):
                return participant_id
        return None

    async def start_auto_capture(
        self,
        channel: discord.VoiceChannel,
        on_result: ResultCallback | None = None,
        silence_gap: float | None = None,
    ) -> bool:
        """Capture every speaker in ``channel`` until ``stop_auto_capture``.

        Each speaking-start for a participant without a live session opens a
        silence-terminated capture. Returns False if auto capture is already
        running for the guild.
        """
        if silence_gap is None:
            silence_gap = self.config.silence_gap_ms / 1000.0
        connection = await self.connector.join(channel)
        room_id = connection.room_id
        if room_id in self._auto and not self._auto[room_id][1].done():
            return False
        subscription = self.connector.on_speaking_start(connection)
        task = asyncio.get_running_loop().create_task(
            self._auto_loop(connection, subscription, SilenceGap(silence_gap), on_result),
            name=f"auto-capture-{room_id}",
        )
        self._auto[room_id] = (subscription, task)
        self._logger.info(
            "recorder.auto_capture_started",
            room_id=room_id,
            channel_id=channel.id,
            silence_gap_ms=round(silence_gap * 1000),
        )
        return True

    async def _auto_loop(
        self,
        connection: VoiceConnection,
        subscription: SpeakingSubscription,
        end_condition: SilenceGap,
        on_result: ResultCallback | None,
    ) -> None:
        room_id = connection.room_id
        async for participant_id in subscription:
            self.connector.touch(room_id)
            if self.is_recording(room_id, participant_id):
                continue
            filename = f"{participant_id}-{_timestamp()}.wav"
            try:
                task = self._admit(connection, participant_id, end_condition, filename)
            except AlreadyActiveError:
                continue
            except Exception as exc:
                self._logger.warning(
                    "recorder.auto_capture_admit_failed",
                    room_id=room_id,
                    participant_id=participant_id,
                    error=str(exc),
                    error_type=type(exc).__name__,
                )
                continue
            if on_result is not None:
                task.add_done_callback(self._result_forwarder(on_result))
        self._logger.debug("recorder.auto_capture_loop_ended", room_id=room_id)

    def _result_forwarder(
        self, on_result: ResultCallback
    ) -> Callable[[asyncio.Task[SessionResult]], None]:
        def forward(task: asyncio.Task[SessionResult]) -> None:
            if task.cancelled() or task.exception() is not None:
                return
            outcome = on_result(task.result())
            if asyncio.iscoroutine(outcome):
                asyncio.get_running_loop().create_task(outcome)

        return forward

    async def stop_auto_capture(self, room_id: int) -> bool:
        entry = self._auto.pop(room_id, None)
        if entry is None:
            return False
        subscription, task = entry
        subscription.close()
        await asyncio.gather(task, return_exceptions=True)
        for session in self.registry.sessions_for_room(room_id):
            session.stop()
        self._logger.info("recorder.auto_capture_stopped", room_id=room_id)
        return True

    async def shutdown(self) -> list[SessionResult]:
        """Stop everything, wait for results and leave every voice channel."""
        pending = list(self._tasks.values())
        for room_id in list(self._auto):
            await self.stop_auto_capture(room_id)
        for session in self.registry.sessions():
            session.stop()
        pending.extend(task for task in self._tasks.values() if task not in pending)
        results: list[SessionResult] = []
        if pending:
            for outcome in await asyncio.gather(*pending, return_exceptions=True):
                if isinstance(outcome, SessionResult):
                    results.append(outcome)
        await self.connector.close()
        self._logger.info("recorder.shutdown_complete", sessions_finalized=len(results))
        return results


__all__ = ["ResultCallback", "VoiceRecorder"]
