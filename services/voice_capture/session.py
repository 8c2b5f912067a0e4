"""Single-participant capture: frames in, finalized WAV out."""

from __future__ import annotations

import asyncio
import time
from collections.abc import Callable
from pathlib import Path
from typing import Final

from services.common.structured_logging import (
    correlation_context,
    get_logger,
    should_sample,
)

from .container import ContainerWriter
from .decoder import AudioFrameDecoder
from .errors import DecodeError, WriteError
from .models import (
    EndCondition,
    FixedDuration,
    SessionKey,
    SessionResult,
    SessionState,
    SilenceGap,
    StopReason,
    describe_end_condition,
)


_WAKE: Final = object()

FinalizedCallback = Callable[["CaptureSession"], None]


class CaptureSession:
    """Owns one participant's decode/write pipeline.

    States move strictly LISTENING -> DRAINING -> FINALIZED. Any trigger (duration,
    silence gap, manual stop, stream close, safety cap) requests the DRAINING
    transition; the first request wins and later ones are ignored. Frames queued
    before the transition are still decoded and written during DRAINING.
    """

    def __init__(
        self,
        key: SessionKey,
        end_condition: EndCondition,
        decoder: AudioFrameDecoder,
        writer: ContainerWriter,
        *,
        max_duration: float | None = None,
        progress_log_interval: int = 50,
        on_finalized: FinalizedCallback | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.key = key
        self.end_condition = end_condition
        self.decoder = decoder
        self.writer = writer
        self.max_duration = max_duration
        self.progress_log_interval = max(1, progress_log_interval)
        self._on_finalized = on_finalized
        self._clock = clock

        self.state = SessionState.LISTENING
        self.started_at = clock()
        self.last_frame_at = self.started_at
        self.frames_received = 0
        self.frames_accepted = 0
        self.frames_rejected = 0
        self.frames_near_silent = 0
        self.error_flag = False
        self.stop_reason: StopReason | None = None
        self._stopped_at: float | None = None
        self._frames: asyncio.Queue[object] = asyncio.Queue()
        self._running = False
        self._finalized = False
        self._aborted: StopReason | None = None
        self._result: SessionResult | None = None
        self.correlation_id = f"capture-{key.room_id}-{key.participant_id}"
        self._logger = get_logger(
            __name__, correlation_id=self.correlation_id, service_name="voice_capture"
        )

    @property
    def room_id(self) -> int:
        return self.key.room_id

    @property
    def participant_id(self) -> int:
        return self.key.participant_id

    @property
    def output_path(self) -> Path:
        return self.writer.path

    @property
    def total_bytes_written(self) -> int:
        return self.writer.bytes_written

    @property
    def result(self) -> SessionResult | None:
        return self._result

    @property
    def accepting(self) -> bool:
        return self.state is SessionState.LISTENING and self.stop_reason is None

    def feed(self, frame: bytes) -> bool:
        """Queue one compressed frame; False once the session stopped accepting."""
        if not self.accepting:
            return False
        self.frames_received += 1
        self.last_frame_at = self._clock()
        self._frames.put_nowait(frame)
        return True

    def stop(self, reason: StopReason = StopReason.MANUAL) -> bool:
        """Request the DRAINING transition; True only for the winning request."""
        if not self.accepting:
            return False
        self.stop_reason = reason
        self._stopped_at = self._clock()
        self._frames.put_nowait(_WAKE)
        self._logger.info(
            "capture.stop_requested",
            room_id=self.room_id,
            participant_id=self.participant_id,
            reason=reason.value,
            elapsed_s=round(self._stopped_at - self.started_at, 3),
        )
        return True

    def close_stream(self) -> bool:
        """The transport closed the participant's frame stream."""
        return self.stop(StopReason.STREAM_CLOSED)

    async def run(self) -> SessionResult:
        """Listen until an end condition fires, then drain and finalize."""
        if self._running:
            raise RuntimeError("capture session is already running")
        self._running = True
        error: str | None = None

        # container logs inherit the correlation id
        with correlation_context(self.correlation_id):
            self._logger.info(
                "capture.session_started",
                room_id=self.room_id,
                participant_id=self.participant_id,
                end_condition=describe_end_condition(self.end_condition),
                path=str(self.output_path),
            )
            try:
                self.writer.open()
                await self._listen()
                self._drain()
                self._finalize_container()
            except WriteError as exc:
                error = str(exc)
                self._abort(StopReason.WRITE_ERROR, exc)
            except asyncio.CancelledError:
                self._abort(StopReason.CANCELLED, None)
                raise
            finally:
                self._complete(error)
        assert self._result is not None
        return self._result

    def abandon(self) -> None:
        """Finalize a session whose ``run`` never started (task cancelled early)."""
        if self._running or self._finalized:
            return
        self._abort(StopReason.CANCELLED, None)
        self._complete(None)

    def _next_deadline(self) -> tuple[float | None, StopReason | None]:
        """Seconds until the earliest timer fires and which trigger it is."""
        now = self._clock()
        candidates: list[tuple[float, StopReason]] = []
        if isinstance(self.end_condition, FixedDuration):
            candidates.append(
                (self.started_at + self.end_condition.seconds - now, StopReason.DURATION)
            )
        elif isinstance(self.end_condition, SilenceGap):
            candidates.append(
                (self.last_frame_at + self.end_condition.seconds - now, StopReason.SILENCE)
            )
        if self.max_duration is not None:
            candidates.append(
                (self.started_at + self.max_duration - now, StopReason.MAX_DURATION)
            )
        if not candidates:
            return None, None
        return min(candidates, key=lambda item: item[0])

    async def _listen(self) -> None:
        while self.stop_reason is None:
            timeout, trigger = self._next_deadline()
            if timeout is not None and timeout <= 0:
                assert trigger is not None
                self.stop(trigger)
                break
            try:
                if timeout is None:
                    item = await self._frames.get()
                else:
                    item = await asyncio.wait_for(self._frames.get(), timeout=timeout)
            except TimeoutError:
                continue
            if item is _WAKE:
                continue
            self._process(item)  # type: ignore[arg-type]

    def _drain(self) -> None:
        self.state = SessionState.DRAINING
        pending = self._frames.qsize()
        self._logger.debug(
            "capture.draining",
            room_id=self.room_id,
            participant_id=self.participant_id,
            pending_frames=pending,
        )
        while True:
            try:
                item = self._frames.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is not _WAKE:
                self._process(item)  # type: ignore[arg-type]

    def _process(self, frame: bytes) -> None:
        index = self.frames_accepted + self.frames_rejected
        try:
            samples = self.decoder.decode(frame)
        except DecodeError as exc:
            self.frames_rejected += 1
            self.error_flag = True
            if self.frames_rejected <= 3 or should_sample("capture.frame_rejected", 50):
                self._logger.warning(
                    "capture.frame_rejected",
                    room_id=self.room_id,
                    participant_id=self.participant_id,
                    frame_index=index,
                    frame_bytes=len(frame) if frame else 0,
                    error=str(exc),
                )
            return

        self.writer.append(samples.pcm)
        self.frames_accepted += 1
        if samples.near_silent:
            self.frames_near_silent += 1

        if index % self.progress_log_interval == 0:
            self._logger.debug(
                "capture.progress",
                room_id=self.room_id,
                participant_id=self.participant_id,
                frame_index=index,
                frames_received=self.frames_received,
                min_sample=samples.min_sample,
                max_sample=samples.max_sample,
                zero_ratio=round(samples.zero_ratio, 3),
                frame_ms=round(samples.duration * 1000, 1),
                payload_bytes=self.writer.bytes_written,
            )

    def _finalize_container(self) -> None:
        if self.frames_accepted == 0:
            self.writer.discard()
            self._logger.info(
                "capture.no_audio_captured",
                room_id=self.room_id,
                participant_id=self.participant_id,
                frames_received=self.frames_received,
                frames_rejected=self.frames_rejected,
            )
            return
        self.writer.close()

    def _abort(self, reason: StopReason, exc: BaseException | None) -> None:
        if self.stop_reason is None:
            self.stop_reason = reason
            self._stopped_at = self._clock()
        self._aborted = reason
        self.writer.discard()
        log = self._logger.error if exc is not None else self._logger.warning
        log(
            "capture.session_aborted",
            room_id=self.room_id,
            participant_id=self.participant_id,
            reason=reason.value,
            error=str(exc) if exc is not None else None,
            frames_accepted=self.frames_accepted,
            queued_frames_dropped=self._frames.qsize(),
        )

    def _complete(self, error: str | None) -> None:
        if self._finalized:
            return
        self._finalized = True
        self.state = SessionState.FINALIZED
        stopped_at = self._stopped_at if self._stopped_at is not None else self._clock()
        if self._aborted is StopReason.CANCELLED:
            error = error or "capture cancelled"
        kept = (
            error is None
            and self._aborted is None
            and self.frames_accepted > 0
            and self.writer.closed
        )
        self._result = SessionResult(
            room_id=self.room_id,
            participant_id=self.participant_id,
            output_path=self.output_path if kept else None,
            frames_accepted=self.frames_accepted,
            frames_rejected=self.frames_rejected,
            frames_near_silent=self.frames_near_silent,
            error_flag=self.error_flag,
            duration_actual=max(0.0, stopped_at - self.started_at),
            bytes_written=self.writer.bytes_written if kept else 0,
            stop_reason=self.stop_reason,
            error=error,
        )
        if error is None:
            log_event = (
                "capture.session_completed_with_errors"
                if self.error_flag
                else "capture.session_completed"
            )
            self._logger.info(log_event, **self._result.to_dict())
        if self._on_finalized is not None:
            self._on_finalized(self)


__all__ = ["CaptureSession"]
