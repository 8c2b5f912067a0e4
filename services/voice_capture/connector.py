"""Voice channel connections and per-participant frame routing."""

from __future__ import annotations

import asyncio
import random
import time
from collections.abc import Callable
from typing import Any

import discord
from discord.ext import voice_recv
from structlog.stdlib import BoundLogger

from services.common.structured_logging import get_logger, should_rate_limit, should_sample

from .config import DiscordConfig
from .errors import SubscriptionError, VoiceConnectionError
from .models import EndCondition, describe_end_condition


FrameCallback = Callable[[bytes], Any]
CloseCallback = Callable[[], Any]

_LOGGER: BoundLogger | None = None


def _get_logger() -> BoundLogger:
    global _LOGGER
    if _LOGGER is None:
        _LOGGER = get_logger(__name__, service_name="voice_capture")
    return _LOGGER


class FrameStream:
    """One participant's inbound compressed frames within a connection."""

    def __init__(
        self,
        router: FrameRouter,
        participant_id: int,
        end_condition: EndCondition,
        on_frame: FrameCallback,
        on_close: CloseCallback | None = None,
    ) -> None:
        self._router = router
        self.room_id = router.room_id
        self.participant_id = participant_id
        self.end_condition = end_condition
        self._on_frame = on_frame
        self._on_close = on_close
        self.frames_delivered = 0
        self.closed = False

    def deliver(self, frame: bytes) -> bool:
        if self.closed:
            return False
        self.frames_delivered += 1
        self._on_frame(frame)
        return True

    def close(self) -> None:
        """Detach from the router and tell the consumer no more frames will come."""
        if self.closed:
            return
        self.closed = True
        self._router.detach_stream(self)
        if self._on_close is not None:
            self._on_close()


class SpeakingSubscription:
    """Async iterator of participant ids that started speaking.

    ``close`` ends iteration; pending ids already queued are discarded.
    """

    _CLOSED = object()

    def __init__(self, router: FrameRouter) -> None:
        self._router = router
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self.closed = False

    def push(self, participant_id: int) -> None:
        if not self.closed:
            self._queue.put_nowait(participant_id)

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._router.detach_subscription(self)
        self._queue.put_nowait(self._CLOSED)

    def __aiter__(self) -> SpeakingSubscription:
        return self

    async def __anext__(self) -> int:
        if self.closed and self._queue.empty():
            raise StopAsyncIteration
        item = await self._queue.get()
        if item is self._CLOSED or self.closed:
            raise StopAsyncIteration
        return item  # type: ignore[return-value]


class FrameRouter:
    """Fans receive-thread callbacks out to streams and subscriptions on the loop."""

    def __init__(self, loop: asyncio.AbstractEventLoop, room_id: int) -> None:
        self.loop = loop
        self.room_id = room_id
        self.streams: dict[int, FrameStream] = {}
        self.subscriptions: list[SpeakingSubscription] = []
        self.frames_dropped = 0

    # Called from the voice receive thread.
    def route_frame(self, participant_id: int, frame: bytes) -> None:
        self._call_soon(self.dispatch_frame, participant_id, frame)

    def route_speaking(self, participant_id: int) -> None:
        self._call_soon(self.dispatch_speaking, participant_id)

    def _call_soon(self, callback: Callable[..., None], *args: Any) -> None:
        try:
            self.loop.call_soon_threadsafe(callback, *args)
        except RuntimeError as exc:
            # loop already closed during shutdown
            if should_rate_limit("voice.route_failed", 5.0):
                _get_logger().warning(
                    "voice.route_failed", room_id=self.room_id, error=str(exc)
                )

    # Called on the event loop.
    def dispatch_frame(self, participant_id: int, frame: bytes) -> None:
        stream = self.streams.get(participant_id)
        if stream is None:
            self.frames_dropped += 1
            if should_sample("voice.frame_unrouted", 500):
                _get_logger().debug(
                    "voice.frame_unrouted",
                    room_id=self.room_id,
                    participant_id=participant_id,
                    frames_dropped=self.frames_dropped,
                )
            return
        stream.deliver(frame)

    def dispatch_speaking(self, participant_id: int) -> None:
        _get_logger().debug(
            "voice.speaking_started",
            room_id=self.room_id,
            participant_id=participant_id,
            subscribers=len(self.subscriptions),
        )
        for subscription in list(self.subscriptions):
            subscription.push(participant_id)

    def attach_stream(self, stream: FrameStream) -> None:
        if stream.participant_id in self.streams:
            raise SubscriptionError(
                self.room_id, stream.participant_id, "participant already has an open stream"
            )
        self.streams[stream.participant_id] = stream

    def detach_stream(self, stream: FrameStream) -> None:
        if self.streams.get(stream.participant_id) is stream:
            del self.streams[stream.participant_id]

    def attach_subscription(self, subscription: SpeakingSubscription) -> None:
        self.subscriptions.append(subscription)

    def detach_subscription(self, subscription: SpeakingSubscription) -> None:
        if subscription in self.subscriptions:
            self.subscriptions.remove(subscription)

    def close_all(self) -> None:
        for stream in list(self.streams.values()):
            stream.close()
        for subscription in list(self.subscriptions):
            subscription.close()


class CaptureSink(voice_recv.AudioSink):
    """voice_recv sink that hands raw Opus payloads to a ``FrameRouter``."""

    def __init__(self, router: FrameRouter) -> None:
        super().__init__()
        self.router = router

    def wants_opus(self) -> bool:
        return True

    def write(self, user: discord.User | discord.Member | None, data: Any) -> None:
        if user is None:
            return
        payload = getattr(data, "opus", None)
        if not payload:
            return
        self.router.route_frame(user.id, payload)

    @voice_recv.AudioSink.listener()
    def on_voice_member_speaking_start(self, member: discord.Member) -> None:
        self.router.route_speaking(member.id)

    def cleanup(self) -> None:
        # also reached from AudioSink.__del__ at interpreter exit; must not log.
        # Streams and subscriptions are closed by VoiceChannelConnector._teardown.
        return None


class VoiceConnection:
    """A live receive-capable voice connection for one guild."""

    def __init__(
        self,
        room_id: int,
        channel_id: int,
        voice_client: Any,
        router: FrameRouter,
    ) -> None:
        self.room_id = room_id
        self.channel_id = channel_id
        self.voice_client = voice_client
        self.router = router
        self.connected_at = time.monotonic()
        self.closed = False
        self.idle_handle: asyncio.TimerHandle | None = None

    @property
    def is_open(self) -> bool:
        return not self.closed and bool(self.voice_client.is_connected())


class VoiceChannelConnector:
    """Joins voice channels and exposes per-participant frame streams.

    One connection per guild. ``join`` is idempotent and serialized per guild;
    ``leave`` ends every stream of the connection, which in turn ends the capture
    sessions reading them.
    """

    def __init__(
        self,
        config: DiscordConfig,
        *,
        sink_factory: Callable[[FrameRouter], Any] = CaptureSink,
    ) -> None:
        self.config = config
        self._sink_factory = sink_factory
        self._connections: dict[int, VoiceConnection] = {}
        self._join_locks: dict[int, asyncio.Lock] = {}
        self._idle_tasks: set[asyncio.Task[None]] = set()
        self._logger = get_logger(__name__, service_name="voice_capture")

    def connection_for(self, room_id: int) -> VoiceConnection | None:
        connection = self._connections.get(room_id)
        if connection is not None and connection.is_open:
            return connection
        return None

    def connections(self) -> list[VoiceConnection]:
        return [c for c in self._connections.values() if c.is_open]

    async def join(self, channel: discord.VoiceChannel) -> VoiceConnection:
        room_id = channel.guild.id
        lock = self._join_locks.setdefault(room_id, asyncio.Lock())
        async with lock:
            existing = self._connections.get(room_id)
            if existing is not None:
                if existing.is_open and existing.channel_id == channel.id:
                    self._logger.debug(
                        "voice.already_connected", room_id=room_id, channel_id=channel.id
                    )
                    return existing
                await self._teardown(existing, reason="channel_changed")
            connection = await self._connect(channel)
            self._connections[room_id] = connection
            self.touch(room_id)
            return connection

    async def _connect(self, channel: discord.VoiceChannel) -> VoiceConnection:
        room_id = channel.guild.id
        timeout = max(1.0, self.config.voice_connect_timeout_seconds)
        max_attempts = max(1, self.config.voice_connect_max_attempts)
        base_backoff = self.config.voice_reconnect_initial_backoff_seconds
        max_backoff = max(base_backoff, self.config.voice_reconnect_max_backoff_seconds)

        self._logger.info(
            "voice.connect_starting",
            room_id=room_id,
            channel_id=channel.id,
            timeout=timeout,
            max_attempts=max_attempts,
        )
        started = time.monotonic()
        last_exc: Exception | None = None
        delay = 0.0
        for attempt in range(1, max_attempts + 1):
            if delay > 0:
                await asyncio.sleep(delay)
            attempt_started = time.monotonic()
            try:
                voice_client = await channel.connect(
                    cls=voice_recv.VoiceRecvClient, timeout=timeout, reconnect=False
                )
                if not voice_client.is_connected():
                    raise RuntimeError("Voice client reported disconnected immediately")
                router = FrameRouter(asyncio.get_running_loop(), room_id)
                voice_client.listen(self._sink_factory(router))
            except Exception as exc:
                last_exc = exc
                exponential = base_backoff * (2 ** (attempt - 1))
                delay = min(max_backoff, exponential) + random.uniform(0, base_backoff)  # noqa: S311 - jitter for retries, not cryptographic
                self._logger.warning(
                    "voice.connect_retry",
                    room_id=room_id,
                    channel_id=channel.id,
                    attempt=attempt,
                    max_attempts=max_attempts,
                    error=str(exc),
                    error_type=type(exc).__name__,
                    error_category="timeout" if isinstance(exc, TimeoutError) else "other",
                    attempt_duration_ms=round((time.monotonic() - attempt_started) * 1000, 2),
                    retry_delay_seconds=round(delay, 2) if attempt < max_attempts else None,
                )
                await self._cleanup_failed_client(channel)
                continue

            self._logger.info(
                "voice.connected",
                room_id=room_id,
                channel_id=channel.id,
                attempt=attempt,
                connection_duration_ms=round((time.monotonic() - started) * 1000, 2),
            )
            return VoiceConnection(room_id, channel.id, voice_client, router)

        self._logger.error(
            "voice.connect_failed",
            room_id=room_id,
            channel_id=channel.id,
            attempts=max_attempts,
            total_duration_ms=round((time.monotonic() - started) * 1000, 2),
            error=str(last_exc) if last_exc else None,
            error_type=type(last_exc).__name__ if last_exc else None,
        )
        raise VoiceConnectionError(
            room_id, f"{max_attempts} attempt(s) failed: {last_exc}"
        ) from last_exc

    async def _cleanup_failed_client(self, channel: discord.VoiceChannel) -> None:
        voice_client = channel.guild.voice_client
        if voice_client is None:
            return
        try:
            await voice_client.disconnect(force=True)
        except Exception as exc:
            self._logger.debug(
                "voice.cleanup_failed", room_id=channel.guild.id, error=str(exc)
            )

    async def leave(self, room_id: int) -> bool:
        """Disconnect from the guild's voice channel; False when not connected."""
        connection = self._connections.get(room_id)
        if connection is None:
            return False
        lock = self._join_locks.setdefault(room_id, asyncio.Lock())
        async with lock:
            if self._connections.get(room_id) is not connection:
                return False
            await self._teardown(connection, reason="leave")
        return True

    async def _teardown(self, connection: VoiceConnection, *, reason: str) -> None:
        self._connections.pop(connection.room_id, None)
        self._cancel_idle_timer(connection)
        if connection.closed:
            return
        connection.closed = True
        streams = len(connection.router.streams)
        connection.router.close_all()
        voice_client = connection.voice_client
        try:
            if voice_client.is_listening():
                voice_client.stop_listening()
            await voice_client.disconnect(force=True)
        except Exception as exc:
            self._logger.warning(
                "voice.disconnect_failed",
                room_id=connection.room_id,
                error=str(exc),
                error_type=type(exc).__name__,
            )
        self._logger.info(
            "voice.disconnected",
            room_id=connection.room_id,
            channel_id=connection.channel_id,
            reason=reason,
            streams_closed=streams,
            frames_unrouted=connection.router.frames_dropped,
            connected_s=round(time.monotonic() - connection.connected_at, 1),
        )

    def subscribe(
        self,
        connection: VoiceConnection,
        participant_id: int,
        end_condition: EndCondition,
        *,
        on_frame: FrameCallback,
        on_close: CloseCallback | None = None,
    ) -> FrameStream:
        """Open the participant's frame stream; ``on_frame`` runs on the event loop."""
        if not connection.is_open:
            raise SubscriptionError(
                connection.room_id, participant_id, "voice connection is closed"
            )
        stream = FrameStream(
            connection.router, participant_id, end_condition, on_frame, on_close
        )
        connection.router.attach_stream(stream)
        self._logger.debug(
            "voice.stream_opened",
            room_id=connection.room_id,
            participant_id=participant_id,
            end_condition=describe_end_condition(end_condition),
        )
        return stream

    def on_speaking_start(self, connection: VoiceConnection) -> SpeakingSubscription:
        if not connection.is_open:
            raise SubscriptionError(connection.room_id, 0, "voice connection is closed")
        subscription = SpeakingSubscription(connection.router)
        connection.router.attach_subscription(subscription)
        return subscription

    def touch(self, room_id: int) -> None:
        """Re-arm the idle-disconnect timer for the guild's connection."""
        connection = self._connections.get(room_id)
        if connection is None or connection.closed:
            return
        self._cancel_idle_timer(connection)
        idle_seconds = self.config.idle_disconnect_seconds
        if idle_seconds <= 0:
            return
        loop = asyncio.get_running_loop()
        connection.idle_handle = loop.call_later(
            idle_seconds, self._on_idle, connection
        )

    def _cancel_idle_timer(self, connection: VoiceConnection) -> None:
        if connection.idle_handle is not None:
            connection.idle_handle.cancel()
            connection.idle_handle = None

    def _on_idle(self, connection: VoiceConnection) -> None:
        connection.idle_handle = None
        if self._connections.get(connection.room_id) is not connection:
            return
        self._logger.info(
            "voice.idle_timeout",
            room_id=connection.room_id,
            idle_seconds=self.config.idle_disconnect_seconds,
        )
        task = asyncio.get_running_loop().create_task(self.leave(connection.room_id))
        self._idle_tasks.add(task)
        task.add_done_callback(self._idle_tasks.discard)

    async def close(self) -> None:
        """Leave every connected guild."""
        for room_id in list(self._connections):
            await self.leave(room_id)
        if self._idle_tasks:
            await asyncio.gather(*self._idle_tasks, return_exceptions=True)


__all__ = [
    "CaptureSink",
    "FrameRouter",
    "FrameStream",
    "SpeakingSubscription",
    "VoiceChannelConnector",
    "VoiceConnection",
]
