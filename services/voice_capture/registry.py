"""Process-wide table of live capture sessions."""

from __future__ import annotations

import threading
from collections.abc import Callable
from typing import Any

from services.common.structured_logging import get_logger

from .errors import AlreadyActiveError
from .models import EndCondition, SessionKey
from .session import CaptureSession


SessionFactory = Callable[..., CaptureSession]


class SessionRegistry:
    """At most one live session per ``(room_id, participant_id)``.

    ``admit`` and ``remove`` share one lock so a speaking burst on the receive thread
    and a caller on the event loop can never both create a session for the same key.
    The factory builds the session (and opens its frame subscription) inside the
    critical section; if it raises, nothing is registered.
    """

    def __init__(self, session_factory: SessionFactory) -> None:
        self._session_factory = session_factory
        self._sessions: dict[SessionKey, CaptureSession] = {}
        self._lock = threading.Lock()
        self._logger = get_logger(__name__, service_name="voice_capture")

    def admit(
        self,
        room_id: int,
        participant_id: int,
        end_condition: EndCondition,
        **context: Any,
    ) -> CaptureSession:
        key = SessionKey(room_id, participant_id)
        with self._lock:
            if key in self._sessions:
                raise AlreadyActiveError(room_id, participant_id)
            session = self._session_factory(
                key, end_condition, self._release, **context
            )
            self._sessions[key] = session
            active = len(self._sessions)
        self._logger.debug(
            "registry.admitted",
            room_id=room_id,
            participant_id=participant_id,
            active_sessions=active,
        )
        return session

    def remove(
        self,
        room_id: int,
        participant_id: int,
        session: CaptureSession | None = None,
    ) -> bool:
        """Drop the entry for a key; with ``session`` only that exact instance."""
        key = SessionKey(room_id, participant_id)
        with self._lock:
            current = self._sessions.get(key)
            if current is None or (session is not None and current is not session):
                return False
            del self._sessions[key]
            active = len(self._sessions)
        self._logger.debug(
            "registry.removed",
            room_id=room_id,
            participant_id=participant_id,
            active_sessions=active,
        )
        return True

    def _release(self, session: CaptureSession) -> None:
        self.remove(session.room_id, session.participant_id, session)

    def is_active(self, room_id: int, participant_id: int) -> bool:
        with self._lock:
            return SessionKey(room_id, participant_id) in self._sessions

    def get(self, room_id: int, participant_id: int) -> CaptureSession | None:
        with self._lock:
            return self._sessions.get(SessionKey(room_id, participant_id))

    def sessions_for_room(self, room_id: int) -> list[CaptureSession]:
        with self._lock:
            return [s for k, s in self._sessions.items() if k.room_id == room_id]

    def sessions(self) -> list[CaptureSession]:
        with self._lock:
            return list(self._sessions.values())

    def keys(self) -> list[SessionKey]:
        with self._lock:
            return list(self._sessions)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


__all__ = ["SessionFactory", "SessionRegistry"]
