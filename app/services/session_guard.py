import asyncio
import logging
import sqlite3
from collections import defaultdict
from dataclasses import dataclass
from typing import Callable

from app.config import settings
from app.errors import InvalidInput, SessionConflict, SessionNotFound
from app.models import COMPLETED, IN_PROGRESS, PENDING_REVIEW, ClassSession
from app.services.storage import SessionStore

logger = logging.getLogger(__name__)

RESUME = "resume"
ABANDON = "abandon"

Listener = Callable[[dict], None]


@dataclass
class StartResult:
    session: ClassSession
    created: bool
    abandoned: ClassSession | None = None


class ActiveSessionGuard:
    """Keeps each teacher to at most one ``in_progress`` class session.

    ``check_active`` is the read path and never mutates anything.
    ``start_session`` / ``end_session`` / ``complete_session`` are the only
    writers. Within this process the check-then-create sequence runs under a
    per-teacher lock; across processes the partial unique index on
    ``class_sessions`` rejects a second in-progress row, which surfaces here as
    ``SessionConflict``.

    Subscribers registered with ``subscribe`` receive::

        {"type": "active_session", "teacher_id": "t-1", "session": {...} | None}

    whenever the teacher's in-progress session appears, changes or disappears.
    """

    def __init__(self, store: SessionStore | None = None) -> None:
        self.store = store or SessionStore()
        self._locks: dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._listeners: dict[str, list[Listener]] = defaultdict(list)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def check_active(self, teacher_id: str) -> ClassSession | None:
        return await self.store.find_active(teacher_id)

    async def get_session(self, session_id: int) -> ClassSession:
        session = await self.store.get(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    async def list_sessions(
        self, teacher_id: str, status: str | None = None
    ) -> list[ClassSession]:
        return await self.store.list_for_teacher(teacher_id, status)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def start_session(
        self,
        teacher_id: str,
        student_id: str,
        language: str | None = None,
        resolution: str | None = None,
    ) -> StartResult:
        """Start a class, or report the conflict with the one already running.

        *resolution* answers a previous ``SessionConflict``: ``"resume"`` hands
        back the running session untouched, ``"abandon"`` marks it abandoned
        and starts the new one in the same transaction.
        """
        if resolution not in (None, RESUME, ABANDON):
            raise InvalidInput(f"Unknown resolution {resolution!r}")

        async with self._locks[teacher_id]:
            existing = await self.store.find_active(teacher_id)
            if existing is not None:
                if resolution is None:
                    raise SessionConflict(existing)
                if resolution == RESUME:
                    logger.info("Teacher %s resumed session %s", teacher_id, existing.id)
                    return StartResult(session=existing, created=False)

            try:
                session = await self.store.create(
                    teacher_id,
                    student_id,
                    language or settings.default_language,
                    abandon_id=existing.id if existing else None,
                )
            except sqlite3.IntegrityError as e:
                raise SessionConflict(await self.store.find_active(teacher_id)) from e

            abandoned = await self.store.get(existing.id) if existing else None

        if abandoned is not None:
            logger.info("Teacher %s abandoned session %s", teacher_id, abandoned.id)
        logger.info(
            "Teacher %s started session %s with student %s",
            teacher_id, session.id, student_id,
        )
        self._notify(teacher_id, session)
        return StartResult(session=session, created=True, abandoned=abandoned)

    async def end_session(self, session_id: int) -> ClassSession:
        """``in_progress`` → ``pending_review``.

        Callers stop audio capture for the session before calling this.
        """
        session = await self.get_session(session_id)
        async with self._locks[session.teacher_id]:
            session = await self.get_session(session_id)
            session.check_transition(PENDING_REVIEW)
            updated = await self.store.set_status(session_id, PENDING_REVIEW, finished=True)
        logger.info("Session %s ended, pending review", session_id)
        self._notify(session.teacher_id, None)
        return updated

    async def complete_session(self, session_id: int) -> ClassSession:
        """``pending_review`` → ``completed`` once homework has been generated."""
        session = await self.get_session(session_id)
        async with self._locks[session.teacher_id]:
            session = await self.get_session(session_id)
            session.check_transition(COMPLETED)
            updated = await self.store.set_status(session_id, COMPLETED)
        logger.info("Session %s completed", session_id)
        return updated

    # ------------------------------------------------------------------
    # Notifications
    # ------------------------------------------------------------------

    def subscribe(self, teacher_id: str, listener: Listener) -> Callable[[], None]:
        self._listeners[teacher_id].append(listener)

        def unsubscribe() -> None:
            listeners = self._listeners.get(teacher_id, [])
            if listener in listeners:
                listeners.remove(listener)
            if not listeners:
                self._listeners.pop(teacher_id, None)

        return unsubscribe

    def _notify(self, teacher_id: str, active: ClassSession | None) -> None:
        message = {
            "type": "active_session",
            "teacher_id": teacher_id,
            "session": active.to_dict() if active and active.status == IN_PROGRESS else None,
        }
        for fn in list(self._listeners.get(teacher_id, [])):
            try:
                fn(message)
            except Exception:
                logger.exception("Active-session listener failed")
