import json
import sqlite3

from app.database import get_async_conn
from app.errors import StorageFailure
from app.models import DONE, IN_PROGRESS, ClassSession, MistakeEntry, utc_now


def _row_to_session(row) -> ClassSession:  # noqa: ANN001
    return ClassSession(**dict(row))


def _row_to_entry(row) -> MistakeEntry:  # noqa: ANN001
    data = dict(row)
    return MistakeEntry(
        id=data["id"],
        session_id=data["session_id"],
        owner_id=data["owner_id"],
        original_text=data["original_text"],
        source=data["source"],
        status=DONE,
        corrected_text=data["corrected_text"],
        explanation=data["explanation"],
        categories=json.loads(data["categories"] or "[]"),
        is_correct=None if data["is_correct"] is None else bool(data["is_correct"]),
        created_at=data["created_at"],
    )


class SessionStore:
    """SQL access for the ``class_sessions`` table.

    ``sqlite3.Error`` is raised as ``StorageFailure``, except the
    ``IntegrityError`` from ``create`` that signals a second in-progress
    session for the teacher.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def get(self, session_id: int) -> ClassSession | None:
        try:
            conn = await get_async_conn(self.db_path)
            try:
                row = await conn.execute(
                    "SELECT * FROM class_sessions WHERE id = ?", (session_id,)
                )
                found = await row.fetchone()
                return _row_to_session(found) if found else None
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not load session {session_id}: {e}") from e

    async def find_active(self, teacher_id: str) -> ClassSession | None:
        try:
            conn = await get_async_conn(self.db_path)
            try:
                row = await conn.execute(
                    "SELECT * FROM class_sessions WHERE teacher_id = ? AND status = ? "
                    "ORDER BY id DESC LIMIT 1",
                    (teacher_id, IN_PROGRESS),
                )
                found = await row.fetchone()
                return _row_to_session(found) if found else None
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not look up active session: {e}") from e

    async def list_for_teacher(
        self, teacher_id: str, status: str | None = None
    ) -> list[ClassSession]:
        try:
            conn = await get_async_conn(self.db_path)
            try:
                if status is not None:
                    rows = await conn.execute(
                        "SELECT * FROM class_sessions WHERE teacher_id = ? AND status = ? "
                        "ORDER BY started_at DESC",
                        (teacher_id, status),
                    )
                else:
                    rows = await conn.execute(
                        "SELECT * FROM class_sessions WHERE teacher_id = ? "
                        "ORDER BY started_at DESC",
                        (teacher_id,),
                    )
                return [_row_to_session(row) for row in await rows.fetchall()]
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not list sessions: {e}") from e

    async def create(
        self,
        teacher_id: str,
        student_id: str,
        language: str,
        *,
        abandon_id: int | None = None,
    ) -> ClassSession:
        """Insert a new in-progress session.

        With *abandon_id*, that session is marked ``abandoned`` in the same
        transaction. ``sqlite3.IntegrityError`` propagates when another
        in-progress session already exists for the teacher.
        """
        now = utc_now()
        try:
            conn = await get_async_conn(self.db_path)
            try:
                if abandon_id is not None:
                    await conn.execute(
                        "UPDATE class_sessions SET status = 'abandoned', finished_at = ? "
                        "WHERE id = ? AND status = ?",
                        (now, abandon_id, IN_PROGRESS),
                    )
                cursor = await conn.execute(
                    "INSERT INTO class_sessions "
                    "(teacher_id, student_id, language, status, started_at) "
                    "VALUES (?, ?, ?, ?, ?)",
                    (teacher_id, student_id, language, IN_PROGRESS, now),
                )
                await conn.commit()
                row = await conn.execute(
                    "SELECT * FROM class_sessions WHERE id = ?", (cursor.lastrowid,)
                )
                return _row_to_session(await row.fetchone())
            except sqlite3.IntegrityError:
                await conn.rollback()
                raise
            finally:
                await conn.close()
        except sqlite3.IntegrityError:
            raise
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not create session: {e}") from e

    async def set_status(
        self, session_id: int, status: str, *, finished: bool = False
    ) -> ClassSession | None:
        try:
            conn = await get_async_conn(self.db_path)
            try:
                if finished:
                    await conn.execute(
                        "UPDATE class_sessions SET status = ?, finished_at = ? WHERE id = ?",
                        (status, utc_now(), session_id),
                    )
                else:
                    await conn.execute(
                        "UPDATE class_sessions SET status = ? WHERE id = ?",
                        (status, session_id),
                    )
                await conn.commit()
                row = await conn.execute(
                    "SELECT * FROM class_sessions WHERE id = ?", (session_id,)
                )
                found = await row.fetchone()
                return _row_to_session(found) if found else None
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not update session {session_id}: {e}") from e


class MistakeStore:
    """SQL access for the ``mistakes`` table.

    Every ``sqlite3.Error`` is raised as ``StorageFailure`` so the analyzer can
    treat a failed write like any other per-entry failure.
    """

    def __init__(self, db_path: str | None = None) -> None:
        self.db_path = db_path

    async def insert(self, entry: MistakeEntry, *, source: str | None = None) -> int:
        """Persist a resolved entry and return its durable id."""
        try:
            conn = await get_async_conn(self.db_path)
            try:
                cursor = await conn.execute(
                    """INSERT INTO mistakes
                       (session_id, owner_id, original_text, corrected_text,
                        explanation, categories, is_correct, source, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        entry.session_id,
                        entry.owner_id,
                        entry.original_text,
                        entry.corrected_text,
                        entry.explanation,
                        json.dumps(entry.categories),
                        None if entry.is_correct is None else int(entry.is_correct),
                        source or entry.source,
                        entry.created_at,
                    ),
                )
                await conn.commit()
                return cursor.lastrowid
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not save entry: {e}") from e

    async def delete(self, entry_id: int, session_id: int) -> bool:
        try:
            conn = await get_async_conn(self.db_path)
            try:
                cursor = await conn.execute(
                    "DELETE FROM mistakes WHERE id = ? AND session_id = ?",
                    (entry_id, session_id),
                )
                await conn.commit()
                return cursor.rowcount > 0
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not delete entry {entry_id}: {e}") from e

    async def list_for_session(self, session_id: int) -> list[MistakeEntry]:
        """Persisted entries, most recent first."""
        try:
            conn = await get_async_conn(self.db_path)
            try:
                rows = await conn.execute(
                    "SELECT * FROM mistakes WHERE session_id = ? "
                    "ORDER BY created_at DESC, id DESC",
                    (session_id,),
                )
                return [_row_to_entry(row) for row in await rows.fetchall()]
            finally:
                await conn.close()
        except sqlite3.Error as e:
            raise StorageFailure(f"Could not load entries: {e}") from e
