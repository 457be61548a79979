import aiosqlite

from app.config import settings

CREATE_CLASS_SESSIONS = """
CREATE TABLE IF NOT EXISTS class_sessions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    teacher_id TEXT NOT NULL,
    student_id TEXT NOT NULL,
    language TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'in_progress',
    started_at TEXT NOT NULL,
    finished_at TEXT
)
"""

# Storage-level backstop for the single-active-session rule: two contexts
# racing to start a class for the same teacher cannot both commit.
CREATE_ACTIVE_SESSION_INDEX = """
CREATE UNIQUE INDEX IF NOT EXISTS one_active_session_per_teacher
ON class_sessions (teacher_id) WHERE status = 'in_progress'
"""

CREATE_MISTAKES = """
CREATE TABLE IF NOT EXISTS mistakes (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    session_id INTEGER NOT NULL,
    owner_id TEXT NOT NULL,
    original_text TEXT NOT NULL,
    corrected_text TEXT,
    explanation TEXT,
    categories TEXT NOT NULL DEFAULT '[]',
    is_correct INTEGER,
    source TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (session_id) REFERENCES class_sessions(id)
)
"""

_DDL = [CREATE_CLASS_SESSIONS, CREATE_ACTIVE_SESSION_INDEX, CREATE_MISTAKES]


async def init_db(db_path: str | None = None) -> None:
    """Create all tables. Called once at server startup via FastAPI lifespan."""
    async with aiosqlite.connect(db_path or settings.database_path) as db:
        for stmt in _DDL:
            await db.execute(stmt)
        await db.commit()


async def get_async_conn(db_path: str | None = None) -> aiosqlite.Connection:
    """Async connection with dict-like rows."""
    conn = await aiosqlite.connect(db_path or settings.database_path)
    await conn.execute("PRAGMA busy_timeout = 5000")
    conn.row_factory = aiosqlite.Row
    return conn
