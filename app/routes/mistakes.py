from fastapi import APIRouter
from pydantic import BaseModel

from app import dependencies
from app.errors import EntryNotFound
from app.models import IN_PROGRESS

router = APIRouter(prefix="/api", tags=["mistakes"])


class MistakeSubmit(BaseModel):
    text: str


# ------------------------------------------------------------------
# Helpers
# ------------------------------------------------------------------


def _entry_key(raw: str) -> str | int:
    """Durable ids are integers; temporary ids stay strings."""
    return int(raw) if raw.isdigit() else raw


async def _live_or_none(session_id: int):  # noqa: ANN202
    """The live session, opening it if the class is still in progress."""
    session = await dependencies.guard.get_session(session_id)
    live = dependencies.live_sessions.get(session_id)
    if live is None and session.status == IN_PROGRESS:
        live = await dependencies.live_sessions.open(session)
    return live


# ------------------------------------------------------------------
# Endpoints
# ------------------------------------------------------------------


@router.get("/sessions/{session_id}/mistakes")
async def list_mistakes(session_id: int) -> list[dict]:
    """Live ledger for an in-progress class, saved entries otherwise."""
    live = await _live_or_none(session_id)
    if live is not None:
        entries = live.ledger.entries()
    else:
        entries = await dependencies.live_sessions.mistake_store.list_for_session(session_id)
    return [entry.to_dict() for entry in entries]


@router.post("/sessions/{session_id}/mistakes", status_code=202)
async def submit_mistake(session_id: int, body: MistakeSubmit) -> dict:
    """Check a typed utterance. Returns the ``thinking`` entry immediately."""
    session = await dependencies.guard.get_session(session_id)
    live = await dependencies.live_sessions.open(session)
    entry = live.analyzer.submit(body.text, "manual")
    return entry.to_dict()


@router.post("/sessions/{session_id}/mistakes/{entry_id}/retry", status_code=202)
async def retry_mistake(session_id: int, entry_id: str) -> dict:
    session = await dependencies.guard.get_session(session_id)
    live = await dependencies.live_sessions.open(session)
    entry = live.analyzer.retry(_entry_key(entry_id))
    return entry.to_dict()


@router.delete("/sessions/{session_id}/mistakes/{entry_id}")
async def delete_mistake(session_id: int, entry_id: str) -> dict:
    key = _entry_key(entry_id)
    live = await _live_or_none(session_id)
    if live is not None:
        await live.analyzer.delete(key)
    elif not isinstance(key, int) or not await dependencies.live_sessions.mistake_store.delete(
        key, session_id
    ):
        raise EntryNotFound(f"Entry {entry_id} not in session {session_id}")
    return {"session_id": session_id, "entry_id": key, "deleted": True}
