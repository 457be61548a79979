import asyncio
from typing import Literal

from fastapi import APIRouter, WebSocket, WebSocketDisconnect
from pydantic import BaseModel

from app import dependencies

router = APIRouter(tags=["sessions"])


# ------------------------------------------------------------------
# Request bodies
# ------------------------------------------------------------------


class SessionStart(BaseModel):
    teacher_id: str
    student_id: str
    language: str | None = None
    resolution: Literal["resume", "abandon"] | None = None


# ------------------------------------------------------------------
# Session lifecycle
# ------------------------------------------------------------------


@router.post("/api/sessions")
async def start_session(body: SessionStart) -> dict:
    """Start a class. Answers 409 with the running session on conflict;
    repeat the request with ``resolution`` set to resume or abandon it."""
    result = await dependencies.guard.start_session(
        body.teacher_id, body.student_id, body.language, body.resolution
    )
    if result.abandoned is not None:
        dependencies.live_sessions.close(result.abandoned.id)
    return {
        "session": result.session.to_dict(),
        "created": result.created,
        "abandoned": result.abandoned.to_dict() if result.abandoned else None,
    }


@router.get("/api/sessions/{session_id}")
async def get_session(session_id: int) -> dict:
    session = await dependencies.guard.get_session(session_id)
    live = dependencies.live_sessions.get(session_id)
    return {
        **session.to_dict(),
        "recording": live.is_recording if live else False,
    }


@router.post("/api/sessions/{session_id}/end")
async def end_session(session_id: int) -> dict:
    """Stop capture for the session, then move it to pending review."""
    await dependencies.guard.get_session(session_id)
    dependencies.live_sessions.close(session_id)
    session = await dependencies.guard.end_session(session_id)
    return session.to_dict()


@router.post("/api/sessions/{session_id}/complete")
async def complete_session(session_id: int) -> dict:
    session = await dependencies.guard.complete_session(session_id)
    return session.to_dict()


# ------------------------------------------------------------------
# Teacher views
# ------------------------------------------------------------------


@router.get("/api/teachers/{teacher_id}/active-session")
async def get_active_session(teacher_id: str) -> dict:
    """Read-only; polled by screens that show the resume affordance."""
    session = await dependencies.guard.check_active(teacher_id)
    return {"teacher_id": teacher_id, "session": session.to_dict() if session else None}


@router.get("/api/teachers/{teacher_id}/sessions")
async def list_sessions(teacher_id: str, status: str | None = None) -> list[dict]:
    sessions = await dependencies.guard.list_sessions(teacher_id, status)
    return [session.to_dict() for session in sessions]


@router.websocket("/ws/teachers/{teacher_id}/active-session")
async def active_session_stream(websocket: WebSocket, teacher_id: str) -> None:
    """Push the teacher's in-progress session whenever it appears or disappears."""
    await websocket.accept()
    queue: asyncio.Queue[dict] = asyncio.Queue()
    unsubscribe = dependencies.guard.subscribe(teacher_id, queue.put_nowait)

    session = await dependencies.guard.check_active(teacher_id)
    await websocket.send_json({
        "type": "active_session",
        "teacher_id": teacher_id,
        "session": session.to_dict() if session else None,
    })

    sender = asyncio.create_task(pump_messages(websocket, queue))
    try:
        while True:
            await websocket.receive_text()  # keep-alive; client sends pings
    except WebSocketDisconnect:
        pass
    finally:
        sender.cancel()
        unsubscribe()


async def pump_messages(websocket: WebSocket, queue: asyncio.Queue) -> None:
    """Forward queued messages to one WebSocket, in order."""
    while True:
        message = await queue.get()
        await websocket.send_json(message)
