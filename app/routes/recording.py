import asyncio

from fastapi import APIRouter, WebSocket, WebSocketDisconnect

from app import dependencies
from app.errors import TutorError
from app.routes.sessions import pump_messages

router = APIRouter(tags=["recording"])


# ==================================================================
# REST endpoints
# ==================================================================


@router.post("/api/sessions/{session_id}/recording/start")
async def start_recording(session_id: int) -> dict:
    """Start audio capture for an in-progress session. Idempotent."""
    session = await dependencies.guard.get_session(session_id)
    live = await dependencies.live_sessions.open(session)
    live.start_capture()
    return {"session_id": session_id, "status": "recording"}


@router.post("/api/sessions/{session_id}/recording/stop")
async def stop_recording(session_id: int) -> dict:
    """Stop audio capture. Checks already in flight still land. Idempotent."""
    await dependencies.guard.get_session(session_id)
    live = dependencies.live_sessions.get(session_id)
    if live is not None:
        live.stop_capture()
    return {"session_id": session_id, "status": "idle"}


# ==================================================================
# WebSocket endpoint
# ==================================================================


@router.websocket("/ws/session/{session_id}")
async def websocket_endpoint(websocket: WebSocket, session_id: int) -> None:
    """Live ledger and capture updates for one in-progress session.

    When the last client disconnects (tab closed, page left), capture is
    stopped so the microphone is never left open without a viewer.
    """
    await websocket.accept()
    try:
        session = await dependencies.guard.get_session(session_id)
        live = await dependencies.live_sessions.open(session)
    except TutorError as e:
        await websocket.send_json({"type": "error", "kind": e.kind, "message": str(e)})
        await websocket.close(code=1008)
        return

    queue: asyncio.Queue[dict] = asyncio.Queue()
    unsubscribe = live.subscribe(queue.put_nowait)

    # Send current state immediately
    await websocket.send_json(live.recording_status())
    await websocket.send_json({
        "type": "ledger_snapshot",
        "session_id": session_id,
        "entries": [entry.to_dict() for entry in live.ledger.entries()],
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
        if live.subscriber_count == 0:
            live.stop_capture()
