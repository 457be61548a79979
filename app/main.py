from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from app import dependencies
from app.config import settings
from app.database import init_db
from app.errors import (
    AllBackendsUnavailable,
    CaptureError,
    EntryNotFound,
    InvalidInput,
    InvalidTransition,
    PermissionDenied,
    SessionConflict,
    SessionNotFound,
    StorageFailure,
    TutorError,
)
from app.logging_config import configure_logging
from app.routes import check, mistakes, recording, sessions

# Most specific first; the first isinstance match wins.
STATUS_CODES: list[tuple[type[TutorError], int]] = [
    (SessionNotFound, 404),
    (EntryNotFound, 404),
    (SessionConflict, 409),
    (InvalidTransition, 409),
    (InvalidInput, 422),
    (PermissionDenied, 403),
    (CaptureError, 503),
    (AllBackendsUnavailable, 502),
    (StorageFailure, 500),
]


@asynccontextmanager
async def lifespan(_app: FastAPI):
    """Create SQLite tables on startup; release every microphone on shutdown."""
    configure_logging()
    await init_db()
    yield
    await dependencies.live_sessions.close_all()


app = FastAPI(
    title="tutor-live",
    description="Live grammar checking for one-on-one language classes",
    version="0.1.0",
    lifespan=lifespan,
)

app.include_router(sessions.router)
app.include_router(recording.router)
app.include_router(mistakes.router)
app.include_router(check.router)


@app.exception_handler(TutorError)
async def tutor_error_handler(_request: Request, exc: TutorError) -> JSONResponse:
    status_code = next(
        (code for cls, code in STATUS_CODES if isinstance(exc, cls)), 500
    )
    content = {"detail": str(exc), "kind": exc.kind}
    if isinstance(exc, SessionConflict) and exc.existing is not None:
        content["existing"] = exc.existing.to_dict()
    return JSONResponse(status_code=status_code, content=content)


def run() -> None:
    uvicorn.run("app.main:app", host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
