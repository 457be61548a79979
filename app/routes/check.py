from typing import Any

from fastapi import APIRouter
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from app import dependencies
from app.errors import AllBackendsUnavailable

router = APIRouter(prefix="/api", tags=["correction"])


class SentenceCheck(BaseModel):
    sentence: Any = None  # validated by the gateway so non-text gets InvalidInput
    language: str | None = None


@router.post("/check-sentence")
async def check_sentence(body: SentenceCheck):  # noqa: ANN201
    """One-off correction without a session.

    Success: ``{is_correct, corrected_sentence, explanation, categories}``.
    Exhausted waterfall: ``{"error": "..."}`` with HTTP 502.
    """
    try:
        result = await dependencies.live_sessions.gateway.check(body.sentence, body.language)
    except AllBackendsUnavailable as e:
        return JSONResponse(
            status_code=502,
            content={"error": str(e), "kind": e.last_kind},
        )
    return result.model_dump()
