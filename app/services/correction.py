import asyncio
import json
import logging
import re

import groq
from pydantic import ValidationError

from app.clients import GroqClient
from app.config import settings
from app.errors import (
    AllBackendsUnavailable,
    BackendLogicError,
    CorrectionError,
    InvalidInput,
    MalformedResponse,
    TransportFailure,
)
from app.models import CorrectionResult

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?", re.IGNORECASE)


# ---------------------------------------------------------------------------
# Prompt and parsing helpers
# ---------------------------------------------------------------------------


def build_messages(sentence: str, language: str) -> list[dict]:
    """Deterministic prompt: the same sentence and language always yield the same messages."""
    return [
        {
            "role": "system",
            "content": (
                "You are a strict language tutor. Judge whether the sentence you are "
                "given is grammatically correct in the target language. "
                "Reply with ONLY a JSON object (no markdown, no commentary) with exactly "
                'these keys: "is_correct" (boolean), "corrected_sentence" (string), '
                '"explanation" (string), "categories" (array of strings naming the '
                "kinds of mistake, empty when the sentence is correct)."
            ),
        },
        {
            "role": "user",
            "content": f"Target language: {language}\nSentence: {sentence}",
        },
    ]


def strip_fences(raw: str) -> str:
    """Remove markdown code fences some models wrap around JSON."""
    return _FENCE_RE.sub("", raw).strip()


def parse_result(raw: str) -> CorrectionResult:
    """Turn raw model output into a CorrectionResult or raise a CorrectionError."""
    try:
        payload = json.loads(strip_fences(raw))
    except json.JSONDecodeError as e:
        raise MalformedResponse(f"Response is not JSON: {e}") from e

    if not isinstance(payload, dict):
        raise MalformedResponse("Response is not a JSON object")
    if "error" in payload and not {"is_correct", "corrected_sentence"} & payload.keys():
        raise BackendLogicError(str(payload["error"]))

    try:
        return CorrectionResult.model_validate(
            {key: payload.get(key) for key in CorrectionResult.model_fields}
        )
    except ValidationError as e:
        raise MalformedResponse(f"Response has the wrong shape: {e}") from e


# ---------------------------------------------------------------------------
# Gateway
# ---------------------------------------------------------------------------


class CorrectionGateway:
    """Check a sentence against an ordered waterfall of correction models.

    The first model that returns a structurally valid result wins; earlier
    failures are logged and leave no trace in the result. When every model
    fails, ``AllBackendsUnavailable`` carries each ``(model, error)`` pair.
    """

    def __init__(
        self,
        client: GroqClient | None = None,
        models: list[str] | None = None,
        timeout: float | None = None,
    ) -> None:
        self.client = client or GroqClient()
        self.models = list(models or settings.correction_models)
        self.timeout = timeout if timeout is not None else settings.correction_timeout_seconds

    async def check(self, text, language: str | None = None) -> CorrectionResult:  # noqa: ANN001
        if not isinstance(text, str) or not text.strip():
            raise InvalidInput("Sentence must be non-empty text")
        sentence = text.strip()
        language = language or settings.default_language
        messages = build_messages(sentence, language)

        failures: list[tuple[str, CorrectionError]] = []
        for model in self.models:
            try:
                result = await self._attempt(model, messages)
            except CorrectionError as e:
                logger.warning("Correction model %s failed (%s): %s", model, e.kind, e)
                failures.append((model, e))
                continue
            logger.info("Correction model %s succeeded", model)
            return result

        logger.error("All %d correction models failed", len(failures))
        raise AllBackendsUnavailable(failures)

    async def _attempt(self, model: str, messages: list[dict]) -> CorrectionResult:
        try:
            raw = await asyncio.wait_for(
                self.client.chat(messages, model=model, temperature=0, json_object=True),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError as e:
            raise TransportFailure(f"{model} timed out after {self.timeout}s") from e
        except groq.APIConnectionError as e:
            raise TransportFailure(f"{model} unreachable: {e}") from e
        except groq.APIStatusError as e:
            raise BackendLogicError(f"{model} returned {e.status_code}: {e.message}") from e
        except groq.GroqError as e:
            raise TransportFailure(f"{model} request failed: {e}") from e

        if not raw:
            raise MalformedResponse(f"{model} returned an empty response")
        return parse_result(raw)
