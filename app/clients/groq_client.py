from groq import AsyncGroq

from app.config import settings


class GroqClient:
    """Async wrapper around the official Groq SDK.

    One ``AsyncGroq`` HTTP session is shared by every model of the correction
    waterfall; pass ``model=`` per call to pick one::

        groq = GroqClient()
        raw = await groq.chat(messages, model="llama-3.1-8b-instant", json_object=True)
    """

    def __init__(self, api_key: str | None = None) -> None:
        self._client = AsyncGroq(api_key=api_key or settings.groq_api_key)

    async def chat(
        self,
        messages: list[dict],
        *,
        model: str,
        temperature: float | None = None,
        max_tokens: int | None = None,
        json_object: bool = False,
    ) -> str:
        """Chat completion. Returns the raw content string.

        With ``json_object=True`` the request asks Groq's JSON mode for a single
        object; the caller still parses and validates the content.
        """
        kwargs: dict = {
            "model": model,
            "messages": messages,
        }
        if temperature is not None:
            kwargs["temperature"] = temperature
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        if json_object:
            kwargs["response_format"] = {"type": "json_object"}

        resp = await self._client.chat.completions.create(**kwargs)
        return resp.choices[0].message.content or ""
