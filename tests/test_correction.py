import unittest
from types import SimpleNamespace

import groq
import httpx

from app.clients import GroqClient
from app.config import settings
from app.errors import (
    AllBackendsUnavailable,
    BackendLogicError,
    InvalidInput,
    MalformedResponse,
    TransportFailure,
)
from app.services.correction import CorrectionGateway, parse_result, strip_fences
from tests.fakes import GOOD_JSON, GOOD_RESULT, FakeGroq

MODELS = ["fast", "backup", "reasoning"]


class ParseResultTests(unittest.TestCase):
    def test_strips_markdown_fences(self) -> None:
        self.assertEqual(strip_fences("```json\n{\"a\": 1}\n```"), '{"a": 1}')
        self.assertEqual(strip_fences("```{}```"), "{}")

    def test_parses_fenced_result(self) -> None:
        self.assertEqual(parse_result(f"```json\n{GOOD_JSON}\n```"), GOOD_RESULT)

    def test_error_payload_is_backend_error(self) -> None:
        with self.assertRaises(BackendLogicError) as ctx:
            parse_result('{"error": "quota exceeded"}')
        self.assertIn("quota exceeded", str(ctx.exception))

    def test_not_json_is_malformed(self) -> None:
        with self.assertRaises(MalformedResponse):
            parse_result("The sentence is wrong.")

    def test_wrong_shape_is_malformed(self) -> None:
        with self.assertRaises(MalformedResponse):
            parse_result('{"is_correct": "no", "corrected_sentence": "x", '
                         '"explanation": "y", "categories": []}')
        with self.assertRaises(MalformedResponse):
            parse_result('{"is_correct": true, "corrected_sentence": "x"}')
        with self.assertRaises(MalformedResponse):
            parse_result("[1, 2, 3]")

    def test_extra_keys_are_ignored(self) -> None:
        raw = GOOD_JSON[:-1] + ', "confidence": 0.9}'
        self.assertEqual(parse_result(raw), GOOD_RESULT)


class CorrectionGatewayTests(unittest.IsolatedAsyncioTestCase):
    def gateway(self, script: dict[str, list], timeout: float = 1.0) -> CorrectionGateway:
        self.client = FakeGroq(script)
        return CorrectionGateway(client=self.client, models=MODELS, timeout=timeout)

    async def test_first_model_success(self) -> None:
        gateway = self.gateway({"fast": [GOOD_JSON]})
        result = await gateway.check("He go to school", "Spanish")
        self.assertEqual(result, GOOD_RESULT)
        self.assertEqual(self.client.calls, ["fast"])
        self.assertIn("Spanish", self.client.messages[0][1]["content"])
        self.assertIn("He go to school", self.client.messages[0][1]["content"])

    async def test_fallback_result_is_second_models_output(self) -> None:
        other = (
            '{"is_correct": true, "corrected_sentence": "Hola", '
            '"explanation": "fine", "categories": []}'
        )
        gateway = self.gateway({
            "fast": [TransportFailure("reset")],
            "backup": [f"```json\n{other}\n```"],
        })
        result = await gateway.check("Hola", "Spanish")
        self.assertEqual(result, parse_result(other))
        self.assertTrue(result.is_correct)
        self.assertEqual(self.client.calls, ["fast", "backup"])

    async def test_backend_error_payload_falls_through(self) -> None:
        gateway = self.gateway({
            "fast": ['{"error": "model overloaded"}'],
            "backup": [GOOD_JSON],
        })
        self.assertEqual(await gateway.check("He go to school"), GOOD_RESULT)

    async def test_timeout_moves_to_next_model(self) -> None:
        gateway = self.gateway(
            {"fast": [(1.0, GOOD_JSON)], "backup": [GOOD_JSON]}, timeout=0.01
        )
        self.assertEqual(await gateway.check("He go to school"), GOOD_RESULT)
        self.assertEqual(self.client.calls, ["fast", "backup"])

    async def test_sdk_errors_are_classified(self) -> None:
        request = httpx.Request("POST", "https://api.groq.com/openai/v1/chat/completions")
        response = httpx.Response(429, request=request)
        gateway = self.gateway({
            "fast": [groq.APIConnectionError(request=request)],
            "backup": [groq.RateLimitError("rate limited", response=response, body=None)],
            "reasoning": ["not json at all"],
        })
        with self.assertRaises(AllBackendsUnavailable) as ctx:
            await gateway.check("He go to school")

        kinds = [(model, err.kind) for model, err in ctx.exception.failures]
        self.assertEqual(
            kinds,
            [("fast", "transport"), ("backup", "backend"), ("reasoning", "malformed")],
        )
        self.assertIsInstance(ctx.exception.last_error, MalformedResponse)
        self.assertFalse(ctx.exception.backend_only)

    async def test_all_backend_errors_are_flagged(self) -> None:
        gateway = self.gateway({model: ['{"error": "quota"}'] for model in MODELS})
        with self.assertRaises(AllBackendsUnavailable) as ctx:
            await gateway.check("He go to school")
        self.assertTrue(ctx.exception.backend_only)
        self.assertEqual(ctx.exception.last_kind, "backend")
        self.assertEqual(len(ctx.exception.failures), 3)

    async def test_invalid_input_makes_no_call(self) -> None:
        gateway = self.gateway({"fast": [GOOD_JSON]})
        for bad in ("", "   ", None, 42):
            with self.assertRaises(InvalidInput):
                await gateway.check(bad)
        self.assertEqual(self.client.calls, [])

    async def test_language_defaults_to_setting(self) -> None:
        gateway = self.gateway({"fast": [GOOD_JSON]})
        await gateway.check("He go to school")
        self.assertIn(settings.default_language, self.client.messages[0][1]["content"])

    async def test_empty_content_is_malformed(self) -> None:
        gateway = self.gateway({model: [""] for model in MODELS})
        with self.assertRaises(AllBackendsUnavailable) as ctx:
            await gateway.check("He go to school")
        self.assertEqual(ctx.exception.last_kind, "malformed")



class RecordingCompletions:
    def __init__(self, content: str | None) -> None:
        self.content = content
        self.requests: list[dict] = []

    async def create(self, **kwargs):  # noqa: ANN201
        self.requests.append(kwargs)
        message = SimpleNamespace(content=self.content)
        return SimpleNamespace(choices=[SimpleNamespace(message=message)])


class GroqClientTests(unittest.IsolatedAsyncioTestCase):
    def client(self, content: str | None) -> GroqClient:
        client = GroqClient(api_key="gsk_test")
        self.completions = RecordingCompletions(content)
        client._client = SimpleNamespace(chat=SimpleNamespace(completions=self.completions))
        return client

    async def test_request_uses_the_given_model(self) -> None:
        client = self.client(GOOD_JSON)
        messages = [{"role": "user", "content": "Hola"}]

        raw = await client.chat(messages, model="backup", temperature=0, json_object=True)

        self.assertEqual(raw, GOOD_JSON)
        self.assertEqual(
            self.completions.requests,
            [{
                "model": "backup",
                "messages": messages,
                "temperature": 0,
                "response_format": {"type": "json_object"},
            }],
        )

    async def test_plain_request_and_missing_content(self) -> None:
        client = self.client(None)
        self.assertEqual(await client.chat([], model="fast"), "")
        self.assertEqual(self.completions.requests, [{"model": "fast", "messages": []}])


if __name__ == "__main__":
    unittest.main()
