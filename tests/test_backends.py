import unittest
from unittest import mock

from agent.config import ProviderConfig, RetrySettings
from agent.exceptions import AuthError, BackendError, RateLimitError, UnavailableError
from agent.response import ChunkType, Message, StreamChunk, ToolDefinition
from providers.anthropic import AnthropicBackend
from providers.base import estimate_tokens, parse_tool_arguments
from providers.gemini import GeminiBackend, clean_schema
from providers.ollama import OllamaBackend
from providers.openai import OpenAIBackend


def _backend(cls, model="test-model", api_key="key", max_retries=3):
    return cls(
        ProviderConfig(api_key=api_key, model=model, base_url="http://backend.test"),
        retry=RetrySettings(max_retries=max_retries, base_delay=1.0, max_delay=8.0),
    )


class TestRetry(unittest.IsolatedAsyncioTestCase):
    async def test_with_retry_succeeds_after_failures(self):
        backend = _backend(OllamaBackend)
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            if attempts < 3:
                raise UnavailableError("ollama", "boom")
            return "ok"

        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()) as sleep_mock:
            result = await backend._with_retry("test", operation)

        self.assertEqual(result, "ok")
        self.assertEqual(attempts, 3)
        self.assertEqual([c.args[0] for c in sleep_mock.call_args_list], [1.0, 2.0])

    async def test_with_retry_raises_after_exhausted(self):
        backend = _backend(OllamaBackend, max_retries=2)

        async def operation():
            raise UnavailableError("ollama", "boom")

        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()) as sleep_mock:
            with self.assertRaises(UnavailableError):
                await backend._with_retry("test", operation)
        self.assertEqual(sleep_mock.call_count, 1)

    async def test_auth_errors_are_never_retried(self):
        backend = _backend(AnthropicBackend)
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            raise AuthError("anthropic")

        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()) as sleep_mock:
            with self.assertRaises(AuthError):
                await backend._with_retry("test", operation)
        self.assertEqual(attempts, 1)
        sleep_mock.assert_not_called()

    async def test_rate_limit_wait_uses_retry_after_capped(self):
        backend = _backend(OpenAIBackend)
        attempts = 0

        async def operation():
            nonlocal attempts
            attempts += 1
            if attempts == 1:
                raise RateLimitError("openai", retry_after=120.0)
            return "ok"

        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()) as sleep_mock:
            await backend._with_retry("test", operation)
        sleep_mock.assert_awaited_once_with(8.0)

    async def test_generate_goes_through_post_json(self):
        backend = _backend(OpenAIBackend)
        backend._post_json = mock.AsyncMock(return_value={
            "model": "gpt-4o",
            "choices": [{"message": {"content": "hello"}, "finish_reason": "stop"}],
            "usage": {"prompt_tokens": 3, "completion_tokens": 2},
        })
        result = await backend.generate([Message(role="user", content="hi")], "sys")
        self.assertEqual(result.content, "hello")
        self.assertEqual(result.usage.total_tokens, 5)
        url, payload = backend._post_json.await_args.args
        self.assertEqual(url, "http://backend.test/chat/completions")
        self.assertEqual(payload["messages"][0], {"role": "system", "content": "sys"})


class TestStreamRetry(unittest.IsolatedAsyncioTestCase):
    async def test_stream_retries_before_first_chunk(self):
        backend = _backend(OllamaBackend)
        calls = 0

        async def fake_stream(payload):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise UnavailableError("ollama", "down")
            yield StreamChunk(type=ChunkType.TEXT, content="hi")
            yield StreamChunk(type=ChunkType.DONE, finish_reason="stop")

        backend._stream_request = fake_stream
        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()):
            chunks = [c async for c in backend.stream([Message(role="user", content="x")], "")]
        self.assertEqual(calls, 2)
        self.assertEqual([c.type for c in chunks], [ChunkType.TEXT, ChunkType.DONE])

    async def test_stream_failure_after_first_chunk_propagates(self):
        backend = _backend(OllamaBackend)
        calls = 0

        async def fake_stream(payload):
            nonlocal calls
            calls += 1
            yield StreamChunk(type=ChunkType.TEXT, content="partial")
            raise UnavailableError("ollama", "dropped")

        backend._stream_request = fake_stream
        received = []
        with mock.patch("providers.base.asyncio.sleep", new=mock.AsyncMock()):
            with self.assertRaises(UnavailableError):
                async for chunk in backend.stream([Message(role="user", content="x")], ""):
                    received.append(chunk)
        self.assertEqual(calls, 1)
        self.assertEqual(len(received), 1)


class TestErrorMapping(unittest.TestCase):
    def test_status_mapping(self):
        backend = _backend(OpenAIBackend)
        self.assertIsInstance(backend._error_from_status(401, "nope"), AuthError)
        self.assertIsInstance(backend._error_from_status(403, "nope"), AuthError)
        self.assertIsInstance(backend._error_from_status(503, "down"), UnavailableError)
        self.assertIsInstance(backend._error_from_status(500, "boom"), UnavailableError)

        limited = backend._error_from_status(429, "slow down", {"retry-after": "7"})
        self.assertIsInstance(limited, RateLimitError)
        self.assertEqual(limited.retry_after, 7.0)

        client = backend._error_from_status(400, "bad request")
        self.assertIsInstance(client, BackendError)
        self.assertFalse(client.retryable)

    def test_gemini_matches_error_text(self):
        backend = _backend(GeminiBackend)
        self.assertIsInstance(backend._error_from_status(400, "API_KEY_INVALID"), AuthError)
        self.assertIsInstance(backend._error_from_status(400, "RESOURCE_EXHAUSTED"), RateLimitError)
        self.assertIsInstance(backend._error_from_status(400, "status UNAVAILABLE"), UnavailableError)


class TestParsing(unittest.TestCase):
    def test_anthropic_tool_use(self):
        backend = _backend(AnthropicBackend)
        result = backend._parse_response({
            "model": "claude",
            "content": [
                {"type": "text", "text": "Let me check."},
                {"type": "tool_use", "id": "toolu_1", "name": "read_file", "input": {"path": "a.txt"}},
            ],
            "stop_reason": "tool_use",
            "usage": {"input_tokens": 10, "output_tokens": 4},
        })
        self.assertEqual(result.content, "Let me check.")
        self.assertEqual(result.finish_reason, "tool_use")
        self.assertEqual(result.tool_calls[0].id, "toolu_1")
        self.assertEqual(result.tool_calls[0].arguments, {"path": "a.txt"})
        self.assertEqual(result.usage.total_tokens, 14)
        self.assertEqual(result.backend_id, "anthropic")

    def test_anthropic_message_conversion(self):
        converted = AnthropicBackend._convert_messages([
            Message(role="assistant", content="earlier"),
            Message(role="system", content="3 earlier messages summarized"),
            Message(role="user", content="next"),
        ])
        self.assertEqual(converted[0]["role"], "user")
        self.assertEqual(converted[1], {"role": "assistant", "content": "earlier"})
        self.assertEqual(converted[2]["role"], "user")
        self.assertIn("[System note] 3 earlier messages summarized", converted[2]["content"])
        self.assertTrue(converted[2]["content"].endswith("next"))

    def test_openai_string_arguments(self):
        backend = _backend(OpenAIBackend)
        result = backend._parse_response({
            "choices": [{
                "message": {
                    "content": None,
                    "tool_calls": [{"id": "c1", "function": {"name": "list_directory", "arguments": "{\"path\": \".\"}"}}],
                },
                "finish_reason": "tool_calls",
            }],
        })
        self.assertEqual(result.content, "")
        self.assertEqual(result.finish_reason, "tool_use")
        self.assertEqual(result.tool_calls[0].arguments, {"path": "."})

    def test_openai_length_maps_to_max_tokens(self):
        backend = _backend(OpenAIBackend)
        result = backend._parse_response({
            "choices": [{"message": {"content": "cut"}, "finish_reason": "length"}],
        })
        self.assertEqual(result.finish_reason, "max_tokens")

    def test_gemini_function_call(self):
        backend = _backend(GeminiBackend)
        result = backend._parse_response({
            "candidates": [{
                "content": {"parts": [{"functionCall": {"name": "http_fetch", "args": {"url": "https://x"}}}]},
                "finishReason": "STOP",
            }],
            "usageMetadata": {"promptTokenCount": 5, "candidatesTokenCount": 1},
        })
        self.assertEqual(result.finish_reason, "tool_use")
        self.assertEqual(result.tool_calls[0].id, "call_0")
        self.assertEqual(result.usage.input_tokens, 5)

    def test_ollama_response(self):
        backend = _backend(OllamaBackend, model="llama3:8b")
        result = backend._parse_response({
            "message": {"content": "4"},
            "done_reason": "stop",
            "prompt_eval_count": 12,
            "eval_count": 1,
        })
        self.assertEqual(result.content, "4")
        self.assertEqual(result.finish_reason, "stop")
        self.assertEqual(result.usage.output_tokens, 1)

    def test_request_payloads_include_tools(self):
        tool = ToolDefinition(
            name="read_file",
            description="Read a file",
            parameters={"type": "object", "title": "P", "properties": {"path": {"type": "string", "default": "."}}},
        )
        messages = [Message(role="user", content="hi")]

        anthropic = _backend(AnthropicBackend)._build_request(messages, "sys", [tool], {}, stream=True)
        self.assertEqual(anthropic["system"], "sys")
        self.assertEqual(anthropic["tools"][0]["input_schema"], tool.parameters)
        self.assertTrue(anthropic["stream"])

        gemini = _backend(GeminiBackend)._build_request(messages, "sys", [tool], {}, stream=False)
        declared = gemini["tools"][0]["functionDeclarations"][0]["parameters"]
        self.assertNotIn("title", declared)
        self.assertNotIn("default", declared["properties"]["path"])

        ollama = _backend(OllamaBackend)._build_request(messages, "", None, {"max_tokens": 10}, stream=False)
        self.assertEqual(ollama["options"]["num_predict"], 10)
        self.assertNotIn("tools", ollama)


class TestHelpers(unittest.TestCase):
    def test_estimate_tokens_rounds_up(self):
        self.assertEqual(estimate_tokens(""), 0)
        self.assertEqual(estimate_tokens("abcde"), 2)
        self.assertEqual(estimate_tokens("abcdefg", chars_per_token=3.5), 2)

    def test_parse_tool_arguments(self):
        self.assertEqual(parse_tool_arguments('{"a": 1}'), {"a": 1})
        self.assertEqual(parse_tool_arguments("not json"), {"raw": "not json"})
        self.assertEqual(parse_tool_arguments(None), {})

    def test_clean_schema_is_recursive(self):
        cleaned = clean_schema({"$defs": {}, "properties": {"x": {"title": "X", "type": "string"}}})
        self.assertEqual(cleaned, {"properties": {"x": {"type": "string"}}})

    def test_context_window_prefix_match(self):
        self.assertEqual(_backend(OllamaBackend, model="mistral:7b").context_window_size(), 32768)
        self.assertEqual(_backend(OpenAIBackend, model="gpt-4o-mini").context_window_size(), 128000)
        self.assertEqual(_backend(OllamaBackend, model="unknown").context_window_size(), 8192)
        self.assertEqual(_backend(AnthropicBackend).context_window_size(), 200000)

    def test_ollama_model_tag_match(self):
        self.assertTrue(OllamaBackend.model_available("llama3", ["llama3:8b"]))
        self.assertTrue(OllamaBackend.model_available("llama3:8b", ["llama3:8b"]))
        self.assertFalse(OllamaBackend.model_available("mistral", ["llama3:8b"]))


class TestAvailability(unittest.IsolatedAsyncioTestCase):
    async def test_cloud_backends_without_key_are_unavailable(self):
        for cls in (AnthropicBackend, OpenAIBackend, GeminiBackend):
            with self.subTest(backend=cls.backend_id):
                backend = _backend(cls, api_key="")
                backend._probe = mock.AsyncMock(return_value=200)
                self.assertFalse(await backend.is_available())
                backend._probe.assert_not_called()

    async def test_probe_status_decides_availability(self):
        backend = _backend(AnthropicBackend)
        backend._probe = mock.AsyncMock(return_value=200)
        self.assertTrue(await backend.is_available())
        backend._probe = mock.AsyncMock(return_value=None)
        self.assertFalse(await backend.is_available())
