"""
Tests for the provider dispatchers, using httpx.MockTransport in place of the network.
"""

import json
from unittest.mock import patch

import httpx
import openai
import pytest

from conftest import RecordingHandler, mock_client
from llm_enhance.aws.profiles import AWSCredentials
from llm_enhance.config import AIProvider
from llm_enhance.enhancement.errors import (
    APIKeyInvalidError,
    CustomError,
    EnhancementFailedError,
    NotConfiguredError,
    RateLimitExceededError,
    ServerError,
)
from llm_enhance.enhancement.output_filter import filter_output
from llm_enhance.enhancement.providers import (
    AnthropicProvider,
    BedrockProvider,
    OpenAICompatibleProvider,
    bedrock_runtime_url,
    build_converse_payload,
    create_providers,
    parse_converse_response,
    provider_kind,
)
from llm_enhance.enhancement.session import (
    ActiveSession,
    AnthropicAuth,
    BearerAuth,
    BedrockBearerAuth,
    BedrockSigV4Auth,
)


def _chat_response(content="Hello", status=200) -> httpx.Response:
    return httpx.Response(status, json={"choices": [{"message": {"content": content}}]})


def _groq_session(model="llama-3.3-70b-versatile", token="gsk-test") -> ActiveSession:
    return ActiveSession(AIProvider.GROQ, model, None, BearerAuth(token))


def _bedrock_session(auth, region=None, model="meta.llama3-70b-instruct-v1:0") -> ActiveSession:
    return ActiveSession(AIProvider.AWS_BEDROCK, model, region, auth)


def _converse(text: str) -> httpx.Response:
    return httpx.Response(200, json={
        "output": {"message": {"role": "assistant", "content": [{"text": text}]}},
        "stopReason": "end_turn",
    })


class TestOutputFilter:

    def test_strips_reasoning_blocks(self):
        text = "<think>\nplan the edit\n</think>\n\nClean text.<THINKING>more</THINKING>"
        assert filter_output(text) == "Clean text."

    def test_strips_transcript_tags(self):
        assert filter_output("<TRANSCRIPT>\nHello there.\n</TRANSCRIPT>") == "Hello there."

    def test_collapses_blank_lines(self):
        assert filter_output("a\n\n<reasoning>x</reasoning>\n\nb") == "a\n\nb"

    def test_empty(self):
        assert filter_output("") == ""


class TestOpenAICompatibleProvider:

    @pytest.mark.asyncio
    async def test_returns_content(self):
        handler = RecordingHandler(_chat_response("Hello"))
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        result = await provider.perform_request("system", "user", _groq_session(), 30)

        assert result == "Hello"
        request = handler.requests[0]
        assert str(request.url) == "https://api.groq.com/openai/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer gsk-test"

        body = json.loads(request.content)
        assert body["model"] == "llama-3.3-70b-versatile"
        assert body["messages"] == [
            {"role": "system", "content": "system"},
            {"role": "user", "content": "user"},
        ]
        assert body["stream"] is False
        assert body["temperature"] == 0.3
        assert "reasoning_effort" not in body

    @pytest.mark.asyncio
    async def test_custom_base_url(self):
        handler = RecordingHandler(_chat_response())
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))
        session = ActiveSession(
            AIProvider.CUSTOM, "local", None, BearerAuth("k"), base_url="http://localhost:1234/v1"
        )

        await provider.perform_request("s", "u", session, 30)

        assert str(handler.requests[0].url) == "http://localhost:1234/v1/chat/completions"

    @pytest.mark.asyncio
    async def test_output_is_filtered(self):
        handler = RecordingHandler(_chat_response("<think>hmm</think>\n  Hi.  "))
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))
        assert await provider.perform_request("s", "u", _groq_session(), 30) == "Hi."

    @pytest.mark.parametrize("status,error", [
        (401, APIKeyInvalidError),
        (403, APIKeyInvalidError),
        (429, RateLimitExceededError),
        (500, ServerError),
        (503, ServerError),
        (400, CustomError),
    ])
    @pytest.mark.asyncio
    async def test_status_mapping(self, status, error):
        handler = RecordingHandler(httpx.Response(status, json={"error": {"message": "nope"}}))
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        with pytest.raises(error):
            await provider.perform_request("s", "u", _groq_session(), 30)

        # The SDK must not retry on its own
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_custom_error_keeps_body(self):
        handler = RecordingHandler(httpx.Response(400, text="model not found"))
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        with pytest.raises(CustomError) as exc_info:
            await provider.perform_request("s", "u", _groq_session(), 30)

        assert exc_info.value.detail == "HTTP 400: model not found"

    @pytest.mark.asyncio
    async def test_missing_content_fails(self):
        handler = RecordingHandler(httpx.Response(200, json={"choices": []}))
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        with pytest.raises(EnhancementFailedError):
            await provider.perform_request("s", "u", _groq_session(), 30)

    @pytest.mark.asyncio
    async def test_connection_errors_propagate(self):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        with pytest.raises(openai.APIConnectionError):
            await provider.perform_request("s", "u", _groq_session(), 30)

    @pytest.mark.asyncio
    async def test_client_construction_failure_is_custom_error(self):
        handler = RecordingHandler(_chat_response())
        provider = OpenAICompatibleProvider(http_client=mock_client(handler))

        with patch("openai.AsyncOpenAI", side_effect=ValueError("bad option")):
            with pytest.raises(CustomError) as exc_info:
                await provider.perform_request("s", "u", _groq_session(), 30)

        assert exc_info.value.detail == "bad option"
        assert handler.requests == []

    @pytest.mark.asyncio
    async def test_requires_bearer_token(self):
        provider = OpenAICompatibleProvider(http_client=mock_client(RecordingHandler(_chat_response())))
        session = ActiveSession(AIProvider.GROQ, "m", None, AnthropicAuth("k"))

        with pytest.raises(NotConfiguredError):
            await provider.perform_request("s", "u", session, 30)

    def test_payload_omits_temperature_for_restricted_models(self):
        payload = OpenAICompatibleProvider.build_payload("s", "u", "gpt-5-mini")
        assert "temperature" not in payload
        assert payload["reasoning_effort"] == "minimal"

    def test_payload_reasoning_effort(self):
        payload = OpenAICompatibleProvider.build_payload("s", "u", "gemini-2.5-flash-lite")
        assert payload["reasoning_effort"] == "low"
        assert payload["temperature"] == 0.3


class TestAnthropicProvider:

    @pytest.mark.asyncio
    async def test_messages_request(self):
        handler = RecordingHandler(httpx.Response(200, json={
            "id": "msg_1",
            "type": "message",
            "role": "assistant",
            "content": [{"type": "text", "text": "Polished."}],
        }))
        provider = AnthropicProvider(http_client=mock_client(handler))
        session = ActiveSession(AIProvider.ANTHROPIC, "claude-haiku-4-5", None, AnthropicAuth("sk-ant"))

        result = await provider.perform_request("system prompt", "transcript", session, 30)

        assert result == "Polished."
        request = handler.requests[0]
        assert request.url.path == "/v1/messages"
        assert request.headers["x-api-key"] == "sk-ant"
        assert "anthropic-version" in request.headers

        body = json.loads(request.content)
        assert body["model"] == "claude-haiku-4-5"
        assert body["max_tokens"] == 8192
        assert body["system"] == "system prompt"
        assert body["messages"] == [{"role": "user", "content": "transcript"}]

    @pytest.mark.asyncio
    async def test_unauthorized(self):
        handler = RecordingHandler(httpx.Response(401, json={"type": "error"}))
        provider = AnthropicProvider(http_client=mock_client(handler))
        session = ActiveSession(AIProvider.ANTHROPIC, "m", None, AnthropicAuth("bad"))

        with pytest.raises(APIKeyInvalidError):
            await provider.perform_request("s", "u", session, 30)
        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_empty_content(self):
        handler = RecordingHandler(httpx.Response(200, json={"content": []}))
        provider = AnthropicProvider(http_client=mock_client(handler))
        session = ActiveSession(AIProvider.ANTHROPIC, "m", None, AnthropicAuth("k"))

        with pytest.raises(EnhancementFailedError):
            await provider.perform_request("s", "u", session, 30)

    @pytest.mark.asyncio
    async def test_client_construction_failure_is_custom_error(self):
        provider = AnthropicProvider(http_client=mock_client(RecordingHandler(httpx.Response(200))))
        session = ActiveSession(AIProvider.ANTHROPIC, "m", None, AnthropicAuth("k"))

        with patch("anthropic.AsyncAnthropic", side_effect=TypeError("unsupported http_client")):
            with pytest.raises(CustomError) as exc_info:
                await provider.perform_request("s", "u", session, 30)

        assert "unsupported http_client" in exc_info.value.detail


class TestBedrockProvider:

    @pytest.mark.asyncio
    async def test_bearer_request(self):
        handler = RecordingHandler(_converse("Bedrock says hi"))
        provider = BedrockProvider(http_client=mock_client(handler))
        session = _bedrock_session(BedrockBearerAuth("bedrock-token", "us-west-2"))

        result = await provider.perform_request("system", "user", session, 30)

        assert result == "Bedrock says hi"
        request = handler.requests[0]
        assert request.url.host == "bedrock-runtime.us-west-2.amazonaws.com"
        assert request.url.path == "/model/meta.llama3-70b-instruct-v1:0/converse"
        assert request.headers["Authorization"] == "Bearer bedrock-token"

        body = json.loads(request.content)
        assert body == build_converse_payload("system\nuser")
        assert body["inferenceConfig"] == {"maxTokens": 1024, "temperature": 0.3}

    @pytest.mark.asyncio
    async def test_sigv4_request(self, credentials):
        handler = RecordingHandler(_converse("signed"))
        provider = BedrockProvider(http_client=mock_client(handler))
        session = _bedrock_session(BedrockSigV4Auth(credentials, "eu-central-1"))

        assert await provider.perform_request("s", "u", session, 30) == "signed"

        request = handler.requests[0]
        assert request.url.host == "bedrock-runtime.eu-central-1.amazonaws.com"
        authorization = request.headers["Authorization"]
        assert authorization.startswith("AWS4-HMAC-SHA256 Credential=AKIDEXAMPLE/")
        assert "/eu-central-1/bedrock-runtime/aws4_request" in authorization
        assert "X-Amz-Date" in request.headers

    def test_session_token_header(self):
        creds = AWSCredentials("ASIA", "secret", session_token="tok")
        provider = BedrockProvider()
        request = provider.build_request(
            "s", "u", _bedrock_session(BedrockSigV4Auth(creds, "us-east-1")), 30
        )
        assert request.headers["X-Amz-Security-Token"] == "tok"

    def test_region_precedence(self):
        assert BedrockProvider.resolve_region(
            _bedrock_session(BedrockBearerAuth("t", "eu-west-1"), region="us-east-2"), "us-east-1"
        ) == "eu-west-1"
        assert BedrockProvider.resolve_region(
            _bedrock_session(BedrockBearerAuth("t", ""), region="us-east-2"), "us-east-1"
        ) == "us-east-2"
        assert BedrockProvider.resolve_region(
            _bedrock_session(BedrockBearerAuth("t", "")), "ap-south-1"
        ) == "ap-south-1"

    def test_model_id_is_escaped(self):
        url = bedrock_runtime_url("us-east-1", "arn:aws:bedrock:us-east-1::foundation-model/x")
        assert url == (
            "https://bedrock-runtime.us-east-1.amazonaws.com/model/"
            "arn%3Aaws%3Abedrock%3Aus-east-1%3A%3Afoundation-model%2Fx/converse"
        )

    def test_empty_model_is_not_configured(self):
        with pytest.raises(NotConfiguredError):
            BedrockProvider().build_request(
                "s", "u", _bedrock_session(BedrockBearerAuth("t", "us-east-1"), model=""), 30
            )

    def test_anthropic_auth_is_not_configured(self):
        with pytest.raises(NotConfiguredError):
            BedrockProvider().build_request(
                "s", "u", _bedrock_session(AnthropicAuth("k"), region="us-east-1"), 30
            )

    @pytest.mark.parametrize("status,error", [
        (403, APIKeyInvalidError),
        (429, RateLimitExceededError),
        (500, ServerError),
        (400, CustomError),
    ])
    @pytest.mark.asyncio
    async def test_status_mapping(self, status, error):
        handler = RecordingHandler(httpx.Response(status, json={"message": "denied"}))
        provider = BedrockProvider(http_client=mock_client(handler))

        with pytest.raises(error):
            await provider.perform_request(
                "s", "u", _bedrock_session(BedrockBearerAuth("t", "us-east-1")), 30
            )

    @pytest.mark.asyncio
    async def test_unparseable_response(self):
        handler = RecordingHandler(httpx.Response(200, json={"unexpected": True}))
        provider = BedrockProvider(http_client=mock_client(handler))

        with pytest.raises(EnhancementFailedError):
            await provider.perform_request(
                "s", "u", _bedrock_session(BedrockBearerAuth("t", "us-east-1")), 30
            )

    @pytest.mark.asyncio
    async def test_transport_errors_propagate(self):
        def handler(request):
            raise httpx.ReadTimeout("slow", request=request)

        provider = BedrockProvider(http_client=mock_client(handler))

        with pytest.raises(httpx.ReadTimeout):
            await provider.perform_request(
                "s", "u", _bedrock_session(BedrockBearerAuth("t", "us-east-1")), 30
            )

    @pytest.mark.asyncio
    async def test_unexpected_send_failure_is_custom_error(self):
        def handler(request):
            raise RuntimeError("transport exploded")

        provider = BedrockProvider(http_client=mock_client(handler))

        with pytest.raises(CustomError) as exc_info:
            await provider.perform_request(
                "s", "u", _bedrock_session(BedrockBearerAuth("t", "us-east-1")), 30
            )

        assert exc_info.value.detail == "transport exploded"


class TestParseConverseResponse:

    def test_prefers_text_over_reasoning(self):
        body = json.dumps({"output": {"message": {"content": [
            {"reasoningContent": {"reasoningText": {"text": "thinking"}}},
            {"text": "answer"},
        ]}}}).encode()
        assert parse_converse_response(body) == "answer"

    def test_reasoning_only(self):
        body = json.dumps({"output": {"message": {"content": [
            {"reasoningContent": {"reasoningText": {"text": "thinking"}}},
        ]}}}).encode()
        assert parse_converse_response(body) == "thinking"

    @pytest.mark.parametrize("data", [
        {"output_text": "x"},
        {"outputText": "x"},
        {"completion": "x"},
        {"generated_text": "x"},
        {"outputs": [{"text": "x"}]},
        {"outputs": [{"output_text": "x"}]},
    ])
    def test_other_shapes(self, data):
        assert parse_converse_response(json.dumps(data).encode()) == "x"

    def test_plain_text_body(self):
        assert parse_converse_response(b"just text") == "just text"

    def test_unknown_shape(self):
        assert parse_converse_response(b'{"foo": 1}') is None
        assert parse_converse_response(b'[1, 2]') is None


class TestProviderSelection:

    @pytest.mark.parametrize("provider,kind", [
        (AIProvider.AWS_BEDROCK, "bedrock"),
        (AIProvider.ANTHROPIC, "anthropic"),
        (AIProvider.GEMINI, "openai"),
        (AIProvider.CUSTOM, "openai"),
    ])
    def test_provider_kind(self, provider, kind):
        assert provider_kind(ActiveSession(provider, "m", None, BearerAuth("k"))) == kind

    def test_create_providers(self):
        providers = create_providers()
        assert set(providers) == {"openai", "anthropic", "bedrock"}
        assert isinstance(providers["bedrock"], BedrockProvider)

    @pytest.mark.asyncio
    async def test_aclose_leaves_injected_client_open(self):
        client = mock_client(RecordingHandler(_chat_response()))
        provider = OpenAICompatibleProvider(http_client=client)

        await provider.aclose()

        assert not client.is_closed
        await client.aclose()
