"""
LLM provider dispatchers for text enhancement.

Provides a unified ``perform_request`` interface over OpenAI-compatible chat
completions, Anthropic messages and AWS Bedrock Converse. Each dispatcher
maps HTTP outcomes onto the ``EnhancementError`` taxonomy and runs the final
text through the output sanitizer. Retrying is left to the caller.
"""

from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote
import json
import logging

import anthropic
import httpx
import openai

from ..aws import signer
from ..config import AIProvider, DEFAULT_BEDROCK_REGION
from .errors import (
    CustomError,
    EnhancementFailedError,
    InvalidResponseError,
    NotConfiguredError,
    error_for_status,
)
from .output_filter import filter_output
from .session import (
    ActiveSession,
    AnthropicAuth,
    BearerAuth,
    BedrockBearerAuth,
    BedrockSigV4Auth,
)

logger = logging.getLogger(__name__)

ANTHROPIC_MAX_TOKENS = 8192
BEDROCK_MAX_TOKENS = 1024
DEFAULT_TEMPERATURE = 0.3
BEDROCK_RUNTIME_SERVICE = "bedrock-runtime"

# Models that reject a temperature parameter
NO_TEMPERATURE_MODELS = frozenset({"gpt-5-mini", "gpt-5-nano"})

# Models that accept reasoning_effort, and the effort we ask for
REASONING_EFFORT: Dict[str, str] = {
    "gemini-2.5-flash": "low",
    "gemini-2.5-flash-lite": "low",
    "gpt-5-mini": "minimal",
    "gpt-5-nano": "minimal",
    "gpt-oss-120b": "low",
}

# Connection-level failures; the retry controller turns these into NetworkError
TRANSPORT_ERRORS = (
    httpx.TimeoutException,
    httpx.NetworkError,
    httpx.RemoteProtocolError,
    openai.APIConnectionError,
    anthropic.APIConnectionError,
)


def reasoning_effort_for(model: str) -> Optional[str]:
    return REASONING_EFFORT.get(model)


def _json_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


class EnhancementProvider(ABC):
    """Abstract base class for enhancement dispatchers."""

    def __init__(
        self,
        name: str,
        http_client: Optional[httpx.AsyncClient] = None,
        output_filter: Callable[[str], str] = filter_output,
    ):
        self.name = name
        self.output_filter = output_filter
        self._http_client = http_client
        self._owns_client = http_client is None

    @abstractmethod
    async def perform_request(
        self,
        system_message: str,
        user_message: str,
        session: ActiveSession,
        timeout: float,
    ) -> str:
        """Send one request and return the sanitized response text."""
        pass

    def _get_http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            self._http_client = httpx.AsyncClient()
        return self._http_client

    async def aclose(self) -> None:
        """Close the HTTP client if this provider created it."""
        if self._owns_client and self._http_client is not None:
            await self._http_client.aclose()
            self._http_client = None

    def _finish(self, text: str) -> str:
        return self.output_filter(text.strip())


class OpenAICompatibleProvider(EnhancementProvider):
    """Chat completions for OpenAI, Groq, Gemini, Cerebras, OpenRouter, Mistral and custom endpoints."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__("openai_compatible", http_client=http_client, **kwargs)

    @staticmethod
    def build_payload(system_message: str, user_message: str, model: str) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "model": model,
            "messages": [
                {"role": "system", "content": system_message},
                {"role": "user", "content": user_message},
            ],
            "stream": False,
        }
        if model not in NO_TEMPERATURE_MODELS:
            payload["temperature"] = DEFAULT_TEMPERATURE

        effort = reasoning_effort_for(model)
        if effort:
            payload["reasoning_effort"] = effort
        return payload

    async def perform_request(
        self,
        system_message: str,
        user_message: str,
        session: ActiveSession,
        timeout: float,
    ) -> str:
        auth = session.auth
        if not isinstance(auth, BearerAuth) or not auth.token:
            raise NotConfiguredError()

        base_url = session.base_url or session.provider.base_url
        if not base_url:
            raise NotConfiguredError()

        payload = self.build_payload(system_message, user_message, session.model)
        logger.debug(f"Chat completion request to {base_url} with keys {sorted(payload)}")

        try:
            client = openai.AsyncOpenAI(
                api_key=auth.token,
                base_url=base_url,
                timeout=timeout,
                max_retries=0,
                http_client=self._get_http_client(),
            )
            raw = await client.chat.completions.with_raw_response.create(**payload)
        except openai.APIStatusError as e:
            raise error_for_status(e.status_code, e.response.text) from e
        except TRANSPORT_ERRORS:
            raise
        except Exception as e:
            logger.error(f"Chat completion request failed: {e}")
            raise CustomError(str(e)) from e

        return self._finish(self._extract_content(raw.http_response))

    def _extract_content(self, response: httpx.Response) -> str:
        data = _json_body(response)
        try:
            content = data["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            content = None
        if not isinstance(content, str):
            raise EnhancementFailedError()
        return content


class AnthropicProvider(EnhancementProvider):
    """Anthropic messages API."""

    def __init__(self, http_client: Optional[httpx.AsyncClient] = None, **kwargs):
        super().__init__("anthropic", http_client=http_client, **kwargs)

    async def perform_request(
        self,
        system_message: str,
        user_message: str,
        session: ActiveSession,
        timeout: float,
    ) -> str:
        auth = session.auth
        if not isinstance(auth, AnthropicAuth) or not auth.api_key:
            raise NotConfiguredError()

        try:
            client = anthropic.AsyncAnthropic(
                api_key=auth.api_key,
                base_url=session.base_url or AIProvider.ANTHROPIC.base_url,
                timeout=timeout,
                max_retries=0,
                http_client=self._get_http_client(),
            )
            raw = await client.messages.with_raw_response.create(
                model=session.model,
                max_tokens=ANTHROPIC_MAX_TOKENS,
                system=system_message,
                messages=[{"role": "user", "content": user_message}],
            )
        except anthropic.APIStatusError as e:
            raise error_for_status(e.status_code, e.response.text) from e
        except TRANSPORT_ERRORS:
            raise
        except Exception as e:
            logger.error(f"Anthropic request failed: {e}")
            raise CustomError(str(e)) from e

        data = _json_body(raw.http_response)
        try:
            text = data["content"][0]["text"]
        except (KeyError, IndexError, TypeError):
            text = None
        if not isinstance(text, str):
            raise EnhancementFailedError()
        return self._finish(text)


def bedrock_runtime_url(region: str, model_id: str) -> str:
    return (
        f"https://bedrock-runtime.{region}.amazonaws.com"
        f"/model/{quote(model_id, safe='')}/converse"
    )


def build_converse_payload(
    prompt: str,
    max_tokens: int = BEDROCK_MAX_TOKENS,
    temperature: float = DEFAULT_TEMPERATURE,
) -> Dict[str, Any]:
    return {
        "messages": [{"role": "user", "content": [{"text": prompt}]}],
        "inferenceConfig": {"maxTokens": max_tokens, "temperature": temperature},
    }


def parse_converse_response(body: bytes) -> Optional[str]:
    """
    Pull the answer text out of a Bedrock response body.

    Tries the Converse shape first, preferring plain ``text`` content over
    ``reasoningContent``, then the top-level shapes other model families use.
    A body that is not JSON at all is returned as text.
    """
    try:
        data = json.loads(body)
    except ValueError:
        return body.decode("utf-8", errors="replace")
    if not isinstance(data, dict):
        return None

    output = data.get("output")
    message = output.get("message") if isinstance(output, dict) else None
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, list):
        items: List[Dict[str, Any]] = [item for item in content if isinstance(item, dict)]
        for item in items:
            if isinstance(item.get("text"), str):
                return item["text"]
        for item in items:
            reasoning = item.get("reasoningContent")
            if isinstance(reasoning, dict):
                reasoning_text = reasoning.get("reasoningText")
                if isinstance(reasoning_text, dict) and isinstance(reasoning_text.get("text"), str):
                    return reasoning_text["text"]

    for key in ("output_text", "outputText", "completion", "generated_text"):
        if isinstance(data.get(key), str):
            return data[key]

    outputs = data.get("outputs")
    if isinstance(outputs, list) and outputs and isinstance(outputs[0], dict):
        first = outputs[0]
        for key in ("text", "output_text"):
            if isinstance(first.get(key), str):
                return first[key]

    return None


class BedrockProvider(EnhancementProvider):
    """AWS Bedrock Converse API, signed with SigV4 or a bearer token."""

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        fallback_region: str = DEFAULT_BEDROCK_REGION,
        **kwargs,
    ):
        super().__init__("bedrock", http_client=http_client, **kwargs)
        self.fallback_region = fallback_region

    @staticmethod
    def resolve_region(session: ActiveSession, fallback_region: str) -> str:
        region = session.region or fallback_region
        auth = session.auth
        if isinstance(auth, (BedrockSigV4Auth, BedrockBearerAuth)) and auth.region:
            region = auth.region
        return region

    def build_request(
        self,
        system_message: str,
        user_message: str,
        session: ActiveSession,
        timeout: float,
    ) -> httpx.Request:
        """Build and authenticate the Converse request without sending it."""
        prompt = f"{system_message}\n{user_message}"
        region = self.resolve_region(session, self.fallback_region)
        if not session.model:
            raise NotConfiguredError()
        if not region:
            raise NotConfiguredError()

        try:
            request = httpx.Request(
                "POST",
                bedrock_runtime_url(region, session.model),
                headers={"Content-Type": "application/json"},
                content=json.dumps(build_converse_payload(prompt)).encode("utf-8"),
                extensions={"timeout": httpx.Timeout(timeout).as_dict()},
            )
        except httpx.InvalidURL as e:
            raise InvalidResponseError(f"Invalid Bedrock endpoint: {e}") from e

        auth = session.auth
        if isinstance(auth, BedrockSigV4Auth):
            return signer.sign(request, auth.credentials, region, BEDROCK_RUNTIME_SERVICE)
        if isinstance(auth, BedrockBearerAuth):
            token = auth.token
        elif isinstance(auth, BearerAuth):
            token = auth.token
        else:
            raise NotConfiguredError()
        if not token:
            raise NotConfiguredError()
        request.headers["Authorization"] = f"Bearer {token}"
        return request

    async def perform_request(
        self,
        system_message: str,
        user_message: str,
        session: ActiveSession,
        timeout: float,
    ) -> str:
        request = self.build_request(system_message, user_message, session, timeout)
        logger.debug(f"Bedrock Converse request to {request.url.host} for model {session.model}")

        try:
            response = await self._get_http_client().send(request)
        except TRANSPORT_ERRORS:
            raise
        except Exception as e:
            logger.error(f"Bedrock request failed: {e}")
            raise CustomError(str(e)) from e

        if response.status_code != 200:
            raise error_for_status(response.status_code, response.text)

        text = parse_converse_response(response.content)
        if text is None:
            raise EnhancementFailedError()
        return self._finish(text)


def provider_kind(session: ActiveSession) -> str:
    """Dispatcher key for a session: 'bedrock', 'anthropic' or 'openai'."""
    if session.provider is AIProvider.AWS_BEDROCK:
        return "bedrock"
    if session.provider is AIProvider.ANTHROPIC:
        return "anthropic"
    return "openai"


def create_providers(
    http_client: Optional[httpx.AsyncClient] = None,
    fallback_region: str = DEFAULT_BEDROCK_REGION,
) -> Dict[str, EnhancementProvider]:
    """One dispatcher per provider family, sharing an HTTP client when given."""
    return {
        "openai": OpenAICompatibleProvider(http_client=http_client),
        "anthropic": AnthropicProvider(http_client=http_client),
        "bedrock": BedrockProvider(http_client=http_client, fallback_region=fallback_region),
    }
