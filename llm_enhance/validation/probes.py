"""
Lightweight "does this configuration work" probes.

Each probe sends the smallest request its provider accepts and reports a
``ValidationResult`` instead of raising, so the caller can map status codes
onto user-facing validation errors.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator, Optional

import anthropic
import httpx
import openai

from ..aws import signer
from ..aws.profiles import AWSCredentials
from ..config import AIProvider
from ..enhancement.providers import bedrock_runtime_url, build_converse_payload

logger = logging.getLogger(__name__)

PROBE_MESSAGE = "test"
OPENAI_PROBE_MAX_TOKENS = 64
ANTHROPIC_PROBE_MAX_TOKENS = 5
BEDROCK_PROBE_MAX_TOKENS = 16
BEDROCK_BEARER_PROBE_MAX_TOKENS = 10

# Signing service for credential checks, both runtime and control plane
BEDROCK_SIGNING_SERVICE = "bedrock"


@dataclass(frozen=True)
class ValidationResult:
    success: bool
    error_message: Optional[str] = None
    http_status_code: Optional[int] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(success=True, http_status_code=200)

    @classmethod
    def failure(cls, message: str, status_code: Optional[int] = None) -> "ValidationResult":
        return cls(success=False, error_message=message, http_status_code=status_code)


@asynccontextmanager
async def _client(http_client: Optional[httpx.AsyncClient]) -> AsyncIterator[httpx.AsyncClient]:
    """Yield the injected client, or a throwaway one closed on exit."""
    if http_client is not None:
        yield http_client
        return
    async with httpx.AsyncClient() as client:
        yield client


def _json(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def extract_error_message(response: httpx.Response, include_body: bool = True) -> str:
    """``error.message`` from a JSON error body, else ``HTTP <status>[: body]``."""
    data = _json(response.text)
    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and isinstance(error.get("message"), str):
            return error["message"]
    if include_body and response.text:
        return f"HTTP {response.status_code}: {response.text[:200]}"
    return f"HTTP {response.status_code}"


def extract_aws_error_message(response: httpx.Response) -> Optional[str]:
    data = _json(response.text)
    if isinstance(data, dict) and isinstance(data.get("message"), str):
        return data["message"]
    return None


def _transport_failure(exc: Exception) -> ValidationResult:
    if isinstance(exc, (httpx.TimeoutException, openai.APITimeoutError, anthropic.APITimeoutError)):
        return ValidationResult.failure("Connection timed out")
    return ValidationResult.failure(str(exc) or type(exc).__name__)


async def verify_openai_compatible_key(
    api_key: str,
    provider: AIProvider,
    model: str,
    base_url: Optional[str] = None,
    timeout: float = 30.0,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ValidationResult:
    """Send a one-word chat completion to an OpenAI-compatible endpoint."""
    url = base_url or provider.base_url
    if not url:
        return ValidationResult.failure("Invalid API URL")

    # gpt-5 family on OpenAI only accepts max_completion_tokens
    if provider is AIProvider.OPENAI and model.startswith("gpt-5"):
        limit = {"max_completion_tokens": OPENAI_PROBE_MAX_TOKENS}
    else:
        limit = {"max_tokens": OPENAI_PROBE_MAX_TOKENS}

    async with _client(http_client) as client:
        try:
            sdk = openai.AsyncOpenAI(
                api_key=api_key,
                base_url=url,
                timeout=timeout,
                max_retries=0,
                http_client=client,
            )
            await sdk.chat.completions.with_raw_response.create(
                model=model,
                messages=[{"role": "user", "content": PROBE_MESSAGE}],
                **limit,
            )
        except openai.APIStatusError as e:
            return ValidationResult.failure(extract_error_message(e.response), e.status_code)
        except openai.APIConnectionError as e:
            return _transport_failure(e)
        except Exception as e:
            return ValidationResult.failure(str(e))

    return ValidationResult.ok()


async def verify_anthropic_key(
    api_key: str,
    model: str,
    timeout: float = 30.0,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ValidationResult:
    async with _client(http_client) as client:
        try:
            sdk = anthropic.AsyncAnthropic(
                api_key=api_key,
                base_url=AIProvider.ANTHROPIC.base_url,
                timeout=timeout,
                max_retries=0,
                http_client=client,
            )
            await sdk.messages.with_raw_response.create(
                model=model,
                max_tokens=ANTHROPIC_PROBE_MAX_TOKENS,
                messages=[{"role": "user", "content": PROBE_MESSAGE}],
            )
        except anthropic.APIStatusError as e:
            return ValidationResult.failure(
                extract_error_message(e.response, include_body=False), e.status_code
            )
        except anthropic.APIConnectionError as e:
            return _transport_failure(e)
        except Exception as e:
            return ValidationResult.failure(str(e))

    return ValidationResult.ok()


async def verify_aws_credentials(
    credentials: AWSCredentials,
    region: str,
    model_id: Optional[str] = None,
    timeout: float = 15.0,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ValidationResult:
    """
    Check SigV4 credentials against Bedrock.

    With a model id this is a tiny Converse call, which needs only invoke
    permission. Without one it lists a single foundation model instead,
    which needs ``bedrock:ListFoundationModels``.
    """
    model_id = (model_id or "").strip()
    if model_id:
        denied = "Access denied. Ensure your IAM policy allows invoking the target model."
        try:
            request = httpx.Request(
                "POST",
                bedrock_runtime_url(region, model_id),
                headers={"Content-Type": "application/json"},
                content=json.dumps(
                    build_converse_payload("Hello", max_tokens=BEDROCK_PROBE_MAX_TOKENS)
                ).encode("utf-8"),
                extensions={"timeout": httpx.Timeout(timeout).as_dict()},
            )
        except httpx.InvalidURL:
            return ValidationResult.failure("Invalid Bedrock URL")
    else:
        denied = (
            "Access denied. Ensure your IAM policy includes "
            "bedrock:ListFoundationModels permission."
        )
        try:
            request = httpx.Request(
                "GET",
                f"https://bedrock.{region}.amazonaws.com/foundation-models",
                params={"byOutputModality": "TEXT", "maxResults": "1"},
                extensions={"timeout": httpx.Timeout(timeout).as_dict()},
            )
        except httpx.InvalidURL:
            return ValidationResult.failure("Invalid Bedrock URL")

    try:
        request = signer.sign(request, credentials, region, BEDROCK_SIGNING_SERVICE)
    except signer.SigningError as e:
        return ValidationResult.failure(f"Failed to sign request: {e}")

    async with _client(http_client) as client:
        try:
            response = await client.send(request)
        except httpx.HTTPError as e:
            return _transport_failure(e)

    if response.status_code == 200:
        return ValidationResult.ok()
    if response.status_code == 401:
        return ValidationResult.failure(
            "Invalid AWS credentials. Please check your Access Key and Secret Key.", 401
        )
    if response.status_code == 403:
        return ValidationResult.failure(extract_aws_error_message(response) or denied, 403)
    return ValidationResult.failure(
        extract_aws_error_message(response) or f"HTTP {response.status_code}",
        response.status_code,
    )


async def verify_bedrock_bearer_token(
    api_key: str,
    region: str,
    model_id: str,
    timeout: float = 30.0,
    http_client: Optional[httpx.AsyncClient] = None,
) -> ValidationResult:
    if not api_key.strip() or not region.strip() or not model_id.strip():
        return ValidationResult.failure("Please provide API key, region, and model.")

    try:
        request = httpx.Request(
            "POST",
            bedrock_runtime_url(region, model_id),
            headers={
                "Content-Type": "application/json",
                "Authorization": f"Bearer {api_key}",
            },
            content=json.dumps(
                build_converse_payload("Hello", max_tokens=BEDROCK_BEARER_PROBE_MAX_TOKENS)
            ).encode("utf-8"),
            extensions={"timeout": httpx.Timeout(timeout).as_dict()},
        )
    except httpx.InvalidURL:
        return ValidationResult.failure("Invalid endpoint URL.")

    async with _client(http_client) as client:
        try:
            response = await client.send(request)
        except httpx.HTTPError as e:
            return _transport_failure(e)

    if response.status_code == 200:
        return ValidationResult.ok()
    return ValidationResult.failure(
        extract_aws_error_message(response) or f"HTTP {response.status_code}",
        response.status_code,
    )
