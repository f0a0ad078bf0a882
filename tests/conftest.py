"""Shared fixtures for the llm_enhance test suite."""

from pathlib import Path
from typing import Callable, List

import httpx
import pytest

from llm_enhance.aws.profiles import AWSCredentials
from llm_enhance.config import AIProvider

_ENV_VARS = [p.api_key_env_var for p in AIProvider if p.api_key_env_var] + [
    "AWS_REGION",
    "AWS_SHARED_CREDENTIALS_FILE",
    "AWS_CONFIG_FILE",
    "LLM_ENHANCE_API_KEY",
]


@pytest.fixture(autouse=True)
def clean_environment(monkeypatch):
    """Keep real keys and AWS settings from leaking into tests."""
    for name in _ENV_VARS:
        monkeypatch.delenv(name, raising=False)


class FakeClock:
    """Monotonic clock whose sleep advances time instantly."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: List[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


def mock_client(handler: Callable[[httpx.Request], httpx.Response]) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


class RecordingHandler:
    """MockTransport handler that replays queued responses and records requests."""

    def __init__(self, *responses: httpx.Response):
        self.responses = list(responses)
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


@pytest.fixture
def credentials() -> AWSCredentials:
    return AWSCredentials(
        access_key_id="AKIDEXAMPLE",
        secret_access_key="wJalrXUtnFEMI/K7MDENG+bPxRfiCYEXAMPLEKEY",
    )


@pytest.fixture
def aws_files(tmp_path: Path):
    """Write sample ~/.aws/credentials and ~/.aws/config files; returns their paths."""
    credentials_path = tmp_path / "credentials"
    credentials_path.write_text(
        "# static keys\n"
        "[default]\n"
        "aws_access_key_id = AKIDDEFAULT\n"
        "aws_secret_access_key = default-secret\n"
        "\n"
        "[dev]\n"
        "aws_access_key_id=AKIDDEV\n"
        "aws_secret_access_key=dev-secret\n"
        "aws_session_token=dev-token\n"
        "\n"
        "[broken]\n"
        "aws_access_key_id=AKIDBROKEN\n"
    )
    config_path = tmp_path / "config"
    config_path.write_text(
        "[default]\n"
        "region = us-east-2\n"
        "\n"
        "; profile using SSO\n"
        "[profile dev]\n"
        "region = eu-west-1\n"
        "\n"
        "[profile sso-only]\n"
        "sso_start_url = https://example.awsapps.com/start\n"
        "region = ap-southeast-2\n"
    )
    return credentials_path, config_path
