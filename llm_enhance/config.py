"""
Provider catalogue and configuration values for AI enhancement.

Configuration is an injected value: nothing here persists settings. Secrets
live on the configuration object (kept out of repr) or come from the
environment as provider-level fallbacks, the same way the cleanup providers
always picked up OPENAI_API_KEY / ANTHROPIC_API_KEY.
"""

import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional

# Tunables
DEFAULT_REQUEST_TIMEOUT = 30.0
DEFAULT_RATE_LIMIT_INTERVAL = 1.0
DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_INITIAL_BACKOFF = 1.0
DEFAULT_VALIDATION_TIMEOUT = 5.0
DEFAULT_SUCCESS_INDICATOR_DURATION = 2.0
DEFAULT_CREDENTIAL_CLI_TIMEOUT = 10.0
DEFAULT_BEDROCK_REGION = "us-east-1"


class AIProvider(str, Enum):
    """Supported enhancement providers. Values match the stored provider names."""

    CEREBRAS = "Cerebras"
    GROQ = "GROQ"
    GEMINI = "Gemini"
    ANTHROPIC = "Anthropic"
    OPENAI = "OpenAI"
    OPENROUTER = "OpenRouter"
    MISTRAL = "Mistral"
    CUSTOM = "Custom"
    AWS_BEDROCK = "AWS Bedrock"

    @classmethod
    def from_value(cls, value: Optional[str]) -> Optional["AIProvider"]:
        """Look up a provider by its stored name, returning None if unknown."""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None

    @property
    def base_url(self) -> str:
        """SDK base URL. Custom providers carry theirs on the configuration."""
        return _BASE_URLS.get(self, "")

    @property
    def default_model(self) -> str:
        return _DEFAULT_MODELS.get(self, "")

    @property
    def available_models(self) -> List[str]:
        return list(_AVAILABLE_MODELS.get(self, []))

    @property
    def api_key_env_var(self) -> Optional[str]:
        return _API_KEY_ENV_VARS.get(self)


_BASE_URLS: Dict[AIProvider, str] = {
    AIProvider.CEREBRAS: "https://api.cerebras.ai/v1",
    AIProvider.GROQ: "https://api.groq.com/openai/v1",
    AIProvider.GEMINI: "https://generativelanguage.googleapis.com/v1beta/openai",
    AIProvider.ANTHROPIC: "https://api.anthropic.com",
    AIProvider.OPENAI: "https://api.openai.com/v1",
    AIProvider.OPENROUTER: "https://openrouter.ai/api/v1",
    AIProvider.MISTRAL: "https://api.mistral.ai/v1",
}

_DEFAULT_MODELS: Dict[AIProvider, str] = {
    AIProvider.CEREBRAS: "gpt-oss-120b",
    AIProvider.GROQ: "openai/gpt-oss-120b",
    AIProvider.GEMINI: "gemini-2.5-flash-lite",
    AIProvider.ANTHROPIC: "claude-sonnet-4-5",
    AIProvider.OPENAI: "gpt-5.1",
    AIProvider.OPENROUTER: "openai/gpt-oss-120b",
    AIProvider.MISTRAL: "mistral-large-latest",
    AIProvider.AWS_BEDROCK: "meta.llama3-70b-instruct-v1:0",
}

_AVAILABLE_MODELS: Dict[AIProvider, List[str]] = {
    AIProvider.CEREBRAS: [
        "gpt-oss-120b",
        "llama-3.1-8b",
        "llama-4-scout-17b-16e-instruct",
        "llama-3.3-70b",
        "qwen-3-32b",
        "qwen-3-235b-a22b-instruct-2507",
    ],
    AIProvider.GROQ: [
        "llama-3.1-8b-instant",
        "llama-3.3-70b-versatile",
        "moonshotai/kimi-k2-instruct-0905",
        "qwen/qwen3-32b",
        "meta-llama/llama-4-maverick-17b-128e-instruct",
        "openai/gpt-oss-120b",
        "openai/gpt-oss-20b",
    ],
    AIProvider.GEMINI: [
        "gemini-3-pro-preview",
        "gemini-2.5-pro",
        "gemini-2.5-flash-lite",
        "gemini-2.0-flash-001",
    ],
    AIProvider.ANTHROPIC: ["claude-opus-4-5", "claude-sonnet-4-5", "claude-haiku-4-5"],
    AIProvider.OPENAI: ["gpt-5.1", "gpt-5-mini", "gpt-5-nano", "gpt-4.1", "gpt-4.1-mini"],
    AIProvider.MISTRAL: [
        "mistral-large-latest",
        "mistral-medium-latest",
        "mistral-small-latest",
        "mistral-saba-latest",
    ],
}

_API_KEY_ENV_VARS: Dict[AIProvider, str] = {
    AIProvider.CEREBRAS: "CEREBRAS_API_KEY",
    AIProvider.GROQ: "GROQ_API_KEY",
    AIProvider.GEMINI: "GEMINI_API_KEY",
    AIProvider.ANTHROPIC: "ANTHROPIC_API_KEY",
    AIProvider.OPENAI: "OPENAI_API_KEY",
    AIProvider.OPENROUTER: "OPENROUTER_API_KEY",
    AIProvider.MISTRAL: "MISTRAL_API_KEY",
    AIProvider.CUSTOM: "CUSTOM_PROVIDER_API_KEY",
    AIProvider.AWS_BEDROCK: "AWS_BEARER_TOKEN_BEDROCK",
}


def _non_empty(value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    value = value.strip()
    return value or None


@dataclass
class AIConfiguration:
    """
    A complete enhancement configuration profile.

    Secrets are kept out of repr and read through the accessor methods so
    callers never need to know where they are stored.
    """
    name: str
    provider: str
    model: str = ""
    api_key: Optional[str] = field(default=None, repr=False)
    aws_profile_name: Optional[str] = None
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = field(default=None, repr=False)
    region: Optional[str] = None
    base_url: Optional[str] = None
    enable_cross_region: bool = False
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    created_at: float = field(default_factory=time.time)
    last_used_at: Optional[float] = None

    def get_api_key(self) -> Optional[str]:
        return _non_empty(self.api_key)

    def get_aws_secret_access_key(self) -> Optional[str]:
        return _non_empty(self.aws_secret_access_key)

    @property
    def has_api_key(self) -> bool:
        return self.get_api_key() is not None

    @property
    def has_aws_secret_key(self) -> bool:
        return self.get_aws_secret_access_key() is not None

    @property
    def has_aws_profile_name(self) -> bool:
        return _non_empty(self.aws_profile_name) is not None

    @property
    def provider_enum(self) -> Optional[AIProvider]:
        return AIProvider.from_value(self.provider)

    @property
    def resolved_model(self) -> str:
        """The configured model, or the provider default when left empty."""
        if self.model.strip():
            return self.model.strip()
        provider = self.provider_enum
        return provider.default_model if provider else ""

    @property
    def validation_errors(self) -> List[str]:
        """Lightweight field checks; no filesystem or network access."""
        errors: List[str] = []

        if not self.name.strip():
            errors.append("Configuration name is required")

        provider = self.provider_enum
        if not self.provider:
            errors.append("Provider is required")
        elif provider is None:
            errors.append(f"Invalid provider: {self.provider}")

        if not self.model.strip():
            errors.append("Model is required")

        if provider is AIProvider.AWS_BEDROCK:
            has_access_key = bool(_non_empty(self.aws_access_key_id)) and self.has_aws_secret_key
            if not (self.has_api_key or self.has_aws_profile_name or has_access_key):
                errors.append("AWS Bedrock requires an API key, Access Key, or AWS Profile")
            if not _non_empty(self.region):
                errors.append("Region is required for AWS Bedrock")
        elif provider is not None:
            if not self.has_api_key:
                errors.append(f"API key is required for {self.provider}")
            if provider is AIProvider.CUSTOM and not _non_empty(self.base_url):
                errors.append("Base URL is required for a custom provider")

        return errors

    @property
    def is_valid(self) -> bool:
        return not self.validation_errors

    @property
    def auth_method(self) -> str:
        """One of 'aws_profile', 'aws_access_key', 'api_key' or 'none'."""
        if self.has_aws_profile_name:
            return "aws_profile"
        if _non_empty(self.aws_access_key_id) and self.has_aws_secret_key:
            return "aws_access_key"
        if self.has_api_key:
            return "api_key"
        return "none"

    @property
    def summary(self) -> str:
        if self.provider_enum is AIProvider.AWS_BEDROCK:
            return f"{self.provider} • {self.region or 'unknown'} • {self.model}"
        return f"{self.provider} • {self.model}"

    @property
    def masked_api_key(self) -> str:
        key = self.get_api_key()
        if not key or len(key) <= 8:
            return "****"
        return f"{key[:4]}...{key[-4:]}"

    def signature(self) -> str:
        """Structural fingerprint used to detect a configuration changing mid-flight."""
        return "|".join([
            self.provider,
            self.model,
            self.region or "",
            self.aws_profile_name or "",
            self.aws_access_key_id or "",
            str(self.has_aws_secret_key),
            str(self.has_api_key),
        ])


@dataclass
class ProviderDefaults:
    """
    Provider-level settings used when a configuration leaves something out.

    Keys given explicitly in ``api_keys`` win over the environment.
    """
    selected_provider: AIProvider = AIProvider.GEMINI
    selected_model: Optional[str] = None
    bedrock_region: str = field(
        default_factory=lambda: os.getenv("AWS_REGION") or DEFAULT_BEDROCK_REGION
    )
    api_keys: Dict[AIProvider, str] = field(default_factory=dict, repr=False)

    def api_key(self, provider: AIProvider) -> str:
        """Provider-level fallback key, or an empty string if none is set."""
        key = self.api_keys.get(provider)
        if key:
            return key.strip()
        env_var = provider.api_key_env_var
        if env_var:
            return os.getenv(env_var, "").strip()
        return ""

    @property
    def current_model(self) -> str:
        if self.selected_model:
            return self.selected_model
        return self.selected_provider.default_model


class ConfigurationStore:
    """In-memory set of configurations plus which one is active."""

    def __init__(self, configurations: Optional[List[AIConfiguration]] = None):
        self._configurations: Dict[str, AIConfiguration] = {}
        self._active_id: Optional[str] = None
        for config in configurations or []:
            self.add(config)

    def add(self, config: AIConfiguration) -> None:
        self._configurations[config.id] = config

    def get(self, config_id: str) -> Optional[AIConfiguration]:
        return self._configurations.get(config_id)

    def remove(self, config_id: str) -> None:
        self._configurations.pop(config_id, None)
        if self._active_id == config_id:
            self._active_id = None

    def set_active(self, config_id: str) -> None:
        config = self._configurations.get(config_id)
        if config is None:
            raise KeyError(f"Unknown configuration: {config_id}")
        config.last_used_at = time.time()
        self._active_id = config_id

    @property
    def active_id(self) -> Optional[str]:
        return self._active_id

    @property
    def active(self) -> Optional[AIConfiguration]:
        if self._active_id is None:
            return None
        return self._configurations.get(self._active_id)
