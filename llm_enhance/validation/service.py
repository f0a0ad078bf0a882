"""
Validated configuration switching.

``switch_to_configuration`` probes a configuration before making it active.
The probe races a timer; results are committed only if nothing changed while
the probe was in flight (same configuration id, same structural signature,
same switch token). Anything else is dropped as stale.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

import httpx

from ..aws.profiles import AWSCredentials, AWSProfileError, AWSProfileService
from ..config import (
    AIConfiguration,
    AIProvider,
    ConfigurationStore,
    DEFAULT_BEDROCK_REGION,
    DEFAULT_SUCCESS_INDICATOR_DURATION,
    DEFAULT_VALIDATION_TIMEOUT,
)
from ..enhancement.session import SessionCoordinator
from . import probes
from .probes import ValidationResult

logger = logging.getLogger(__name__)


class ValidationErrorKind(str, Enum):
    TIMEOUT = "timeout"
    INVALID_CREDENTIALS = "invalid_credentials"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    UNKNOWN = "unknown"


_RECOVERY_SUGGESTIONS = {
    ValidationErrorKind.TIMEOUT: "Try again or check your network connection.",
    ValidationErrorKind.INVALID_CREDENTIALS: "Edit the configuration to update your API key.",
    ValidationErrorKind.RATE_LIMITED: "Wait a moment before trying again.",
    ValidationErrorKind.NETWORK_ERROR: "Check your internet connection and try again.",
    ValidationErrorKind.PROVIDER_UNAVAILABLE: "Try again later or use a different configuration.",
    ValidationErrorKind.UNKNOWN: "Please try again.",
}


class ConfigurationValidationError(Exception):
    """
    Why a configuration failed validation.

    Compared by value, so two errors of the same kind and detail are equal.
    """

    def __init__(
        self,
        kind: ValidationErrorKind,
        detail: Optional[str] = None,
        retry_after: Optional[float] = None,
    ):
        self.kind = kind
        self.detail = detail
        self.retry_after = retry_after
        super().__init__(self.description)

    @classmethod
    def timeout(cls) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.TIMEOUT)

    @classmethod
    def invalid_credentials(cls, provider: str) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.INVALID_CREDENTIALS, provider)

    @classmethod
    def rate_limited(cls, retry_after: Optional[float] = None) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.RATE_LIMITED, retry_after=retry_after)

    @classmethod
    def network_error(cls, detail: str) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.NETWORK_ERROR, detail)

    @classmethod
    def provider_unavailable(cls, provider: str) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.PROVIDER_UNAVAILABLE, provider)

    @classmethod
    def unknown(cls, detail: str) -> "ConfigurationValidationError":
        return cls(ValidationErrorKind.UNKNOWN, detail)

    @classmethod
    def from_status_code(
        cls, status_code: int, provider: str, message: Optional[str] = None
    ) -> "ConfigurationValidationError":
        if status_code in (401, 403):
            return cls.invalid_credentials(provider)
        if status_code == 429:
            return cls.rate_limited()
        if 500 <= status_code <= 599:
            return cls.provider_unavailable(provider)
        return cls.unknown(message or f"HTTP {status_code}")

    @property
    def description(self) -> str:
        kind = self.kind
        if kind is ValidationErrorKind.TIMEOUT:
            return "Connection timed out. The provider may be slow or unavailable."
        if kind is ValidationErrorKind.INVALID_CREDENTIALS:
            return f"Invalid credentials for {self.detail}."
        if kind is ValidationErrorKind.RATE_LIMITED:
            if self.retry_after is not None:
                return f"Rate limited. Try again in {self.retry_after:.0f} seconds."
            return "Rate limited. Try again later."
        if kind is ValidationErrorKind.NETWORK_ERROR:
            return f"Network error: {self.detail}"
        if kind is ValidationErrorKind.PROVIDER_UNAVAILABLE:
            return f"{self.detail} is currently unavailable."
        return self.detail or "Validation failed"

    @property
    def recovery_suggestion(self) -> str:
        return _RECOVERY_SUGGESTIONS[self.kind]

    def _key(self):
        return (self.kind, self.detail, self.retry_after)

    def __eq__(self, other):
        if not isinstance(other, ConfigurationValidationError):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self):
        return hash(self._key())

    def __repr__(self):
        return f"ConfigurationValidationError({self.kind.value!r}, {self.detail!r})"


@dataclass(frozen=True)
class ValidationContext:
    """Snapshot taken when a validation starts."""
    config_id: str
    signature: str
    token: str

    @classmethod
    def capture(cls, config: AIConfiguration, token: str) -> "ValidationContext":
        return cls(config.id, config.signature(), token)

    def matches(self, other: Optional["ValidationContext"]) -> bool:
        return other is not None and self == other


Probe = Callable[[AIConfiguration], Awaitable[ValidationResult]]
Listener = Callable[["ConfigurationValidationService"], None]


class ConfigurationValidationService:
    """
    Validates configurations before switching to them.

    Args:
        store: Where configurations live and which one is active
        coordinator: Session coordinator to rebuild on a successful switch
        profile_service: AWS profile resolver for Bedrock profile configurations
        validation_timeout: Seconds before a probe loses to the timer
        success_indicator_duration: Seconds ``last_success_config_id`` stays set
        http_client: Client for probe requests
        probe: Replaces the built-in provider probes
    """

    def __init__(
        self,
        store: ConfigurationStore,
        coordinator: Optional[SessionCoordinator] = None,
        profile_service: Optional[AWSProfileService] = None,
        validation_timeout: float = DEFAULT_VALIDATION_TIMEOUT,
        success_indicator_duration: float = DEFAULT_SUCCESS_INDICATOR_DURATION,
        http_client: Optional[httpx.AsyncClient] = None,
        probe: Optional[Probe] = None,
    ):
        self.store = store
        self.coordinator = coordinator
        self.profile_service = profile_service or AWSProfileService()
        self.validation_timeout = validation_timeout
        self.success_indicator_duration = success_indicator_duration
        self.http_client = http_client
        self._probe = probe or self.validate_configuration

        self.validating_config_id: Optional[str] = None
        self.validation_error: Optional[ConfigurationValidationError] = None
        self.last_success_config_id: Optional[str] = None

        self._current_task: Optional[asyncio.Task] = None
        self._current_context: Optional[ValidationContext] = None
        self._switch_token: Optional[str] = None
        self._success_clear_handle: Optional[asyncio.TimerHandle] = None
        self._listeners: List[Listener] = []

    def add_listener(self, listener: Listener) -> None:
        self._listeners.append(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            listener(self)

    def switch_to_configuration(self, config_id: str) -> Optional[asyncio.Task]:
        """
        Validate and, on success, activate a configuration.

        Cancels any validation already in flight. Returns the validation task,
        or None when the configuration fails fast (unknown id, invalid fields).
        """
        self.cancel_validation()
        self.validation_error = None

        config = self.store.get(config_id)
        if config is None:
            self.validation_error = ConfigurationValidationError.unknown("Configuration not found")
            self._notify()
            return None

        errors = config.validation_errors
        if errors:
            self.validation_error = ConfigurationValidationError.unknown(errors[0])
            self._notify()
            return None

        token = uuid.uuid4().hex
        self._switch_token = token
        context = ValidationContext.capture(config, token)
        self._current_context = context
        self.validating_config_id = config_id
        self._notify()

        logger.info(f"Validating configuration: {config.name}")
        self._current_task = asyncio.ensure_future(self._perform_validation(config, context))
        return self._current_task

    def cancel_validation(self) -> None:
        """Stop the in-flight validation; its result will never be applied."""
        if self._current_task is not None and not self._current_task.done():
            self._current_task.cancel()
        self._current_task = None
        self.validating_config_id = None
        self._current_context = None

    def clear_error(self) -> None:
        self.validation_error = None
        self._notify()

    async def _race_probe(self, config: AIConfiguration) -> Optional[ValidationResult]:
        """Run the probe against the timer. None means the timer won."""
        probe = asyncio.ensure_future(self._probe(config))
        timer = asyncio.ensure_future(asyncio.sleep(self.validation_timeout))
        try:
            done, _ = await asyncio.wait({probe, timer}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            probe.cancel()
            timer.cancel()

        if probe not in done:
            return None
        try:
            return probe.result()
        except asyncio.CancelledError:
            return ValidationResult.failure("Request cancelled")
        except Exception as e:
            logger.exception("Validation probe raised")
            return ValidationResult.failure(str(e))

    async def _perform_validation(self, config: AIConfiguration, context: ValidationContext) -> None:
        provider = config.provider_enum or AIProvider.GEMINI
        result = await self._race_probe(config)

        if self.validating_config_id != config.id or not context.matches(self._current_context):
            logger.debug(f"Dropping stale validation result for {config.name}")
            return

        # Edited while the probe was in flight
        stored = self.store.get(config.id)
        if stored is None or stored.signature() != context.signature:
            logger.debug(f"Configuration {config.name} changed during validation")
            self.validating_config_id = None
            self._current_context = None
            self._notify()
            return

        self.validating_config_id = None
        self._current_context = None

        if result is None:
            self.validation_error = ConfigurationValidationError.timeout()
        elif result.success:
            self._apply_configuration_atomically(config, context.token)
        elif result.http_status_code is not None:
            self.validation_error = ConfigurationValidationError.from_status_code(
                result.http_status_code, provider.value, result.error_message
            )
        elif result.error_message and "timed out" in result.error_message:
            self.validation_error = ConfigurationValidationError.timeout()
        elif result.error_message and "cancelled" in result.error_message:
            pass
        else:
            self.validation_error = ConfigurationValidationError.unknown(
                result.error_message or "Validation failed"
            )

        if self.validation_error is not None:
            logger.warning(f"Validation failed for {config.name}: {self.validation_error}")
        self._notify()

    async def validate_configuration(self, config: AIConfiguration) -> ValidationResult:
        """Run the provider-appropriate probe for a configuration."""
        provider = config.provider_enum
        if provider is None:
            return ValidationResult.failure("Invalid provider")

        if provider is AIProvider.AWS_BEDROCK:
            return await self._validate_bedrock(config)

        api_key = config.get_api_key()
        if not api_key:
            return ValidationResult.failure("API key not found")

        if provider is AIProvider.ANTHROPIC:
            return await probes.verify_anthropic_key(
                api_key,
                config.model,
                timeout=self.validation_timeout,
                http_client=self.http_client,
            )
        return await probes.verify_openai_compatible_key(
            api_key,
            provider,
            config.model,
            base_url=config.base_url,
            timeout=self.validation_timeout,
            http_client=self.http_client,
        )

    async def _validate_bedrock(self, config: AIConfiguration) -> ValidationResult:
        region = config.region or DEFAULT_BEDROCK_REGION
        profile_name = (config.aws_profile_name or "").strip()
        access_key_id = (config.aws_access_key_id or "").strip()
        secret_key = config.get_aws_secret_access_key()
        api_key = config.get_api_key()

        if profile_name:
            try:
                credentials = await self.profile_service.resolve_credentials(profile_name)
            except AWSProfileError as e:
                return ValidationResult.failure(f"Failed to resolve AWS Profile: {e}")
        elif access_key_id and secret_key:
            credentials = AWSCredentials(access_key_id, secret_key, region=region)
        elif api_key:
            return await probes.verify_bedrock_bearer_token(
                api_key,
                region,
                config.model,
                timeout=self.validation_timeout,
                http_client=self.http_client,
            )
        else:
            return ValidationResult.failure("No valid authentication method found")

        return await probes.verify_aws_credentials(
            credentials,
            region,
            model_id=config.model,
            timeout=self.validation_timeout,
            http_client=self.http_client,
        )

    def _show_success_indicator(self, config_id: str) -> None:
        self.last_success_config_id = config_id
        if self._success_clear_handle is not None:
            self._success_clear_handle.cancel()
        loop = asyncio.get_running_loop()
        self._success_clear_handle = loop.call_later(
            self.success_indicator_duration, self._clear_success_indicator
        )

    def _clear_success_indicator(self) -> None:
        self.last_success_config_id = None
        self._success_clear_handle = None
        self._notify()

    def _apply_configuration_atomically(self, config: AIConfiguration, token: str) -> None:
        if self._switch_token != token:
            return
        self.store.set_active(config.id)
        if self.coordinator is not None:
            self.coordinator.apply_configuration(config)
        logger.info(f"Switched to configuration: {config.name}")
        self._show_success_indicator(config.id)
