"""
Active session construction and race-safe session switching.

An ``ActiveSession`` is an immutable snapshot of provider, model, region and
auth material. The ``SessionCoordinator`` owns the current session and a
switch token; asynchronous builds (AWS profile resolution) may only commit
while the token they captured is still current, so the most recently started
switch always wins regardless of completion order.

All coordinator state is touched from the event loop only.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, List, Optional, Union

from ..aws.profiles import AWSCredentials, AWSProfileError, AWSProfileService
from ..config import AIConfiguration, AIProvider, ConfigurationStore, ProviderDefaults

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BearerAuth:
    """``Authorization: Bearer`` token for OpenAI-compatible providers."""
    token: str = field(repr=False)


@dataclass(frozen=True)
class AnthropicAuth:
    api_key: str = field(repr=False)


@dataclass(frozen=True)
class BedrockSigV4Auth:
    credentials: AWSCredentials
    region: str


@dataclass(frozen=True)
class BedrockBearerAuth:
    token: str = field(repr=False)
    region: str = ""


SessionAuth = Union[BearerAuth, AnthropicAuth, BedrockSigV4Auth, BedrockBearerAuth]


@dataclass(frozen=True)
class ActiveSession:
    """Provider, model, region and credentials for a family of enhancement requests."""
    provider: AIProvider
    model: str
    region: Optional[str]
    auth: SessionAuth
    base_url: Optional[str] = None


class SessionStatus(str, Enum):
    IDLE = "idle"
    SWITCHING = "switching"
    READY = "ready"
    ENHANCING = "enhancing"
    ERROR = "error"


@dataclass(frozen=True)
class SessionState:
    status: SessionStatus
    session: Optional[ActiveSession] = None
    config_id: Optional[str] = None
    message: Optional[str] = None

    @classmethod
    def idle(cls) -> "SessionState":
        return cls(SessionStatus.IDLE)

    @classmethod
    def switching(cls, config_id: Optional[str]) -> "SessionState":
        return cls(SessionStatus.SWITCHING, config_id=config_id)

    @classmethod
    def ready(cls, session: ActiveSession) -> "SessionState":
        return cls(SessionStatus.READY, session=session)

    @classmethod
    def enhancing(cls, session: ActiveSession) -> "SessionState":
        return cls(SessionStatus.ENHANCING, session=session)

    @classmethod
    def error(cls, message: str) -> "SessionState":
        return cls(SessionStatus.ERROR, message=message)


def build_session(
    config: AIConfiguration, defaults: ProviderDefaults
) -> Optional[ActiveSession]:
    """
    Build a session from a configuration without any I/O.

    Returns None when the inputs are insufficient, and also for AWS profile
    configurations, which need asynchronous credential resolution.
    """
    provider = config.provider_enum
    if provider is None:
        return None
    model = config.resolved_model

    if provider is AIProvider.AWS_BEDROCK:
        if config.has_aws_profile_name:
            return None

        region = config.region or defaults.bedrock_region
        access_key_id = (config.aws_access_key_id or "").strip()
        secret_access_key = config.get_aws_secret_access_key()
        if access_key_id and secret_access_key:
            credentials = AWSCredentials(
                access_key_id=access_key_id,
                secret_access_key=secret_access_key,
                region=region,
            )
            return ActiveSession(
                provider=provider,
                model=model,
                region=region,
                auth=BedrockSigV4Auth(credentials, region),
            )

        token = config.get_api_key() or defaults.api_key(provider)
        if token:
            return ActiveSession(
                provider=provider,
                model=model,
                region=region,
                auth=BedrockBearerAuth(token, region),
            )
        return None

    api_key = config.get_api_key() or defaults.api_key(provider)
    if not api_key:
        return None

    if provider is AIProvider.ANTHROPIC:
        return ActiveSession(
            provider=provider,
            model=model,
            region=None,
            auth=AnthropicAuth(api_key),
            base_url=config.base_url,
        )

    return ActiveSession(
        provider=provider,
        model=model,
        region=config.region,
        auth=BearerAuth(api_key),
        base_url=config.base_url,
    )


def build_default_session(defaults: ProviderDefaults) -> Optional[ActiveSession]:
    """Session from provider-level settings alone, used when no configuration is active."""
    provider = defaults.selected_provider
    model = defaults.current_model
    api_key = defaults.api_key(provider)
    if not api_key:
        return None

    if provider is AIProvider.AWS_BEDROCK:
        region = defaults.bedrock_region
        return ActiveSession(provider, model, region, BedrockBearerAuth(api_key, region))
    if provider is AIProvider.ANTHROPIC:
        return ActiveSession(provider, model, None, AnthropicAuth(api_key))
    return ActiveSession(provider, model, None, BearerAuth(api_key))


StateListener = Callable[[SessionState], None]


class SessionCoordinator:
    """
    Owns the active session and serializes every switch through a switch token.

    ``begin_session_switch()`` mints a token; ``set_active_session()`` only
    commits when handed the live token, so a slow build can never clobber a
    newer one.
    """

    def __init__(
        self,
        defaults: Optional[ProviderDefaults] = None,
        profile_service: Optional[AWSProfileService] = None,
        store: Optional[ConfigurationStore] = None,
    ):
        self.defaults = defaults or ProviderDefaults()
        self.profile_service = profile_service or AWSProfileService()
        self.store = store
        self._active_session: Optional[ActiveSession] = None
        self._switch_token: Optional[str] = None
        self._state = SessionState.idle()
        self._listeners: List[StateListener] = []
        self._pending_build: Optional[asyncio.Task] = None

    @property
    def active_session(self) -> Optional[ActiveSession]:
        return self._active_session

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def switch_token(self) -> Optional[str]:
        return self._switch_token

    def add_listener(self, listener: StateListener) -> Callable[[], None]:
        """Subscribe to state changes; returns an unsubscribe callable."""
        self._listeners.append(listener)

        def remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return remove

    def _set_state(self, state: SessionState) -> None:
        self._state = state
        for listener in list(self._listeners):
            listener(state)

    def begin_session_switch(self, config_id: Optional[str] = None) -> str:
        """Start a switch and return its token. Invalidates any earlier token."""
        token = uuid.uuid4().hex
        self._switch_token = token
        self._set_state(SessionState.switching(config_id))
        return token

    def set_active_session(
        self,
        session: Optional[ActiveSession],
        token: str,
        error: Optional[str] = None,
    ) -> bool:
        """
        Commit the result of a switch.

        Args:
            session: New session, or None if the build produced nothing
            token: Token returned by ``begin_session_switch``
            error: Why the build failed, when ``session`` is None

        Returns:
            True if committed, False if the token was stale and the result dropped.
        """
        if token != self._switch_token:
            logger.debug("Discarding session from a superseded switch")
            return False

        self._active_session = session
        if session is not None:
            self._set_state(SessionState.ready(session))
        elif error:
            self._set_state(SessionState.error(error))
        else:
            self._set_state(SessionState.idle())
        return True

    def mark_enhancing(self, session: ActiveSession) -> None:
        self._set_state(SessionState.enhancing(session))

    def mark_ready(self, session: ActiveSession) -> None:
        self._set_state(SessionState.ready(session))

    def mark_error(self, message: str) -> None:
        self._set_state(SessionState.error(message))

    def apply_configuration(self, config: AIConfiguration) -> Optional[asyncio.Task]:
        """
        Rebuild the session for a configuration.

        Returns the background task for AWS profile configurations (so callers
        may await it), otherwise None after committing synchronously.
        """
        token = self.begin_session_switch(config.id)
        logger.info(f"Switching session to configuration: {config.name}")

        profile_name = (config.aws_profile_name or "").strip()
        if config.provider_enum is AIProvider.AWS_BEDROCK and profile_name:
            self._active_session = None
            self._pending_build = asyncio.ensure_future(
                self._build_profile_session(config, profile_name, token)
            )
            return self._pending_build

        session = build_session(config, self.defaults)
        error = None if session else "AI provider not configured. Please check your API key."
        self.set_active_session(session, token, error=error)
        return None

    async def _build_profile_session(
        self, config: AIConfiguration, profile_name: str, token: str
    ) -> None:
        model = config.resolved_model
        region = config.region or self.defaults.bedrock_region
        try:
            credentials = await self.profile_service.resolve_credentials(profile_name)
        except AWSProfileError as e:
            logger.warning(f"Could not resolve AWS profile '{profile_name}': {e}")
            self.set_active_session(None, token, error=str(e))
            return

        resolved_region = credentials.region or region
        self.set_active_session(
            ActiveSession(
                provider=AIProvider.AWS_BEDROCK,
                model=model,
                region=resolved_region,
                auth=BedrockSigV4Auth(credentials, resolved_region),
            ),
            token,
        )

    def rebuild_active_session(self) -> Optional[asyncio.Task]:
        """Rebuild from the store's active configuration, or from provider defaults."""
        active = self.store.active if self.store is not None else None
        if active is not None:
            return self.apply_configuration(active)

        token = self.begin_session_switch()
        session = build_default_session(self.defaults)
        error = None if session else "AI provider not configured. Please check your API key."
        self.set_active_session(session, token, error=error)
        return None

    async def wait_for_pending(self) -> None:
        """Wait for an in-flight profile build, if any."""
        if self._pending_build is not None and not self._pending_build.done():
            await self._pending_build
