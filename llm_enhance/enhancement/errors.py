"""
Request and dispatch errors for AI enhancement.

Every error carries a human-readable description and a recovery suggestion.
``retryable`` marks the transient kinds the retry controller may retry.
"""

from typing import Optional


class EnhancementError(Exception):
    """Base exception for enhancement request failures."""

    description = "AI enhancement failed."
    recovery_suggestion: Optional[str] = "Please try again."
    retryable = False

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.description)

    @property
    def kind(self) -> str:
        return type(self).__name__


class NotConfiguredError(EnhancementError):
    description = "AI provider not configured. Please check your API key."
    recovery_suggestion = "Edit the configuration to add credentials."


class InvalidResponseError(EnhancementError):
    description = "Invalid response from AI provider."


class EnhancementFailedError(EnhancementError):
    description = "AI enhancement failed to process the text."


class NetworkError(EnhancementError):
    description = "Network connection failed. Check your internet."
    recovery_suggestion = "Check your internet connection and try again."
    retryable = True


class ServerError(EnhancementError):
    description = "The AI provider's server encountered an error. Please try again later."
    recovery_suggestion = "Try again later or use a different configuration."
    retryable = True


class RateLimitExceededError(EnhancementError):
    description = "Rate limit exceeded. Please try again later."
    recovery_suggestion = "Wait a moment before trying again."
    retryable = True


class APIKeyInvalidError(EnhancementError):
    description = "The API key appears to be invalid or has been revoked."
    recovery_suggestion = "Edit the configuration to update your API key."


class CustomError(EnhancementError):
    """Any other failure; ``detail`` keeps the raw provider response for diagnostics."""

    recovery_suggestion = None

    def __init__(self, detail: str):
        self.detail = detail
        super().__init__(detail)


def error_for_status(status_code: int, body: str) -> EnhancementError:
    """Map a non-success HTTP status to the dispatch error taxonomy."""
    if status_code == 429:
        return RateLimitExceededError()
    if status_code in (401, 403):
        return APIKeyInvalidError()
    if 500 <= status_code <= 599:
        return ServerError()
    return CustomError(f"HTTP {status_code}: {body}")
