"""Failure taxonomy shared by every delegation layer."""

from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """Stable failure kinds surfaced to callers."""

    TIMEOUT = "timeout"
    UNAVAILABLE = "unavailable"
    PROVIDER_ERROR = "provider_error"
    SESSION_EXPIRED = "session_expired"
    SESSION_NOT_FOUND = "session_not_found"
    INVALID_REQUEST = "invalid_request"

    @property
    def fallback_eligible(self) -> bool:
        """Infrastructure failures may be retried once on another provider."""
        return self in (FailureKind.TIMEOUT, FailureKind.UNAVAILABLE)


class PraxioError(Exception):
    """Base error. ``kind`` is what callers switch on, never the message."""

    kind: FailureKind = FailureKind.PROVIDER_ERROR

    def __init__(self, message: str, provider: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.provider = provider

    def __str__(self) -> str:
        if self.provider:
            return f"{self.provider}: {self.message}"
        return self.message


class ProviderTimeout(PraxioError):
    kind = FailureKind.TIMEOUT

    def __init__(self, provider: str | None, seconds: float) -> None:
        super().__init__(f"timed out after {seconds:g}s", provider)
        self.seconds = seconds


class ProviderUnavailable(PraxioError):
    kind = FailureKind.UNAVAILABLE


class ProviderError(PraxioError):
    """The provider ran but produced an error or unusable output."""

    kind = FailureKind.PROVIDER_ERROR

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        exit_code: int | None = None,
        stderr: str = "",
    ) -> None:
        super().__init__(message, provider)
        self.exit_code = exit_code
        self.stderr = stderr


class SessionExpired(PraxioError):
    kind = FailureKind.SESSION_EXPIRED

    def __init__(self, session_id: str, state: str = "expired") -> None:
        super().__init__(
            f"session {session_id} is {state}; start a new session to continue"
        )
        self.session_id = session_id
        self.state = state


class SessionNotFound(PraxioError):
    kind = FailureKind.SESSION_NOT_FOUND

    def __init__(self, session_id: str) -> None:
        super().__init__(f"session not found: {session_id}")
        self.session_id = session_id


class InvalidRequest(PraxioError):
    kind = FailureKind.INVALID_REQUEST
