from __future__ import annotations

from typing import Optional


class MonitorError(Exception):
    retryable = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransientError(MonitorError):
    """Network failure, timeout, 429 or 5xx. Prior data is kept."""

    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class UsageFetchError(MonitorError):
    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class AuthExpiredError(MonitorError):
    retryable = True

    def __init__(self, status_code: int, message: str = "Access token rejected") -> None:
        super().__init__(message)
        self.status_code = status_code


class TokenRevokedError(MonitorError):
    """The refresh token was rejected; only an external login fixes this."""

    def __init__(self, provider: str, remediation: str) -> None:
        super().__init__(f"{provider} auth revoked. {remediation}")
        self.provider = provider
        self.remediation = remediation


class RefreshError(MonitorError):
    retryable = True

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class CredentialError(MonitorError):
    pass


__all__ = [
    "AuthExpiredError",
    "CredentialError",
    "MonitorError",
    "RefreshError",
    "TokenRevokedError",
    "TransientError",
    "UsageFetchError",
]
