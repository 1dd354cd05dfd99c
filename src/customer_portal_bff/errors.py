# src/customer_portal_bff/errors.py

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Optional, TypeVar

T = TypeVar("T")


class AuthErrorKind(str, Enum):
    INVALID_CREDENTIALS = "invalid_credentials"
    OTP_INVALID_OR_EXPIRED = "otp_invalid_or_expired"
    TOKEN_INVALID = "token_invalid"
    EXPIRED = "expired"
    NOT_FOUND = "not_found"
    RATE_LIMITED = "rate_limited"
    TIMEOUT = "timeout"
    NETWORK = "network"
    SERVER = "server"
    # A newer switch/logout/expiry overtook this operation before it completed
    SUPERSEDED = "superseded"


TRANSIENT_KINDS = frozenset({AuthErrorKind.TIMEOUT, AuthErrorKind.NETWORK})
USER_CORRECTABLE_KINDS = frozenset(
    {AuthErrorKind.INVALID_CREDENTIALS, AuthErrorKind.OTP_INVALID_OR_EXPIRED}
)
SESSION_REJECTED_KINDS = frozenset({AuthErrorKind.TOKEN_INVALID, AuthErrorKind.EXPIRED})

TIMEOUT_MESSAGE = "Server not responding. Please try again."
NETWORK_MESSAGE = "Could not reach the server. Please check your connection and try again."
SERVER_MESSAGE = "An unexpected server error occurred."


@dataclass(frozen=True)
class AuthError:
    kind: AuthErrorKind
    message: str
    status_code: Optional[int] = None

    @property
    def is_transient(self) -> bool:
        return self.kind in TRANSIENT_KINDS

    @property
    def user_correctable(self) -> bool:
        return self.kind in USER_CORRECTABLE_KINDS

    @property
    def rejects_session(self) -> bool:
        return self.kind in SESSION_REJECTED_KINDS


@dataclass(frozen=True)
class AuthResult(Generic[T]):
    """
    Outcome of a gateway or session operation.
    Exactly one of `value` / `error` is meaningful; callers branch on `ok`.
    """
    value: Optional[T] = None
    error: Optional[AuthError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T = None) -> "AuthResult[T]":
        return cls(value=value)

    @classmethod
    def failure(
        cls, kind: AuthErrorKind, message: str, status_code: Optional[int] = None
    ) -> "AuthResult[T]":
        return cls(error=AuthError(kind=kind, message=message, status_code=status_code))


class AuthenticationExpired(Exception):
    """
    Raised by the dispatcher after an authentication failure was observed on a
    protected request. The session has already been cleared when this is raised.
    """

    def __init__(self, message: str = "Authentication expired", status: int = 401, scope: str = "customer"):
        self.message = message
        self.status = status
        self.scope = scope
        super().__init__(message)
