"""Tagged results returned by the auth orchestrator.

Each operation returns one member of a closed union, so a caller matching on
the result has to account for every failure kind. Decision failures are
terminal for the attempt; ``TransientStoreError`` is the only retryable one.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Union


class LoginStage(str, Enum):
    START = "start"
    LOOKUP = "lookup"
    LOCK_CHECK = "lock_check"
    VERIFY = "verify"
    ISSUE = "issue"
    DONE = "done"


@dataclass(frozen=True)
class LoginSuccess:
    account_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class RefreshSuccess:
    account_id: str
    access_token: str
    access_expires_at: datetime
    refresh_token: str
    refresh_expires_at: datetime
    token_type: str = "bearer"


@dataclass(frozen=True)
class LogoutSuccess:
    revoked: int = 0


@dataclass(frozen=True)
class Authenticated:
    account_id: str
    expires_at: datetime
    key_id: str
    jti: Optional[str] = None


@dataclass(frozen=True)
class InvalidCredentials:
    message: str = "invalid credentials"


@dataclass(frozen=True)
class AccountLocked:
    retry_after_seconds: int
    message: str = "account temporarily locked"


@dataclass(frozen=True)
class InvalidRefreshToken:
    reuse_detected: bool = False
    message: str = "invalid refresh token"


@dataclass(frozen=True)
class InvalidAccessToken:
    reason: str
    message: str = "invalid access token"


@dataclass(frozen=True)
class TransientStoreError:
    stage: str
    operation: str
    retryable: bool = True
    message: str = "authentication backend unavailable"


LoginResult = Union[LoginSuccess, InvalidCredentials, AccountLocked, TransientStoreError]
RefreshResult = Union[RefreshSuccess, InvalidRefreshToken, TransientStoreError]
LogoutResult = Union[LogoutSuccess, TransientStoreError]
AuthenticateResult = Union[Authenticated, InvalidAccessToken]

__all__ = [
    "AccountLocked",
    "Authenticated",
    "AuthenticateResult",
    "InvalidAccessToken",
    "InvalidCredentials",
    "InvalidRefreshToken",
    "LoginResult",
    "LoginStage",
    "LoginSuccess",
    "LogoutResult",
    "LogoutSuccess",
    "RefreshResult",
    "RefreshSuccess",
    "TransientStoreError",
]
