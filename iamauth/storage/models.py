from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

ACCOUNT_STATUS_ACTIVE = "active"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Normalize naive timestamps (treated as UTC) and aware ones to UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _parse_dt(raw: Any) -> Optional[datetime]:
    if raw in (None, ""):
        return None
    if isinstance(raw, datetime):
        return as_utc(raw)
    return as_utc(datetime.fromisoformat(str(raw)))


def _format_dt(value: Optional[datetime]) -> Optional[str]:
    return as_utc(value).isoformat() if value else None


@dataclass
class Account:
    """Identity record owned by the directory service."""

    id: str
    email: str
    password_hash: str
    username: Optional[str] = None
    status: str = ACCOUNT_STATUS_ACTIVE
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None
    last_login: Optional[datetime] = None

    @property
    def is_active(self) -> bool:
        return self.status == ACCOUNT_STATUS_ACTIVE

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Account":
        return cls(
            id=str(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            username=data.get("username"),
            status=data.get("status") or ACCOUNT_STATUS_ACTIVE,
            failed_attempts=int(data.get("failed_attempts") or 0),
            locked_until=_parse_dt(data.get("locked_until")),
            last_login=_parse_dt(data.get("last_login")),
        )


@dataclass
class RefreshToken:
    """Server-side refresh session record.

    ``token_id`` is the raw opaque identifier and is only populated on the
    record handed back from create/rotate; stored records are keyed by
    ``token_hash`` and never contain the raw identifier.
    """

    token_hash: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    revoked: bool = False
    revoked_at: Optional[datetime] = None
    replaced_by: Optional[str] = None
    token_id: Optional[str] = field(default=None, compare=False)

    def is_expired(self, now: datetime) -> bool:
        return as_utc(now) >= self.expires_at

    def is_live(self, now: datetime) -> bool:
        return not self.revoked and not self.is_expired(now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_hash": self.token_hash,
            "account_id": self.account_id,
            "issued_at": _format_dt(self.issued_at),
            "expires_at": _format_dt(self.expires_at),
            "revoked": self.revoked,
            "revoked_at": _format_dt(self.revoked_at),
            "replaced_by": self.replaced_by,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RefreshToken":
        return cls(
            token_hash=data["token_hash"],
            account_id=str(data["account_id"]),
            issued_at=_parse_dt(data["issued_at"]),
            expires_at=_parse_dt(data["expires_at"]),
            revoked=bool(data.get("revoked")),
            revoked_at=_parse_dt(data.get("revoked_at")),
            replaced_by=data.get("replaced_by"),
        )


@dataclass
class LockoutState:
    failed_attempts: int = 0
    locked_until: Optional[datetime] = None

    def is_locked(self, now: datetime) -> bool:
        return self.locked_until is not None and as_utc(now) < self.locked_until

    def remaining_seconds(self, now: datetime) -> int:
        if not self.is_locked(now):
            return 0
        delta = (self.locked_until - as_utc(now)).total_seconds()
        # Round up so a caller never retries a fraction of a second early
        return max(1, int(-(-delta // 1)))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failed_attempts": self.failed_attempts,
            "locked_until": _format_dt(self.locked_until),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LockoutState":
        return cls(
            failed_attempts=int(data.get("failed_attempts") or 0),
            locked_until=_parse_dt(data.get("locked_until")),
        )
