from __future__ import annotations

import base64
import hashlib
import hmac
import json
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Mapping, Optional, Union

from iamauth.logging import get_logger
from iamauth.storage.models import as_utc

logger = get_logger(__name__)

ALGORITHM = "HS256"
ACCESS_TOKEN_TYPE = "access"
# 32 random bytes = 256 bits of entropy per refresh identifier
REFRESH_ID_BYTES = 32


@dataclass(frozen=True)
class SigningKey:
    key_id: str
    secret: str


@dataclass(frozen=True)
class AccessToken:
    token: str
    account_id: str
    issued_at: datetime
    expires_at: datetime
    key_id: str
    jti: str


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    issued_at: datetime
    expires_at: datetime
    key_id: str
    jti: Optional[str] = None


@dataclass(frozen=True)
class Invalid:
    reason: str


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    return base64.urlsafe_b64decode(segment + padding)


def _to_dt(value: Any) -> datetime:
    return datetime.fromtimestamp(float(value), tz=timezone.utc)


class TokenIssuer:
    """Issues and validates HS256 access tokens and opaque refresh identifiers.

    Tokens carry the signing key version in the ``kid`` header. New tokens are
    always signed with the active key; validation accepts every configured key
    so older keys can stay valid while they age out.
    """

    def __init__(
        self,
        keys: Mapping[str, str],
        active_key_id: str,
        *,
        access_ttl: timedelta,
        issuer: str,
        audience: str,
        leeway: timedelta = timedelta(0),
    ) -> None:
        if active_key_id not in keys:
            raise ValueError(f"active signing key {active_key_id!r} is not configured")
        self._keys = {kid: SigningKey(kid, secret) for kid, secret in keys.items()}
        self.active_key = self._keys[active_key_id]
        self.access_ttl = access_ttl
        self.issuer = issuer
        self.audience = audience
        self.leeway = leeway

    def _sign(self, key: SigningKey, signing_input: str) -> str:
        digest = hmac.new(
            key.secret.encode(), signing_input.encode(), hashlib.sha256
        ).digest()
        return _encode_segment(digest)

    def issue_access(self, account_id: str, now: datetime) -> AccessToken:
        issued_at = as_utc(now)
        expires_at = issued_at + self.access_ttl
        jti = str(uuid.uuid4())
        header = {"alg": ALGORITHM, "typ": "JWT", "kid": self.active_key.key_id}
        # Float NumericDates keep sub-second precision so expiry is exact
        payload = {
            "iss": self.issuer,
            "aud": self.audience,
            "sub": account_id,
            "iat": issued_at.timestamp(),
            "exp": expires_at.timestamp(),
            "type": ACCESS_TOKEN_TYPE,
            "jti": jti,
        }
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        token = f"{signing_input}.{self._sign(self.active_key, signing_input)}"
        return AccessToken(
            token=token,
            account_id=account_id,
            issued_at=issued_at,
            expires_at=expires_at,
            key_id=self.active_key.key_id,
            jti=jti,
        )

    def issue_refresh_id(self) -> str:
        return secrets.token_urlsafe(REFRESH_ID_BYTES)

    def validate_access(self, token: str, now: datetime) -> Union[TokenClaims, Invalid]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except (AttributeError, ValueError):
            return Invalid("malformed")

        try:
            header = json.loads(_decode_segment(header_b64))
        except (ValueError, TypeError):
            logger.warning("jwt_header_decode_failed")
            return Invalid("malformed")
        # Pin the algorithm to avoid alg-confusion attacks
        if not isinstance(header, dict) or header.get("alg") != ALGORITHM:
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            return Invalid("algorithm")
        kid = header.get("kid")
        if kid is not None and not isinstance(kid, str):
            logger.warning("jwt_unknown_key_id", kid_type=type(kid).__name__)
            return Invalid("unknown_key")
        key = self._keys.get(kid or self.active_key.key_id)
        if key is None:
            logger.warning("jwt_unknown_key_id", kid=header.get("kid"))
            return Invalid("unknown_key")

        expected_sig = self._sign(key, f"{header_b64}.{payload_b64}")
        if not sig_b64.isascii() or not hmac.compare_digest(expected_sig, sig_b64):
            return Invalid("signature")

        try:
            payload = json.loads(_decode_segment(payload_b64))
        except (ValueError, TypeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            return Invalid("malformed")
        if not isinstance(payload, dict):
            return Invalid("malformed")
        if payload.get("type") != ACCESS_TOKEN_TYPE:
            return Invalid("type")
        if payload.get("iss") != self.issuer:
            return Invalid("issuer")
        aud = payload.get("aud")
        if not (aud == self.audience or (isinstance(aud, list) and self.audience in aud)):
            return Invalid("audience")
        subject = payload.get("sub")
        if not subject:
            return Invalid("subject")
        try:
            exp_ts = float(payload["exp"])
            issued_at = _to_dt(payload["iat"])
            expires_at = _to_dt(exp_ts)
        except (KeyError, TypeError, ValueError, OverflowError):
            return Invalid("malformed")
        # Compare raw timestamps; a datetime round-trip can drift by a microsecond
        if as_utc(now).timestamp() > exp_ts + self.leeway.total_seconds():
            return Invalid("expired")
        return TokenClaims(
            account_id=str(subject),
            issued_at=issued_at,
            expires_at=expires_at,
            key_id=key.key_id,
            jti=payload.get("jti"),
        )


__all__ = [
    "AccessToken",
    "Invalid",
    "SigningKey",
    "TokenClaims",
    "TokenIssuer",
]
