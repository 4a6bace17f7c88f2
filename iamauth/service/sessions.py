from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Callable, Optional, Union

from iamauth.logging import get_logger
from iamauth.storage.errors import StoreConflict
from iamauth.storage.kv import KeyValueStore
from iamauth.storage.models import RefreshToken, as_utc

logger = get_logger(__name__)

REFRESH_KEY_PREFIX = "auth:refresh:"
ACCOUNT_INDEX_PREFIX = "auth:account_sessions:"

REASON_UNKNOWN = "unknown"
REASON_EXPIRED = "expired"
REASON_REUSED = "reused"
REASON_REVOKED = "revoked"


@dataclass(frozen=True)
class RotationRejected:
    reason: str
    account_id: Optional[str] = None

    @property
    def reuse_detected(self) -> bool:
        return self.reason == REASON_REUSED


def hash_token_id(token_id: str) -> str:
    return hashlib.sha256(token_id.encode()).hexdigest()


def _ttl_seconds(ttl: timedelta) -> int:
    return max(1, math.ceil(ttl.total_seconds()))


class SessionRegistry:
    """Refresh-token records in the key-value store.

    Records are keyed by the SHA-256 of the opaque identifier, so a leaked
    store dump does not hand out usable refresh tokens. Revoked records are
    kept until their natural expiry; a revoked record that is presented again
    is how token replay gets detected.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        new_token_id: Callable[[], str],
        *,
        revoke_all_on_reuse: bool = False,
        max_cas_attempts: int = 5,
    ) -> None:
        self.kv = kv
        self._new_token_id = new_token_id
        self.revoke_all_on_reuse = revoke_all_on_reuse
        self.max_cas_attempts = max_cas_attempts

    @staticmethod
    def _record_key(token_hash: str) -> str:
        return f"{REFRESH_KEY_PREFIX}{token_hash}"

    @staticmethod
    def _index_key(account_id: str) -> str:
        return f"{ACCOUNT_INDEX_PREFIX}{account_id}"

    @staticmethod
    def _dump(record: RefreshToken) -> str:
        return json.dumps(record.to_dict(), separators=(",", ":"), sort_keys=True)

    def _load(self, token_hash: str, raw: Optional[str]) -> Optional[RefreshToken]:
        if raw is None:
            return None
        try:
            return RefreshToken.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError) as exc:
            # Corrupted entry is treated as absent
            logger.error(
                "refresh_record_corrupt", token_hash_prefix=token_hash[:12], error=str(exc)
            )
            return None

    def _new_record(self, account_id: str, ttl: timedelta, now: datetime) -> RefreshToken:
        token_id = self._new_token_id()
        issued_at = as_utc(now)
        return RefreshToken(
            token_hash=hash_token_id(token_id),
            account_id=account_id,
            issued_at=issued_at,
            expires_at=issued_at + ttl,
            token_id=token_id,
        )

    async def create(self, account_id: str, ttl: timedelta, now: datetime) -> RefreshToken:
        record = self._new_record(account_id, ttl, now)
        ttl_s = _ttl_seconds(ttl)
        # Index first: a dangling index entry is harmless, an unindexed record
        # would escape revoke_all_for_account.
        await self.kv.add_to_index(self._index_key(account_id), record.token_hash, ttl_s)
        created = await self.kv.compare_and_swap(
            self._record_key(record.token_hash), None, self._dump(record), ttl_s
        )
        if not created:
            raise StoreConflict("refresh token identifier collision")
        logger.info(
            "refresh_token_created",
            account_id=account_id,
            token_hash_prefix=record.token_hash[:12],
            expires_at=record.expires_at.isoformat(),
        )
        return record

    async def get(self, token_id: str, now: datetime) -> Optional[RefreshToken]:
        token_hash = hash_token_id(token_id)
        record = self._load(token_hash, await self.kv.get(self._record_key(token_hash)))
        if record is None or record.is_expired(now):
            return None
        return record

    async def rotate(
        self, old_id: str, ttl: timedelta, now: datetime
    ) -> Union[RefreshToken, RotationRejected]:
        old_hash = hash_token_id(old_id)
        key = self._record_key(old_hash)
        raw = await self.kv.get(key)
        record = self._load(old_hash, raw)
        if record is None:
            return RotationRejected(REASON_UNKNOWN)
        if record.revoked:
            return await self._rejected_revoked(record, now)
        if record.is_expired(now):
            return RotationRejected(REASON_EXPIRED, record.account_id)

        successor = self._new_record(record.account_id, ttl, now)
        retired = replace(
            record, revoked=True, revoked_at=as_utc(now), replaced_by=successor.token_hash
        )
        ttl_s = _ttl_seconds(ttl)
        await self.kv.add_to_index(
            self._index_key(record.account_id), successor.token_hash, ttl_s
        )
        # Retiring the old record and writing its successor is one atomic step,
        # guarded on the exact bytes read above.
        swapped = await self.kv.compare_and_swap(
            key,
            raw,
            self._dump(retired),
            None,
            companions={
                self._record_key(successor.token_hash): (self._dump(successor), ttl_s)
            },
        )
        if not swapped:
            await self.kv.remove_from_index(
                self._index_key(record.account_id), successor.token_hash
            )
            current = self._load(old_hash, await self.kv.get(key))
            if current is not None and current.revoked:
                return await self._rejected_revoked(current, now)
            return RotationRejected(REASON_UNKNOWN, record.account_id)

        await self.kv.remove_from_index(self._index_key(record.account_id), old_hash)
        logger.info(
            "refresh_token_rotated",
            account_id=record.account_id,
            old_hash_prefix=old_hash[:12],
            new_hash_prefix=successor.token_hash[:12],
        )
        return successor

    async def _rejected_revoked(self, record: RefreshToken, now: datetime) -> RotationRejected:
        # Only a rotated record points at a successor; a logged-out one does not.
        if record.replaced_by:
            return await self._reuse_detected(record, now)
        return RotationRejected(REASON_REVOKED, record.account_id)

    async def _reuse_detected(self, record: RefreshToken, now: datetime) -> RotationRejected:
        logger.warning(
            "refresh_token_reuse_detected",
            account_id=record.account_id,
            token_hash_prefix=record.token_hash[:12],
            revoked_at=record.revoked_at.isoformat() if record.revoked_at else None,
            replaced_by_prefix=record.replaced_by[:12] if record.replaced_by else None,
        )
        if self.revoke_all_on_reuse:
            revoked = await self.revoke_all_for_account(record.account_id, now)
            logger.warning(
                "refresh_token_reuse_sessions_revoked",
                account_id=record.account_id,
                revoked=revoked,
            )
        return RotationRejected(REASON_REUSED, record.account_id)

    async def _revoke_hash(self, token_hash: str, now: datetime) -> bool:
        key = self._record_key(token_hash)
        for _ in range(self.max_cas_attempts):
            raw = await self.kv.get(key)
            record = self._load(token_hash, raw)
            if record is None or record.revoked:
                return False
            revoked = replace(record, revoked=True, revoked_at=as_utc(now))
            if await self.kv.compare_and_swap(key, raw, self._dump(revoked), None):
                await self.kv.remove_from_index(self._index_key(record.account_id), token_hash)
                return True
        raise StoreConflict("refresh token revoke kept conflicting")

    async def revoke(self, token_id: str, now: datetime) -> bool:
        """Revoke one refresh token. Idempotent; returns whether anything changed."""
        token_hash = hash_token_id(token_id)
        changed = await self._revoke_hash(token_hash, now)
        logger.info(
            "refresh_token_revoked",
            token_hash_prefix=token_hash[:12],
            changed=changed,
        )
        return changed

    async def revoke_all_for_account(self, account_id: str, now: datetime) -> int:
        index_key = self._index_key(account_id)
        members = await self.kv.index_members(index_key)
        revoked = 0
        for token_hash in members:
            if await self._revoke_hash(token_hash, now):
                revoked += 1
        if members:
            await self.kv.remove_from_index(index_key, *members)
        logger.info("refresh_tokens_revoked_for_account", account_id=account_id, revoked=revoked)
        return revoked


__all__ = [
    "REASON_EXPIRED",
    "REASON_REUSED",
    "REASON_REVOKED",
    "REASON_UNKNOWN",
    "RotationRejected",
    "SessionRegistry",
    "hash_token_id",
]
