from __future__ import annotations

import json
import math
from datetime import datetime, timedelta
from typing import Optional

from iamauth.logging import get_logger
from iamauth.storage.errors import StoreConflict
from iamauth.storage.kv import KeyValueStore
from iamauth.storage.models import LockoutState, as_utc

logger = get_logger(__name__)

LOCKOUT_KEY_PREFIX = "auth:lockout:"


class LockoutPolicy:
    """Consecutive failed-login counter with a timed lock.

    The counter lives in the key-value store and is advanced with
    compare-and-swap, so concurrent failures from several orchestrator
    instances never lose an increment. Lock expiry is lazy: an elapsed
    ``locked_until`` simply reads as unlocked.
    """

    def __init__(
        self,
        kv: KeyValueStore,
        *,
        max_attempts: int,
        lock_duration: timedelta,
        counter_ttl: timedelta = timedelta(days=1),
        max_cas_attempts: int = 8,
    ) -> None:
        if max_attempts <= 0:
            raise ValueError("max_attempts must be positive")
        if lock_duration <= timedelta(0):
            raise ValueError("lock_duration must be positive")
        self.kv = kv
        self.max_attempts = max_attempts
        self.lock_duration = lock_duration
        self.max_cas_attempts = max_cas_attempts
        self._ttl_seconds = max(1, math.ceil(max(lock_duration, counter_ttl).total_seconds()))

    @staticmethod
    def _key(account_id: str) -> str:
        return f"{LOCKOUT_KEY_PREFIX}{account_id}"

    @staticmethod
    def _parse(raw: Optional[str]) -> LockoutState:
        if raw is None:
            return LockoutState()
        try:
            return LockoutState.from_dict(json.loads(raw))
        except (ValueError, KeyError, TypeError, AttributeError):
            logger.error("lockout_state_corrupt")
            return LockoutState()

    async def get_state(self, account_id: str, now: datetime) -> LockoutState:
        state = self._parse(await self.kv.get(self._key(account_id)))
        if state.locked_until is not None and not state.is_locked(now):
            # Elapsed lock reads as a clean slate
            return LockoutState()
        return state

    async def is_locked(self, account_id: str, now: datetime) -> bool:
        return (await self.get_state(account_id, now)).is_locked(now)

    async def record_failure(self, account_id: str, now: datetime) -> LockoutState:
        key = self._key(account_id)
        now = as_utc(now)
        for _ in range(self.max_cas_attempts):
            raw = await self.kv.get(key)
            state = self._parse(raw)
            if state.is_locked(now):
                return state
            attempts = (0 if state.locked_until is not None else state.failed_attempts) + 1
            locked_until = None
            if attempts >= self.max_attempts:
                attempts = self.max_attempts
                locked_until = now + self.lock_duration
            updated = LockoutState(failed_attempts=attempts, locked_until=locked_until)
            if await self.kv.compare_and_swap(
                key, raw, json.dumps(updated.to_dict()), self._ttl_seconds
            ):
                if locked_until is not None:
                    logger.warning(
                        "account_lockout_triggered",
                        account_id=account_id,
                        attempts=attempts,
                        locked_until=locked_until.isoformat(),
                    )
                return updated
        raise StoreConflict("lockout counter kept conflicting")

    async def record_success(self, account_id: str) -> None:
        await self.kv.delete(self._key(account_id))


__all__ = ["LockoutPolicy", "LOCKOUT_KEY_PREFIX"]
