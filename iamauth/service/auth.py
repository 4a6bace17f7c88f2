from __future__ import annotations

import asyncio
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from iamauth.logging import fingerprint, get_logger
from iamauth.service.lockout import LockoutPolicy
from iamauth.service.passwords import PasswordVerifier
from iamauth.service.results import (
    AccountLocked,
    Authenticated,
    AuthenticateResult,
    InvalidAccessToken,
    InvalidCredentials,
    InvalidRefreshToken,
    LoginResult,
    LoginStage,
    LoginSuccess,
    LogoutResult,
    LogoutSuccess,
    RefreshResult,
    RefreshSuccess,
    TransientStoreError,
)
from iamauth.service.sessions import RotationRejected, SessionRegistry
from iamauth.service.tokens import Invalid, TokenIssuer
from iamauth.storage.directory import DirectoryClient
from iamauth.storage.errors import StoreError
from iamauth.storage.models import Account, LockoutState, as_utc, utcnow

logger = get_logger(__name__)


class _StageFailed(Exception):
    """Internal signal carrying a TransientStoreError out of a flow."""

    def __init__(self, result: TransientStoreError) -> None:
        super().__init__(result.message)
        self.result = result


class AuthOrchestrator:
    """Login, refresh and logout flows over the directory, session and lockout stores.

    The orchestrator keeps no state between calls. Every store call is bounded
    by ``store_timeout``; idempotent calls get one retry after
    ``retry_backoff`` before the flow gives up with ``TransientStoreError``.
    Rotation and failure counting are never retried, because a retry after an
    ambiguous timeout could double-count or misreport a completed rotation as
    token reuse.
    """

    def __init__(
        self,
        directory: DirectoryClient,
        passwords: PasswordVerifier,
        tokens: TokenIssuer,
        sessions: SessionRegistry,
        lockout: LockoutPolicy,
        *,
        refresh_ttl: timedelta,
        store_timeout: float = 2.0,
        retry_backoff: float = 0.05,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.directory = directory
        self.passwords = passwords
        self.tokens = tokens
        self.sessions = sessions
        self.lockout = lockout
        self.refresh_ttl = refresh_ttl
        self.store_timeout = store_timeout
        self.retry_backoff = retry_backoff
        self._clock = clock

    def _now(self) -> datetime:
        return as_utc(self._clock())

    async def _call(
        self,
        stage: str,
        operation: str,
        func: Callable[..., Awaitable[Any]],
        *args: Any,
        idempotent: bool = True,
    ) -> Any:
        attempts = 2 if idempotent else 1
        last_error: Optional[BaseException] = None
        for attempt in range(1, attempts + 1):
            try:
                return await asyncio.wait_for(func(*args), timeout=self.store_timeout)
            except (StoreError, asyncio.TimeoutError) as exc:
                last_error = exc
                logger.warning(
                    "auth_store_call_failed",
                    stage=stage,
                    operation=operation,
                    attempt=attempt,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                if attempt < attempts:
                    await asyncio.sleep(self.retry_backoff)
        result = TransientStoreError(stage=stage, operation=operation)
        raise _StageFailed(result) from last_error

    async def _best_effort(
        self, stage: str, operation: str, func: Callable[..., Awaitable[Any]], *args: Any
    ) -> None:
        """Directory mirror writes; a failure here does not change the decision."""
        try:
            await self._call(stage, operation, func, *args)
        except _StageFailed:
            logger.warning("auth_directory_write_skipped", stage=stage, operation=operation)

    async def _lookup(self, identifier: str) -> Optional[Account]:
        if "@" in identifier:
            return await self.directory.get_account_by_email(identifier)
        return await self.directory.get_account_by_username(identifier)

    @staticmethod
    def _directory_lock_remaining(account: Account, now: datetime) -> int:
        if account.locked_until is None:
            return 0
        return LockoutState(account.failed_attempts, account.locked_until).remaining_seconds(now)

    async def login(self, identifier: str, secret: str) -> LoginResult:
        now = self._now()
        identifier = (identifier or "").strip()
        identifier_hash = fingerprint(identifier)
        stage = LoginStage.START
        if not identifier or not secret:
            await asyncio.to_thread(self.passwords.dummy_verify, secret or "")
            return InvalidCredentials()
        try:
            stage = LoginStage.LOOKUP
            account = await self._call(stage.value, "get_account", self._lookup, identifier)
            if account is None:
                await asyncio.to_thread(self.passwords.dummy_verify, secret)
                logger.info(
                    "login_failed", reason="unknown_account", identifier_hash=identifier_hash
                )
                return InvalidCredentials()

            stage = LoginStage.LOCK_CHECK
            state = await self._call(
                stage.value, "lockout_state", self.lockout.get_state, account.id, now
            )
            retry_after = max(
                state.remaining_seconds(now), self._directory_lock_remaining(account, now)
            )
            if retry_after > 0:
                logger.info(
                    "login_rejected_locked", account_id=account.id, retry_after=retry_after
                )
                return AccountLocked(retry_after_seconds=retry_after)

            stage = LoginStage.VERIFY
            verified = await asyncio.to_thread(
                self.passwords.verify, secret, account.password_hash
            )
            if not verified:
                state = await self._call(
                    stage.value,
                    "record_failure",
                    self.lockout.record_failure,
                    account.id,
                    now,
                    idempotent=False,
                )
                await self._best_effort(
                    stage.value,
                    "update_failed_attempts",
                    self.directory.update_failed_attempts,
                    account.id,
                    state.failed_attempts,
                    state.locked_until,
                )
                logger.info(
                    "login_failed",
                    reason="bad_secret",
                    account_id=account.id,
                    failed_attempts=state.failed_attempts,
                    locked=state.is_locked(now),
                )
                return InvalidCredentials()
            if not account.is_active:
                logger.info("login_failed", reason="inactive_account", account_id=account.id)
                return InvalidCredentials()

            stage = LoginStage.ISSUE
            await self._call(stage.value, "record_success", self.lockout.record_success, account.id)
            if state.failed_attempts or account.failed_attempts or account.locked_until:
                await self._best_effort(
                    stage.value,
                    "update_failed_attempts",
                    self.directory.update_failed_attempts,
                    account.id,
                    0,
                    None,
                )
            access = self.tokens.issue_access(account.id, now)
            refresh = await self._call(
                stage.value,
                "create_session",
                self.sessions.create,
                account.id,
                self.refresh_ttl,
                now,
            )
            await self._best_effort(
                stage.value, "update_last_login", self.directory.update_last_login, account.id, now
            )
            if self.passwords.needs_rehash(account.password_hash):
                logger.info("password_hash_outdated", account_id=account.id)

            stage = LoginStage.DONE
            logger.info("login_succeeded", account_id=account.id, key_id=access.key_id)
            return LoginSuccess(
                account_id=account.id,
                access_token=access.token,
                access_expires_at=access.expires_at,
                refresh_token=refresh.token_id,
                refresh_expires_at=refresh.expires_at,
            )
        except _StageFailed as exc:
            logger.warning(
                "login_aborted",
                stage=stage.value,
                operation=exc.result.operation,
                identifier_hash=identifier_hash,
            )
            return exc.result

    async def refresh(self, refresh_token_id: str) -> RefreshResult:
        now = self._now()
        if not refresh_token_id:
            return InvalidRefreshToken()
        try:
            outcome = await self._call(
                "refresh",
                "rotate",
                self.sessions.rotate,
                refresh_token_id,
                self.refresh_ttl,
                now,
                idempotent=False,
            )
        except _StageFailed as exc:
            return exc.result
        if isinstance(outcome, RotationRejected):
            if outcome.reuse_detected:
                logger.warning("refresh_rejected_reuse", account_id=outcome.account_id)
            else:
                logger.info(
                    "refresh_rejected", reason=outcome.reason, account_id=outcome.account_id
                )
            return InvalidRefreshToken(reuse_detected=outcome.reuse_detected)

        access = self.tokens.issue_access(outcome.account_id, now)
        logger.info("refresh_succeeded", account_id=outcome.account_id)
        return RefreshSuccess(
            account_id=outcome.account_id,
            access_token=access.token,
            access_expires_at=access.expires_at,
            refresh_token=outcome.token_id,
            refresh_expires_at=outcome.expires_at,
        )

    async def logout(self, refresh_token_id: str) -> LogoutResult:
        if not refresh_token_id:
            return LogoutSuccess()
        now = self._now()
        try:
            changed = await self._call("logout", "revoke", self.sessions.revoke, refresh_token_id, now)
        except _StageFailed as exc:
            return exc.result
        return LogoutSuccess(revoked=1 if changed else 0)

    async def logout_all(self, account_id: str) -> LogoutResult:
        now = self._now()
        try:
            revoked = await self._call(
                "logout_all",
                "revoke_all_for_account",
                self.sessions.revoke_all_for_account,
                account_id,
                now,
            )
        except _StageFailed as exc:
            return exc.result
        return LogoutSuccess(revoked=revoked)

    def authenticate(self, access_token: str) -> AuthenticateResult:
        outcome = self.tokens.validate_access(access_token or "", self._now())
        if isinstance(outcome, Invalid):
            return InvalidAccessToken(reason=outcome.reason)
        return Authenticated(
            account_id=outcome.account_id,
            expires_at=outcome.expires_at,
            key_id=outcome.key_id,
            jti=outcome.jti,
        )


__all__ = ["AuthOrchestrator"]
