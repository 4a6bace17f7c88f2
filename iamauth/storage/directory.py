"""Credential store adapters for the external directory (user) service.

The directory owns account records; the auth core only reads them and sends
narrow updates for ``last_login`` and the lockout counter mirror.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Dict, Optional, Protocol

import httpx

from iamauth.logging import get_logger
from iamauth.storage.errors import StoreUnavailable
from iamauth.storage.models import ACCOUNT_STATUS_ACTIVE, Account, as_utc

logger = get_logger(__name__)


class DirectoryClient(Protocol):
    async def get_account_by_email(self, email: str) -> Optional[Account]: ...

    async def get_account_by_username(self, username: str) -> Optional[Account]: ...

    async def update_last_login(self, account_id: str, when: datetime) -> None: ...

    async def update_failed_attempts(
        self, account_id: str, count: int, locked_until: Optional[datetime]
    ) -> None: ...

    async def close(self) -> None: ...


def normalize_email(email: str) -> str:
    return email.strip().lower()


class MemoryDirectory:
    """In-memory directory used by tests and single-process development."""

    def __init__(self) -> None:
        self.accounts: Dict[str, Account] = {}
        self._lock = threading.RLock()

    def add_account(
        self,
        email: str,
        password_hash: str,
        *,
        username: Optional[str] = None,
        status: str = ACCOUNT_STATUS_ACTIVE,
        account_id: Optional[str] = None,
    ) -> Account:
        account = Account(
            id=account_id or str(uuid.uuid4()),
            email=normalize_email(email),
            password_hash=password_hash,
            username=username,
            status=status,
        )
        with self._lock:
            self.accounts[account.id] = account
        return replace(account)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        wanted = normalize_email(email)
        with self._lock:
            for account in self.accounts.values():
                if account.email == wanted:
                    return replace(account)
        return None

    async def get_account_by_username(self, username: str) -> Optional[Account]:
        wanted = username.strip().lower()
        with self._lock:
            for account in self.accounts.values():
                if account.username and account.username.lower() == wanted:
                    return replace(account)
        return None

    async def update_last_login(self, account_id: str, when: datetime) -> None:
        with self._lock:
            account = self.accounts.get(account_id)
            if account:
                account.last_login = as_utc(when)

    async def update_failed_attempts(
        self, account_id: str, count: int, locked_until: Optional[datetime]
    ) -> None:
        with self._lock:
            account = self.accounts.get(account_id)
            if account:
                account.failed_attempts = count
                account.locked_until = as_utc(locked_until) if locked_until else None

    async def close(self) -> None:
        return None


class HttpDirectoryClient:
    """Directory adapter talking to the user service over HTTP.

    Endpoints:
        GET  /users/lookup?email=... | ?username=...   (404 when absent)
        PUT  /users/{id}/last-login  {"last_login": iso8601}
        PUT  /users/{id}/lockout     {"failed_attempts": n, "locked_until": iso8601|null}
    """

    def __init__(
        self,
        base_url: str,
        *,
        api_token: Optional[str] = None,
        timeout: float = 2.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        headers = {"Accept": "application/json"}
        if api_token:
            headers["Authorization"] = f"Bearer {api_token}"
        self.client = httpx.AsyncClient(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=timeout,
            follow_redirects=False,
            transport=transport,
        )

    async def _request(
        self, method: str, path: str, **kwargs
    ) -> Optional[httpx.Response]:
        try:
            response = await self.client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            logger.warning(
                "directory_request_failed",
                method=method,
                path=path,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise StoreUnavailable(
                "directory service unreachable", detail={"path": path}
            ) from exc
        if response.status_code == 404:
            return None
        if response.status_code >= 500:
            logger.warning(
                "directory_server_error",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise StoreUnavailable(
                "directory service error",
                detail={"path": path, "status_code": response.status_code},
            )
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            # 4xx other than 404 means this client is misconfigured, not a bad login
            logger.error(
                "directory_request_rejected",
                method=method,
                path=path,
                status_code=response.status_code,
            )
            raise StoreUnavailable(
                "directory service rejected request",
                detail={"path": path, "status_code": response.status_code},
            ) from exc
        return response

    async def _lookup(self, params: Dict[str, str]) -> Optional[Account]:
        response = await self._request("GET", "/users/lookup", params=params)
        if response is None:
            return None
        try:
            payload = response.json()
            if isinstance(payload, dict) and isinstance(payload.get("data"), dict):
                payload = payload["data"]
            return Account.from_dict(payload)
        except (ValueError, KeyError, TypeError) as exc:
            logger.error("directory_payload_invalid", error=str(exc))
            raise StoreUnavailable("directory returned a malformed account") from exc

    async def get_account_by_email(self, email: str) -> Optional[Account]:
        return await self._lookup({"email": normalize_email(email)})

    async def get_account_by_username(self, username: str) -> Optional[Account]:
        return await self._lookup({"username": username.strip()})

    async def update_last_login(self, account_id: str, when: datetime) -> None:
        await self._request(
            "PUT",
            f"/users/{account_id}/last-login",
            json={"last_login": as_utc(when).isoformat()},
        )

    async def update_failed_attempts(
        self, account_id: str, count: int, locked_until: Optional[datetime]
    ) -> None:
        await self._request(
            "PUT",
            f"/users/{account_id}/lockout",
            json={
                "failed_attempts": count,
                "locked_until": as_utc(locked_until).isoformat() if locked_until else None,
            },
        )

    async def close(self) -> None:
        await self.client.aclose()


__all__ = [
    "DirectoryClient",
    "MemoryDirectory",
    "HttpDirectoryClient",
    "normalize_email",
]
