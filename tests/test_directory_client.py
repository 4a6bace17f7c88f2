"""Tests for the HTTP directory adapter against a mocked user service."""

import json
from datetime import datetime, timezone

import httpx
import pytest

from iamauth.storage.directory import HttpDirectoryClient
from iamauth.storage.errors import StoreUnavailable

ACCOUNT_PAYLOAD = {
    "id": "acct-42",
    "email": "erin@example.com",
    "username": "erin",
    "password_hash": "$argon2id$v=19$m=8,t=1,p=1$c2FsdHNhbHQ$aGFzaGhhc2g",
    "status": "active",
    "failed_attempts": 2,
    "locked_until": None,
    "last_login": "2025-01-01T08:00:00+00:00",
}


def _client(handler, **kwargs):
    return HttpDirectoryClient(
        "http://directory.test/",
        api_token=kwargs.pop("api_token", "svc-token"),
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestLookup:
    async def test_lookup_by_email(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json=ACCOUNT_PAYLOAD)

        client = _client(handler)
        account = await client.get_account_by_email("  Erin@Example.com ")
        await client.close()

        assert account.id == "acct-42"
        assert account.failed_attempts == 2
        assert account.last_login == datetime(2025, 1, 1, 8, 0, tzinfo=timezone.utc)
        request = seen[0]
        assert request.method == "GET"
        assert request.url.path == "/users/lookup"
        assert request.url.params["email"] == "erin@example.com"
        assert request.headers["Authorization"] == "Bearer svc-token"

    async def test_lookup_by_username_unwraps_data_envelope(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.params["username"] == "erin"
            return httpx.Response(200, json={"status": "ok", "data": ACCOUNT_PAYLOAD})

        client = _client(handler)
        account = await client.get_account_by_username("erin")
        await client.close()

        assert account.username == "erin"

    async def test_not_found_is_none(self):
        client = _client(lambda request: httpx.Response(404, json={"detail": "no such user"}))

        assert await client.get_account_by_email("ghost@example.com") is None
        await client.close()

    @pytest.mark.parametrize("status", [500, 502, 503, 401, 403])
    async def test_error_statuses_are_store_unavailable(self, status):
        client = _client(lambda request: httpx.Response(status))

        with pytest.raises(StoreUnavailable):
            await client.get_account_by_email("erin@example.com")
        await client.close()

    async def test_connection_error_is_store_unavailable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        client = _client(handler)
        with pytest.raises(StoreUnavailable):
            await client.get_account_by_email("erin@example.com")
        await client.close()

    async def test_malformed_payload_is_store_unavailable(self):
        client = _client(lambda request: httpx.Response(200, json={"id": "x"}))

        with pytest.raises(StoreUnavailable):
            await client.get_account_by_email("erin@example.com")
        await client.close()


class TestUpdates:
    async def test_update_last_login(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        client = _client(handler)
        await client.update_last_login("acct-42", datetime(2025, 2, 3, 4, 5, 6, tzinfo=timezone.utc))
        await client.close()

        assert seen[0].method == "PUT"
        assert seen[0].url.path == "/users/acct-42/last-login"
        assert json.loads(seen[0].content) == {"last_login": "2025-02-03T04:05:06+00:00"}

    async def test_update_failed_attempts(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(json.loads(request.content))
            return httpx.Response(200, json={})

        client = _client(handler)
        locked_until = datetime(2025, 2, 3, 4, 35, tzinfo=timezone.utc)
        await client.update_failed_attempts("acct-42", 5, locked_until)
        await client.update_failed_attempts("acct-42", 0, None)
        await client.close()

        assert seen == [
            {"failed_attempts": 5, "locked_until": "2025-02-03T04:35:00+00:00"},
            {"failed_attempts": 0, "locked_until": None},
        ]

    async def test_no_token_sends_no_authorization(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(204)

        client = _client(handler, api_token=None)
        await client.update_failed_attempts("acct-42", 1, None)
        await client.close()

        assert "Authorization" not in seen[0].headers
