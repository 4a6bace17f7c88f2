"""Unit tests for access token issuing and validation."""

import base64
import hashlib
import hmac
import json
from datetime import datetime, timedelta, timezone

import pytest

from iamauth.service.tokens import Invalid, TokenClaims, TokenIssuer

NOW = datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)
SECRET_V1 = "first-signing-secret-0123456789abcdefgh"
SECRET_V2 = "second-signing-secret-0123456789abcdefg"


def _b64(data: dict) -> str:
    raw = json.dumps(data, separators=(",", ":")).encode()
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _forge(header: dict, payload: dict, secret: str) -> str:
    signing_input = f"{_b64(header)}.{_b64(payload)}"
    sig = hmac.new(secret.encode(), signing_input.encode(), hashlib.sha256).digest()
    return f"{signing_input}.{base64.urlsafe_b64encode(sig).decode().rstrip('=')}"


def _issuer(keys=None, active="v1", **kwargs) -> TokenIssuer:
    return TokenIssuer(
        keys or {"v1": SECRET_V1},
        active,
        access_ttl=kwargs.pop("access_ttl", timedelta(minutes=15)),
        issuer=kwargs.pop("issuer", "iam-auth-service"),
        audience=kwargs.pop("audience", "iam-clients"),
        **kwargs,
    )


def _claims(**overrides) -> dict:
    payload = {
        "iss": "iam-auth-service",
        "aud": "iam-clients",
        "sub": "acct-1",
        "iat": NOW.timestamp(),
        "exp": (NOW + timedelta(minutes=5)).timestamp(),
        "type": "access",
        "jti": "j-1",
    }
    payload.update(overrides)
    return payload


class TestIssueAccess:
    def test_round_trip_claims(self):
        issuer = _issuer()
        token = issuer.issue_access("acct-1", NOW)

        claims = issuer.validate_access(token.token, NOW)

        assert isinstance(claims, TokenClaims)
        assert claims.account_id == "acct-1"
        assert claims.key_id == "v1"
        assert claims.jti == token.jti
        assert claims.expires_at == NOW + timedelta(minutes=15)
        assert token.expires_at == NOW + timedelta(minutes=15)

    def test_header_carries_key_id(self):
        token = _issuer().issue_access("acct-1", NOW).token
        header_b64 = token.split(".")[0]
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))

        assert header == {"alg": "HS256", "typ": "JWT", "kid": "v1"}

    def test_each_token_has_unique_jti(self):
        issuer = _issuer()
        assert issuer.issue_access("a", NOW).jti != issuer.issue_access("a", NOW).jti

    def test_unknown_active_key_rejected(self):
        with pytest.raises(ValueError):
            _issuer({"v1": SECRET_V1}, active="v2")


class TestExpiry:
    def test_valid_until_exact_expiry(self):
        issuer = _issuer()
        token = issuer.issue_access("acct-1", NOW).token

        assert isinstance(issuer.validate_access(token, NOW + timedelta(minutes=15)), TokenClaims)

    def test_invalid_one_second_after_expiry(self):
        issuer = _issuer()
        token = issuer.issue_access("acct-1", NOW).token

        result = issuer.validate_access(token, NOW + timedelta(minutes=15, seconds=1))

        assert result == Invalid("expired")

    def test_leeway_extends_acceptance(self):
        issuer = _issuer(leeway=timedelta(seconds=30))
        token = issuer.issue_access("acct-1", NOW).token

        assert isinstance(
            issuer.validate_access(token, NOW + timedelta(minutes=15, seconds=20)), TokenClaims
        )
        assert issuer.validate_access(
            token, NOW + timedelta(minutes=15, seconds=31)
        ) == Invalid("expired")


class TestRejection:
    def test_tampered_payload(self):
        issuer = _issuer()
        header, _, sig = issuer.issue_access("acct-1", NOW).token.split(".")
        forged_payload = _b64(_claims(sub="acct-admin"))

        assert issuer.validate_access(f"{header}.{forged_payload}.{sig}", NOW) == Invalid(
            "signature"
        )

    def test_foreign_key(self):
        issuer = _issuer()
        token = _forge(
            {"alg": "HS256", "typ": "JWT", "kid": "v1"},
            _claims(),
            "some-other-secret-0123456789abcdefghijk",
        )

        assert issuer.validate_access(token, NOW) == Invalid("signature")

    def test_alg_none_rejected(self):
        issuer = _issuer()
        token = f"{_b64({'alg': 'none', 'kid': 'v1'})}.{_b64(_claims())}."

        assert issuer.validate_access(token, NOW) == Invalid("algorithm")

    def test_unknown_kid(self):
        issuer = _issuer()
        token = _forge({"alg": "HS256", "kid": "v9"}, _claims(), SECRET_V1)

        assert issuer.validate_access(token, NOW) == Invalid("unknown_key")

    def test_wrong_type(self):
        issuer = _issuer()
        token = _forge({"alg": "HS256", "kid": "v1"}, _claims(type="refresh"), SECRET_V1)

        assert issuer.validate_access(token, NOW) == Invalid("type")

    def test_wrong_issuer_and_audience(self):
        issuer = _issuer()
        bad_iss = _forge({"alg": "HS256", "kid": "v1"}, _claims(iss="evil"), SECRET_V1)
        bad_aud = _forge({"alg": "HS256", "kid": "v1"}, _claims(aud="other"), SECRET_V1)

        assert issuer.validate_access(bad_iss, NOW) == Invalid("issuer")
        assert issuer.validate_access(bad_aud, NOW) == Invalid("audience")

    def test_audience_list_accepted(self):
        issuer = _issuer()
        token = _forge(
            {"alg": "HS256", "kid": "v1"}, _claims(aud=["x", "iam-clients"]), SECRET_V1
        )

        assert isinstance(issuer.validate_access(token, NOW), TokenClaims)

    def test_missing_subject(self):
        issuer = _issuer()
        token = _forge({"alg": "HS256", "kid": "v1"}, _claims(sub=""), SECRET_V1)

        assert issuer.validate_access(token, NOW) == Invalid("subject")

    @pytest.mark.parametrize("token", ["", "abc", "a.b", "a.b.c.d", "!!.??.##"])
    def test_malformed(self, token):
        result = _issuer().validate_access(token, NOW)

        assert isinstance(result, Invalid)

    @pytest.mark.parametrize("kid", [["v1"], {"id": "v1"}, 7])
    def test_non_string_kid(self, kid):
        token = f"{_b64({'alg': 'HS256', 'kid': kid})}.{_b64(_claims())}.sig"

        assert _issuer().validate_access(token, NOW) == Invalid("unknown_key")

    def test_non_ascii_signature(self):
        issuer = _issuer()
        header, payload, _ = issuer.issue_access("acct-1", NOW).token.split(".")

        assert issuer.validate_access(f"{header}.{payload}.éé", NOW) == Invalid("signature")


class TestKeyRotation:
    def test_previous_key_still_validates(self):
        old = _issuer({"v1": SECRET_V1}, "v1")
        rotated = _issuer({"v1": SECRET_V1, "v2": SECRET_V2}, "v2")
        legacy_token = old.issue_access("acct-1", NOW).token

        claims = rotated.validate_access(legacy_token, NOW)

        assert isinstance(claims, TokenClaims)
        assert claims.key_id == "v1"

    def test_new_tokens_use_active_key(self):
        rotated = _issuer({"v1": SECRET_V1, "v2": SECRET_V2}, "v2")

        token = rotated.issue_access("acct-1", NOW)

        assert token.key_id == "v2"
        assert rotated.validate_access(token.token, NOW).key_id == "v2"

    def test_retired_key_rejected(self):
        old = _issuer({"v1": SECRET_V1}, "v1")
        retired = _issuer({"v2": SECRET_V2}, "v2")

        assert retired.validate_access(
            old.issue_access("acct-1", NOW).token, NOW
        ) == Invalid("unknown_key")


class TestRefreshIdentifiers:
    def test_refresh_ids_are_long_and_unique(self):
        issuer = _issuer()
        ids = {issuer.issue_refresh_id() for _ in range(200)}

        assert len(ids) == 200
        # 32 random bytes encode to 43 url-safe characters
        assert all(len(value) >= 43 for value in ids)
