import asyncio
import inspect
import os
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment must be in place before anything imports iamauth.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("LOG_LEVEL", "WARNING")
# Only the optional Redis tests talk to this server; they skip when it is down
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/1")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from iamauth.service.auth import AuthOrchestrator  # noqa: E402
from iamauth.service.lockout import LockoutPolicy  # noqa: E402
from iamauth.service.passwords import PasswordVerifier  # noqa: E402
from iamauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from iamauth.service.sessions import SessionRegistry  # noqa: E402
from iamauth.service.tokens import TokenIssuer  # noqa: E402
from iamauth.storage.directory import MemoryDirectory  # noqa: E402
from iamauth.storage.kv import MemoryKeyValueStore  # noqa: E402

SIGNING_SECRET = "unit-test-signing-secret-0123456789abcdef"
PASSWORD = "CorrectHorseBatteryStaple!"


class FakeClock:
    """Settable UTC clock shared by the orchestrator and the test."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2025, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def verifier():
    """Argon2id with minimal cost so the suite stays fast."""
    return PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def password():
    return PASSWORD


@pytest.fixture
def kv():
    return MemoryKeyValueStore()


@pytest.fixture
def directory():
    return MemoryDirectory()


@pytest.fixture
def issuer():
    return TokenIssuer(
        {"v1": SIGNING_SECRET},
        "v1",
        access_ttl=timedelta(minutes=15),
        issuer="iam-auth-service",
        audience="iam-clients",
    )


@pytest.fixture
def sessions(kv, issuer):
    return SessionRegistry(kv, issuer.issue_refresh_id)


@pytest.fixture
def lockout(kv):
    return LockoutPolicy(kv, max_attempts=5, lock_duration=timedelta(minutes=30))


@pytest.fixture
def account(directory, verifier):
    return directory.add_account("Alice@Example.com", verifier.hash(PASSWORD), username="alice")


@pytest.fixture
def orchestrator(directory, verifier, issuer, sessions, lockout, clock):
    return AuthOrchestrator(
        directory,
        verifier,
        issuer,
        sessions,
        lockout,
        refresh_ttl=timedelta(days=7),
        store_timeout=0.5,
        retry_backoff=0,
        clock=clock,
    )


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
