import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.passwords import Argon2PasswordVerifier  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.sessions import SessionService  # noqa: E402
from sessionguard.service.tokens import TokenIssuer  # noqa: E402
from sessionguard.storage.memory import MemoryCache, MemoryStore  # noqa: E402
from sessionguard.storage.models import UserRole, utcnow  # noqa: E402

TEST_JWT_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Settable UTC clock for token issuance and verification."""

    def __init__(self, start: datetime | None = None):
        self.now = start or utcnow().replace(microsecond=0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now = self.now + timedelta(seconds=seconds)


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return Settings(
        jwt_secret=TEST_JWT_SECRET,
        access_token_ttl_minutes=15,
        refresh_token_ttl_minutes=7 * 24 * 60,
        test_mode=True,
        use_memory_store=True,
    )


@pytest.fixture
def fast_passwords():
    """Argon2id with minimal cost parameters so tests stay quick."""
    return Argon2PasswordVerifier(
        PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1, type=Type.ID)
    )


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def memory_cache(settings):
    return MemoryCache(prefix=settings.revocation_cache_prefix)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def issuer(settings, clock):
    return TokenIssuer(settings, clock=clock)


@pytest.fixture
def session_service(memory_store, memory_cache, issuer, fast_passwords, settings):
    return SessionService(
        directory=memory_store,
        store=memory_store,
        cache=memory_cache,
        issuer=issuer,
        passwords=fast_passwords,
        settings=settings,
    )


@pytest.fixture
def make_user(memory_store, fast_passwords):
    def _make(
        email: str = "alice@example.com",
        password: str = "CorrectHorse9!",
        roles=(UserRole.CLEANER,),
        **kwargs,
    ):
        return memory_store.create_user(
            email,
            roles=list(roles),
            password_hash=fast_passwords.hash(password),
            **kwargs,
        )

    return _make


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
