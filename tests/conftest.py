import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="tokenkeeper_test_")
os.environ.setdefault("STATE_DIR", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap argon2 parameters keep the suite fast
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("PASSWORD_HASH_MEMORY_COST", "8")
os.environ.setdefault("PASSWORD_HASH_PARALLELISM", "1")
# Relaxed limits so only the rate limit tests hit 429
os.environ.setdefault("GENERAL_RATE_LIMIT_PER_WINDOW", "100000")
os.environ.setdefault("AUTH_RATE_LIMIT_PER_WINDOW", "100000")
os.environ.setdefault("LOGIN_RATE_LIMIT_PER_WINDOW", "100000")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from tokenkeeper.config import Settings  # noqa: E402
from tokenkeeper.service.auth import TokenLifecycleManager  # noqa: E402
from tokenkeeper.service.guard import AuthGuard  # noqa: E402
from tokenkeeper.service.passwords import PasswordHasher  # noqa: E402
from tokenkeeper.service.runtime import reset_runtime_for_tests  # noqa: E402
from tokenkeeper.service.tokens import TokenCodec  # noqa: E402
from tokenkeeper.storage.memory import MemoryStore  # noqa: E402

TEST_SECRET = "Test-Secret-Key_for-Automation-Only-987654321!"


class FakeClock:
    """Settable UTC clock shared by the manager and the codec."""

    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2030, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


def _clear_memory_state() -> None:
    state_file = Path(os.environ["STATE_DIR"]) / "state" / "credential_store.json"
    if state_file.exists():
        state_file.unlink()


@pytest.fixture(autouse=True)
def reset_runtime_state():
    _clear_memory_state()
    reset_runtime_for_tests()
    yield
    _clear_memory_state()
    reset_runtime_for_tests()


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jwt_secret=TEST_SECRET,
        state_dir=str(tmp_path),
        access_token_ttl_seconds=15 * 60,
        refresh_token_ttl_seconds=7 * 24 * 60 * 60,
        password_hash_time_cost=1,
        password_hash_memory_cost=8,
        password_hash_parallelism=1,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def hasher(settings):
    return PasswordHasher.from_settings(settings)


@pytest.fixture
def codec(settings, clock):
    return TokenCodec.from_settings(settings, clock=clock)


@pytest.fixture
def manager(store, hasher, codec, settings, clock):
    return TokenLifecycleManager(store, hasher, codec, settings, clock=clock)


@pytest.fixture
def guard(codec):
    return AuthGuard(codec)


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
