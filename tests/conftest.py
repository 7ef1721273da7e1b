import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Create temp directory for tests before any imports that might read settings
_test_tmp_dir = tempfile.mkdtemp(prefix="trustcore_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("MFA_SECRET_KEY", "test-mfa-key-for-testing-only")
# No Redis in unit tests; the in-process cache stands in
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402
from argon2 import PasswordHasher, Type  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from trustcore.config import Settings, reset_settings_cache  # noqa: E402
from trustcore.service.jobs import LocalJobScheduler  # noqa: E402
from trustcore.service.runtime import Runtime  # noqa: E402
from trustcore.storage.memory import MemoryStore  # noqa: E402
from trustcore.storage.memory_cache import MemoryCache  # noqa: E402

TEST_PASSWORD = "Correct-Horse-42!"


class FakeClock:
    """Settable UTC clock shared by services and the in-process cache."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def monotonic(self) -> float:
        return self.now.timestamp()


@pytest.fixture(autouse=True)
def reset_settings_state():
    reset_settings_cache()
    yield
    reset_settings_cache()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        shared_fs_root=str(tmp_path),
        use_memory_store=True,
        test_mode=True,
        redis_url=None,
        mfa_secret_key="test-mfa-key-for-testing-only",
    )


@pytest.fixture
def store():
    return MemoryStore(mfa_encryption_key="test-mfa-key-for-testing-only")


@pytest.fixture
def cache(clock):
    return MemoryCache(clock=clock.monotonic)


@pytest.fixture
def fast_hasher():
    # minimum argon2id cost; production parameters make the suite slow
    return PasswordHasher(time_cost=1, memory_cost=8, parallelism=1, type=Type.ID)


@pytest.fixture
def runtime(settings, store, cache, clock, fast_hasher):
    rt = Runtime(
        settings,
        store=store,
        cache=cache,
        jobs=LocalJobScheduler(clock=clock),
        clock=clock,
    )
    rt.passwords._hasher = fast_hasher
    return rt


@pytest.fixture
def make_user(store, clock, fast_hasher):
    """Create a user directly in the store, verified unless told otherwise."""

    def _make(email="alice@example.com", password=TEST_PASSWORD, *, verified=True):
        return store.create_user(
            email,
            password_hash=fast_hasher.hash(password) if password else None,
            email_verified_at=clock() if verified else None,
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
