import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Configure the environment before any sessionauth import builds settings
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionauth_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-access-secret-do-not-use-in-production")
os.environ.setdefault("JWT_REFRESH_SECRET", "test-refresh-secret-do-not-use-in-production")
os.environ.setdefault("PASSWORD_RESET_TOKEN_SECRET", "test-reset-secret-do-not-use-in-production")
os.environ.setdefault("PASSWORD_RESET_TOKEN_EXPIRES_IN", "15m")
os.environ.setdefault("PASSWORD_HASH_TIME_COST", "1")
os.environ.setdefault("REFRESH_TOKEN_PURGE_INTERVAL_SECONDS", "0")
os.environ.setdefault("FRONTEND_URL", "http://frontend.test")
os.environ.setdefault("API_BASE_URL", "http://api.test")
os.environ.setdefault("GOOGLE_CLIENT_ID", "test-client-id")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "test-client-secret")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionauth.service.auth import AuthService, PasswordHashing  # noqa: E402
from sessionauth.service.ledger import RefreshTokenLedger  # noqa: E402
from sessionauth.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionauth.service.tokens import TokenCodec  # noqa: E402
from sessionauth.storage.memory import MemoryStore  # noqa: E402


class FrozenClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> None:
        self.current = self.current + timedelta(**kwargs)


@pytest.fixture(autouse=True)
def reset_runtime_state(tmp_path):
    # Each test gets its own snapshot directory so the memory store starts empty.
    # A private MonkeyPatch keeps the test's own monkeypatch fixture torn down
    # (env restored) before the runtime is rebuilt below.
    with pytest.MonkeyPatch.context() as mp:
        mp.setenv("SHARED_FS_ROOT", str(tmp_path / "shared"))
        reset_runtime_for_tests()
        yield
        reset_runtime_for_tests()


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"))


@pytest.fixture
def codec(clock):
    return TokenCodec(
        access_secret="unit-access-secret",
        refresh_secret="unit-refresh-secret",
        reset_secret="unit-reset-secret",
        reset_ttl="15m",
        issuer="sessionauth",
        audience="sessionauth-clients",
        now=clock,
    )


@pytest.fixture
def ledger(memory_store, clock):
    return RefreshTokenLedger(memory_store, now=clock)


@pytest.fixture
def hasher():
    return PasswordHashing(time_cost=1)


@pytest.fixture
def auth_service(memory_store, codec, ledger, hasher):
    return AuthService(memory_store, codec, ledger, hasher=hasher)


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
