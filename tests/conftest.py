import asyncio
import inspect
import os
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Environment defaults must exist before idvault.config is imported
_test_tmp_dir = tempfile.mkdtemp(prefix="idvault_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from idvault.config import Settings  # noqa: E402
from idvault.service.credentials import CredentialHasher  # noqa: E402
from idvault.service.runtime import Runtime  # noqa: E402
from idvault.storage.memory import MemoryStore  # noqa: E402
from idvault.storage.models import Account, new_id  # noqa: E402

TEST_SECRET = "test-secret-key-for-testing-only-do-not-use-in-production"
GOOD_PASSWORD = "Correct-Horse-9"


class FakeClock:
    """Deterministic, manually advanced UTC clock."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


class RecordingNotifier:
    """Captures reset tokens instead of sending mail."""

    def __init__(self) -> None:
        self.sent: list[tuple[str, str]] = []

    def send_password_reset(self, to_email: str, token: str) -> bool:
        self.sent.append((to_email, token))
        return True

    @property
    def last_token(self) -> str:
        return self.sent[-1][1]


def make_settings(tmp_path, **overrides) -> Settings:
    values = {
        "jwt_secret": TEST_SECRET,
        "use_memory_store": True,
        "shared_fs_root": str(tmp_path),
        "test_mode": True,
    }
    values.update(overrides)
    return Settings(**values)


def make_account(store, hasher, username="alice", password=GOOD_PASSWORD, **fields) -> Account:
    password_hash, algo = hasher.hash(password)
    account = Account(
        id=new_id(),
        username=username,
        password_hash=password_hash,
        password_algo=algo,
        **fields,
    )
    return store.create_account(account)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(scope="session")
def hasher():
    # Cheap argon2 parameters keep the suite fast
    return CredentialHasher(time_cost=1, memory_cost=8, parallelism=1)


@pytest.fixture
def settings(tmp_path):
    return make_settings(tmp_path)


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path / "store"), mfa_encryption_key="test-mfa-key")


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def runtime(settings, memory_store, clock, hasher, notifier):
    return Runtime(settings, store=memory_store, clock=clock, hasher=hasher, notifier=notifier)


@pytest.fixture
def auth_service(runtime):
    return runtime.auth


@pytest.fixture
def test_account(memory_store, hasher):
    return make_account(memory_store, hasher, email="alice@example.com")


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
