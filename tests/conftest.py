import asyncio
import inspect
import os
import sys
import tempfile
from pathlib import Path
from types import SimpleNamespace

# Create temp directory for tests before any imports that might initialize runtime
_test_tmp_dir = tempfile.mkdtemp(prefix="sessionguard_test_")
os.environ.setdefault("SHARED_FS_ROOT", _test_tmp_dir)
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("CLEANUP_ENABLED", "false")
# The runtime runs durable-only in tests; service tests inject FakeCache directly
os.environ.setdefault("REDIS_URL", "")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from sessionguard.config import Settings  # noqa: E402
from sessionguard.service.access_tokens import AccessTokenSigner  # noqa: E402
from sessionguard.service.blacklist import BlacklistCache  # noqa: E402
from sessionguard.service.cleanup import CleanupScheduler  # noqa: E402
from sessionguard.service.fingerprint import DeviceFingerprinter  # noqa: E402
from sessionguard.service.runtime import reset_runtime_for_tests  # noqa: E402
from sessionguard.service.sessions import SessionService  # noqa: E402
from sessionguard.service.tokens import TokenService  # noqa: E402
from sessionguard.storage.memory import MemoryStore  # noqa: E402
from sessionguard.storage.models import RequestContext  # noqa: E402

CHROME_WINDOWS_UA = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)


class FakeCache:
    """Dict-backed stand-in for RedisCache; set ``fail`` to simulate an outage."""

    def __init__(self):
        self.entries = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis unavailable")

    async def blacklist_many(self, records):
        self._check()
        count = 0
        for token_hash, payload, expires_at in records:
            self.entries[token_hash] = (payload, expires_at)
            count += 1
        return count

    async def is_blacklisted(self, token_hash):
        self._check()
        return token_hash in self.entries

    async def close(self):
        return None


def build_services(store, cache, settings):
    signer = AccessTokenSigner(settings)
    fingerprinter = DeviceFingerprinter(settings.jwt_secret)
    blacklist = BlacklistCache(store, cache, settings)
    sessions = SessionService(store, blacklist, fingerprinter, signer, settings)
    tokens = TokenService(store, sessions, blacklist, fingerprinter, signer, settings)
    cleanup = CleanupScheduler(tokens, sessions, blacklist, store, settings)
    return SimpleNamespace(
        store=store,
        cache=cache,
        settings=settings,
        signer=signer,
        fingerprinter=fingerprinter,
        blacklist=blacklist,
        sessions=sessions,
        tokens=tokens,
        cleanup=cleanup,
    )


@pytest.fixture
def settings():
    return Settings(
        jwt_secret="Test-Secret-Key_for-Automation-Only-987654321!",
        max_sessions_per_user=5,
        inactive_cleanup_days=30,
    )


@pytest.fixture
def memory_store(tmp_path):
    return MemoryStore(fs_root=str(tmp_path))


@pytest.fixture
def fake_cache():
    return FakeCache()


@pytest.fixture
def services(memory_store, fake_cache, settings):
    return build_services(memory_store, fake_cache, settings)


@pytest.fixture
def durable_services(memory_store, settings):
    """Services wired without a cache tier, as when Redis is not configured."""
    return build_services(memory_store, None, settings)


@pytest.fixture
def ctx():
    return RequestContext(user_agent=CHROME_WINDOWS_UA, ip="203.0.113.7")


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


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
