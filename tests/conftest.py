import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before anything imports iamprovider.config
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
# Cheap hashing keeps the suite fast; production defaults are far higher
os.environ.setdefault("ARGON2_TIME_COST", "1")
os.environ.setdefault("ARGON2_MEMORY_COST", "1024")
os.environ.setdefault("ARGON2_PARALLELISM", "1")
os.environ.setdefault("GOOGLE_CLIENT_ID", "google-client")
os.environ.setdefault("GOOGLE_CLIENT_SECRET", "google-secret")
os.environ.setdefault("GITHUB_CLIENT_ID", "github-client")
os.environ.setdefault("GITHUB_CLIENT_SECRET", "github-secret")
os.environ.pop("REDIS_URL", None)
os.environ.pop("SMTP_HOST", None)

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from iamprovider.config import get_settings  # noqa: E402
from iamprovider.service.auth import AuthService  # noqa: E402
from iamprovider.service.bounded import BoundedCaller  # noqa: E402
from iamprovider.service.passwords import PasswordHasher  # noqa: E402
from iamprovider.service.runtime import reset_runtime_for_tests  # noqa: E402
from iamprovider.service.tokens import TokenCodec, TokenIssuer  # noqa: E402
from iamprovider.storage.memory import MemoryStore  # noqa: E402

STRONG_PASSWORD = "Str0ng#Passw0rd"


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def hasher():
    return PasswordHasher(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def codec(settings):
    return TokenCodec(
        settings.jwt_secret, issuer=settings.jwt_issuer, audience=settings.jwt_audience
    )


@pytest.fixture
def issuer(memory_store, codec):
    return TokenIssuer(memory_store, codec, access_ttl_seconds=900, refresh_ttl_seconds=3600)


@pytest.fixture
def auth_service(memory_store, hasher, issuer, settings):
    """AuthService over a private memory store, without email delivery."""
    return AuthService(
        memory_store,
        hasher,
        issuer,
        settings,
        call=BoundedCaller(None),
        hash_call=BoundedCaller(None, label="hasher"),
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
