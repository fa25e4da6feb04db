import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure the environment before any imports that might read settings
os.environ.setdefault("USE_MEMORY_BACKENDS", "true")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("LOG_JSON", "true")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from authgate.config import Settings  # noqa: E402
from authgate.identity.memory import MemoryIdentityProvider  # noqa: E402
from authgate.logging import correlation_id_var  # noqa: E402
from authgate.service.controller import SessionController  # noqa: E402
from authgate.service.roles import RoleResolver  # noqa: E402
from authgate.service.runtime import reset_runtime_for_tests  # noqa: E402
from authgate.storage.memory import MemoryProfileStore  # noqa: E402
from tests.helpers import ADMIN_EMAIL, ADMIN_ID, ADMIN_PASSWORD  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    token = correlation_id_var.set(None)
    yield
    correlation_id_var.reset(token)
    reset_runtime_for_tests()


@pytest.fixture
def settings():
    """Short timers so inactivity and guard windows elapse inside a test."""
    return Settings(
        inactivity_timeout_seconds=0.2,
        manual_guard_grace_ms=50,
        app_base_url="https://audits.example.com/app/index.html",
    )


@pytest.fixture
def provider():
    provider = MemoryIdentityProvider()
    provider.register_user(ADMIN_EMAIL, ADMIN_PASSWORD, user_id=ADMIN_ID)
    return provider


@pytest.fixture
def store():
    store = MemoryProfileStore()
    store.upsert(ADMIN_ID, "admin")
    return store


@pytest.fixture
def resolver(store):
    return RoleResolver(store)


@pytest.fixture
def controller(provider, resolver, settings):
    return SessionController(provider, resolver, settings)


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
