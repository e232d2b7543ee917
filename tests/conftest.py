import asyncio
import inspect
import os
import sys
from pathlib import Path

# Configure before any import that might build the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_KVS", "true")
os.environ.setdefault("JWT_SECRET", "test-secret-key-for-testing-only-do-not-use-in-production")
os.environ.setdefault("REDIS_URL", "redis://localhost:6379/15")

import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from promptvault.service.runtime import reset_runtime_for_tests  # noqa: E402
from promptvault.storage.errors import KVSUnavailable  # noqa: E402
from promptvault.storage.memory_kvs import MemoryKVS  # noqa: E402


class FakeClock:
    """Manually advanced epoch-seconds clock shared by the KVS and services."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class DownKVS:
    """KVS double whose every command fails as if the server were unreachable."""

    def __init__(self):
        self.calls = []

    def __getattr__(self, name):
        async def _fail(*args, **kwargs):
            self.calls.append(name)
            raise KVSUnavailable("connection refused", operation=name)

        return _fail

    async def close(self):
        return None


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def kvs(clock):
    return MemoryKVS(clock=clock)


@pytest.fixture
def down_kvs():
    return DownKVS()


TEST_PASSWORD = "CorrectHorse9!"


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from promptvault import app as app_module

    return TestClient(app_module.app)


@pytest.fixture
def register(client):
    """Register a user over HTTP; returns (response data, bearer headers)."""

    def _register(username="alice", password=TEST_PASSWORD, remember_me=False):
        response = client.post(
            "/api/auth/register",
            json={
                "email": f"{username}@example.com",
                "password": password,
                "username": username,
                "remember_me": remember_me,
            },
        )
        assert response.status_code == 201, response.text
        data = response.json()["data"]
        return data, {"Authorization": f"Bearer {data['access_token']}"}

    return _register


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


@pytest.fixture
def configure(monkeypatch):
    """Rebuild the runtime with extra environment settings (and optional KVS/clock)."""

    def _configure(kvs=None, clock=None, **env):
        for name, value in env.items():
            monkeypatch.setenv(name, str(value))
        return reset_runtime_for_tests(kvs=kvs, clock=clock)

    return _configure
