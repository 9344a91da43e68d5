import os
import pytest
from httpx import ASGITransport, AsyncClient

os.environ["TESTING"] = "1"

from netflex_scheduler import redis_helper
from netflex_scheduler.main import app as fastapi_app

from support import PRIMARY_KEY, calls


@pytest.fixture(autouse=True)
def scheduler_env(monkeypatch):
    monkeypatch.setenv("NETFLEX_PUBLIC_KEY", PRIMARY_KEY)
    monkeypatch.delenv("NETFLEX_CONNECTIONS", raising=False)
    monkeypatch.delenv("SCHEDULER_AUTH_MODE", raising=False)
    monkeypatch.delenv("APP_ENV", raising=False)
    monkeypatch.setenv("SCHEDULER_TIMEZONE", "UTC")


@pytest.fixture(autouse=True)
def clean_state():
    redis_helper._inmemory_client = None
    calls.clear()
    yield
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
async def client():
    async with AsyncClient(transport=ASGITransport(app=fastapi_app), base_url="http://testserver") as ac:
        yield ac
