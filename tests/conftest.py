import asyncio
import os
from datetime import UTC, datetime

# Must be set before any dr_engine import.
os.environ["TESTING"] = "1"
os.environ["DATABASE_URL"] = "sqlite+pysqlite:///file:dr_engine_test?mode=memory&cache=shared&uri=true"
os.environ["ALERT_WEBHOOK_URL"] = ""
os.environ["READ_RETRY_MAX_WAIT_SECONDS"] = "0"
os.environ["SOURCE_DSN"] = ""

import fastapi.dependencies.utils as fastapi_deps_utils
import fastapi.routing as fastapi_routing
import httpx
import pytest
import starlette.concurrency as starlette_concurrency
import starlette.routing as starlette_routing
from sqlalchemy import delete

import dr_engine.models  # noqa: F401,E402
from dr_engine.db import Base, SessionLocal, get_engine
from dr_engine.services.dr_service import DisasterRecoveryService
from dr_engine.services.notification_service import NotificationService
from dr_engine.services.storage_backend import FilesystemStorageBackend
from tests.fakes import FakeClock, FakeDriver, FakeEnvironmentProvider, FakeRouter, FakeSource

_test_engine = get_engine()
Base.metadata.create_all(_test_engine)


async def _patched_run_in_threadpool(func, *args, **kwargs):
    """Run inline in tests to avoid cross-thread sqlite/session deadlocks."""
    return func(*args, **kwargs)


starlette_concurrency.run_in_threadpool = _patched_run_in_threadpool
starlette_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_routing.run_in_threadpool = _patched_run_in_threadpool
fastapi_deps_utils.run_in_threadpool = _patched_run_in_threadpool


class SyncASGIClient:
    """Drive the ASGI app through httpx without a running server."""

    def __init__(self, app):
        self._app = app

    async def _request(self, method: str, url: str, **kwargs):
        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=self._app, raise_app_exceptions=False),
            base_url="http://testserver",
        ) as client:
            return await client.request(method, url, **kwargs)

    def request(self, method: str, url: str, **kwargs):
        return asyncio.run(self._request(method, url, **kwargs))

    def get(self, url: str, **kwargs):
        return self.request("GET", url, **kwargs)

    def post(self, url: str, **kwargs):
        return self.request("POST", url, **kwargs)

    def patch(self, url: str, **kwargs):
        return self.request("PATCH", url, **kwargs)

    def delete(self, url: str, **kwargs):
        return self.request("DELETE", url, **kwargs)


@pytest.fixture(scope="session")
def engine():
    return _test_engine


@pytest.fixture()
def db_session(engine):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(autouse=True)
def _clean_tables(engine):
    yield
    with engine.begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(delete(table))


@pytest.fixture()
def clock():
    return FakeClock(datetime(2026, 3, 1, 0, 0, tzinfo=UTC))


@pytest.fixture()
def driver(clock):
    return FakeDriver(clock)


@pytest.fixture()
def router():
    return FakeRouter()


@pytest.fixture()
def source():
    return FakeSource()


@pytest.fixture()
def storage(tmp_path):
    return FilesystemStorageBackend(tmp_path / "artifacts")


@pytest.fixture()
def dr(db_session, clock, driver, router, source, storage):
    """DisasterRecoveryService wired to fakes, with time fully controlled by ``clock``."""
    notifier = NotificationService(db_session, webhook_url="")
    svc = DisasterRecoveryService(
        db_session,
        storage=storage,
        source=source,
        driver=driver,
        controller=driver,
        metrics=driver,
        router=router,
        notifier=notifier,
        environments=FakeEnvironmentProvider(db_session, driver, notifier, clock),
        clock=clock,
    )
    svc.failover.sleep = clock.sleep
    svc.failover.monotonic = clock.monotonic
    svc.recovery_tests.monotonic = clock.monotonic
    return svc


@pytest.fixture()
def client(dr):
    """API client whose endpoints share the ``dr`` fixture's session and fakes."""
    from dr_engine.api.deps import get_dr_service
    from dr_engine.main import app

    app.dependency_overrides[get_dr_service] = lambda: dr
    try:
        yield SyncASGIClient(app)
    finally:
        app.dependency_overrides.clear()
