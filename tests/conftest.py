import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine


def _configure_path() -> None:
    src_path = Path(__file__).resolve().parents[1] / "src"
    if src_path.exists():
        sys.path.insert(0, str(src_path))


_configure_path()

from pointsledger_api.app import create_app  # noqa: E402
from pointsledger_api.core.settings import settings  # noqa: E402
from pointsledger_api.db.base import Base  # noqa: E402
from pointsledger_api.db.session import get_session  # noqa: E402
import pointsledger_api.models  # noqa: E402,F401
from pointsledger_api.observability.loyalty import get_loyalty_store  # noqa: E402
from pointsledger_api.observability.scheduler import get_loyalty_scheduler_store  # noqa: E402


@pytest.fixture(autouse=True)
def _fast_settings(monkeypatch):
    monkeypatch.setattr(settings, "ledger_conflict_backoff_seconds", 0.0)
    monkeypatch.setattr(settings, "admin_api_key", "")
    monkeypatch.setattr(settings, "tracing_enabled", False)
    monkeypatch.setattr(settings, "loyalty_job_scheduler_enabled", False)
    get_loyalty_store().reset()
    get_loyalty_scheduler_store().reset()
    yield
    get_loyalty_store().reset()
    get_loyalty_scheduler_store().reset()


@pytest_asyncio.fixture
async def session_factory():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:", future=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()


@pytest_asyncio.fixture
async def app_with_db(session_factory):
    app = create_app()

    async def override_get_session():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_session] = override_get_session

    try:
        yield app, session_factory
    finally:
        app.dependency_overrides.clear()


@pytest_asyncio.fixture
async def file_session_factory(tmp_path):
    """Engine over a real database file so each session gets its own connection."""

    engine = create_async_engine(
        f"sqlite+aiosqlite:///{tmp_path / 'ledger.db'}",
        future=True,
        connect_args={"timeout": 15},
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    factory = async_sessionmaker(engine, expire_on_commit=False, class_=AsyncSession)

    try:
        yield factory
    finally:
        await engine.dispose()
