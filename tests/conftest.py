"""
Pytest fixtures.

Every test gets its own SQLite file so that concurrent sessions really run
on separate connections and contend for the write lock.
"""

import pytest

from orderflow.core.config import EnvironmentMode, Settings
from orderflow.database import build_engine, build_session_maker, init_db
from orderflow.services.broadcast import MockBroadcastService
from orderflow.services.catalog import MockCatalogService
from orderflow.services.engine import OrderEngine
from orderflow.services.staff import MockStaffDirectory


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite+aiosqlite:///{tmp_path / 'orderflow-test.db'}"


@pytest.fixture
def settings(database_url):
    return Settings(
        env_mode=EnvironmentMode.DEVELOPMENT,
        database_url=database_url,
        timezone="Asia/Karachi",
    )


@pytest.fixture
async def db_engine(database_url):
    engine = build_engine(database_url)
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(db_engine):
    return build_session_maker(db_engine)


@pytest.fixture
def catalog():
    return MockCatalogService()


@pytest.fixture
def staff():
    return MockStaffDirectory()


@pytest.fixture
def broadcaster():
    return MockBroadcastService()


@pytest.fixture
def engine(session_maker, settings, catalog, staff, broadcaster):
    return OrderEngine(
        session_maker=session_maker,
        settings=settings,
        catalog=catalog,
        staff=staff,
        broadcaster=broadcaster,
    )


@pytest.fixture
async def tables(engine):
    """Three free tables: T1, T2, T3."""
    return [await engine.create_table(f"T{n}", capacity=4) for n in range(1, 4)]
