"""
Celery task tests. Tasks run eagerly through ``apply``; no broker is used.
"""

import asyncio

from orderflow.database import build_engine, build_session_maker, init_db
from orderflow.models import DiningTable, TableStatus
from orderflow.services.invariants import ORPHANED_TABLE
from orderflow.tasks import health_check, run_consistency_sweep


async def seed(database_url: str, drift: bool) -> None:
    engine = build_engine(database_url)
    try:
        await init_db(engine)
        async with build_session_maker(engine)() as session:
            async with session.begin():
                session.add(DiningTable(name="T1", capacity=4))
                if drift:
                    session.add(DiningTable(name="T2", capacity=2, status=TableStatus.OCCUPIED, active_order_id=77))
    finally:
        await engine.dispose()


class TestConsistencySweep:
    def test_clean_database(self, database_url):
        asyncio.run(seed(database_url, drift=False))

        result = run_consistency_sweep.apply(kwargs={"database_url": database_url}).get()

        assert result["healthy"] is True
        assert result["violation_count"] == 0
        assert result["by_code"] == {}

    def test_reports_drift(self, database_url):
        asyncio.run(seed(database_url, drift=True))

        result = run_consistency_sweep.apply(kwargs={"database_url": database_url}).get()

        assert result["healthy"] is False
        assert result["by_code"] == {ORPHANED_TABLE: 1}
        assert result["violations"][0]["detail"] == "order #77 does not exist"


def test_health_check_task():
    result = health_check.apply().get()
    assert result["status"] == "healthy"
