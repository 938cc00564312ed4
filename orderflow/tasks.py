"""
Celery Tasks
Background jobs: the periodic consistency sweep and a worker health check.

The sweep only detects and reports. Repairing drift is a separate,
operator-driven job.
"""

import asyncio
import logging
import time
from collections import Counter
from datetime import datetime

from orderflow.celery_worker import celery_app
from orderflow.core.config import get_settings
from orderflow.database import build_engine, build_session_maker
from orderflow.services.invariants import check_invariants

logger = logging.getLogger(__name__)


async def _sweep(database_url: str) -> list[dict]:
    # Each task run gets its own engine; the worker's event loop is new every time
    engine = build_engine(database_url)
    try:
        async with build_session_maker(engine)() as session:
            violations = await check_invariants(session)
    finally:
        await engine.dispose()
    return [violation.to_dict() for violation in violations]


@celery_app.task(bind=True, name="orderflow.tasks.run_consistency_sweep")
def run_consistency_sweep(self, database_url: str = None) -> dict:
    """
    Check every consistency invariant and log what is found.

    Args:
        database_url: Override for the configured database (tests, one-off runs)

    Returns:
        dict: Summary with violation counts by code and the violations themselves
    """
    task_id = self.request.id
    start_time = time.time()

    violations = asyncio.run(_sweep(database_url or get_settings().database_url))

    elapsed = round(time.time() - start_time, 3)
    by_code = dict(Counter(v["code"] for v in violations))

    if violations:
        logger.warning(f"Task {task_id}: consistency sweep found {len(violations)} violation(s) {by_code}")
        for violation in violations:
            logger.warning(
                f"  {violation['code']} {violation['entity_type']}#{violation['entity_id']}: {violation['detail']}"
            )
    else:
        logger.info(f"Task {task_id}: consistency sweep clean in {elapsed}s")

    return {
        'healthy': not violations,
        'violation_count': len(violations),
        'by_code': by_code,
        'violations': violations,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
        'timestamp': datetime.now().isoformat(),
    }


@celery_app.task(name="orderflow.tasks.health_check")
def health_check() -> dict:
    """
    Simple health check task to verify Celery is working.
    """
    return {
        'status': 'healthy',
        'worker': 'celery',
        'timestamp': datetime.now().isoformat()
    }
