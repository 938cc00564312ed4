"""
Consistency Verification Script

Runs every consistency invariant directly against the configured database
and prints a report. Nothing is repaired.
Run from project root: python scripts/verify.py

Author: Khalil_Bannouri
Version: 1.0.0
"""

import asyncio
import os
import sys
from collections import Counter
from datetime import datetime

# Add parent directory to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from sqlalchemy import func, select

from orderflow.core.config import get_settings
from orderflow.database import build_engine, build_session_maker
from orderflow.models import DiningTable, Order, RiderAccount
from orderflow.services.invariants import check_invariants


async def collect(database_url: str):
    engine = build_engine(database_url)
    try:
        async with build_session_maker(engine)() as session:
            by_status = dict(
                (await session.execute(select(Order.status, func.count(Order.id)).group_by(Order.status))).all()
            )
            tables = dict(
                (await session.execute(
                    select(DiningTable.status, func.count(DiningTable.id)).group_by(DiningTable.status)
                )).all()
            )
            riders = (await session.execute(select(RiderAccount).order_by(RiderAccount.rider_id))).scalars().all()
            violations = await check_invariants(session)
    finally:
        await engine.dispose()
    return by_status, tables, riders, violations


def verify_consistency() -> bool:
    """Print the consistency report; True when no invariant is violated."""
    settings = get_settings()

    print("=" * 60)
    print("🔍 CONSISTENCY VERIFICATION REPORT")
    print("=" * 60)
    print(f"⏰ Timestamp: {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
    print(f"🗄️  Database: {settings.database_url.split('@')[-1]}")
    print("=" * 60)

    by_status, tables, riders, violations = asyncio.run(collect(settings.database_url))

    print(f"\n📊 ORDERS:")
    for status, count in sorted(by_status.items(), key=lambda item: item[0].value):
        print(f"   {status.value:<10} {count}")

    print(f"\n🪑 TABLES:")
    for status, count in sorted(tables.items(), key=lambda item: item[0].value):
        print(f"   {status.value:<15} {count}")

    print(f"\n🛵 RIDERS:")
    for account in riders:
        print(f"   Rider {account.rider_id}: cash in hand {account.cash_in_hand} {settings.currency}")
    if not riders:
        print("   (none dispatched yet)")

    if violations:
        print(f"\n❌ {len(violations)} VIOLATION(S):")
        for code, count in Counter(v.code for v in violations).most_common():
            print(f"   {code}: {count}")
        print("-" * 60)
        for violation in violations[:20]:
            print(f"   {violation.code} {violation.entity_type}#{violation.entity_id}: {violation.detail}")
    else:
        print(f"\n✅ All invariants hold")

    print("\n" + "=" * 60)
    print("✅ VERIFICATION COMPLETE")
    print("=" * 60)

    return not violations


if __name__ == "__main__":
    sys.exit(0 if verify_consistency() else 1)
