"""
Concurrency Simulation Script

Drives concurrent seat / settle / rider traffic against a running server to
show that tables and rider slots are never double-bound and orders are never
double-charged.
Run from project root: python scripts/simulate.py

Author: Khalil_Bannouri
Version: 1.0.0
"""

import argparse
import asyncio
import os
import random
import sys
import time
from typing import Any

import httpx

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
# Windows event loop fix
if sys.platform == "win32":
    asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

# Configuration
API_BASE_URL = "http://localhost:8000"

# Mock roster and menu served in development mode
MANAGER_ID = 1
CASHIER_ID = 2
WAITER_ID = 3
RIDER_IDS = [4, 5]
COOKED_ITEMS = [1, 2, 3, 4]
GRAB_AND_GO_ITEMS = [5, 6]


def random_lines() -> list[dict]:
    lines = [
        {"menu_item_id": random.choice(COOKED_ITEMS), "quantity": random.randint(1, 3)}
        for _ in range(random.randint(1, 3))
    ]
    if random.random() < 0.5:
        lines.append({"menu_item_id": random.choice(GRAB_AND_GO_ITEMS), "quantity": 1})
    return lines


# =============================================================================
# STEPS
# =============================================================================

async def ensure_tables(client: httpx.AsyncClient, count: int) -> list[dict]:
    """Create tables S1..Sn if missing and return the free ones."""
    for i in range(1, count + 1):
        await client.post(f"{API_BASE_URL}/api/tables", json={"name": f"S{i}", "capacity": 4})
    response = await client.get(f"{API_BASE_URL}/api/tables")
    response.raise_for_status()
    return [t for t in response.json() if t["name"].startswith("S") and t["status"] == "AVAILABLE"]


async def seat(client: httpx.AsyncClient, table_id: int, attempt: int) -> dict[str, Any]:
    start_time = time.time()
    response = await client.post(
        f"{API_BASE_URL}/api/orders",
        json={
            "channel": "DINE_IN",
            "staff_id": WAITER_ID,
            "table_id": table_id,
            "guest_count": random.randint(1, 4),
            "lines": random_lines(),
        },
        timeout=30.0,
    )
    return {
        "table_id": table_id,
        "attempt": attempt,
        "status": response.status_code,
        "order": response.json() if response.status_code == 201 else None,
        "time": round(time.time() - start_time, 3),
    }


async def cook(client: httpx.AsyncClient, order_id: int) -> dict:
    """Fire, then bump every kitchen line through PREPARING to DONE."""
    response = await client.post(f"{API_BASE_URL}/api/orders/{order_id}/fire", json={"staff_id": WAITER_ID})
    response.raise_for_status()
    fired = response.json()
    for line_id in fired["sent_to_kitchen"]:
        for status in ("PREPARING", "DONE"):
            bump = await client.patch(
                f"{API_BASE_URL}/api/orders/{order_id}/lines/{line_id}/status",
                json={"status": status},
            )
            bump.raise_for_status()
    return (await client.get(f"{API_BASE_URL}/api/orders/{order_id}")).json()


async def settle(client: httpx.AsyncClient, order: dict) -> int:
    response = await client.post(
        f"{API_BASE_URL}/api/orders/{order['id']}/settle",
        json={"staff_id": CASHIER_ID, "payment_method": "CASH", "amount": order["total"]},
        timeout=30.0,
    )
    return response.status_code


# =============================================================================
# SIMULATION
# =============================================================================

async def run_simulation(num_tables: int, contenders: int, deliveries: int) -> dict[str, Any]:
    print("\n" + "=" * 70)
    print("🚀 CONCURRENCY SIMULATION")
    print(f"   Tables: {num_tables}, parties per table: {contenders}, deliveries: {deliveries}")
    print("=" * 70)

    start_time = time.time()
    async with httpx.AsyncClient(timeout=30.0) as client:
        tables = await ensure_tables(client, num_tables)
        if not tables:
            print("❌ No free tables; mark tables cleaned or use a fresh database")
            return {"success": False}

        # 1. Seat storm: every table gets several simultaneous parties
        seat_tasks = [seat(client, t["id"], n) for t in tables for n in range(contenders)]
        seat_results = await asyncio.gather(*seat_tasks)
        winners = [r for r in seat_results if r["status"] == 201]
        conflicts = [r for r in seat_results if r["status"] == 409]
        per_table = {t["id"]: sum(1 for r in winners if r["table_id"] == t["id"]) for t in tables}
        double_booked = [tid for tid, n in per_table.items() if n > 1]

        print(f"\n🪑 Seating: {len(winners)} seated, {len(conflicts)} rejected with 409")
        print(f"   Double-booked tables: {double_booked or 'none'}")

        # 2. Cook, then settle every order twice at once
        ready_orders = await asyncio.gather(*(cook(client, r["order"]["id"]) for r in winners))
        settle_codes = await asyncio.gather(*(settle(client, o) for o in ready_orders for _ in range(2)))
        charged = settle_codes.count(200)
        already_closed = settle_codes.count(409)
        print(f"\n💵 Settlement: {charged} charged, {already_closed} duplicate attempts rejected")

        # 3. Deliveries: create, cook, dispatch in one batch, deliver, settle
        delivery_ids = []
        for i in range(deliveries):
            response = await client.post(f"{API_BASE_URL}/api/orders", json={
                "channel": "DELIVERY",
                "staff_id": CASHIER_ID,
                "customer_name": f"Customer {i + 1}",
                "customer_phone": f"0300{random.randint(1000000, 9999999)}",
                "delivery_address": f"House {random.randint(1, 200)}, Street {random.randint(1, 40)}",
                "lines": random_lines(),
            })
            response.raise_for_status()
            delivery_ids.append(response.json()["id"])
        for order_id in delivery_ids:
            await cook(client, order_id)

        rider_id = random.choice(RIDER_IDS)
        rider_summary = {}
        if delivery_ids:
            dispatch = await client.post(f"{API_BASE_URL}/api/deliveries/dispatch", json={
                "order_ids": delivery_ids,
                "rider_id": rider_id,
                "float_given": "5000.00",
                "staff_id": MANAGER_ID,
            })
            dispatch.raise_for_status()
            for order_id in delivery_ids:
                await client.post(f"{API_BASE_URL}/api/orders/{order_id}/delivered", json={"staff_id": CASHIER_ID})
            balance = (await client.get(f"{API_BASE_URL}/api/riders/{rider_id}/balance")).json()
            settlement = await client.post(f"{API_BASE_URL}/api/riders/{rider_id}/settle", json={
                "order_ids": delivery_ids,
                "received": balance["outstanding_liability"],
                "staff_id": MANAGER_ID,
            })
            settlement.raise_for_status()
            rider_summary = settlement.json()
            print(f"\n🛵 Rider {rider_id}: expected {rider_summary['expected_amount']}, "
                  f"received {rider_summary['received_amount']}, "
                  f"cash in hand {rider_summary['cash_in_hand']}")

        report = (await client.get(f"{API_BASE_URL}/api/consistency")).json()

    total_time = round(time.time() - start_time, 2)

    print("\n" + "=" * 70)
    print("📊 SIMULATION RESULTS")
    print("=" * 70)
    print(f"⏱️  Total Time: {total_time}s")
    if winners:
        print(f"   Average seat response: {round(sum(r['time'] for r in winners) / len(winners), 3)}s")
    print(f"🔍 Consistency: {'✅ healthy' if report['healthy'] else '❌ ' + str(report['violation_count']) + ' violation(s)'}")
    for violation in report["violations"][:5]:
        print(f"   {violation['code']} {violation['entity_type']}#{violation['entity_id']}: {violation['detail']}")
    print("=" * 70)

    return {
        "success": not double_booked and charged == len(ready_orders) and report["healthy"],
        "seated": len(winners),
        "conflicts": len(conflicts),
        "charged": charged,
        "rider": rider_summary,
        "total_time": total_time,
    }


async def preflight() -> bool:
    async with httpx.AsyncClient() as client:
        try:
            response = await client.get(f"{API_BASE_URL}/health")
        except httpx.HTTPError as e:
            print(f"❌ Server not reachable at {API_BASE_URL}: {e}")
            return False
        data = response.json()
        print(f"✅ Status: {data.get('status')} | Database: {data.get('database')} | Redis: {data.get('redis')}")
        return True


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrency Simulation Script")
    parser.add_argument("--base-url", default=API_BASE_URL, help="Server base URL")
    parser.add_argument("--tables", type=int, default=5, help="Number of tables to contend for")
    parser.add_argument("--contenders", type=int, default=4, help="Parties racing for each table")
    parser.add_argument("--deliveries", type=int, default=3, help="Delivery orders in the rider batch")
    args = parser.parse_args()
    API_BASE_URL = args.base_url.rstrip("/")

    if not asyncio.run(preflight()):
        sys.exit(1)

    outcome = asyncio.run(run_simulation(args.tables, args.contenders, args.deliveries))
    sys.exit(0 if outcome.get("success") else 1)
