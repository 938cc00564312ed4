"""
Shared test helpers: roster ids from the mock staff directory and a few
shortcuts for driving orders through the kitchen.
"""

from orderflow.models import LineStatus, OrderChannel
from orderflow.services.channels import OrderOpening
from orderflow.services.pricing import NewLine

# MockStaffDirectory roster
MANAGER = 1
CASHIER = 2
WAITER = 3
RIDER = 4
OTHER_RIDER = 5
ADMIN = 6

# MockCatalogService menu
KARAHI = 1  # 1800.00
BIRYANI = 2  # 950.00
NAAN = 3  # 120.00
MARGARITA = 4  # 350.00
WATER = 5  # 100.00, no prep
SOFT_DRINK = 6  # 150.00, no prep


async def seat(engine, table_id, *lines, guests=2):
    return await engine.create_order(
        OrderChannel.DINE_IN,
        staff_id=WAITER,
        opening=OrderOpening(table_id=table_id, guest_count=guests),
        lines=[NewLine(item) if isinstance(item, int) else NewLine(*item) for item in lines],
    )


async def takeaway(engine, *lines):
    return await engine.create_order(
        OrderChannel.TAKEAWAY,
        staff_id=CASHIER,
        opening=OrderOpening(customer_name="Walk-in"),
        lines=[NewLine(item) if isinstance(item, int) else NewLine(*item) for item in lines],
    )


async def delivery(engine, *lines, address="House 12, Street 4, F-7/2"):
    return await engine.create_order(
        OrderChannel.DELIVERY,
        staff_id=CASHIER,
        opening=OrderOpening(customer_name="Sara", customer_phone="03001234567", delivery_address=address),
        lines=[NewLine(item) if isinstance(item, int) else NewLine(*item) for item in lines],
    )


async def cook(engine, order_id):
    """Fire the order and bump every kitchen line to DONE. Returns the fresh order."""
    fired = await engine.fire_order(order_id, staff_id=WAITER)
    for line in fired.sent_to_kitchen:
        await engine.mark_line_status(order_id, line.id, LineStatus.PREPARING)
        await engine.mark_line_status(order_id, line.id, LineStatus.DONE)
    return await engine.get_order(order_id)
