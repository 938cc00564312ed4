"""
Pricing Snapshot and Order Totals

Lines copy name, price, station and the requires-prep flag from the catalog
at creation time. After that the catalog is never consulted again for the
line, so editing a menu item cannot change a historical order.

Totals follow one rule set for every channel:
    - Tax on every channel
    - Service charge on dine-in only
    - Delivery fee on delivery only
    - Discount subtracted last
"""

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, NamedTuple, Optional, Union

from orderflow.core.config import Settings
from orderflow.core.exceptions import InvalidRequest
from orderflow.models import OrderChannel, OrderLine, LineStatus
from orderflow.services.catalog.base import CatalogItem

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


def money(value: Union[Decimal, int, float, str, None]) -> Decimal:
    """Quantize to cents, half-up. Floats go through str() to avoid binary noise."""
    if value is None:
        return ZERO
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


class NewLine(NamedTuple):
    """A line as requested by staff, before it is priced."""
    menu_item_id: int
    quantity: int = 1
    notes: Optional[str] = None


@dataclass(frozen=True)
class OrderTotals:
    subtotal: Decimal
    tax: Decimal
    service_charge: Decimal
    delivery_fee: Decimal
    discount: Decimal
    total: Decimal


def snapshot_line(item: CatalogItem, quantity: int, notes: Optional[str] = None) -> OrderLine:
    """
    Build a DRAFT line from a catalog item.

    Args:
        item: Catalog entry as read right now
        quantity: Number of portions (1-99)
        notes: Free-text customization

    Returns:
        Unsaved OrderLine carrying the snapshot

    Raises:
        InvalidRequest: quantity out of range or item not orderable
    """
    if quantity < 1 or quantity > 99:
        raise InvalidRequest(
            f"Quantity must be between 1 and 99 (got {quantity})",
            details={"menu_item_id": item.id, "quantity": quantity},
        )
    if not item.available:
        raise InvalidRequest(
            f"{item.name} is not available right now",
            details={"menu_item_id": item.id},
        )

    unit_price = money(item.price)
    return OrderLine(
        menu_item_id=item.id,
        item_name=item.name,
        unit_price=unit_price,
        station=item.station,
        requires_prep=item.requires_prep,
        quantity=quantity,
        line_total=money(unit_price * quantity),
        notes=notes,
        status=LineStatus.DRAFT,
    )


def calculate_totals(
    channel: OrderChannel,
    lines: Iterable[OrderLine],
    discount: Decimal,
    settings: Settings,
) -> OrderTotals:
    """Calculate order subtotal, charges and total."""
    subtotal = money(sum((money(line.line_total) for line in lines), ZERO))
    tax = money(subtotal * settings.tax_rate)

    service_charge = ZERO
    if channel == OrderChannel.DINE_IN:
        service_charge = money(subtotal * settings.service_charge_rate)

    delivery_fee = ZERO
    if channel == OrderChannel.DELIVERY and subtotal > 0:
        delivery_fee = money(settings.delivery_fee)

    discount = money(discount)
    total = money(subtotal + tax + service_charge + delivery_fee - discount)

    return OrderTotals(
        subtotal=subtotal,
        tax=tax,
        service_charge=service_charge,
        delivery_fee=delivery_fee,
        discount=discount,
        total=total,
    )


def apply_totals(order, settings: Settings) -> OrderTotals:
    """Recalculate and write the breakdown onto ``order``."""
    totals = calculate_totals(order.channel, order.lines, order.discount or ZERO, settings)
    order.subtotal = totals.subtotal
    order.tax = totals.tax
    order.service_charge = totals.service_charge
    order.delivery_fee = totals.delivery_fee
    order.discount = totals.discount
    order.total = totals.total
    return totals
