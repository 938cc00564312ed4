"""
Takeaway Token Minting

Tokens run T001, T002, ... per restaurant and reset at local midnight. The
counter row for (restaurant, business day) is locked for the rest of the
transaction, so two concurrent fires can never be handed the same number.
"""

import logging
from datetime import date, datetime

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from orderflow.core.config import Settings
from orderflow.core.timeutils import business_date
from orderflow.models import DailyTokenCounter
from orderflow.services.locking import lock_or_create

logger = logging.getLogger(__name__)


def format_token(number: int, prefix: str = "T", width: int = 3) -> str:
    return f"{prefix}{number:0{width}d}"


async def mint_token(session: AsyncSession, settings: Settings, now: datetime) -> tuple[str, date]:
    """
    Hand out the next takeaway token for today's business day.

    Returns:
        (token, business_date)
    """
    day = business_date(now, settings.tzinfo)
    code = settings.restaurant_code

    counter = await lock_or_create(
        session,
        select(DailyTokenCounter).where(
            DailyTokenCounter.restaurant_code == code,
            DailyTokenCounter.business_date == day,
        ),
        lambda: DailyTokenCounter(restaurant_code=code, business_date=day, last_token=0),
    )
    counter.last_token += 1

    token = format_token(counter.last_token, settings.token_prefix, settings.token_width)
    logger.info(f"Minted takeaway token {token} for {code} on {day.isoformat()}")
    return token, day
