"""
Settlement Guidance

Pure scoring of what to do with lines that are not ready when the guest
wants to pay. Reads line data, never touches the database and never
changes anything. The settlement transaction shows the result to staff and
only acts once they choose.

Author: Khalil Bannouri
Version: 1.0.0
"""

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Optional, Sequence

from orderflow.core.config import Settings
from orderflow.core.timeutils import ensure_utc
from orderflow.models import LineStatus
from orderflow.services.pricing import ZERO, money


class RecommendationKind(str, enum.Enum):
    SERVE_LATER = "SERVE_LATER"
    GOODWILL_DISCOUNT = "GOODWILL_DISCOUNT"
    SKIP_REMAINING = "SKIP_REMAINING"
    FORCE_CLOSE = "FORCE_CLOSE"


# Stable tie-break when two options score the same
_KIND_ORDER = list(RecommendationKind)


@dataclass(frozen=True)
class Recommendation:
    kind: RecommendationKind
    confidence: float
    justification: str
    suggested_discount: Decimal = ZERO

    def to_dict(self) -> dict:
        return {
            "kind": self.kind.value,
            "confidence": self.confidence,
            "justification": self.justification,
            "suggested_discount": str(self.suggested_discount),
        }


def _clamp(value: float) -> float:
    return round(max(0.0, min(1.0, value)), 2)


def _minutes_waiting(fired_at: Optional[datetime], now: datetime) -> Optional[float]:
    if fired_at is None:
        return None
    return (ensure_utc(now) - ensure_utc(fired_at)).total_seconds() / 60


def recommend(lines: Sequence, now: datetime, settings: Settings) -> list[Recommendation]:
    """
    Rank settlement options for the given non-ready lines.

    Args:
        lines: Non-ready lines (anything with status, line_total, fired_at)
        now: Reference time for wait calculations
        settings: Rates and the long-wait threshold

    Returns:
        Recommendations, highest confidence first. Empty if nothing is pending.
    """
    if not lines:
        return []

    count = len(lines)
    value = money(sum((money(line.line_total) for line in lines), ZERO))

    drafts = sum(1 for line in lines if line.status == LineStatus.DRAFT)
    pending = sum(1 for line in lines if line.status == LineStatus.PENDING)
    preparing = sum(1 for line in lines if line.status == LineStatus.PREPARING)
    draft_share = drafts / count
    pending_share = pending / count
    preparing_share = preparing / count

    waits = [w for w in (_minutes_waiting(line.fired_at, now) for line in lines) if w is not None]
    longest_wait = max(waits) if waits else 0.0
    long_wait = longest_wait >= settings.long_wait_minutes

    goodwill = money(value * settings.goodwill_discount_rate)

    # SERVE_LATER: food is nearly out, settle and let it follow
    serve_later = 0.35 + 0.5 * preparing_share + 0.15 * pending_share - 0.35 * draft_share
    if long_wait:
        serve_later -= 0.2
    if preparing_share == 1:
        serve_reason = "Every remaining item is already being prepared; settle now and serve it when it is up."
    elif drafts:
        serve_reason = f"{drafts} item(s) never reached the kitchen, so serving later means cooking from scratch."
    else:
        serve_reason = f"{pending + preparing} item(s) are with the kitchen; the guest can be served after paying."

    # GOODWILL_DISCOUNT: long waits earn a gesture
    goodwill_score = 0.15 + (0.55 if long_wait else 0.0) + 0.1 * (pending_share + preparing_share)
    if long_wait:
        goodwill_reason = (
            f"Oldest item has waited {longest_wait:.0f} minutes (threshold {settings.long_wait_minutes}); "
            f"a {goodwill} discount acknowledges the delay."
        )
    else:
        goodwill_reason = f"Waits are within {settings.long_wait_minutes} minutes; a discount is optional."

    # SKIP_REMAINING: drop what the kitchen has not started
    skip_score = 0.2 + 0.6 * draft_share + 0.25 * pending_share - 0.3 * preparing_share
    if long_wait:
        skip_score += 0.1
    skip_reason = (
        f"Waive {count} item(s) worth {value}; "
        f"{drafts + pending} of them have not been started."
    )

    force_score = 0.05 + (0.05 if long_wait else 0.0)
    force_reason = "Close as billed and leave the remaining items unserved. Use only when the guest insists."

    ranked = [
        Recommendation(RecommendationKind.SERVE_LATER, _clamp(serve_later), serve_reason, ZERO),
        Recommendation(RecommendationKind.GOODWILL_DISCOUNT, _clamp(goodwill_score), goodwill_reason, goodwill),
        Recommendation(RecommendationKind.SKIP_REMAINING, _clamp(skip_score), skip_reason, value),
        Recommendation(RecommendationKind.FORCE_CLOSE, _clamp(force_score), force_reason, ZERO),
    ]
    ranked.sort(key=lambda rec: (-rec.confidence, _KIND_ORDER.index(rec.kind)))
    return ranked
