"""Pure auction state calculation.

Everything here is deterministic given its inputs: no database access, no clock
reads. Callers pass ``now`` explicitly so bid validation, countdown displays and
settlement re-checks all agree on the same answer.

Money is handled as :class:`~decimal.Decimal`. The minimum next bid is rounded
to cents with ROUND_HALF_UP (e.g. 100.005 -> 100.01).
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Protocol

from gavel.services.auction_settings import AuctionSettings
from gavel.timeutils import as_utc

CENT = Decimal("0.01")


class AuctionLike(Protocol):
    start_at: datetime
    end_at: datetime
    min_increment_cad: Decimal | None
    soft_close_seconds: int | None


class BidLike(Protocol):
    amount_cad: Decimal
    created_at: datetime


@dataclass(frozen=True)
class AuctionState:
    is_active: bool
    has_started: bool
    has_ended: bool
    time_left: timedelta
    current_high_bid: Decimal
    min_next_bid: Decimal
    total_bids: int
    end_at: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_active": self.is_active,
            "has_started": self.has_started,
            "has_ended": self.has_ended,
            "time_left_ms": int(self.time_left.total_seconds() * 1000),
            "current_high_bid": str(self.current_high_bid),
            "min_next_bid": str(self.min_next_bid),
            "total_bids": self.total_bids,
            "end_at": self.end_at.isoformat(),
        }


def round_cents(value: Decimal) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def effective_settings(auction: AuctionLike, settings: AuctionSettings) -> AuctionSettings:
    """Apply per-auction overrides (when set) on top of the site-wide snapshot."""
    updates: dict[str, Any] = {}
    if auction.soft_close_seconds is not None:
        updates["soft_close_seconds"] = int(auction.soft_close_seconds)
    if auction.min_increment_cad is not None:
        updates["min_increment_strategy"] = "fixed"
        updates["min_increment_value"] = Decimal(auction.min_increment_cad)
    if not updates:
        return settings
    return settings.model_copy(update=updates)


def minimum_increment(current_high_bid: Decimal, settings: AuctionSettings) -> Decimal:
    if settings.min_increment_strategy == "percent":
        return current_high_bid * settings.min_increment_value / Decimal(100)
    return settings.min_increment_value


def compute_auction_state(
    auction: AuctionLike,
    bids: Iterable[BidLike],
    settings: AuctionSettings,
    now: datetime,
    *,
    base_price: Decimal,
) -> AuctionState:
    settings = effective_settings(auction, settings)
    start_at = as_utc(auction.start_at)
    end_at = as_utc(auction.end_at)
    now = as_utc(now)

    has_started = now >= start_at
    has_ended = now >= end_at
    amounts = [Decimal(b.amount_cad) for b in bids]
    current_high_bid = max(amounts) if amounts else Decimal(base_price)
    min_next_bid = round_cents(current_high_bid + minimum_increment(current_high_bid, settings))
    if min_next_bid <= current_high_bid:
        # Sub-cent percentage increments still have to move the price.
        min_next_bid = round_cents(current_high_bid) + CENT

    return AuctionState(
        is_active=has_started and not has_ended,
        has_started=has_started,
        has_ended=has_ended,
        time_left=max(timedelta(0), end_at - now),
        current_high_bid=round_cents(current_high_bid),
        min_next_bid=min_next_bid,
        total_bids=len(amounts),
        end_at=end_at,
    )


def is_in_soft_close(end_at: datetime, soft_close_seconds: int, now: datetime) -> bool:
    end_at = as_utc(end_at)
    now = as_utc(now)
    return now >= end_at - timedelta(seconds=soft_close_seconds) and now < end_at


def soft_close_extension(now: datetime, soft_close_seconds: int) -> datetime:
    # Extend from the bid's own time, not from the old deadline, so stacked late
    # bids cannot push the close out without bound.
    return as_utc(now) + timedelta(seconds=soft_close_seconds)


def winning_bid(bids: Iterable[Any]) -> Any | None:
    """Highest amount wins; ties go to the earliest bid."""
    ranked = sorted(
        bids,
        key=lambda b: (-Decimal(b.amount_cad), as_utc(b.created_at), str(getattr(b, "id", ""))),
    )
    return ranked[0] if ranked else None


def format_time_left(time_left: timedelta) -> str:
    total = int(time_left.total_seconds())
    if total <= 0:
        return "Ended"
    minutes, seconds = divmod(total, 60)
    hours, minutes = divmod(minutes, 60)
    days, hours = divmod(hours, 24)
    if days:
        return f"{days}d {hours}h {minutes}m"
    if hours:
        return f"{hours}h {minutes}m {seconds}s"
    if minutes:
        return f"{minutes}m {seconds}s"
    return f"{seconds}s"
