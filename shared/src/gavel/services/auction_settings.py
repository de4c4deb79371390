"""Auction settings service -- typed Pydantic snapshot backed by the site_settings table."""
from __future__ import annotations

import logging
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gavel.models.site_setting import SiteSetting

logger = logging.getLogger(__name__)

AUCTION_SETTINGS_CATEGORY = "auction"
AUCTION_SETTINGS_PREFIX = "auction."


class AuctionSettings(BaseModel):
    """Immutable snapshot of the auction/deposit configuration for one operation."""

    model_config = ConfigDict(frozen=True)

    soft_close_seconds: int = Field(default=120, ge=0, le=3600)
    min_increment_strategy: Literal["fixed", "percent"] = "fixed"
    min_increment_value: Decimal = Field(default=Decimal("5"), gt=0)
    deposit_required: bool = True
    deposit_strategy: Literal["percent", "flat"] = "percent"
    # Fraction of the base price, e.g. 0.10 for ten percent.
    deposit_percent: Decimal = Field(default=Decimal("0.10"), ge=0, le=1)
    deposit_flat_amount: Decimal = Field(default=Decimal("100"), ge=0)
    deposit_minimum_cad: Decimal = Field(default=Decimal("50"), ge=0)


def _unwrap(value: Any) -> Any:
    # Rows written by the admin UI wrap scalars as {"value": x}.
    if isinstance(value, dict) and set(value) <= {"value", "v"} and value:
        return value.get("value", value.get("v"))
    return value


def merge_auction_settings(overrides: dict[str, Any]) -> AuctionSettings:
    """Merge raw overrides onto defaults, dropping any field that fails validation."""
    known = set(AuctionSettings.model_fields)
    accepted: dict[str, Any] = {}
    for field, raw in overrides.items():
        if field not in known:
            logger.debug("Ignoring unknown auction setting %s", field)
            continue
        candidate = {**accepted, field: _unwrap(raw)}
        try:
            AuctionSettings(**candidate)
        except ValidationError:
            logger.warning("Invalid auction setting %s=%r; using default", field, raw)
            continue
        accepted = candidate
    return AuctionSettings(**accepted)


async def load_auction_settings(session: AsyncSession) -> AuctionSettings:
    """Load auction settings from site_settings rows, merged with defaults.

    Keys use dotted paths like ``auction.soft_close_seconds``. Called at the start
    of every bid/deposit/settlement operation; never cached across a bid decision.
    """
    result = await session.execute(
        select(SiteSetting).where(SiteSetting.category == AUCTION_SETTINGS_CATEGORY)
    )
    overrides: dict[str, Any] = {}
    for row in result.scalars().all():
        key = row.key
        if key.startswith(AUCTION_SETTINGS_PREFIX):
            key = key[len(AUCTION_SETTINGS_PREFIX):]
        overrides[key] = row.value
    return merge_auction_settings(overrides)


def auction_settings_schema() -> dict[str, Any]:
    """Return the JSON Schema for AuctionSettings with defaults."""
    return AuctionSettings.model_json_schema()
