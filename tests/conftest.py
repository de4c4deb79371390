"""Shared-package test configuration."""

from datetime import UTC, datetime, timedelta
from decimal import Decimal
from types import SimpleNamespace

import pytest
from gavel.services.auction_settings import AuctionSettings

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


@pytest.fixture
def now():
    return NOW


@pytest.fixture
def settings():
    return AuctionSettings()


@pytest.fixture
def auction():
    """Live auction: started an hour ago, ends in ten minutes, no overrides."""
    return SimpleNamespace(
        id="auc-1",
        start_at=NOW - timedelta(hours=1),
        end_at=NOW + timedelta(minutes=10),
        min_increment_cad=None,
        soft_close_seconds=None,
    )


def make_bid(amount, *, seconds_ago=0, bid_id="b"):
    return SimpleNamespace(
        id=bid_id,
        amount_cad=Decimal(str(amount)),
        created_at=NOW - timedelta(seconds=seconds_ago),
    )


@pytest.fixture
def bid_factory():
    return make_bid
