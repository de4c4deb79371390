"""Background maintenance loop (auction settlement + payment reconciliation)."""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime, timedelta

from gavel.config import get_settings
from gavel.database import get_session

from api.services.keyed_locks import KeyedLocks
from api.services.payment_reconciliation import run_payment_reconciliation
from api.services.settlement_service import process_ended_auctions

logger = logging.getLogger(__name__)


async def run_maintenance_worker(
    stop_event: asyncio.Event,
    *,
    locks: KeyedLocks,
    poll_interval_seconds: float | None = None,
) -> None:
    settings = get_settings()
    settlement_interval = timedelta(seconds=max(5, int(settings.settlement_interval_seconds)))
    reconcile_interval = timedelta(
        minutes=max(1, int(settings.reconciliation_interval_minutes))
    )
    if poll_interval_seconds is None:
        poll_interval_seconds = settlement_interval.total_seconds()
    last_settlement_at: datetime | None = None
    last_reconcile_at: datetime | None = None

    logger.info("Maintenance worker started")
    try:
        while not stop_event.is_set():
            now = datetime.now(UTC)
            should_settle = (
                last_settlement_at is None or (now - last_settlement_at) >= settlement_interval
            )
            should_reconcile = (
                last_reconcile_at is None or (now - last_reconcile_at) >= reconcile_interval
            )

            if should_settle:
                try:
                    async with get_session() as db:
                        await process_ended_auctions(db, now, locks=locks)
                    last_settlement_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled auction settlement failed")

            if should_reconcile:
                try:
                    async with get_session() as db:
                        await run_payment_reconciliation(
                            db, now, trigger="scheduled", locks=locks
                        )
                    last_reconcile_at = datetime.now(UTC)
                except Exception:
                    logger.exception("Scheduled payment reconciliation failed")

            try:
                await asyncio.wait_for(stop_event.wait(), timeout=poll_interval_seconds)
            except TimeoutError:
                pass
    finally:
        logger.info("Maintenance worker stopped")
