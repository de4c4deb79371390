"""Admin payment reconciliation endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import AdminPrincipal, get_db, get_locks, require_admin, require_admin_or_cron
from api.services.keyed_locks import KeyedLocks
from api.services.payment_reconciliation import (
    get_reconciliation_metrics,
    run_payment_reconciliation,
)

router = APIRouter()


@router.post("/reconcile")
async def reconcile_payments(
    caller: AdminPrincipal | None = Depends(require_admin_or_cron),
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
):
    trigger = "manual" if caller is not None else "cron"
    return await run_payment_reconciliation(db, trigger=trigger, locks=locks)


@router.get("/reconciliation")
async def reconciliation_metrics(
    db: AsyncSession = Depends(get_db),
    admin: AdminPrincipal = Depends(require_admin),
):
    return await get_reconciliation_metrics(db)
