"""Admin and scheduler endpoints for auction settlement."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from gavel.timeutils import utcnow
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    AdminPrincipal,
    get_db,
    get_locks,
    require_admin,
    require_admin_or_cron,
)
from api.services.keyed_locks import KeyedLocks
from api.services.settlement_service import get_settlement_status, process_ended_auctions

router = APIRouter()


@router.post("/settle")
async def settle_ended_auctions(
    auction_id: uuid.UUID | None = Query(default=None),
    caller: AdminPrincipal | None = Depends(require_admin_or_cron),
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
):
    result = await process_ended_auctions(db, utcnow(), auction_id, locks=locks)
    return {"success": True, **result.to_dict()}


@router.get("/{auction_id}/settlement")
async def settlement_status(
    auction_id: uuid.UUID,
    db: AsyncSession = Depends(get_db),
    admin: AdminPrincipal = Depends(require_admin),
):
    return await get_settlement_status(db, auction_id)
