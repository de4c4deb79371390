"""Bidder deposit endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import (
    Bidder,
    get_current_bidder,
    get_db,
    get_locks,
    require_bidding_eligibility,
)
from api.middleware.rate_limit import rate_limited
from api.services.deposit_service import (
    authorize_deposit,
    cancel_user_deposit,
    get_deposit_status,
)
from api.services.keyed_locks import KeyedLocks

router = APIRouter()


class DepositAuthorizeRequest(BaseModel):
    auction_id: uuid.UUID
    payment_method_id: str | None = Field(default=None, max_length=255)


@router.post("/authorize")
async def authorize(
    req: DepositAuthorizeRequest,
    bidder: Bidder = Depends(rate_limited("deposit", require_bidding_eligibility)),
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
):
    result = await authorize_deposit(
        db, locks, bidder.id, req.auction_id, payment_method_id=req.payment_method_id
    )
    return {"success": True, **result.to_dict()}


@router.get("/status")
async def deposit_status(
    auction_id: uuid.UUID = Query(...),
    bidder: Bidder = Depends(get_current_bidder),
    db: AsyncSession = Depends(get_db),
):
    return await get_deposit_status(db, bidder.id, auction_id)


@router.post("/{deposit_id}/cancel")
async def cancel_deposit(
    deposit_id: uuid.UUID,
    bidder: Bidder = Depends(get_current_bidder),
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
):
    deposit = await cancel_user_deposit(db, locks, bidder.id, deposit_id)
    return {"success": True, "deposit_id": str(deposit.id), "status": deposit.status}
