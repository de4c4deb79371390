"""Admin deposit review and actions."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Query
from gavel.models import DepositAuthorization
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import AdminPrincipal, get_db, get_locks, require_admin
from api.services.deposit_actions import DepositAction, apply_deposit_action
from api.services.keyed_locks import KeyedLocks

router = APIRouter()


def _deposit_dict(d: DepositAuthorization) -> dict:
    return {
        "id": str(d.id),
        "user_id": str(d.user_id),
        "auction_id": str(d.auction_id),
        "processor_reference": d.processor_reference,
        "amount_cad": str(d.amount_cad),
        "status": d.status,
        "admin_hold": d.admin_hold,
        "failure_reason": d.failure_reason,
        "created_at": d.created_at.isoformat() if d.created_at else None,
        "updated_at": d.updated_at.isoformat() if d.updated_at else None,
    }


@router.get("")
async def list_deposits(
    auction_id: uuid.UUID | None = Query(default=None),
    status: str | None = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    db: AsyncSession = Depends(get_db),
    admin: AdminPrincipal = Depends(require_admin),
):
    query = select(DepositAuthorization).order_by(DepositAuthorization.created_at.desc())
    if auction_id is not None:
        query = query.where(DepositAuthorization.auction_id == auction_id)
    if status:
        query = query.where(DepositAuthorization.status == status)
    result = await db.execute(query.limit(limit))
    return [_deposit_dict(d) for d in result.scalars().all()]


@router.post("/{deposit_id}/actions")
async def deposit_action(
    deposit_id: uuid.UUID,
    action: DepositAction,
    db: AsyncSession = Depends(get_db),
    locks: KeyedLocks = Depends(get_locks),
    admin: AdminPrincipal = Depends(require_admin),
):
    deposit = await apply_deposit_action(db, locks, deposit_id, action, admin_id=admin.id)
    return {"success": True, "deposit": _deposit_dict(deposit)}
