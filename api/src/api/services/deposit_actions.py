"""Admin actions on a single deposit, modelled as a closed tagged union."""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import datetime
from typing import Annotated, Literal, assert_never

from gavel.models import DepositAuthorization
from gavel.models.deposit_authorization import DEPOSIT_OPEN_STATUSES
from gavel.timeutils import as_utc, utcnow
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import NotFoundError, StateConflictError
from api.services import stripe_service
from api.services.audit import record_audit
from api.services.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)


class RefundAction(BaseModel):
    """Refund a captured deposit."""

    action: Literal["refund"]
    note: str | None = Field(default=None, max_length=500)


class ForfeitAction(BaseModel):
    """Capture an authorized hold as a penalty."""

    action: Literal["forfeit"]
    note: str | None = Field(default=None, max_length=500)


class HoldAction(BaseModel):
    """Freeze a deposit; settlement and expiry leave it alone."""

    action: Literal["hold"]
    note: str | None = Field(default=None, max_length=500)


class ReleaseAction(BaseModel):
    """Cancel an authorized hold."""

    action: Literal["release"]
    note: str | None = Field(default=None, max_length=500)


DepositAction = Annotated[
    RefundAction | ForfeitAction | HoldAction | ReleaseAction,
    Field(discriminator="action"),
]


def _require(deposit: DepositAuthorization, *statuses: str, action: str) -> str:
    if deposit.status not in statuses:
        raise StateConflictError(
            f"Cannot {action} a deposit in status {deposit.status}",
            code="invalid_deposit_transition",
            deposit_id=deposit.id,
        )
    if not deposit.processor_reference and action != "hold":
        raise StateConflictError(
            "Deposit has no processor reference yet", code="deposit_not_confirmed"
        )
    return deposit.processor_reference or ""


async def apply_deposit_action(
    db: AsyncSession,
    locks: KeyedLocks,
    deposit_id: uuid.UUID,
    action: DepositAction,
    *,
    admin_id: uuid.UUID | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> DepositAuthorization:
    deposit = await db.get(DepositAuthorization, deposit_id)
    if deposit is None:
        raise NotFoundError("Deposit not found", code="deposit_not_found")

    async with locks.hold(("deposit", deposit.user_id, deposit.auction_id)):
        await db.refresh(deposit)
        now = as_utc(clock())
        previous = deposit.status

        match action:
            case ReleaseAction():
                reference = _require(deposit, "authorized", action="release")
                await stripe_service.cancel_hold(reference)
                deposit.mark("cancelled", now=now)
                deposit.admin_hold = False
            case ForfeitAction():
                reference = _require(deposit, "authorized", action="forfeit")
                await stripe_service.capture_hold(reference)
                deposit.mark("captured", now=now)
                deposit.admin_hold = False
            case HoldAction():
                _require(deposit, *DEPOSIT_OPEN_STATUSES, action="hold")
                deposit.admin_hold = True
                deposit.updated_at = now
            case RefundAction():
                reference = _require(deposit, "captured", action="refund")
                await stripe_service.refund_capture(reference)
                deposit.mark("refunded", now=now)
            case _:
                assert_never(action)

        record_audit(
            db,
            action=f"deposit.{action.action}",
            reason="admin_action",
            target_type="deposit",
            target_id=deposit.id,
            detail={"from": previous, "to": deposit.status, "note": action.note},
            actor_id=admin_id,
        )
        await db.commit()

    logger.info("Admin %s applied %s to deposit %s", admin_id, action.action, deposit.id)
    return deposit
