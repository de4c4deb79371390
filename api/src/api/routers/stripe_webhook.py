"""Stripe webhook handler."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import get_db
from api.services.payment_events import handle_stripe_webhook

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/webhook")
async def stripe_webhook(request: Request, db: AsyncSession = Depends(get_db)):
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature", "")
    try:
        return await handle_stripe_webhook(db, payload, sig_header)
    except RuntimeError as exc:
        logger.error("Stripe webhook rejected: %s", exc)
        raise HTTPException(status_code=503, detail=str(exc))
