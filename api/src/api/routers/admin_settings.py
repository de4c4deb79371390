"""Admin auction settings."""
from __future__ import annotations

from typing import Any

from fastapi import APIRouter, Body, Depends
from gavel.models import SiteSetting
from gavel.services.auction_settings import (
    AUCTION_SETTINGS_CATEGORY,
    AUCTION_SETTINGS_PREFIX,
    AuctionSettings,
    auction_settings_schema,
    load_auction_settings,
)
from gavel.timeutils import utcnow
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from api.dependencies import AdminPrincipal, get_db, get_settings_cache, require_admin
from api.errors import ValidationError
from api.middleware.rate_limit import rate_limited
from api.services.audit import record_audit
from api.services.cache import ExpiringCache

router = APIRouter()


@router.get("/auction")
async def get_auction_settings(
    db: AsyncSession = Depends(get_db),
    admin: AdminPrincipal = Depends(require_admin),
):
    settings = await load_auction_settings(db)
    return {
        "settings": settings.model_dump(mode="json"),
        "defaults": AuctionSettings().model_dump(mode="json"),
        "schema": auction_settings_schema(),
    }


@router.put("/auction")
async def update_auction_settings(
    updates: dict[str, Any] = Body(...),
    db: AsyncSession = Depends(get_db),
    admin: AdminPrincipal = Depends(rate_limited("settings", require_admin)),
    cache: ExpiringCache = Depends(get_settings_cache),
):
    unknown = sorted(set(updates) - set(AuctionSettings.model_fields))
    if unknown:
        raise ValidationError(
            f"Unknown auction settings: {', '.join(unknown)}", code="unknown_setting"
        )
    current = await load_auction_settings(db)
    try:
        merged = AuctionSettings(**{**current.model_dump(), **updates})
    except PydanticValidationError as exc:
        raise ValidationError(
            "Invalid auction settings", code="invalid_setting", errors=exc.errors()
        ) from exc

    stored = merged.model_dump(mode="json")
    now = utcnow()
    for field in updates:
        key = f"{AUCTION_SETTINGS_PREFIX}{field}"
        setting = await db.get(SiteSetting, key)
        if setting is None:
            setting = SiteSetting(key=key, category=AUCTION_SETTINGS_CATEGORY, value={})
            db.add(setting)
        setting.value = {"value": stored[field]}
        setting.updated_at = now

    record_audit(
        db,
        action="settings.auction.updated",
        reason="settings_update",
        target_type="site_setting",
        target_id=AUCTION_SETTINGS_CATEGORY,
        detail={field: stored[field] for field in updates},
        actor_id=admin.id,
    )
    await db.commit()
    cache.invalidate()
    return {"success": True, "settings": stored}
