"""FastAPI application factory."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager, suppress
from pathlib import Path

from alembic.config import Config as AlembicConfig
from alembic.script import ScriptDirectory
from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from gavel.config import get_settings
from gavel.database import close_engine, get_engine
from sqlalchemy import text

from api.errors import AuctionError, RateLimitedError
from api.middleware.rate_limit import RateLimiter
from api.routers import (
    admin_auctions,
    admin_deposits,
    admin_payments,
    admin_settings,
    auctions,
    deposits,
    health,
    stripe_webhook,
)
from api.services.cache import ExpiringCache
from api.services.keyed_locks import KeyedLocks
from api.services.maintenance import run_maintenance_worker
from api.services.notifications import drain_notifications

logger = logging.getLogger(__name__)


async def _assert_database_revision_current() -> None:
    settings = get_settings()
    if settings.skip_migration_check:
        return

    repo_root = Path(__file__).resolve().parents[3]
    alembic_ini = repo_root / "alembic.ini"
    if not alembic_ini.exists():
        logger.warning("alembic.ini not found; skipping migration revision check")
        return

    alembic_cfg = AlembicConfig(str(alembic_ini))
    alembic_cfg.set_main_option("script_location", str(repo_root / "alembic"))
    script = ScriptDirectory.from_config(alembic_cfg)
    expected_heads = set(script.get_heads())
    if not expected_heads:
        return

    engine = get_engine()
    try:
        async with engine.connect() as connection:
            result = await connection.execute(text("SELECT version_num FROM alembic_version"))
            current_revisions = {str(row[0]) for row in result.fetchall() if row and row[0]}
    except Exception as exc:
        raise RuntimeError(
            "Database migration revision check failed. "
            "Run `alembic upgrade head` before starting the API."
        ) from exc

    if current_revisions != expected_heads:
        raise RuntimeError(
            "Database schema revision mismatch: "
            f"db={sorted(current_revisions)} expected={sorted(expected_heads)}. "
            "Run `alembic upgrade head`."
        )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    maintenance_stop_event: asyncio.Event | None = None
    maintenance_task: asyncio.Task | None = None
    try:
        await _assert_database_revision_current()
        if get_settings().maintenance_enabled:
            maintenance_stop_event = asyncio.Event()
            maintenance_task = asyncio.create_task(
                run_maintenance_worker(maintenance_stop_event, locks=app.state.locks)
            )
        yield
    finally:
        if maintenance_stop_event is not None:
            maintenance_stop_event.set()
        if maintenance_task is not None:
            try:
                await asyncio.wait_for(maintenance_task, timeout=5)
            except Exception:
                maintenance_task.cancel()
                with suppress(Exception):
                    await maintenance_task
        await drain_notifications()
        await app.state.rate_limiter.close()
        await close_engine()


async def _auction_error_handler(request: Request, exc: AuctionError) -> JSONResponse:
    headers = None
    if isinstance(exc, RateLimitedError):
        headers = {"Retry-After": str(exc.retry_after)}
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_payload(), headers=headers)


async def _request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content={
            "success": False,
            "error": "validation",
            "code": "invalid_request",
            "message": "Invalid request data",
            "details": jsonable_encoder(exc.errors()),
        },
    )


def _warn_insecure_defaults() -> None:
    settings = get_settings()
    if settings.secret_key == "change-me-in-production":
        logger.warning("SECRET_KEY uses insecure default value")
    if not settings.stripe_webhook_secret:
        logger.warning("STRIPE_WEBHOOK_SECRET is empty; webhooks will be rejected")
    if not settings.cron_secret:
        logger.warning("CRON_SECRET is empty; scheduler endpoints require an admin token")


def create_app() -> FastAPI:
    app = FastAPI(title="Gavel API", version="0.1.0", lifespan=lifespan)
    settings = get_settings()
    _warn_insecure_defaults()

    app.state.locks = KeyedLocks()
    app.state.settings_cache = ExpiringCache(default_ttl=settings.settings_cache_ttl_seconds)
    app.state.rate_limiter = RateLimiter.from_settings(settings)

    allowed_origins = [settings.site_url, settings.admin_url]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(AuctionError, _auction_error_handler)
    app.add_exception_handler(RequestValidationError, _request_validation_handler)

    app.include_router(health.router, tags=["health"])
    app.include_router(auctions.router, prefix="/v1/auctions", tags=["auctions"])
    app.include_router(deposits.router, prefix="/v1/deposits", tags=["deposits"])
    app.include_router(stripe_webhook.router, prefix="/v1/stripe", tags=["stripe"])
    app.include_router(admin_auctions.router, prefix="/admin/auctions", tags=["admin"])
    app.include_router(admin_deposits.router, prefix="/admin/deposits", tags=["admin"])
    app.include_router(admin_settings.router, prefix="/admin/settings", tags=["admin"])
    app.include_router(admin_payments.router, prefix="/admin/payments", tags=["admin"])
    return app


app = create_app()
