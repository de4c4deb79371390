"""FastAPI dependency injection."""

from __future__ import annotations

import hmac
import uuid
from collections.abc import AsyncGenerator
from dataclasses import dataclass

from fastapi import Depends, HTTPException, Request, status
from gavel.config import get_settings
from gavel.database import get_session_factory
from jose import JWTError, jwt
from sqlalchemy.ext.asyncio import AsyncSession

from api.errors import ForbiddenError
from api.services.cache import ExpiringCache
from api.services.keyed_locks import KeyedLocks

CRON_SECRET_HEADER = "x-cron-secret"
ADMIN_ROLES = {"admin", "owner"}


@dataclass(frozen=True)
class Bidder:
    id: uuid.UUID
    email_verified: bool = False
    kyc_status: str = "none"
    terms_accepted: bool = False


@dataclass(frozen=True)
class AdminPrincipal:
    id: uuid.UUID
    role: str


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    factory = get_session_factory()
    async with factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_locks(request: Request) -> KeyedLocks:
    return request.app.state.locks


def get_settings_cache(request: Request) -> ExpiringCache:
    return request.app.state.settings_cache


def _extract_bearer_token(request: Request) -> str | None:
    auth = request.headers.get("Authorization", "")
    if auth.startswith("Bearer "):
        token = auth[7:].strip()
        return token or None
    return None


def _decode_token(request: Request) -> dict:
    settings = get_settings()
    raw_token = _extract_bearer_token(request)
    if not raw_token:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        payload = jwt.decode(raw_token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")
    return payload


def _subject(payload: dict) -> uuid.UUID:
    try:
        return uuid.UUID(str(payload.get("sub", "")))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token")


def get_current_bidder(request: Request) -> Bidder:
    payload = _decode_token(request)
    if payload.get("type") != "user":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    return Bidder(
        id=_subject(payload),
        email_verified=bool(payload.get("email_verified", False)),
        kyc_status=str(payload.get("kyc_status") or "none"),
        terms_accepted=bool(payload.get("terms_accepted", False)),
    )


def require_bidding_eligibility(bidder: Bidder = Depends(get_current_bidder)) -> Bidder:
    """Identity gates checked before entering the bid or deposit services."""
    if not bidder.email_verified:
        raise ForbiddenError(
            "Verify your email address before bidding", code="email_verification_required"
        )
    if bidder.kyc_status != "approved":
        raise ForbiddenError("Identity verification is required to bid", code="kyc_required")
    if not bidder.terms_accepted:
        raise ForbiddenError(
            "Accept the current auction terms before bidding", code="terms_acceptance_required"
        )
    return bidder


def require_admin(request: Request) -> AdminPrincipal:
    payload = _decode_token(request)
    if payload.get("type") == "user":
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token type")
    role = str(payload.get("role") or "").strip().lower()
    if role not in ADMIN_ROLES:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin role required")
    return AdminPrincipal(id=_subject(payload), role=role)


def require_admin_or_cron(request: Request) -> AdminPrincipal | None:
    """Scheduled callers authenticate with the shared cron secret instead of a token."""
    settings = get_settings()
    provided = request.headers.get(CRON_SECRET_HEADER, "")
    if provided and settings.cron_secret and hmac.compare_digest(provided, settings.cron_secret):
        return None
    return require_admin(request)
