"""Deposit authorization model - a manual-capture hold gating auction participation."""

from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, ForeignKey, Index, Numeric, Text, text
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column

from gavel.models.base import Base, sql_in_list
from gavel.timeutils import utcnow

DEPOSIT_OPEN_STATUSES = ("pending", "authorized")
DEPOSIT_BIDDABLE_STATUSES = ("authorized", "captured")

# Allowed local transitions; anything else is a regression and is ignored.
DEPOSIT_TRANSITIONS: dict[str, frozenset[str]] = {
    "pending": frozenset({"authorized", "captured", "cancelled", "failed", "expired"}),
    "authorized": frozenset({"captured", "cancelled", "failed", "expired"}),
    "captured": frozenset({"refunded"}),
    "cancelled": frozenset(),
    "failed": frozenset(),
    "expired": frozenset(),
    "refunded": frozenset(),
}

_OPEN_WHERE = text(f"status IN ({sql_in_list(DEPOSIT_OPEN_STATUSES)})")


def can_transition(current: str, target: str) -> bool:
    return target in DEPOSIT_TRANSITIONS.get(current, frozenset())


class DepositAuthorization(Base):
    __tablename__ = "deposit_authorizations"

    id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    user_id: Mapped[uuid.UUID] = mapped_column(UUID(as_uuid=True), nullable=False)
    auction_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), ForeignKey("auctions.id", ondelete="CASCADE"), nullable=False
    )
    processor_reference: Mapped[str | None] = mapped_column(Text, unique=True)
    amount_cad: Mapped[Decimal] = mapped_column(Numeric(12, 2), nullable=False)
    # Replayed verbatim on every create retry: Stripe rejects a reused idempotency
    # key whose parameters differ.
    payment_method_id: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default="pending")
    admin_hold: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    authorized_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    captured_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    failed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    expired_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    refunded_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    def mark(self, status: str, *, now: datetime, reason: str | None = None) -> bool:
        """Move to ``status`` if the state machine allows it; return whether it moved."""
        if not can_transition(self.status, status):
            return False
        self.status = status
        self.updated_at = now
        stamp_field = {
            "authorized": "authorized_at",
            "captured": "captured_at",
            "cancelled": "cancelled_at",
            "failed": "failed_at",
            "expired": "expired_at",
            "refunded": "refunded_at",
        }.get(status)
        if stamp_field:
            setattr(self, stamp_field, now)
        if reason:
            self.failure_reason = reason
        return True

    __table_args__ = (
        CheckConstraint(
            f"status IN ({sql_in_list(DEPOSIT_TRANSITIONS)})",
            name="ck_deposit_status",
        ),
        CheckConstraint("amount_cad >= 0", name="ck_deposit_amount"),
        Index(
            "uq_deposit_open_per_user_auction",
            "user_id",
            "auction_id",
            unique=True,
            postgresql_where=_OPEN_WHERE,
            sqlite_where=_OPEN_WHERE,
        ),
        Index("idx_deposits_auction_status", "auction_id", "status"),
        Index("idx_deposits_status_updated", "status", "updated_at"),
    )
