"""SQLAlchemy 2.0 ORM table definitions for the user record store.

Each user is a single row keyed by identity id, written with merge semantics
by the repository layer so that independent steps (customer creation,
paylink caching, payment grants) never overwrite each other's fields.
"""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, Index, String
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Shared declarative base for all access-gate tables."""


class UserRecordTable(Base):
    """Profile, Stripe linkage, and access flag for one signed-in user."""

    __tablename__ = "user_records"

    uid: Mapped[str] = mapped_column(String(128), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Stripe customer linkage.
    stripe_customer_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_created_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    # Cached payment link, valid only for the recorded price and mode.
    stripe_mode: Mapped[str | None] = mapped_column(String(8), nullable=True)
    stripe_paylink_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_paylink_url: Mapped[str | None] = mapped_column(String(1024), nullable=True)
    stripe_price_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_product_id: Mapped[str | None] = mapped_column(String(256), nullable=True)

    # Access grant.
    access: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_payment_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    last_checkout_session_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_payment_link_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    last_payment_intent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_user_records_email", "email"),
        Index("ix_user_records_stripe_customer", "stripe_customer_id"),
    )
