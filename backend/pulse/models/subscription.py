"""Subscription model — one purchased term of a plan."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Index, Integer, Numeric, String, text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Subscription(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A subscription term. ``status`` is written only by the state machine."""

    __tablename__ = "subscriptions"

    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("plans.id", ondelete="RESTRICT"),
        nullable=False,
        index=True,
    )

    status: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    start_date: Mapped[datetime] = mapped_column(nullable=False)
    end_date: Mapped[datetime] = mapped_column(nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="BRL", nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), default="credit_card", nullable=False)

    # Payment processor correlation
    external_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    checkout_session_id: Mapped[str | None] = mapped_column(String(255), unique=True, nullable=True)
    transaction_id: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Renewal & cancellation
    renewal_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_renewal_date: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_renewal: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    cancelled_at: Mapped[datetime | None] = mapped_column(nullable=True)
    cancellation_reason: Mapped[str | None] = mapped_column(String(255), nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(nullable=True)

    # Time of the newest processor event reflected in this row
    last_event_at: Mapped[datetime | None] = mapped_column(nullable=True)

    __table_args__ = (
        Index("ix_subscriptions_account_status", "account_id", "status"),
        # At most one live (ACTIVE / GRACE_PERIOD) subscription per account.
        Index(
            "uq_subscriptions_one_live_per_account",
            "account_id",
            unique=True,
            postgresql_where=text("status IN ('ACTIVE', 'GRACE_PERIOD')"),
            sqlite_where=text("status IN ('ACTIVE', 'GRACE_PERIOD')"),
        ),
    )

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, account_id={self.account_id}, status={self.status}, end={self.end_date})>"
