"""CheckoutSession model — a Stripe Checkout handshake awaiting confirmation."""

import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, ForeignKey, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class CheckoutSession(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Persisted before redirecting to Stripe so an early webhook can match it.

    ``status`` becomes ``complete`` only when the checkout webhook arrives.
    """

    __tablename__ = "checkout_sessions"

    external_id: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    account_id: Mapped[uuid.UUID] = mapped_column(
        ForeignKey("accounts.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    plan_id: Mapped[uuid.UUID] = mapped_column(ForeignKey("plans.id", ondelete="RESTRICT"), nullable=False)
    subscription_id: Mapped[uuid.UUID | None] = mapped_column(
        ForeignKey("subscriptions.id", ondelete="SET NULL"),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(String(20), default="open", nullable=False)  # open, complete, expired
    payment_status: Mapped[str | None] = mapped_column(String(50), nullable=True)
    mode: Mapped[str] = mapped_column(String(20), default="subscription", nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="BRL", nullable=False)
    success_url: Mapped[str] = mapped_column(Text, nullable=False)
    cancel_url: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    # Renewal audit trail
    is_renewal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    previous_plan: Mapped[str | None] = mapped_column(String(50), nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(50), nullable=True)

    def __repr__(self) -> str:
        return f"<CheckoutSession(id={self.id}, external_id={self.external_id}, status={self.status})>"
