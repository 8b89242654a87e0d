"""Plan model — catalog entry with price, billing cycle, and feature bundle."""

from decimal import Decimal

from sqlalchemy import JSON, Boolean, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from pulse.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Plan(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A subscription tier. ``type`` is globally unique."""

    __tablename__ = "plans"

    type: Mapped[str] = mapped_column(String(50), unique=True, index=True, nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[str] = mapped_column(Text, default="", nullable=False)
    billing_cycle: Mapped[str] = mapped_column(String(20), nullable=False)  # MONTHLY, ANNUALLY
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="BRL", nullable=False)

    # Feature bundle
    max_screens: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    offline_viewing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    game_vault_access: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ad_free: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    # Display
    features: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    popular: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)

    stripe_price_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    def __repr__(self) -> str:
        return f"<Plan(id={self.id}, type={self.type}, cycle={self.billing_cycle}, price={self.price})>"
