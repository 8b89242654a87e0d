"""Account model — identity plus the cached entitlement snapshot."""

from datetime import datetime

from sqlalchemy import Boolean, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from pulse.database import Base, TimestampMixin, UUIDPrimaryKeyMixin


class Account(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """A viewer account.

    The ``subscription_*``/feature columns are a denormalized projection of the
    account's current Subscription + Plan. They are written only by
    ``pulse.billing.state_machine`` as part of a committed transition.
    """

    __tablename__ = "accounts"

    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    hashed_password: Mapped[str | None] = mapped_column(String(255), nullable=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    role: Mapped[str] = mapped_column(String(50), default="user", nullable=False)  # user, admin

    # Payment processor identity (never exposed to clients)
    stripe_customer_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)

    # Cached entitlement snapshot
    subscription_status: Mapped[str | None] = mapped_column(String(50), nullable=True, index=True)
    current_plan: Mapped[str] = mapped_column(String(50), default="FREE", nullable=False)
    subscription_expiry: Mapped[datetime | None] = mapped_column(nullable=True)
    grace_period_end: Mapped[datetime | None] = mapped_column(nullable=True)
    auto_renewal: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    last_payment_date: Mapped[datetime | None] = mapped_column(nullable=True)
    next_billing_date: Mapped[datetime | None] = mapped_column(nullable=True)

    max_screens: Mapped[int] = mapped_column(Integer, default=1, nullable=False)
    offline_viewing: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    game_vault_access: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    ad_free: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    quality_tier: Mapped[str] = mapped_column(String(20), default="SD_ADS", nullable=False)

    def __repr__(self) -> str:
        return f"<Account id={self.id} email={self.email!r} plan={self.current_plan!r} status={self.subscription_status!r}>"
