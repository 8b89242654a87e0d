"""Plan definitions — tiers, billing cycles, and the built-in feature bundles."""

import enum
from dataclasses import dataclass, field
from datetime import timedelta
from decimal import Decimal


class PlanType(str, enum.Enum):
    FREE = "FREE"
    FAN = "FAN"
    MEGA_FAN = "MEGA_FAN"
    MEGA_FAN_ANNUAL = "MEGA_FAN_ANNUAL"


class BillingCycle(str, enum.Enum):
    MONTHLY = "MONTHLY"
    ANNUALLY = "ANNUALLY"


class SubscriptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    GRACE_PERIOD = "GRACE_PERIOD"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"


# At most one subscription per account may sit in one of these.
LIVE_STATUSES: tuple[SubscriptionStatus, ...] = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
)

# Statuses whose plan bundle is still granted to the account.
ENTITLED_STATUSES: tuple[SubscriptionStatus, ...] = (
    SubscriptionStatus.ACTIVE,
    SubscriptionStatus.GRACE_PERIOD,
    SubscriptionStatus.CANCELLED,
)

BILLING_PERIODS: dict[BillingCycle, timedelta] = {
    BillingCycle.MONTHLY: timedelta(days=30),
    BillingCycle.ANNUALLY: timedelta(days=365),
}


def billing_period(cycle: str) -> timedelta:
    """Length of one paid term for a billing cycle."""
    return BILLING_PERIODS[BillingCycle(cycle)]


@dataclass(frozen=True)
class PlanBundle:
    """Catalog defaults for a plan type (seed data and FREE fallback)."""

    type: PlanType
    name: str
    description: str
    billing_cycle: BillingCycle
    price: Decimal
    max_screens: int
    offline_viewing: bool
    game_vault_access: bool
    ad_free: bool
    display_order: int
    popular: bool = False
    features: list[str] = field(default_factory=list)


DEFAULT_PLANS: dict[PlanType, PlanBundle] = {
    PlanType.FREE: PlanBundle(
        type=PlanType.FREE,
        name="Free",
        description="Basic access with ads",
        billing_cycle=BillingCycle.MONTHLY,
        price=Decimal("0.00"),
        max_screens=1,
        offline_viewing=False,
        game_vault_access=False,
        ad_free=False,
        display_order=0,
        features=["Limited catalog", "Standard quality", "With ads", "1 screen"],
    ),
    PlanType.FAN: PlanBundle(
        type=PlanType.FAN,
        name="Fan",
        description="The whole catalog, no ads",
        billing_cycle=BillingCycle.MONTHLY,
        price=Decimal("14.99"),
        max_screens=1,
        offline_viewing=False,
        game_vault_access=False,
        ad_free=True,
        display_order=1,
        features=["Full catalog", "No ads", "New episodes after release", "1 screen", "HD quality"],
    ),
    PlanType.MEGA_FAN: PlanBundle(
        type=PlanType.MEGA_FAN,
        name="Mega Fan",
        description="The complete streaming experience",
        billing_cycle=BillingCycle.MONTHLY,
        price=Decimal("19.99"),
        max_screens=4,
        offline_viewing=True,
        game_vault_access=True,
        ad_free=True,
        display_order=2,
        popular=True,
        features=["Full catalog", "No ads", "4 simultaneous screens", "Offline downloads", "Game Vault", "4K Ultra HD"],
    ),
    PlanType.MEGA_FAN_ANNUAL: PlanBundle(
        type=PlanType.MEGA_FAN_ANNUAL,
        name="Mega Fan Annual",
        description="The complete experience with a 16% discount",
        billing_cycle=BillingCycle.ANNUALLY,
        price=Decimal("199.99"),
        max_screens=4,
        offline_viewing=True,
        game_vault_access=True,
        ad_free=True,
        display_order=3,
        features=["Everything in Mega Fan", "Billed yearly", "16% discount"],
    ),
}

FREE_BUNDLE: PlanBundle = DEFAULT_PLANS[PlanType.FREE]
