"""SQLAlchemy models for Pulse.

All models are imported here so that Alembic's autogenerate can discover
them via Base.metadata. If you add a new model, import it in this file.
"""

from pulse.models.account import Account
from pulse.models.checkout_session import CheckoutSession
from pulse.models.payment import Payment
from pulse.models.plan import Plan
from pulse.models.subscription import Subscription

__all__ = [
    "Account",
    "CheckoutSession",
    "Payment",
    "Plan",
    "Subscription",
]
