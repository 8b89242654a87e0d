"""Shared API dependencies — single import point for all routers.

Re-exports database session, authentication and entitlement dependencies so
that router modules can import everything they need from one place::

    from pulse.api.deps import get_db, get_current_active_account
"""

from pulse.auth.dependencies import (
    get_current_account,
    get_current_active_account,
    get_current_admin,
)
from pulse.auth.rate_limiter import get_login_limiter, get_register_limiter
from pulse.billing.dependencies import (
    get_entitlements,
    require_game_vault_access,
    require_offline_viewing,
)
from pulse.database import get_db
from pulse.video.proxy import get_origin_client_factory

__all__ = [
    "get_db",
    "get_current_account",
    "get_current_active_account",
    "get_current_admin",
    "get_entitlements",
    "get_login_limiter",
    "get_origin_client_factory",
    "get_register_limiter",
    "require_game_vault_access",
    "require_offline_viewing",
]
