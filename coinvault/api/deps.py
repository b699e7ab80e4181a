"""Shared API dependencies — single import point for all routers.

Re-exports database session and authentication dependencies so that router
modules can import everything they need from one place::

    from coinvault.api.deps import get_db, get_current_identity
"""

from coinvault.auth.dependencies import get_current_identity, require_admin
from coinvault.database import get_db

__all__ = [
    "get_db",
    "get_current_identity",
    "require_admin",
]
