"""Middleware for the billing API."""

from metered_billing.middleware.admin import ADMIN_ROLES, require_admin
from metered_billing.middleware.auth import AuthMiddleware, get_current_user_id

__all__ = ["ADMIN_ROLES", "AuthMiddleware", "get_current_user_id", "require_admin"]
