"""Admin authorization."""

from collections.abc import Callable
from functools import wraps
from typing import Any

import structlog
from fastapi import HTTPException, Request

logger = structlog.get_logger()

# Valid admin roles
ADMIN_ROLES = {"admin", "super_admin"}


def require_admin(func: Callable[..., Any]) -> Callable[..., Any]:
    """Decorator to require admin role for endpoint access.

    The wrapped endpoint must take ``request: Request``.
    """

    @wraps(func)
    async def wrapper(*args: Any, **kwargs: Any) -> Any:
        request = kwargs.get("request")
        if request is None:
            for arg in args:
                if isinstance(arg, Request):
                    request = arg
                    break

        if request is None:
            raise HTTPException(status_code=500, detail="Request not found")

        user_id = getattr(request.state, "user_id", None)
        if not user_id:
            raise HTTPException(status_code=401, detail="Authentication required")

        user_role = getattr(request.state, "user_role", "member")
        if user_role not in ADMIN_ROLES:
            logger.warning(
                "Admin access denied - insufficient role",
                user_id=user_id,
                role=user_role,
            )
            raise HTTPException(status_code=403, detail="Admin access required")

        return await func(*args, **kwargs)

    return wrapper
