"""Authentication middleware for JWT validation.

Tokens are issued elsewhere; this service only validates them. Claims used:
``sub`` (user id), ``email`` and ``role``.
"""

import secrets
from collections.abc import Awaitable, Callable

import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from metered_billing.config import settings

logger = structlog.get_logger()

INTERNAL_SERVICE_USER = "internal-service"
VALID_ROLES = {"member", "admin", "super_admin"}

# Paths that don't require authentication
# Use tuples: (path, is_prefix) where is_prefix=True allows subpaths
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/api/billing/products", False),  # Public plan catalog
    ("/api/billing/status", False),
    ("/api/webhooks/stripe", False),  # Stripe signs its own requests
]

# Operator actions that schedulers may trigger with the internal token
INTERNAL_OR_USER_PATHS: list[tuple[str, bool]] = [
    ("/api/admin/financials/reconcile-costs", False),
    ("/api/admin/financials/snapshot", False),
]


def _create_error_response(
    request: Request, content: str, status_code: int, media_type: str = "application/json"
) -> Response:
    """Create an error response with CORS headers so browsers can read it."""
    response = Response(content=content, status_code=status_code, media_type=media_type)

    origin = request.headers.get("origin")
    if origin and origin in settings.CORS_ORIGINS:
        response.headers["Access-Control-Allow-Origin"] = origin
        response.headers["Access-Control-Allow-Credentials"] = "true"
        response.headers["Access-Control-Allow-Headers"] = (
            "Authorization, Content-Type, Accept, Origin, X-Requested-With"
        )

    return response


def _matches(request_path: str, paths: list[tuple[str, bool]]) -> bool:
    """Exact or boundary-checked prefix match."""
    for path, is_prefix in paths:
        if is_prefix:
            if request_path == path or request_path.startswith((path + "/", path + "?")):
                return True
        elif request_path == path:
            return True
    return False


def _is_public_path(request_path: str) -> bool:
    return _matches(request_path, PUBLIC_PATHS)


def _is_internal_or_user_path(request_path: str) -> bool:
    return _matches(request_path, INTERNAL_OR_USER_PATHS)


def _verify_internal_service_token(request: Request) -> bool:
    """Validate internal service token from headers."""
    expected_token = settings.INTERNAL_SERVICE_TOKEN
    if not expected_token:
        return False

    header_token = request.headers.get("X-Internal-Service-Token")
    return bool(header_token and secrets.compare_digest(header_token, expected_token))


class AuthMiddleware(BaseHTTPMiddleware):
    """JWT authentication middleware."""

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        """Process request and validate JWT token."""
        # Skip auth for CORS preflight requests
        if request.method == "OPTIONS":
            return await call_next(request)

        if _is_public_path(request.url.path):
            return await call_next(request)

        if _is_internal_or_user_path(request.url.path) and _verify_internal_service_token(
            request
        ):
            request.state.user_id = INTERNAL_SERVICE_USER
            request.state.user_role = "admin"
            request.state.user_email = None
            return await call_next(request)

        token = None
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            parts = auth_header.split(" ")
            if len(parts) == 2:
                token = parts[1]

        if not token:
            return _create_error_response(request, '{"detail": "Authentication required"}', 401)

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            return _create_error_response(request, '{"detail": "Invalid or expired token"}', 401)

        user_id = payload.get("sub")
        if not user_id:
            logger.warning("JWT payload missing user ID")
            return _create_error_response(
                request, '{"detail": "Invalid token - missing user ID"}', 401
            )

        role = payload.get("role") or "member"
        request.state.user_id = str(user_id)
        request.state.user_email = payload.get("email")
        request.state.user_role = role if role in VALID_ROLES else "member"

        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Get current user ID from request state.

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Not authenticated")
    return str(user_id)


def get_current_user_email(request: Request) -> str | None:
    email = getattr(request.state, "user_email", None)
    return str(email) if email else None
