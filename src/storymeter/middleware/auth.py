"""Authentication middleware for JWT validation."""

from collections.abc import Awaitable, Callable

import structlog
from fastapi import HTTPException, Request, Response
from jose import JWTError, jwt
from starlette.middleware.base import BaseHTTPMiddleware

from storymeter.config import settings

logger = structlog.get_logger()


def _create_error_response(content: str, status_code: int) -> Response:
    return Response(content=content, status_code=status_code, media_type="application/json")


# Paths that don't require authentication
# Use tuples: (path, is_prefix) where is_prefix=True allows subpaths
PUBLIC_PATHS: list[tuple[str, bool]] = [
    ("/health", False),
    ("/api/subscription/plans", False),
    ("/api/subscription/webhook", False),  # Verified by HMAC signature instead
    ("/api/docs", True),
    ("/api/openapi.json", False),
]


def _is_public_path(request_path: str) -> bool:
    """Check if the request path is public.

    Uses exact matching or prefix matching with proper boundary checks
    to prevent path traversal bypasses.
    """
    for path, is_prefix in PUBLIC_PATHS:
        if is_prefix:
            if request_path == path or request_path.startswith((path + "/", path + "?")):
                return True
        elif request_path == path:
            return True
    return False


def _extract_bearer_token(request: Request) -> str | None:
    auth_header = request.headers.get("Authorization")
    if auth_header and auth_header.startswith("Bearer "):
        parts = auth_header.split(" ")
        if len(parts) == 2 and parts[1]:
            return parts[1]
    return None


class AuthMiddleware(BaseHTTPMiddleware):
    """Validates the identity provider's bearer token.

    Sets request.state.user_id (the "sub" claim) and request.state.user_email
    for downstream handlers.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Awaitable[Response]],
    ) -> Response:
        if request.method == "OPTIONS" or _is_public_path(request.url.path):
            return await call_next(request)

        token = _extract_bearer_token(request)
        if not token:
            return _create_error_response('{"detail": "Unauthorized"}', 401)

        try:
            payload = jwt.decode(
                token,
                settings.JWT_SECRET_KEY,
                algorithms=[settings.JWT_ALGORITHM],
            )
        except JWTError as e:
            logger.warning("JWT validation failed", error=str(e))
            return _create_error_response('{"detail": "Invalid or expired token"}', 401)

        user_id = payload.get("sub")
        if not user_id:
            logger.warning("JWT payload missing user ID")
            return _create_error_response('{"detail": "Invalid token - missing user ID"}', 401)

        request.state.user_id = str(user_id)
        request.state.user_email = payload.get("email")
        return await call_next(request)


def get_current_user_id(request: Request) -> str:
    """Get current user ID from request state.

    Raises:
        HTTPException: If user is not authenticated
    """
    user_id = getattr(request.state, "user_id", None)
    if not user_id:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return str(user_id)
