"""Middleware package."""

from storymeter.middleware.auth import AuthMiddleware
from storymeter.middleware.rate_limit import limiter

__all__ = ["AuthMiddleware", "limiter"]
