"""Database models."""

from .base import Base, _generate_uuid, as_utc
from .billing import Payment, TokenUsageRecord
from .core import User

__all__ = [
    "Base",
    "Payment",
    "TokenUsageRecord",
    "User",
    "_generate_uuid",
    "as_utc",
]
