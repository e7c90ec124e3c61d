"""Database package."""

from storymeter.database.connection import (
    close_database,
    configure_database,
    create_engine_for_url,
    get_db,
    get_db_context,
    get_engine,
    get_session_factory,
    init_database,
)
from storymeter.database.models import Base, Payment, TokenUsageRecord, User

__all__ = [
    "Base",
    "Payment",
    "TokenUsageRecord",
    "User",
    "close_database",
    "configure_database",
    "create_engine_for_url",
    "get_db",
    "get_db_context",
    "get_engine",
    "get_session_factory",
    "init_database",
]
