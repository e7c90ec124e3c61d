"""Core models: User."""

from datetime import datetime
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, Integer, String, false, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, _generate_uuid

if TYPE_CHECKING:
    from .billing import Payment, TokenUsageRecord


class User(Base):
    """User account with subscription state and monthly usage counters."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_generate_uuid)
    email: Mapped[str] = mapped_column(String(255), unique=True, nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(255))
    is_admin: Mapped[bool] = mapped_column(Boolean, default=False, server_default=false())

    # Subscription state, written by the payment webhook
    subscription_status: Mapped[str | None] = mapped_column(
        String(20), default="free"
    )  # free, hobby, pro, admin
    subscription_plan: Mapped[str | None] = mapped_column(
        String(50)
    )  # hobby_monthly, pro_yearly, ..., cancelled
    subscription_start_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    subscription_end_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    last_payment_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    # Monthly counters, only ever incremented inside a cycle
    token_usage_this_month: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    image_usage_this_month: Mapped[int] = mapped_column(
        Integer, default=0, server_default="0", nullable=False
    )
    usage_reset_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )

    usage_records: Mapped[list["TokenUsageRecord"]] = relationship(
        "TokenUsageRecord",
        back_populates="user",
        cascade="all, delete-orphan",
    )
    payments: Mapped[list["Payment"]] = relationship(
        "Payment",
        back_populates="user",
        cascade="all, delete-orphan",
    )
