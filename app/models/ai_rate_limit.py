"""AIRateLimit model for per-user daily/hourly request counters."""

from datetime import date, datetime

from sqlalchemy import Date, DateTime, Integer, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from app.database import Base


class AIRateLimit(Base):
    """One row per (user, day) tracking AI request counts.

    ``hourly_count`` is only meaningful while ``last_request_at`` falls in the
    current wall-clock hour; a new day gets a new row.
    """

    __tablename__ = "ai_rate_limits"
    __table_args__ = (
        UniqueConstraint("user_id", "request_date", name="uq_ai_rate_limits_user_date"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)
    request_date: Mapped[date] = mapped_column(Date, nullable=False, index=True)
    hourly_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    daily_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    last_request_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
