"""Per-user AI assistant preferences."""

from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, func, true
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base

if TYPE_CHECKING:
    from app.models.user import User


class AILength(str, Enum):
    """Output length presets."""

    SHORT = "short"
    MEDIUM = "medium"
    LONG = "long"


class AIStyle(str, Enum):
    """Writing styles."""

    FORMAL = "formal"
    CASUAL = "casual"
    PROFESSIONAL = "professional"
    CREATIVE = "creative"


class AILanguage(str, Enum):
    """Prompt languages."""

    ZH = "zh"
    EN = "en"


class AISettings(Base):
    """Exactly one row per user, created lazily with defaults."""

    __tablename__ = "ai_settings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[int] = mapped_column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        unique=True,
        nullable=False,
        index=True,
    )
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    model: Mapped[str] = mapped_column(String(100), nullable=False)
    default_length: Mapped[str] = mapped_column(
        String(10),
        nullable=False,
        default=AILength.MEDIUM.value,
    )
    default_style: Mapped[str] = mapped_column(
        String(20),
        nullable=False,
        default=AIStyle.PROFESSIONAL.value,
    )
    default_language: Mapped[str] = mapped_column(
        String(5),
        nullable=False,
        default=AILanguage.ZH.value,
    )
    stream_enabled: Mapped[bool] = mapped_column(
        Boolean,
        nullable=False,
        default=True,
        server_default=true(),
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        server_default=func.now(),
        onupdate=func.now(),
    )

    # Relationships
    user: Mapped["User"] = relationship("User", back_populates="ai_settings")
