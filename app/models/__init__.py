"""SQLAlchemy models package."""

from app.models.user import User
from app.models.ai_rate_limit import AIRateLimit
from app.models.ai_settings import AILanguage, AILength, AISettings, AIStyle
from app.models.ai_usage_log import AIUsageLog
from app.models.ai_history import AIHistory

__all__ = [
    "User",
    "AIRateLimit",
    "AISettings",
    "AILength",
    "AIStyle",
    "AILanguage",
    "AIUsageLog",
    "AIHistory",
]
