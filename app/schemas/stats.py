"""Usage statistics schemas."""

from pydantic import BaseModel, ConfigDict, Field


class TodayStats(BaseModel):
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0
    avg_time: float = 0.0


class MonthStats(BaseModel):
    total_requests: int = 0
    total_tokens: int = 0
    total_cost: float = 0.0


class RateLimitState(BaseModel):
    """Counters for the current hour and day."""

    hourly_count: int = 0
    daily_count: int = 0


class WindowLimits(BaseModel):
    hourly: int
    daily: int


class UsageStats(BaseModel):
    """Data block of ``GET /ai/stats``."""

    model_config = ConfigDict(populate_by_name=True)

    today: TodayStats
    month: MonthStats
    rate_limit: RateLimitState = Field(alias="rateLimit")
    limits: WindowLimits
    limit_info: dict = Field(alias="limitInfo")
    user_tier: str = Field(alias="userTier")
    is_unlimited: bool = Field(alias="isUnlimited")


class UsageStatsResponse(BaseModel):
    success: bool
    data: UsageStats
