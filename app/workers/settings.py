"""Arq worker settings."""

from arq.connections import RedisSettings

from app.config import get_settings

settings = get_settings()


def parse_redis_url(url: str) -> RedisSettings:
    """Build RedisSettings from a ``redis://[user:pass@]host[:port][/db]`` URL."""
    if not url.startswith(("redis://", "rediss://")):
        url = f"redis://{url}"
    return RedisSettings.from_dsn(url)


redis_settings = parse_redis_url(settings.redis_url)
