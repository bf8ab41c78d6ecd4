"""
Redis connection helpers.

אין singleton גלובלי: החיבור נפתח במפורש בעליית התהליך (או בתחילת task של Celery)
ומועבר לרכיבים שצריכים אותו.
"""
import asyncio
from contextlib import asynccontextmanager
from typing import AsyncIterator
from urllib.parse import urlparse

import redis.asyncio as aioredis

from payhook.core.logging import get_logger

logger = get_logger(__name__)


def mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-URL של Redis ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def connect_redis(url: str, *, timeout_seconds: float) -> aioredis.Redis | None:
    """
    פותח חיבור ומוודא זמינות עם PING.

    מחזיר None אם השרת לא זמין בזמן הנתון - הקורא מחליט על מצב degraded.
    """
    client = aioredis.from_url(
        url,
        decode_responses=True,
        socket_connect_timeout=timeout_seconds,
    )
    try:
        await asyncio.wait_for(client.ping(), timeout=timeout_seconds)
    except (aioredis.RedisError, OSError, asyncio.TimeoutError) as e:
        logger.warning(
            "Redis unavailable",
            extra_data={"url": mask_redis_url(url), "error": str(e)},
        )
        await client.aclose()
        return None

    logger.info("Redis connection established", extra_data={"url": mask_redis_url(url)})
    return client


@asynccontextmanager
async def redis_connection(url: str) -> AsyncIterator[aioredis.Redis]:
    """חיבור קצר-טווח ל-task בודד - נסגר לפני שה-event loop של ה-task נסגר."""
    client = aioredis.from_url(url, decode_responses=True)
    try:
        yield client
    finally:
        await client.aclose()
