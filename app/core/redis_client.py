"""
Redis Client — async singleton, plus a short-lived run lock.

The lock is used to keep an admin-triggered subscription batch and the
scheduled one from processing the same due subscriptions at the same time.
"""
import asyncio
import secrets
from urllib.parse import urlparse

import redis.asyncio as aioredis

from app.core.config import settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None
_init_lock = asyncio.Lock()

_RUN_LOCK_PREFIX = "run_lock"


def _mask_redis_url(url: str) -> str:
    """מסתיר סיסמה מ-REDIS_URL ללוגים (redis://:****@host:6379)."""
    try:
        parsed = urlparse(url)
    except ValueError:
        return "redis://****"
    if parsed.password:
        return url.replace(f":{parsed.password}@", ":****@")
    return url


async def get_redis() -> aioredis.Redis:
    """מחזיר Redis client singleton (async, connection pool)."""
    global _redis_client
    if _redis_client is not None:
        return _redis_client

    async with _init_lock:
        if _redis_client is not None:
            return _redis_client

        client = aioredis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
        )
        await client.ping()
        _redis_client = client
        logger.info("Redis client initialized", extra_data={
            "url": _mask_redis_url(settings.REDIS_URL),
        })
    return _redis_client


async def close_redis() -> None:
    """סגירת חיבור Redis — לקרוא ב-app shutdown ובסיום task."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        _redis_client = None
        logger.info("Redis connection closed")


async def acquire_run_lock(name: str, ttl_seconds: int) -> str | None:
    """ניסיון לתפוס נעילה (SET NX EX).

    מחזיר token לשחרור אם הנעילה נתפסה, None אם היא מוחזקת ע"י ריצה אחרת.
    ה-TTL משחרר את הנעילה גם אם התהליך קרס באמצע.
    """
    redis = await get_redis()
    token = secrets.token_hex(8)
    acquired = await redis.set(f"{_RUN_LOCK_PREFIX}:{name}", token, nx=True, ex=ttl_seconds)
    if acquired is None:
        logger.info("Run lock busy", extra_data={"lock": name})
        return None
    return token


async def release_run_lock(name: str, token: str) -> None:
    """שחרור נעילה — רק אם היא עדיין שלנו (ייתכן שפג התוקף ונתפסה מחדש)."""
    redis = await get_redis()
    key = f"{_RUN_LOCK_PREFIX}:{name}"
    current = await redis.get(key)
    if current == token:
        await redis.delete(key)
    else:
        logger.warning(
            "Run lock expired before release",
            extra_data={"lock": name},
        )
