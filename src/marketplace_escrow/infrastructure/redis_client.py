"""Redis client for webhook replay suppression.

Redis is a fast path only: the transaction row in the database is the
authority on whether a notification was applied. When Redis is down,
every helper degrades to "not seen" and the settlement path still
deduplicates through the transaction's status.

Usage:
    from marketplace_escrow.infrastructure.redis_client import get_redis, close_redis

    redis = get_redis()
    await redis.set("key", "value", ex=3600)
"""

from __future__ import annotations

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from marketplace_escrow.config import get_settings
from marketplace_escrow.logging_config import get_logger

logger = get_logger(__name__)

_redis_client: aioredis.Redis | None = None


async def init_redis() -> aioredis.Redis:
    """Initialize and return the Redis client. Called during app startup."""
    global _redis_client
    settings = get_settings()
    client = aioredis.from_url(
        settings.redis_url,
        decode_responses=True,
    )
    # Verify connectivity
    await client.ping()
    _redis_client = client
    logger.info("redis.connected", url=settings.redis_url)
    return _redis_client


def get_redis() -> aioredis.Redis | None:
    """Return the Redis client singleton, or None when it was never connected."""
    return _redis_client


async def close_redis() -> None:
    """Close the Redis connection. Called during app shutdown."""
    global _redis_client
    if _redis_client is not None:
        await _redis_client.aclose()
        logger.info("redis.disconnected")
        _redis_client = None


# --- Webhook Replay Helpers ---


def _webhook_key(provider: str, reference: str, provider_transaction_id: str) -> str:
    return f"webhook:{provider}:{reference}:{provider_transaction_id}"


async def is_webhook_processed(
    provider: str,
    reference: str,
    provider_transaction_id: str,
    redis: aioredis.Redis | None = None,
) -> bool:
    """Return True if this exact notification was already applied."""
    client = redis if redis is not None else get_redis()
    if client is None:
        return False
    try:
        return bool(await client.exists(_webhook_key(provider, reference, provider_transaction_id)))
    except RedisError as exc:
        logger.warning("redis.webhook_check_failed", error=str(exc))
        return False


async def mark_webhook_processed(
    provider: str,
    reference: str,
    provider_transaction_id: str,
    redis: aioredis.Redis | None = None,
) -> None:
    """Remember an applied notification for the configured TTL."""
    client = redis if redis is not None else get_redis()
    if client is None:
        return
    settings = get_settings()
    try:
        await client.set(
            _webhook_key(provider, reference, provider_transaction_id),
            "1",
            ex=settings.redis_webhook_ttl_seconds,
        )
    except RedisError as exc:
        logger.warning("redis.webhook_mark_failed", error=str(exc))
