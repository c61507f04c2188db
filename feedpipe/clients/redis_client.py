"""
Redis client wrapper — the pipeline's fast store.

Responsibilities:
  • Connection lifecycle  — one shared asyncio client per process
  • Interest vectors      — STRING (JSON) keyed by user:{id}:interest_vector
  • JSON helpers          — feed cache, recall cache, hot data entries

Engagement counts, vote state and pending queues are owned by
feedpipe.pipeline.engagement; all key shapes live in feedpipe.keys.
"""
import json
import logging
from typing import Any, Optional

import redis.asyncio as aioredis

from feedpipe import keys
from feedpipe.config import settings

logger = logging.getLogger(__name__)

_redis: Optional[aioredis.Redis] = None


async def init_redis() -> None:
    global _redis
    _redis = aioredis.Redis(
        host=settings.redis_host,
        port=settings.redis_port,
        decode_responses=True,
    )
    await _redis.ping()
    logger.info("Redis connected at %s:%s", settings.redis_host, settings.redis_port)


async def close_redis() -> None:
    if _redis is not None:
        await _redis.aclose()


def get_redis() -> aioredis.Redis:
    if _redis is None:
        raise RuntimeError("Redis not initialised — call init_redis() at startup")
    return _redis


# ─────────────────────────── JSON values ──────────────────────────────────

async def get_json(r: aioredis.Redis, key: str) -> Any:
    raw = await r.get(key)
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        logger.warning("Discarding undecodable cache value at %s", key)
        return None


async def set_json(r: aioredis.Redis, key: str, value: Any, ttl: int) -> None:
    await r.set(key, json.dumps(value), ex=ttl)


# ─────────────────────────── Interest Vector ──────────────────────────────

async def get_interest_vector(r: aioredis.Redis, user_id: str) -> list[float] | None:
    return await get_json(r, keys.interest_vector_key(user_id))


async def set_interest_vector(r: aioredis.Redis, user_id: str, vector: list[float]) -> None:
    await set_json(r, keys.interest_vector_key(user_id), vector, settings.interest_vector_ttl)
