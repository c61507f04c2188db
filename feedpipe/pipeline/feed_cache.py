"""
Feed cache — ranked feed pages in Redis with a TTL.

Key:   user:{id}:feed:{page}:{limit}:{board filter or 'all'}
Value: FeedCacheEntry JSON; `posts` holds the full ranked set so exclusions
       can be applied per request without recomputing.

A stored entry is served only while `now < expires_at` (the entry carries
its own expiry in addition to the Redis TTL, so an injected clock decides)
and only if, after removing excluded ids, the page still holds at least
`feed_cache_min_fill` of what it would hold unfiltered. Otherwise the feed
is recomputed and the entry replaced.

Recomputation runs shielded under `feed_compute_timeout_seconds`: on
timeout the request gets the fallback page while the computation keeps
going and fills the cache for the next request. A computation that fails
outright is answered the same way; if the fallback fails as well the page
is empty, still marked degraded.
"""
import asyncio
import logging
import math
import time
from typing import Awaitable, Callable, Iterable, Optional

import redis.asyncio as aioredis
from pydantic import ValidationError

from feedpipe import keys
from feedpipe.config import settings
from feedpipe.schemas import FeedCacheEntry, FeedPage, RankedPost, RankingParams
from feedpipe.telemetry import FEED_CACHE_LOOKUPS

logger = logging.getLogger(__name__)

ComputeFn = Callable[[], Awaitable[tuple[list[RankedPost], RankingParams]]]

# Strong refs to computations that outlived their request
_background: set[asyncio.Task] = set()


def _finish_background(task: asyncio.Task) -> None:
    _background.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.error("Background feed computation failed: %s", task.exception())


def paginate(
    posts: list[RankedPost],
    page: int,
    limit: int,
    exclude: set[str],
) -> tuple[list[RankedPost], int, bool]:
    """Returns (page posts, total after exclusion, has_more)."""
    visible = [p for p in posts if p.post_id not in exclude]
    start = (page - 1) * limit
    return visible[start : start + limit], len(visible), start + limit < len(visible)


class FeedCacheManager:
    def __init__(
        self,
        redis: aioredis.Redis,
        clock: Callable[[], float] = time.time,
        ttl_seconds: Optional[int] = None,
        compute_timeout: Optional[float] = None,
    ) -> None:
        self._redis = redis
        self._clock = clock
        self._ttl = ttl_seconds or settings.feed_cache_ttl_seconds
        self._compute_timeout = compute_timeout or settings.feed_compute_timeout_seconds

    async def get_or_compute(
        self,
        user_id: str,
        page: int,
        limit: int,
        board_filter: Optional[str],
        compute: ComputeFn,
        exclude_post_ids: Iterable[str] = (),
        force_refresh: bool = False,
        expected_params: Optional[RankingParams] = None,
        fallback: Optional[ComputeFn] = None,
    ) -> FeedPage:
        exclude = set(exclude_post_ids)
        key = keys.feed_key(user_id, page, limit, board_filter)

        if not force_refresh:
            entry = await self._read(key)
            if entry is not None:
                served = self._serve(entry, page, limit, exclude, expected_params)
                if served is not None:
                    return served

        task = asyncio.ensure_future(
            self._compute_and_store(key, user_id, page, limit, board_filter, compute)
        )
        try:
            posts, params = await asyncio.wait_for(asyncio.shield(task), self._compute_timeout)
        except asyncio.TimeoutError:
            if fallback is None:
                raise
            logger.warning(
                "Feed computation for user %s exceeded %.1fs — serving fallback",
                user_id,
                self._compute_timeout,
            )
            _background.add(task)
            task.add_done_callback(_finish_background)
            return await self._degraded(user_id, page, limit, exclude, fallback, expected_params)
        except Exception as exc:
            if fallback is None:
                raise
            logger.warning("Feed computation failed for user %s: %s — serving fallback", user_id, exc)
            return await self._degraded(user_id, page, limit, exclude, fallback, expected_params)

        page_posts, total, has_more = paginate(posts, page, limit, exclude)
        return FeedPage(
            posts=page_posts,
            page=page,
            limit=limit,
            total=total,
            has_more=has_more,
            ranking_params_used=params,
        )

    async def invalidate(self, user_id: str) -> int:
        """Drop every cached feed page and the recall candidates for a user."""
        pattern = keys.feed_pattern(user_id)
        removed = await self._redis.delete(keys.recall_key(user_id))
        async for key in self._redis.scan_iter(match=pattern, count=200):
            removed += await self._redis.delete(key)
        return removed

    # ─────────────────────────── internals ────────────────────────────────

    async def _degraded(
        self,
        user_id: str,
        page: int,
        limit: int,
        exclude: set[str],
        fallback: ComputeFn,
        params: Optional[RankingParams],
    ) -> FeedPage:
        """Page built from the fallback; an empty page if that fails too. Never cached."""
        try:
            posts, params = await fallback()
        except Exception as exc:
            logger.warning("Fallback feed failed for user %s: %s — serving an empty page", user_id, exc)
            posts, params = [], params or RankingParams()
        page_posts, total, has_more = paginate(posts, page, limit, exclude)
        return FeedPage(
            posts=page_posts,
            page=page,
            limit=limit,
            total=total,
            has_more=has_more,
            ranking_params_used=params,
            degraded=True,
        )

    def _serve(
        self,
        entry: FeedCacheEntry,
        page: int,
        limit: int,
        exclude: set[str],
        expected_params: Optional[RankingParams],
    ) -> Optional[FeedPage]:
        if self._clock() >= entry.expires_at:
            FEED_CACHE_LOOKUPS.labels(result="expired").inc()
            return None
        if expected_params is not None and entry.ranking_params_used != expected_params:
            FEED_CACHE_LOOKUPS.labels(result="miss").inc()
            return None

        page_posts, total, has_more = paginate(entry.posts, page, limit, exclude)
        start = (page - 1) * limit
        expected = min(limit, max(0, len(entry.posts) - start))
        if len(page_posts) < math.floor(settings.feed_cache_min_fill * expected):
            FEED_CACHE_LOOKUPS.labels(result="underfilled").inc()
            return None

        FEED_CACHE_LOOKUPS.labels(result="hit").inc()
        return FeedPage(
            posts=page_posts,
            page=page,
            limit=limit,
            total=total,
            has_more=has_more,
            ranking_params_used=entry.ranking_params_used,
            from_cache=True,
        )

    async def _read(self, key: str) -> Optional[FeedCacheEntry]:
        try:
            raw = await self._redis.get(key)
        except Exception as exc:
            logger.warning("Feed cache read failed for %s: %s", key, exc)
            FEED_CACHE_LOOKUPS.labels(result="error").inc()
            return None
        if raw is None:
            FEED_CACHE_LOOKUPS.labels(result="miss").inc()
            return None
        try:
            return FeedCacheEntry.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding malformed feed cache entry at %s", key)
            FEED_CACHE_LOOKUPS.labels(result="error").inc()
            return None

    async def _compute_and_store(
        self,
        key: str,
        user_id: str,
        page: int,
        limit: int,
        board_filter: Optional[str],
        compute: ComputeFn,
    ) -> tuple[list[RankedPost], RankingParams]:
        posts, params = await compute()
        entry = FeedCacheEntry(
            user_id=user_id,
            page=page,
            limit=limit,
            board_filter=board_filter,
            posts=posts,
            ranking_params_used=params,
            expires_at=self._clock() + self._ttl,
        )
        try:
            await self._redis.set(key, entry.model_dump_json(), ex=self._ttl)
        except Exception as exc:
            logger.warning("Feed cache write failed for %s: %s", key, exc)
        return posts, params
