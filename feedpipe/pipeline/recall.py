"""
Recall stage — interest vector → nearest-neighbour post candidates.

Lookup order for the user's interest vector:
  1. Redis mirror            user:{id}:interest_vector
  2. users.interest_vector   (TiDB, re-mirrored on read)
  3. generated on demand     from profile text / liked posts

Users with no vector, or any Qdrant failure / timeout, get the cold-start
candidate set instead: trending posts, cached under `hot_posts`, carried
with similarity 0.0.

Personalised results are cached per user (user:{id}:recall:posts, 2h). A
cached list is reused while at least `recall_cache_min_fill` of the
requested limit survives the caller's exclusions. Cold-start results are
never cached per user so a user picks up personalisation as soon as a
vector exists.
"""
import asyncio
import logging
from datetime import timedelta
from typing import Iterable, Optional

import redis.asyncio as aioredis
from opentelemetry import trace

from feedpipe import keys
from feedpipe.clients.qdrant_client import PostVectorIndex
from feedpipe.clients.redis_client import get_interest_vector, get_json, set_interest_vector, set_json
from feedpipe.config import settings
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.repository import DurableStore
from feedpipe.schemas import Candidate, RecallResult
from feedpipe.telemetry import RECALL_CANDIDATES, RECALL_FALLBACKS_TOTAL
from feedpipe.time_utils import as_utc, utcnow_naive

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


def clamp_limit(limit: Optional[int]) -> int:
    if limit is None:
        return settings.recall_default_limit
    return max(1, min(int(limit), settings.recall_max_limit))


def order_candidates(candidates: Iterable[Candidate]) -> list[Candidate]:
    """Similarity desc, ties broken by recency desc then post id."""
    return sorted(candidates, key=lambda c: (-c.similarity, -c.created_at_ts, c.post_id))


class RecallEngine:
    def __init__(
        self,
        redis: aioredis.Redis,
        index: PostVectorIndex,
        indexer: EmbeddingIndexer,
        store: DurableStore,
    ) -> None:
        self._redis = redis
        self._index = index
        self._indexer = indexer
        self._store = store

    async def recall(
        self,
        user_id: str,
        limit: Optional[int] = None,
        exclude_post_ids: Iterable[str] = (),
        force_refresh: bool = False,
    ) -> RecallResult:
        limit = clamp_limit(limit)
        exclude = set(exclude_post_ids)

        with tracer.start_as_current_span("recall") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("recall.limit", limit)

            if not force_refresh:
                cached = await self._read_cache(user_id)
                if cached is not None:
                    remaining = [c for c in cached if c.post_id not in exclude]
                    if len(remaining) >= limit * settings.recall_cache_min_fill:
                        span.set_attribute("recall.source", "cache")
                        RECALL_CANDIDATES.observe(min(len(remaining), limit))
                        return RecallResult(candidates=remaining[:limit], from_cache=True)

            try:
                vector = await asyncio.wait_for(
                    self._interest_vector(user_id, force_refresh),
                    timeout=settings.recall_timeout_seconds,
                )
            except Exception as exc:
                logger.warning("Interest vector lookup failed for user %s: %s", user_id, exc)
                vector = None

            if vector is None:
                return await self._fallback(limit, exclude, "no_vector", span)

            try:
                hits = await asyncio.wait_for(
                    self._index.search(vector, limit + len(exclude)),
                    timeout=settings.recall_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning("Vector search timed out for user %s", user_id)
                return await self._fallback(limit, exclude, "timeout", span)
            except Exception as exc:
                logger.warning("Vector search failed for user %s: %s", user_id, exc)
                return await self._fallback(limit, exclude, "index_error", span)

            ordered = order_candidates(
                Candidate(post_id=h.post_id, similarity=h.score, created_at_ts=h.created_at_ts)
                for h in hits
            )
            if not ordered:
                return await self._fallback(limit, exclude, "no_vector", span)

            await self._write_cache(user_id, ordered)
            candidates = [c for c in ordered if c.post_id not in exclude][:limit]

            span.set_attribute("recall.source", "vector")
            span.set_attribute("recall.candidates", len(candidates))
            RECALL_CANDIDATES.observe(len(candidates))
            return RecallResult(candidates=candidates)

    async def cold_start(self, limit: int, exclude: Iterable[str] = ()) -> list[Candidate]:
        """Non-personalised candidates in trending order; never raises."""
        exclude = set(exclude)
        try:
            pool = await self._hot_posts()
        except Exception as exc:
            logger.warning("Cold-start candidates unavailable: %s", exc)
            return []
        return [c for c in pool if c.post_id not in exclude][:limit]

    async def similar_posts(self, post_id: str, limit: int = 10) -> list[Candidate]:
        """Posts nearest to an already-indexed post, excluding itself."""
        vectors = await self._index.get_vectors([post_id])
        vector = vectors.get(post_id)
        if vector is None:
            return []
        hits = await self._index.search(vector, limit + 1)
        return order_candidates(
            Candidate(post_id=h.post_id, similarity=h.score, created_at_ts=h.created_at_ts)
            for h in hits
            if h.post_id != post_id
        )[:limit]

    # ─────────────────────────── internals ────────────────────────────────

    async def _fallback(
        self,
        limit: int,
        exclude: set[str],
        reason: str,
        span: trace.Span,
    ) -> RecallResult:
        RECALL_FALLBACKS_TOTAL.labels(reason=reason).inc()
        candidates = await self.cold_start(limit, exclude)
        span.set_attribute("recall.source", f"cold_start:{reason}")
        span.set_attribute("recall.candidates", len(candidates))
        RECALL_CANDIDATES.observe(len(candidates))
        return RecallResult(candidates=candidates, cold_start=True)

    async def _interest_vector(self, user_id: str, force_refresh: bool) -> Optional[list[float]]:
        if not force_refresh:
            vector = await get_interest_vector(self._redis, user_id)
            if vector:
                return vector

        user = await self._store.get_user(user_id)
        if user is None:
            return None
        if user.interest_vector:
            await set_interest_vector(self._redis, user_id, user.interest_vector)
            return user.interest_vector

        return await self._indexer.refresh_user_vector(user)

    async def _hot_posts(self) -> list[Candidate]:
        cached = await get_json(self._redis, keys.hot_posts_key())
        if cached is not None:
            return [Candidate.model_validate(c) for c in cached]

        since = utcnow_naive() - timedelta(days=settings.hot_posts_lookback_days)
        posts = await self._store.list_trending_posts(settings.recall_max_limit, since)
        pool = [
            Candidate(
                post_id=p.post_id,
                similarity=0.0,
                created_at_ts=as_utc(p.created_at).timestamp(),
            )
            for p in posts
        ]
        if pool:
            await set_json(
                self._redis,
                keys.hot_posts_key(),
                [c.model_dump() for c in pool],
                settings.hot_posts_ttl,
            )
        return pool

    async def _read_cache(self, user_id: str) -> Optional[list[Candidate]]:
        try:
            cached = await get_json(self._redis, keys.recall_key(user_id))
        except Exception as exc:
            logger.warning("Recall cache read failed for user %s: %s", user_id, exc)
            return None
        if cached is None:
            return None
        return [Candidate.model_validate(c) for c in cached]

    async def _write_cache(self, user_id: str, candidates: list[Candidate]) -> None:
        try:
            await set_json(
                self._redis,
                keys.recall_key(user_id),
                [c.model_dump() for c in candidates],
                settings.recall_cache_ttl,
            )
        except Exception as exc:
            logger.warning("Recall cache write failed for user %s: %s", user_id, exc)
