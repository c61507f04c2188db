"""
Ranking stage — multi-signal scoring + diversity re-order.

  score = w_sim * similarity + w_rec * recency + w_eng * engagement

  similarity  — cosine score carried over from recall (0 for cold-start)
  recency     — half-life decay on post age (settings.recency_half_life_days)
  engagement  — log-saturated likes / comments / views, in [0, 1]

Weights are normalised to sum to 1; an all-zero weight set falls back to the
defaults. Posts that cannot be hydrated (deleted, missing) are dropped rather
than failing the whole pass. Live counts come from the Redis counts hashes
when present, otherwise from the durable columns.

Diversity is a stable greedy re-order: walk the score-ordered list and pick
the best remaining post that keeps every window of `diversity_window`
consecutive results at ≤ `diversity_max_per_window` posts per author and per
board. When no remaining post qualifies the constraint is relaxed (board
first, then author) so the output length always equals the input length.
"""
import logging
import math
from collections import Counter
from datetime import datetime
from typing import Callable, Optional

import redis.asyncio as aioredis
from opentelemetry import trace
from redis.exceptions import RedisError

from feedpipe import keys
from feedpipe.config import settings
from feedpipe.models import Post
from feedpipe.repository import DurableStore
from feedpipe.schemas import (
    Candidate,
    RankedPost,
    RankingFactors,
    RankingOverrides,
    RankingParams,
)
from feedpipe.time_utils import days_between, half_life_decay, utcnow

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

# Share of each signal inside the engagement factor
_LIKE_SHARE = 0.4
_COMMENT_SHARE = 0.4
_VIEW_SHARE = 0.2


def default_params() -> RankingParams:
    return RankingParams(
        similarity_weight=settings.default_similarity_weight,
        recency_weight=settings.default_recency_weight,
        engagement_weight=settings.default_engagement_weight,
        apply_diversity=settings.default_apply_diversity,
    )


def normalized_weights(params: RankingParams) -> tuple[float, float, float]:
    weights = (params.similarity_weight, params.recency_weight, params.engagement_weight)
    total = sum(weights)
    if total <= 0:
        d = default_params()
        weights = (d.similarity_weight, d.recency_weight, d.engagement_weight)
        total = sum(weights)
    return tuple(w / total for w in weights)  # type: ignore[return-value]


def _saturate(value: int, saturation: int) -> float:
    if value <= 0:
        return 0.0
    return min(1.0, math.log1p(value) / math.log1p(max(saturation, 1)))


def engagement_factor(likes: int, comments: int, views: int) -> float:
    return (
        _LIKE_SHARE * _saturate(likes, settings.like_saturation)
        + _COMMENT_SHARE * _saturate(comments, settings.comment_saturation)
        + _VIEW_SHARE * _saturate(views, settings.view_saturation)
    )


def recency_factor(created_at: Optional[datetime], now: datetime) -> float:
    if created_at is None:
        return 0.0
    return half_life_decay(days_between(created_at, now), settings.recency_half_life_days)


def _fits(post: RankedPost, recent: list[RankedPost], by_board: bool, limit: int) -> bool:
    if sum(1 for p in recent if p.user_id == post.user_id) >= limit:
        return False
    if by_board and post.board_id:
        if sum(1 for p in recent if p.board_id == post.board_id) >= limit:
            return False
    return True


def apply_diversity(
    posts: list[RankedPost],
    window: Optional[int] = None,
    max_per_window: Optional[int] = None,
) -> list[RankedPost]:
    window = window or settings.diversity_window
    max_per_window = max_per_window or settings.diversity_max_per_window
    remaining = list(posts)
    result: list[RankedPost] = []

    while remaining:
        recent = result[-(window - 1):] if window > 1 else []
        pick = None
        for by_board in (True, False):
            pick = next(
                (i for i, p in enumerate(remaining) if _fits(p, recent, by_board, max_per_window)),
                None,
            )
            if pick is not None:
                break
        result.append(remaining.pop(pick or 0))

    return result


class RankingEngine:
    def __init__(
        self,
        store: DurableStore,
        redis: aioredis.Redis,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._redis = redis
        self._clock = clock

    async def resolve_params(
        self,
        user_id: str,
        overrides: Optional[RankingOverrides] = None,
    ) -> RankingParams:
        """Defaults ← user's saved preferences ← per-request overrides."""
        merged = default_params().model_dump()
        try:
            user = await self._store.get_user(user_id)
        except Exception as exc:
            logger.warning("Could not load ranking preferences for user %s: %s", user_id, exc)
            user = None
        if user is not None and user.ranking_preferences:
            saved = RankingOverrides.model_validate(user.ranking_preferences)
            merged.update(saved.model_dump(exclude_none=True))
        if overrides is not None:
            merged.update(overrides.model_dump(exclude_none=True))
        return RankingParams.model_validate(merged)

    async def rank(
        self,
        user_id: str,
        candidates: list[Candidate],
        params: Optional[RankingParams] = None,
        now: Optional[datetime] = None,
        board_id: Optional[str] = None,
    ) -> list[RankedPost]:
        params = params or default_params()
        now = now or self._clock()

        with tracer.start_as_current_span("ranking.rank") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("ranking.candidates", len(candidates))

            if not candidates:
                return []

            posts = await self._store.get_posts(c.post_id for c in candidates)
            live_counts = await self._load_counts(list(posts))
            w_sim, w_rec, w_eng = normalized_weights(params)

            ranked: list[RankedPost] = []
            seen: set[str] = set()
            for c in candidates:
                post = posts.get(c.post_id)
                if post is None or c.post_id in seen:
                    continue
                if board_id is not None and post.board_id != board_id:
                    continue
                seen.add(c.post_id)
                ranked.append(self._score(post, c, live_counts.get(c.post_id), now, w_sim, w_rec, w_eng))

            ranked.sort(key=lambda p: (-p.rank_score, p.post_id))
            if params.apply_diversity:
                ranked = apply_diversity(ranked)

            span.set_attribute("ranking.returned", len(ranked))
            return ranked

    def _score(
        self,
        post: Post,
        candidate: Candidate,
        counts: Optional[dict[str, int]],
        now: datetime,
        w_sim: float,
        w_rec: float,
        w_eng: float,
    ) -> RankedPost:
        counts = counts or {}
        likes = counts.get("like_count", post.like_count or 0)
        comments = counts.get("comment_count", post.comment_count or 0)
        views = counts.get("view_count", post.view_count or 0)

        similarity = max(0.0, min(1.0, candidate.similarity or 0.0))
        recency = recency_factor(post.created_at, now)
        engagement = engagement_factor(likes, comments, views)
        score = w_sim * similarity + w_rec * recency + w_eng * engagement

        return RankedPost(
            post_id=post.post_id,
            user_id=post.user_id,
            board_id=post.board_id,
            title=post.title,
            content=post.content,
            created_at=post.created_at,
            like_count=likes,
            comment_count=comments,
            view_count=views,
            rank_score=round(score, 6),
            factors=RankingFactors(
                similarity=round(similarity, 6),
                recency=round(recency, 6),
                engagement=round(engagement, 6),
            ),
        )

    async def _load_counts(self, post_ids: list[str]) -> dict[str, dict[str, int]]:
        """Buffered counts from Redis; posts without a hash use durable columns."""
        if not post_ids:
            return {}
        try:
            async with self._redis.pipeline(transaction=False) as pipe:
                for post_id in post_ids:
                    pipe.hgetall(keys.counts_key("post", post_id))
                rows = await pipe.execute()
        except RedisError as exc:
            logger.warning("Counts unavailable from Redis (%s) — using durable counts", exc)
            return {}
        return {
            post_id: {field: int(value) for field, value in row.items()}
            for post_id, row in zip(post_ids, rows)
            if row
        }
