"""
Embedding indexer — keeps Qdrant and the interest vectors in step with the
durable store.

Posts:
  title + content → embedding service → Qdrant point (payload carries
  user_id, board_id, created_at_ts). posts.embedded_at marks the post as
  indexed; editing the text clears it so the next run re-embeds.

Users:
  interest vector = L2-normalised mean of
    • the profile text embedding (if the user wrote one)
    • the mean embedding of their most recently liked posts
  written to users.interest_vector and mirrored to Redis.
"""
import logging
import math
from typing import Iterable, Optional

import redis.asyncio as aioredis

from feedpipe.clients.embedding_client import EmbeddingClient
from feedpipe.clients.qdrant_client import PostVectorIndex
from feedpipe.clients.redis_client import set_interest_vector
from feedpipe.models import Post, User
from feedpipe.repository import DurableStore
from feedpipe.schemas import IndexReport, InterestRefreshReport
from feedpipe.time_utils import as_utc

logger = logging.getLogger(__name__)


def post_text(post: Post) -> str:
    return "\n".join(part for part in (post.title, post.content) if part).strip()


def mean_vector(vectors: list[list[float]]) -> list[float]:
    dim = len(vectors[0])
    return [sum(v[i] for v in vectors) / len(vectors) for i in range(dim)]


def l2_normalize(vector: list[float]) -> list[float]:
    norm = math.sqrt(sum(x * x for x in vector))
    if norm == 0:
        return vector
    return [x / norm for x in vector]


class EmbeddingIndexer:
    def __init__(
        self,
        index: PostVectorIndex,
        embedder: EmbeddingClient,
        store: DurableStore,
        redis: aioredis.Redis,
    ) -> None:
        self._index = index
        self._embedder = embedder
        self._store = store
        self._redis = redis

    # ─────────────────────────── Posts ────────────────────────────────────

    async def index_post(self, post: Post) -> bool:
        text = post_text(post)
        if not text:
            logger.info("Post %s has no text — skipping embedding", post.post_id)
            return False
        try:
            vector = await self._embedder.generate_embedding(text)
            await self._index.upsert_post_vector(
                post.post_id,
                vector,
                {
                    "user_id": post.user_id,
                    "board_id": post.board_id,
                    "created_at_ts": as_utc(post.created_at).timestamp(),
                },
            )
            await self._store.mark_post_embedded(post.post_id)
        except Exception as exc:
            logger.warning("Failed to index post %s: %s", post.post_id, exc)
            return False
        return True

    async def index_pending_posts(self, batch_size: int = 100) -> IndexReport:
        report = IndexReport()
        for post in await self._store.list_posts_missing_embedding(batch_size):
            if await self.index_post(post):
                report.indexed += 1
            else:
                report.failed.append(post.post_id)
        logger.info("Indexed %d posts (%d failed)", report.indexed, len(report.failed))
        return report

    # ─────────────────────────── Users ────────────────────────────────────

    async def refresh_user_vector(self, user: User) -> Optional[list[float]]:
        """
        Rebuild and persist one user's interest vector.
        Returns None when the user has neither profile text nor liked posts.
        Embedding / index errors propagate to the caller.
        """
        parts: list[list[float]] = []
        if user.profile_text and user.profile_text.strip():
            parts.append(await self._embedder.generate_embedding(user.profile_text))

        liked = await self._store.recent_liked_post_ids(user.user_id)
        if liked:
            liked_vectors = list((await self._index.get_vectors(liked)).values())
            if liked_vectors:
                parts.append(mean_vector(liked_vectors))

        if not parts:
            return None

        vector = l2_normalize(mean_vector(parts))
        await self._store.set_interest_vector(user.user_id, vector)
        await set_interest_vector(self._redis, user.user_id, vector)
        return vector

    async def refresh_interest_vectors(self, user_ids: Iterable[str]) -> InterestRefreshReport:
        report = InterestRefreshReport()
        for user_id in user_ids:
            try:
                user = await self._store.get_user(user_id)
                vector = await self.refresh_user_vector(user) if user else None
            except Exception as exc:
                logger.warning("Interest vector refresh failed for user %s: %s", user_id, exc)
                report.failed.append(user_id)
                continue
            if vector is None:
                report.skipped += 1
            else:
                report.refreshed += 1
        return report
