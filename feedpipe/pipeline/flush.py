"""
Flush coordinator — drains the engagement buffer into TiDB.

One flush pass, in order:
  1. comment operations   per post, oldest first, in enqueue order
  2. vote state           per subject: current vote rows + absolute counts
                          in one transaction
  3. dirty counts         absolute counts for subjects touched only by
                          views / comments

Durable writes are idempotent (upsert to current state, absolute counts,
comment ids minted at enqueue time), so a pass that dies half way is simply
repeated. A pending entry is acknowledged only if its sequence number is
unchanged since it was read: an operation buffered mid-flush keeps its
entry and goes out on the next pass.

A subject whose durable write fails is logged, reported in
failed_subjects, and left pending; the rest of the batch continues.

Also refreshes the hot-comments cache: top comments of recently active
posts, kept in post:{id}:hot_comments.
"""
import json
import logging
from collections import OrderedDict
from datetime import timedelta
from typing import Optional

import redis.asyncio as aioredis
from opentelemetry import trace
from redis.exceptions import WatchError

from feedpipe import keys
from feedpipe.clients.redis_client import get_json, set_json
from feedpipe.config import settings
from feedpipe.repository import COUNT_FIELDS, DurableStore
from feedpipe.schemas import FlushReport, HotComment, HotCommentsReport
from feedpipe.telemetry import FLUSH_FAILED_SUBJECTS_TOTAL, FLUSH_PROCESSED_TOTAL
from feedpipe.time_utils import utcnow_naive

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_ACK_RETRIES = 5

# Hot-comment eligibility over the last 24h
_HOT_LOOKBACK = timedelta(hours=24)
_HOT_MIN_COMMENTS = 5
_HOT_MIN_LIKES = 10


class FlushCoordinator:
    def __init__(self, redis: aioredis.Redis, store: DurableStore) -> None:
        self._redis = redis
        self._store = store

    async def flush(self, batch_size: Optional[int] = None) -> FlushReport:
        batch_size = batch_size or settings.flush_default_batch_size
        report = FlushReport()

        with tracer.start_as_current_span("flush") as span:
            span.set_attribute("flush.batch_size", batch_size)

            await self._flush_comments(batch_size, report)
            for subject_type in keys.SUBJECT_TYPES:
                await self._flush_votes(subject_type, batch_size, report)
            for subject_type in keys.SUBJECT_TYPES:
                await self._flush_counts(subject_type, batch_size, report)

            span.set_attribute("flush.processed", report.processed)
            span.set_attribute("flush.failed_subjects", len(report.failed_subjects))

        logger.info(
            "Flush complete — processed=%d counts_synced=%d failed=%d",
            report.processed,
            report.counts_synced,
            len(report.failed_subjects),
        )
        return report

    # ─────────────────────────── votes ────────────────────────────────────

    async def _flush_votes(self, subject_type: str, batch_size: int, report: FlushReport) -> None:
        pending_key = keys.pending_votes_key(subject_type)
        entries = await self._redis.zrange(pending_key, 0, batch_size - 1, withscores=True)

        # subject → {user: seq}, oldest subject first
        grouped: OrderedDict[str, dict[str, float]] = OrderedDict()
        for member, seq in entries:
            subject_id, user_id = keys.split_vote_member(member)
            grouped.setdefault(subject_id, {})[user_id] = seq

        for subject_id, users in grouped.items():
            states = await self._redis.mget(
                [keys.vote_key(subject_type, subject_id, u) for u in users]
            )
            votes = {u: s for u, s in zip(users, states) if s is not None}
            if len(votes) < len(users):
                logger.warning(
                    "Vote state expired for %d pending votes on %s:%s — skipping them",
                    len(users) - len(votes),
                    subject_type,
                    subject_id,
                )
            counts = await self._counts_snapshot(subject_type, subject_id)
            try:
                await self._store.apply_votes(subject_type, subject_id, votes, counts)
            except Exception:
                logger.exception("Vote flush failed for %s:%s", subject_type, subject_id)
                self._fail(report, subject_type, subject_id)
                continue

            await self._ack(
                pending_key,
                {keys.vote_member(subject_id, u): seq for u, seq in users.items()},
            )
            report.processed += len(users)
            FLUSH_PROCESSED_TOTAL.labels(subject_type=subject_type).inc(len(users))

    # ─────────────────────────── comments ─────────────────────────────────

    async def _flush_comments(self, batch_size: int, report: FlushReport) -> None:
        index_key = keys.pending_comment_subjects_key()
        budget = batch_size
        for post_id in await self._redis.zrange(index_key, 0, batch_size - 1):
            if budget <= 0:
                break
            list_key = keys.pending_comments_key(post_id)
            raw_ops = await self._redis.lrange(list_key, 0, budget - 1)
            if raw_ops:
                ops = [json.loads(raw) for raw in raw_ops]
                counts = await self._counts_snapshot("post", post_id)
                comment_count = counts.get("comment_count") if counts else None
                try:
                    await self._store.apply_comment_ops(post_id, ops, comment_count)
                except Exception:
                    logger.exception("Comment flush failed for post %s", post_id)
                    self._fail(report, "post", post_id)
                    continue
                # only the ops just applied; later RPUSHes stay queued
                await self._redis.ltrim(list_key, len(ops), -1)
                budget -= len(ops)
                report.processed += len(ops)
                FLUSH_PROCESSED_TOTAL.labels(subject_type="comment").inc(len(ops))

            await self._redis.zrem(index_key, post_id)
            head = await self._redis.lindex(list_key, 0)
            if head is not None:
                await self._redis.zadd(index_key, {post_id: json.loads(head)["seq"]}, nx=True)

    # ─────────────────────────── counts ───────────────────────────────────

    async def _flush_counts(self, subject_type: str, batch_size: int, report: FlushReport) -> None:
        pending_key = keys.pending_counts_key(subject_type)
        entries = await self._redis.zrange(pending_key, 0, batch_size - 1, withscores=True)
        for subject_id, seq in entries:
            counts = await self._counts_snapshot(subject_type, subject_id)
            if counts is None:
                logger.warning(
                    "Counts hash for %s:%s is gone — leaving it pending", subject_type, subject_id
                )
                self._fail(report, subject_type, subject_id)
                continue
            try:
                await self._store.set_counts(subject_type, subject_id, counts)
            except Exception:
                logger.exception("Counts flush failed for %s:%s", subject_type, subject_id)
                self._fail(report, subject_type, subject_id)
                continue
            report.counts_synced += 1
            await self._ack(pending_key, {subject_id: seq})

    # ─────────────────────────── helpers ──────────────────────────────────

    async def _counts_snapshot(self, subject_type: str, subject_id: str) -> Optional[dict[str, int]]:
        row = await self._redis.hgetall(keys.counts_key(subject_type, subject_id))
        if not row:
            return None
        return {f: int(row[f]) for f in COUNT_FIELDS[subject_type] if f in row}

    async def _ack(self, pending_key: str, members: dict[str, float]) -> int:
        """Remove members whose score is still the one we flushed."""
        async with self._redis.pipeline(transaction=True) as pipe:
            for _ in range(_ACK_RETRIES):
                try:
                    await pipe.watch(pending_key)
                    done = []
                    for member, seq in members.items():
                        if await pipe.zscore(pending_key, member) == seq:
                            done.append(member)
                    if not done:
                        return 0
                    pipe.multi()
                    pipe.zrem(pending_key, *done)
                    await pipe.execute()
                    return len(done)
                except WatchError:
                    continue
        # still pending; the next pass re-applies idempotently
        logger.warning("Could not acknowledge %d entries on %s", len(members), pending_key)
        return 0

    @staticmethod
    def _fail(report: FlushReport, subject_type: str, subject_id: str) -> None:
        label = f"{subject_type}:{subject_id}"
        if label not in report.failed_subjects:
            report.failed_subjects.append(label)
        FLUSH_FAILED_SUBJECTS_TOTAL.labels(subject_type=subject_type).inc()


class HotCommentsCache:
    def __init__(self, redis: aioredis.Redis, store: DurableStore) -> None:
        self._redis = redis
        self._store = store

    async def refresh(self) -> HotCommentsReport:
        since = utcnow_naive() - _HOT_LOOKBACK
        posts = await self._store.list_popular_posts(
            since, _HOT_MIN_COMMENTS, _HOT_MIN_LIKES, settings.hot_comments_post_limit
        )
        refreshed = 0
        for post in posts:
            try:
                await self._load(post.post_id)
                refreshed += 1
            except Exception:
                logger.exception("Hot comments refresh failed for post %s", post.post_id)
        logger.info("Refreshed hot comments for %d/%d posts", refreshed, len(posts))
        return HotCommentsReport(refreshed=refreshed, total_posts=len(posts))

    async def get(self, post_id: str) -> tuple[list[HotComment], bool]:
        """Returns (comments, from_cache)."""
        cached = await get_json(self._redis, keys.hot_comments_key(post_id))
        if cached is not None:
            return [HotComment.model_validate(c) for c in cached], True
        return await self._load(post_id), False

    async def _load(self, post_id: str) -> list[HotComment]:
        rows = await self._store.top_comments(post_id, settings.hot_comments_per_post)
        comments = [
            HotComment(
                comment_id=c.comment_id,
                user_id=c.user_id,
                content=c.content,
                like_count=c.like_count,
                created_at=c.created_at,
            )
            for c in rows
        ]
        await set_json(
            self._redis,
            keys.hot_comments_key(post_id),
            [c.model_dump(mode="json") for c in comments],
            settings.hot_comments_ttl,
        )
        return comments
