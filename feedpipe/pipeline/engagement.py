"""
Engagement buffer — absorbs likes, votes, views and comment edits in Redis.

Per subject ({type}:{id}):
  counts hash    like_count / dislike_count / view_count / comment_count,
                 seeded from the durable row the first time it is touched
  vote state     one key per (subject, user): none | like | dislike,
                 seeded from the durable votes row

Every accepted operation also marks work for the flush job:
  pending:votes:{type}       "{subject}|{user}" → op sequence
  pending:counts:{type}      subject → op sequence
  post:{id}:pending_comments ordered comment operations
  pending:comment_subjects   posts with pending comment operations

Vote transitions run in a WATCH/MULTI transaction on the vote state key, so
two concurrent requests for the same (subject, user) never both apply.
Repeating an operation that does not change the state returns `duplicate`
and leaves counts untouched.

Redis errors propagate; the API turns them into 503 rather than dropping
the operation silently.
"""
import json
import logging
import time
import uuid
from typing import Callable, Iterable, Optional

import redis.asyncio as aioredis
from redis.exceptions import WatchError

from feedpipe import keys
from feedpipe.config import settings
from feedpipe.errors import InvalidOperationError
from feedpipe.repository import COUNT_FIELDS, DurableStore
from feedpipe.schemas import AggregateCounts, BufferResult
from feedpipe.telemetry import ENGAGEMENT_OPERATIONS_TOTAL

logger = logging.getLogger(__name__)

VOTE_KINDS = ("like", "unlike", "vote:like", "vote:dislike", "remove")
COMMENT_KINDS = ("comment:create", "comment:update", "comment:delete")

_STATE_FIELD = {"like": "like_count", "dislike": "dislike_count"}
_COMMENT_COUNT_DELTA = {"comment:create": 1, "comment:delete": -1}


def next_vote_state(previous: str, kind: str) -> str:
    if kind in ("like", "vote:like"):
        return "like"
    if kind == "vote:dislike":
        return "dislike"
    if kind == "unlike":
        # unlike only clears a like; on a dislike it is a no-op
        return "none" if previous == "like" else previous
    return "none"


def vote_deltas(previous: str, current: str) -> dict[str, int]:
    deltas: dict[str, int] = {}
    if previous in _STATE_FIELD:
        deltas[_STATE_FIELD[previous]] = -1
    if current in _STATE_FIELD:
        field = _STATE_FIELD[current]
        deltas[field] = deltas.get(field, 0) + 1
    return {f: d for f, d in deltas.items() if d}


def counts_from_hash(row: dict) -> AggregateCounts:
    return AggregateCounts(**{field: int(value) for field, value in row.items()})


class EngagementBuffer:
    def __init__(
        self,
        redis: aioredis.Redis,
        store: DurableStore,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._redis = redis
        self._store = store
        self._clock = clock

    async def buffer_operation(
        self,
        subject_type: str,
        subject_id: str,
        user_id: str,
        kind: str,
        payload: Optional[dict] = None,
    ) -> BufferResult:
        self._validate(subject_type, subject_id, user_id, kind)

        if kind in VOTE_KINDS:
            result = await self._buffer_vote(subject_type, subject_id, user_id, kind)
        else:
            if subject_type != "post":
                raise InvalidOperationError("comment operations must target a post")
            result = await self._buffer_comment(subject_id, user_id, kind, payload or {})

        ENGAGEMENT_OPERATIONS_TOTAL.labels(subject_type=subject_type, action=result.action).inc()
        logger.debug(
            "Buffered %s on %s:%s by %s → %s", kind, subject_type, subject_id, user_id, result.action
        )
        return result

    async def record_view(self, post_id: str) -> AggregateCounts:
        if not post_id:
            raise InvalidOperationError("post id is required")
        await self._ensure_counts("post", post_id)
        ckey = keys.counts_key("post", post_id)
        seq = await self._redis.incr(keys.op_sequence_key())
        async with self._redis.pipeline(transaction=True) as pipe:
            pipe.hincrby(ckey, "view_count", 1)
            pipe.expire(ckey, settings.engagement_state_ttl)
            pipe.zadd(keys.pending_counts_key("post"), {post_id: seq})
            await pipe.execute()
        return await self._read_counts("post", post_id)

    async def get_cached_counts(
        self,
        subject_type: str,
        subject_ids: Iterable[str],
    ) -> dict[str, AggregateCounts]:
        """
        Aggregate counts for up to `counts_batch_limit` subjects.
        Subjects with no Redis hash are seeded from the durable store; when
        that is impossible (unknown subject, store down) the entry carries
        zeros with has_cached_data=False.
        """
        if subject_type not in keys.SUBJECT_TYPES:
            raise InvalidOperationError(f"unknown subject type: {subject_type}")
        ids = list(dict.fromkeys(i for i in subject_ids if i))
        if len(ids) > settings.counts_batch_limit:
            raise InvalidOperationError(
                f"at most {settings.counts_batch_limit} ids per request"
            )

        async with self._redis.pipeline(transaction=False) as pipe:
            for subject_id in ids:
                pipe.hgetall(keys.counts_key(subject_type, subject_id))
            rows = await pipe.execute()

        results: dict[str, AggregateCounts] = {}
        for subject_id, row in zip(ids, rows):
            if row:
                results[subject_id] = counts_from_hash(row)
                continue
            try:
                await self._ensure_counts(subject_type, subject_id)
                results[subject_id] = await self._read_counts(subject_type, subject_id)
            except Exception as exc:
                logger.info("No counts for %s:%s (%s)", subject_type, subject_id, exc)
                results[subject_id] = AggregateCounts(has_cached_data=False)
        return results

    # ─────────────────────────── votes ────────────────────────────────────

    async def _buffer_vote(
        self,
        subject_type: str,
        subject_id: str,
        user_id: str,
        kind: str,
    ) -> BufferResult:
        await self._ensure_counts(subject_type, subject_id)
        await self._ensure_vote_state(subject_type, subject_id, user_id)

        vkey = keys.vote_key(subject_type, subject_id, user_id)
        ckey = keys.counts_key(subject_type, subject_id)
        ttl = settings.engagement_state_ttl

        async with self._redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    await pipe.watch(vkey)
                    previous = await pipe.get(vkey) or "none"
                    current = next_vote_state(previous, kind)
                    if current == previous:
                        applied = False
                        break
                    seq = await self._redis.incr(keys.op_sequence_key())
                    pipe.multi()
                    pipe.set(vkey, current, ex=ttl)
                    for field, delta in vote_deltas(previous, current).items():
                        pipe.hincrby(ckey, field, delta)
                    pipe.expire(ckey, ttl)
                    pipe.zadd(
                        keys.pending_votes_key(subject_type),
                        {keys.vote_member(subject_id, user_id): seq},
                    )
                    pipe.zadd(keys.pending_counts_key(subject_type), {subject_id: seq})
                    await pipe.execute()
                    applied = True
                    break
                except WatchError:
                    logger.debug("Vote state for %s changed concurrently — retrying", vkey)
                    continue

        if not applied:
            action = "duplicate"
        elif previous == "none":
            action = "created"
        else:
            action = "updated"
        return BufferResult(
            applied=applied,
            action=action,
            previous_state=previous,
            counts=await self._read_counts(subject_type, subject_id),
        )

    async def _ensure_vote_state(self, subject_type: str, subject_id: str, user_id: str) -> None:
        vkey = keys.vote_key(subject_type, subject_id, user_id)
        if await self._redis.exists(vkey):
            return
        durable = await self._store.get_vote(subject_type, subject_id, user_id)
        await self._redis.set(vkey, durable or "none", nx=True, ex=settings.engagement_state_ttl)

    # ─────────────────────────── comments ─────────────────────────────────

    async def _buffer_comment(
        self,
        post_id: str,
        user_id: str,
        kind: str,
        payload: dict,
    ) -> BufferResult:
        await self._ensure_counts("post", post_id)
        ttl = settings.engagement_state_ttl

        if kind == "comment:create":
            content = (payload.get("content") or "").strip()
            if not content:
                raise InvalidOperationError("comment content is required")
            comment_id = str(uuid.uuid4())
        else:
            comment_id = payload.get("comment_id")
            if not comment_id:
                raise InvalidOperationError("comment_id is required")
            content = payload.get("content")
            if kind == "comment:update" and not (content or "").strip():
                raise InvalidOperationError("comment content is required")
            await self._ensure_counts("comment", comment_id)
            owner = await self._comment_post_id(comment_id)
            if owner != post_id:
                raise InvalidOperationError(
                    f"comment {comment_id} does not belong to post {post_id}"
                )

        if kind == "comment:delete":
            # a second delete of the same comment must not decrement again
            marked = await self._redis.set(
                keys.comment_deleted_key(comment_id), "1", nx=True, ex=ttl
            )
            if not marked:
                return BufferResult(
                    applied=False,
                    action="duplicate",
                    counts=await self._read_counts("post", post_id),
                    comment_id=comment_id,
                )

        seq = await self._redis.incr(keys.op_sequence_key())
        op = {
            "seq": seq,
            "kind": kind,
            "user_id": user_id,
            "timestamp": int(self._clock() * 1000),
            "payload": {"comment_id": comment_id, "content": content},
        }
        ckey = keys.counts_key("post", post_id)

        async with self._redis.pipeline(transaction=True) as pipe:
            if kind == "comment:create":
                comment_ckey = keys.counts_key("comment", comment_id)
                pipe.hset(comment_ckey, mapping={f: 0 for f in COUNT_FIELDS["comment"]})
                pipe.expire(comment_ckey, ttl)
                pipe.set(keys.comment_post_key(comment_id), post_id, ex=ttl)
            pipe.rpush(keys.pending_comments_key(post_id), json.dumps(op))
            pipe.zadd(keys.pending_comment_subjects_key(), {post_id: seq}, nx=True)
            delta = _COMMENT_COUNT_DELTA.get(kind)
            if delta:
                pipe.hincrby(ckey, "comment_count", delta)
                pipe.expire(ckey, ttl)
                pipe.zadd(keys.pending_counts_key("post"), {post_id: seq})
            await pipe.execute()

        return BufferResult(
            applied=True,
            action="created" if kind == "comment:create" else "updated",
            counts=await self._read_counts("post", post_id),
            comment_id=comment_id,
        )

    # ─────────────────────────── helpers ──────────────────────────────────

    def _validate(self, subject_type: str, subject_id: str, user_id: str, kind: str) -> None:
        if subject_type not in keys.SUBJECT_TYPES:
            raise InvalidOperationError(f"unknown subject type: {subject_type}")
        if not subject_id:
            raise InvalidOperationError("subject id is required")
        if not user_id:
            raise InvalidOperationError("user id is required")
        if kind not in VOTE_KINDS and kind not in COMMENT_KINDS:
            raise InvalidOperationError(f"unknown operation kind: {kind}")

    async def _ensure_counts(self, subject_type: str, subject_id: str) -> None:
        """Seed the counts hash from the durable row; unknown subjects are rejected."""
        ckey = keys.counts_key(subject_type, subject_id)
        if await self._redis.exists(ckey):
            return
        baseline = await self._store.get_counts(subject_type, subject_id)
        if baseline is None:
            raise InvalidOperationError(f"{subject_type} {subject_id} does not exist")
        async with self._redis.pipeline(transaction=True) as pipe:
            # HSETNX keeps any delta written between the EXISTS check and here
            for field, value in baseline.items():
                pipe.hsetnx(ckey, field, value)
            pipe.expire(ckey, settings.engagement_state_ttl)
            await pipe.execute()

    async def _comment_post_id(self, comment_id: str) -> Optional[str]:
        """Owning post: the buffered create's marker first, then the durable row."""
        post_id = await self._redis.get(keys.comment_post_key(comment_id))
        if post_id is not None:
            return post_id
        return await self._store.get_comment_post_id(comment_id)

    async def _read_counts(self, subject_type: str, subject_id: str) -> AggregateCounts:
        row = await self._redis.hgetall(keys.counts_key(subject_type, subject_id))
        return counts_from_hash(row)
