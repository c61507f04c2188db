import asyncio
import json

import pytest

from feedpipe import keys
from feedpipe.errors import InvalidOperationError
from feedpipe.pipeline.engagement import EngagementBuffer, next_vote_state, vote_deltas
from tests.factories import make_comment, make_post, make_vote


@pytest.fixture
async def buffer(redis, store, add_rows) -> EngagementBuffer:
    await add_rows(make_post("p1", like_count=5, comment_count=2), make_comment("c1", "p1"))
    return EngagementBuffer(redis, store, clock=lambda: 1_700_000_000.0)


@pytest.mark.parametrize(
    "previous,kind,expected",
    [
        ("none", "like", "like"),
        ("dislike", "vote:like", "like"),
        ("like", "vote:dislike", "dislike"),
        ("like", "unlike", "none"),
        ("dislike", "unlike", "dislike"),
        ("dislike", "remove", "none"),
    ],
)
def test_next_vote_state(previous, kind, expected) -> None:
    assert next_vote_state(previous, kind) == expected


def test_vote_deltas_move_one_count_to_the_other() -> None:
    assert vote_deltas("none", "like") == {"like_count": 1}
    assert vote_deltas("like", "dislike") == {"like_count": -1, "dislike_count": 1}
    assert vote_deltas("dislike", "none") == {"dislike_count": -1}
    assert vote_deltas("like", "like") == {}


async def test_first_like_is_created_and_seeds_from_durable_counts(buffer, redis) -> None:
    result = await buffer.buffer_operation("post", "p1", "u1", "like")

    assert result.action == "created"
    assert result.applied is True
    assert result.previous_state == "none"
    assert result.counts.like_count == 6
    assert result.counts.comment_count == 2
    assert await redis.get(keys.vote_key("post", "p1", "u1")) == "like"
    assert await redis.zscore(keys.pending_votes_key("post"), keys.vote_member("p1", "u1")) is not None
    assert await redis.zscore(keys.pending_counts_key("post"), "p1") is not None


async def test_repeated_like_is_duplicate_and_counts_once(buffer) -> None:
    await buffer.buffer_operation("post", "p1", "u1", "like")
    result = await buffer.buffer_operation("post", "p1", "u1", "like")

    assert result.action == "duplicate"
    assert result.applied is False
    assert result.counts.like_count == 6


async def test_switching_vote_moves_the_count(buffer) -> None:
    await buffer.buffer_operation("post", "p1", "u1", "vote:like")
    result = await buffer.buffer_operation("post", "p1", "u1", "vote:dislike")

    assert result.action == "updated"
    assert result.previous_state == "like"
    assert result.counts.like_count == 5
    assert result.counts.dislike_count == 1


async def test_unlike_without_like_is_duplicate(buffer) -> None:
    result = await buffer.buffer_operation("post", "p1", "u1", "unlike")

    assert result.action == "duplicate"
    assert result.counts.like_count == 5


async def test_durable_vote_seeds_state(buffer, add_rows) -> None:
    await add_rows(make_vote("p1", "u9", "like"))

    again = await buffer.buffer_operation("post", "p1", "u9", "like")
    removed = await buffer.buffer_operation("post", "p1", "u9", "remove")

    assert again.action == "duplicate"
    assert removed.action == "updated"
    assert removed.counts.like_count == 4


async def test_concurrent_likes_from_one_user_apply_once(buffer) -> None:
    results = await asyncio.gather(
        *(buffer.buffer_operation("post", "p1", "u1", "like") for _ in range(10))
    )

    assert sorted(r.action for r in results).count("created") == 1
    assert sum(1 for r in results if r.action == "duplicate") == 9
    counts = await buffer.get_cached_counts("post", ["p1"])
    assert counts["p1"].like_count == 6


async def test_concurrent_likes_from_many_users_all_count(buffer) -> None:
    await asyncio.gather(
        *(buffer.buffer_operation("post", "p1", f"u{i}", "like") for i in range(10))
    )

    counts = await buffer.get_cached_counts("post", ["p1"])
    assert counts["p1"].like_count == 15


async def test_comment_votes_use_comment_counts(buffer) -> None:
    result = await buffer.buffer_operation("comment", "c1", "u1", "vote:dislike")

    assert result.action == "created"
    assert result.counts.dislike_count == 1


@pytest.mark.parametrize(
    "subject_type,subject_id,user_id,kind",
    [
        ("story", "p1", "u1", "like"),
        ("post", "", "u1", "like"),
        ("post", "p1", "", "like"),
        ("post", "p1", "u1", "share"),
        ("post", "missing", "u1", "like"),
        ("comment", "c1", "u1", "comment:create"),
    ],
)
async def test_invalid_operations_are_rejected(buffer, redis, subject_type, subject_id, user_id, kind) -> None:
    with pytest.raises(InvalidOperationError):
        await buffer.buffer_operation(subject_type, subject_id, user_id, kind, {"content": "x"})

    assert await redis.zcard(keys.pending_votes_key("post")) == 0


async def test_comment_create_queues_op_and_bumps_comment_count(buffer, redis) -> None:
    result = await buffer.buffer_operation(
        "post", "p1", "u1", "comment:create", {"content": "  first!  "}
    )

    assert result.action == "created"
    assert result.comment_id
    assert result.counts.comment_count == 3
    ops = [json.loads(raw) for raw in await redis.lrange(keys.pending_comments_key("p1"), 0, -1)]
    assert len(ops) == 1
    assert ops[0]["kind"] == "comment:create"
    assert ops[0]["user_id"] == "u1"
    assert ops[0]["timestamp"] == 1_700_000_000_000
    assert ops[0]["payload"] == {"comment_id": result.comment_id, "content": "first!"}
    assert await redis.zscore(keys.pending_comment_subjects_key(), "p1") is not None
    # the new comment can be voted on before it is flushed
    vote = await buffer.buffer_operation("comment", result.comment_id, "u2", "like")
    assert vote.counts.like_count == 1


async def test_comment_create_requires_content(buffer) -> None:
    with pytest.raises(InvalidOperationError):
        await buffer.buffer_operation("post", "p1", "u1", "comment:create", {"content": "   "})


async def test_comment_delete_twice_decrements_once(buffer) -> None:
    first = await buffer.buffer_operation("post", "p1", "u1", "comment:delete", {"comment_id": "c1"})
    second = await buffer.buffer_operation("post", "p1", "u1", "comment:delete", {"comment_id": "c1"})

    assert first.action == "updated"
    assert second.action == "duplicate"
    assert second.counts.comment_count == 1


async def test_comment_update_of_unknown_comment_is_rejected(buffer) -> None:
    with pytest.raises(InvalidOperationError):
        await buffer.buffer_operation(
            "post", "p1", "u1", "comment:update", {"comment_id": "nope", "content": "edited"}
        )


async def test_record_view_increments_and_marks_dirty(buffer, redis) -> None:
    await buffer.record_view("p1")
    counts = await buffer.record_view("p1")

    assert counts.view_count == 2
    assert await redis.zscore(keys.pending_counts_key("post"), "p1") is not None


async def test_record_view_of_unknown_post_is_rejected(buffer) -> None:
    with pytest.raises(InvalidOperationError):
        await buffer.record_view("missing")


async def test_cached_counts_mark_unknown_subjects(buffer) -> None:
    results = await buffer.get_cached_counts("post", ["p1", "missing"])

    assert results["p1"].like_count == 5
    assert results["p1"].has_cached_data is True
    assert results["missing"].has_cached_data is False
    assert results["missing"].like_count == 0


async def test_cached_counts_rejects_oversized_batches(buffer) -> None:
    with pytest.raises(InvalidOperationError):
        await buffer.get_cached_counts("post", [f"p{i}" for i in range(51)])


async def test_comment_delete_through_another_post_is_rejected(buffer, add_rows, redis) -> None:
    await add_rows(make_post("p2", comment_count=3))

    with pytest.raises(InvalidOperationError):
        await buffer.buffer_operation("post", "p2", "u1", "comment:delete", {"comment_id": "c1"})

    counts = await buffer.get_cached_counts("post", ["p1", "p2"])
    assert counts["p1"].comment_count == 2
    assert counts["p2"].comment_count == 3
    assert await redis.llen(keys.pending_comments_key("p2")) == 0
    assert await redis.get(keys.comment_deleted_key("c1")) is None


async def test_buffered_comment_cannot_be_edited_through_another_post(buffer, add_rows) -> None:
    await add_rows(make_post("p2"))
    created = await buffer.buffer_operation("post", "p1", "u1", "comment:create", {"content": "hi"})

    with pytest.raises(InvalidOperationError):
        await buffer.buffer_operation(
            "post", "p2", "u1", "comment:update", {"comment_id": created.comment_id, "content": "moved"}
        )

    edited = await buffer.buffer_operation(
        "post", "p1", "u1", "comment:update", {"comment_id": created.comment_id, "content": "edited"}
    )
    assert edited.action == "updated"
