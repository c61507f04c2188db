from collections import Counter
from datetime import timedelta

import pytest

from feedpipe import keys
from feedpipe.pipeline.ranking import (
    RankingEngine,
    apply_diversity,
    engagement_factor,
    normalized_weights,
    recency_factor,
)
from feedpipe.schemas import Candidate, RankingOverrides, RankingParams
from tests.factories import NOW, make_post, make_user, ranked


def _no_window_violations(posts, window=5, max_per_window=2) -> bool:
    for start in range(max(1, len(posts) - window + 1)):
        chunk = posts[start : start + window]
        if max(Counter(p.user_id for p in chunk).values()) > max_per_window:
            return False
    return True


def test_engagement_factor_is_zero_without_activity_and_saturates_at_one() -> None:
    assert engagement_factor(0, 0, 0) == 0.0
    assert engagement_factor(1000, 200, 10000) == pytest.approx(1.0)
    assert engagement_factor(10**7, 10**7, 10**9) == pytest.approx(1.0)


def test_engagement_factor_grows_with_each_signal() -> None:
    base = engagement_factor(10, 2, 100)
    assert engagement_factor(20, 2, 100) > base
    assert engagement_factor(10, 4, 100) > base
    assert engagement_factor(10, 2, 200) > base


def test_recency_factor_halves_every_half_life() -> None:
    assert recency_factor(NOW, NOW) == 1.0
    assert recency_factor(NOW - timedelta(days=7), NOW) == pytest.approx(0.5)
    assert recency_factor(NOW - timedelta(days=14), NOW) == pytest.approx(0.25)
    # future timestamps are treated as brand new
    assert recency_factor(NOW + timedelta(days=1), NOW) == 1.0
    assert recency_factor(None, NOW) == 0.0


def test_normalized_weights_sum_to_one() -> None:
    params = RankingParams(similarity_weight=1.0, recency_weight=1.0, engagement_weight=0.0)
    assert normalized_weights(params) == pytest.approx((0.5, 0.5, 0.0))


def test_all_zero_weights_fall_back_to_defaults() -> None:
    params = RankingParams(similarity_weight=0, recency_weight=0, engagement_weight=0)
    assert normalized_weights(params) == pytest.approx((0.5, 0.3, 0.2))


def test_diversity_limits_posts_per_author_within_window() -> None:
    posts = (
        [ranked(f"a{i}", "A") for i in range(1, 7)]
        + [ranked(f"b{i}", "B") for i in range(1, 4)]
        + [ranked(f"c{i}", "C") for i in range(1, 4)]
    )

    result = apply_diversity(posts, window=5, max_per_window=2)

    assert sorted(p.post_id for p in result) == sorted(p.post_id for p in posts)
    assert result[0].post_id == "a1"
    assert _no_window_violations(result)


def test_diversity_relaxes_when_nothing_qualifies() -> None:
    posts = [ranked(f"a{i}", "A") for i in range(1, 5)] + [ranked("b1", "B"), ranked("c1", "C")]

    result = apply_diversity(posts, window=5, max_per_window=2)

    assert [p.post_id for p in result] == ["a1", "a2", "b1", "c1", "a3", "a4"]


def test_diversity_caps_posts_per_board() -> None:
    posts = [
        ranked("x1", "u1", board_id="cats"),
        ranked("x2", "u2", board_id="cats"),
        ranked("x3", "u3", board_id="cats"),
        ranked("y1", "u4", board_id="dogs"),
    ]

    result = apply_diversity(posts, window=5, max_per_window=2)

    assert [p.post_id for p in result] == ["x1", "x2", "y1", "x3"]


async def test_rank_orders_by_weighted_score_and_drops_unknown_posts(store, redis, add_rows) -> None:
    await add_rows(
        make_post("p1", age_days=0),
        make_post("p2", age_days=14),
        make_post("gone", is_deleted=True),
    )
    engine = RankingEngine(store, redis)
    params = RankingParams(
        similarity_weight=0.5, recency_weight=0.5, engagement_weight=0.0, apply_diversity=False
    )
    candidates = [
        Candidate(post_id="p2", similarity=0.9),
        Candidate(post_id="p1", similarity=0.2),
        Candidate(post_id="gone", similarity=1.0),
        Candidate(post_id="missing", similarity=1.0),
    ]

    result = await engine.rank("u1", candidates, params, now=NOW)

    assert [p.post_id for p in result] == ["p1", "p2"]
    assert result[0].rank_score == pytest.approx(0.6)
    assert result[1].rank_score == pytest.approx(0.575)
    assert result[1].factors.recency == pytest.approx(0.25)


async def test_rank_prefers_buffered_counts_over_durable_columns(store, redis, add_rows) -> None:
    await add_rows(make_post("p1", like_count=50), make_post("p2", like_count=0))
    await redis.hset(keys.counts_key("post", "p2"), mapping={"like_count": 500, "view_count": 10})
    engine = RankingEngine(store, redis)
    params = RankingParams(
        similarity_weight=0, recency_weight=0, engagement_weight=1, apply_diversity=False
    )

    result = await engine.rank(
        "u1", [Candidate(post_id="p1"), Candidate(post_id="p2")], params, now=NOW
    )

    assert [p.post_id for p in result] == ["p2", "p1"]
    assert result[0].like_count == 500
    assert result[1].like_count == 50


async def test_rank_breaks_ties_by_post_id(store, redis, add_rows) -> None:
    await add_rows(make_post("b"), make_post("a"), make_post("c"))
    engine = RankingEngine(store, redis)

    result = await engine.rank(
        "u1",
        [Candidate(post_id=pid, similarity=0.5) for pid in ("c", "b", "a")],
        RankingParams(apply_diversity=False),
        now=NOW,
    )

    assert [p.post_id for p in result] == ["a", "b", "c"]


async def test_rank_applies_board_filter(store, redis, add_rows) -> None:
    await add_rows(make_post("p1", board_id="cats"), make_post("p2", board_id="dogs"))
    engine = RankingEngine(store, redis)

    result = await engine.rank(
        "u1", [Candidate(post_id="p1"), Candidate(post_id="p2")], now=NOW, board_id="dogs"
    )

    assert [p.post_id for p in result] == ["p2"]


async def test_rank_of_empty_candidates_is_empty(store, redis) -> None:
    assert await RankingEngine(store, redis).rank("u1", [], now=NOW) == []


async def test_resolve_params_merges_preferences_then_overrides(store, redis, add_rows) -> None:
    await add_rows(make_user("u1", ranking_preferences={"recency_weight": 0.9, "apply_diversity": False}))
    engine = RankingEngine(store, redis)

    params = await engine.resolve_params("u1", RankingOverrides(similarity_weight=0.1))

    assert params == RankingParams(
        similarity_weight=0.1, recency_weight=0.9, engagement_weight=0.2, apply_diversity=False
    )


async def test_resolve_params_for_unknown_user_uses_defaults(store, redis) -> None:
    params = await RankingEngine(store, redis).resolve_params("nobody")

    assert params == RankingParams()
