import asyncio

import pytest
from sqlalchemy.exc import OperationalError

from feedpipe import keys
from feedpipe.clients.redis_client import set_interest_vector
from feedpipe.config import settings
from feedpipe.pipeline.feed import FeedService
from feedpipe.pipeline.feed_cache import FeedCacheManager, paginate
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.pipeline.ranking import RankingEngine
from feedpipe.pipeline.recall import RecallEngine
from feedpipe.schemas import FeedCacheEntry, RankingOverrides, RankingParams
from tests.factories import FakeEmbedder, FakeIndex, hit, make_post, ranked


class Clock:
    def __init__(self, now: float = 1_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def _posts(n: int):
    return [ranked(f"p{i:03d}", f"author-{i % 7}", score=1.0 - i / 1000) for i in range(n)]


def _compute(posts, calls: list, params=None):
    async def compute():
        calls.append(1)
        return posts, params or RankingParams()

    return compute


def test_paginate_slices_after_exclusions() -> None:
    posts = _posts(10)

    page, total, has_more = paginate(posts, page=2, limit=3, exclude={"p000"})

    assert [p.post_id for p in page] == ["p004", "p005", "p006"]
    assert total == 9
    assert has_more is True


async def test_miss_computes_and_stores_entry(redis) -> None:
    clock = Clock()
    cache = FeedCacheManager(redis, clock=clock)
    calls: list = []

    page = await cache.get_or_compute("u1", 1, 20, None, _compute(_posts(50), calls))

    assert calls == [1]
    assert page.from_cache is False
    assert [p.post_id for p in page.posts] == [f"p{i:03d}" for i in range(20)]
    assert (page.total, page.has_more) == (50, True)
    entry = FeedCacheEntry.model_validate_json(await redis.get(keys.feed_key("u1", 1, 20, None)))
    assert len(entry.posts) == 50
    assert entry.expires_at == clock.now + settings.feed_cache_ttl_seconds
    assert 0 < await redis.ttl(keys.feed_key("u1", 1, 20, None)) <= settings.feed_cache_ttl_seconds


async def test_fresh_entry_is_served_from_cache(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    compute = _compute(_posts(50), calls)
    await cache.get_or_compute("u1", 1, 20, None, compute)

    page = await cache.get_or_compute("u1", 1, 20, None, compute)

    assert calls == [1]
    assert page.from_cache is True
    assert len(page.posts) == 20


async def test_entry_past_expiry_is_recomputed(redis) -> None:
    clock = Clock()
    cache = FeedCacheManager(redis, clock=clock)
    calls: list = []
    compute = _compute(_posts(50), calls)
    await cache.get_or_compute("u1", 1, 20, None, compute)

    clock.now += settings.feed_cache_ttl_seconds
    page = await cache.get_or_compute("u1", 1, 20, None, compute)

    assert calls == [1, 1]
    assert page.from_cache is False


async def test_small_exclusion_is_served_from_cache(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    compute = _compute(_posts(50), calls)
    await cache.get_or_compute("u1", 1, 20, None, compute)

    page = await cache.get_or_compute("u1", 1, 20, None, compute, exclude_post_ids=["p000", "p001"])

    assert calls == [1]
    assert page.from_cache is True
    assert "p000" not in [p.post_id for p in page.posts]
    assert len(page.posts) == 20
    assert page.total == 48


async def test_underfilled_page_is_recomputed(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    compute = _compute(_posts(20), calls)
    await cache.get_or_compute("u1", 1, 20, None, compute)

    excluded = [f"p{i:03d}" for i in range(5)]
    page = await cache.get_or_compute("u1", 1, 20, None, compute, exclude_post_ids=excluded)

    assert calls == [1, 1]
    assert page.from_cache is False
    assert len(page.posts) == 15


async def test_last_partial_page_is_still_a_hit(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    compute = _compute(_posts(25), calls)
    await cache.get_or_compute("u1", 2, 20, None, compute)

    page = await cache.get_or_compute("u1", 2, 20, None, compute)

    assert calls == [1]
    assert page.from_cache is True
    assert len(page.posts) == 5
    assert page.has_more is False


async def test_changed_ranking_params_miss_the_cache(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    await cache.get_or_compute("u1", 1, 20, None, _compute(_posts(30), calls))

    other = RankingParams(similarity_weight=1.0, recency_weight=0, engagement_weight=0)
    page = await cache.get_or_compute(
        "u1", 1, 20, None, _compute(_posts(30), calls, other), expected_params=other
    )

    assert calls == [1, 1]
    assert page.ranking_params_used == other


async def test_board_filter_has_its_own_key(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    await cache.get_or_compute("u1", 1, 20, None, _compute(_posts(30), calls))
    await cache.get_or_compute("u1", 1, 20, "cats", _compute(_posts(30), calls))

    assert calls == [1, 1]
    assert await redis.exists(keys.feed_key("u1", 1, 20, "cats"))


async def test_slow_computation_serves_fallback_and_fills_cache_later(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock(), compute_timeout=0.05)
    release = asyncio.Event()

    async def slow():
        await release.wait()
        return _posts(30), RankingParams()

    async def fallback():
        return [ranked("cold-1", "a"), ranked("cold-2", "b")], RankingParams()

    page = await cache.get_or_compute("u1", 1, 20, None, slow, fallback=fallback)

    assert page.degraded is True
    assert [p.post_id for p in page.posts] == ["cold-1", "cold-2"]
    assert await redis.get(keys.feed_key("u1", 1, 20, None)) is None

    release.set()
    for _ in range(50):
        if await redis.get(keys.feed_key("u1", 1, 20, None)) is not None:
            break
        await asyncio.sleep(0.01)
    again = await cache.get_or_compute("u1", 1, 20, None, slow, fallback=fallback)
    assert again.from_cache is True
    assert len(again.posts) == 20


async def test_slow_computation_without_fallback_raises(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock(), compute_timeout=0.01)

    async def slow():
        await asyncio.sleep(1)
        return [], RankingParams()

    with pytest.raises(asyncio.TimeoutError):
        await cache.get_or_compute("u1", 1, 20, None, slow)


async def test_invalidate_drops_feed_pages_and_recall(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())
    calls: list = []
    await cache.get_or_compute("u1", 1, 20, None, _compute(_posts(30), calls))
    await cache.get_or_compute("u1", 2, 20, None, _compute(_posts(30), calls))
    await cache.get_or_compute("u2", 1, 20, None, _compute(_posts(30), calls))
    await redis.set(keys.recall_key("u1"), "[]")

    removed = await cache.invalidate("u1")

    assert removed == 3
    assert await redis.exists(keys.feed_key("u2", 1, 20, None))


# ─────────────────────────── end to end ───────────────────────────────────

@pytest.fixture
async def corpus(add_rows):
    posts = [
        make_post(f"p{i:04d}", user_id=f"author-{i % 40}", age_days=i % 30, like_count=i % 17)
        for i in range(1000)
    ]
    await add_rows(*posts)
    return posts


def _feed_service(redis, store, index, clock) -> FeedService:
    indexer = EmbeddingIndexer(index, FakeEmbedder(), store, redis)
    return FeedService(
        RecallEngine(redis, index, indexer, store),
        RankingEngine(store, redis),
        FeedCacheManager(redis, clock=clock),
    )


async def test_feed_over_a_thousand_candidates(redis, store, corpus) -> None:
    await set_interest_vector(redis, "reader", [1.0, 0.0, 0.0, 0.0])
    index = FakeIndex(hits=[hit(p.post_id, 1.0 - i / 2000) for i, p in enumerate(corpus)])
    clock = Clock()
    service = _feed_service(redis, store, index, clock)

    first = await service.get_feed("reader", page=1, limit=20)

    assert len(first.posts) == 20
    assert first.total == 1000
    assert first.has_more is True
    assert first.from_cache is False
    assert first.ranking_params_used == RankingParams()
    assert len({p.post_id for p in first.posts}) == 20
    scores = [p.rank_score for p in first.posts]
    assert max(scores) == first.posts[0].rank_score

    cached = await service.get_feed("reader", page=1, limit=20)
    assert cached.from_cache is True
    assert [p.post_id for p in cached.posts] == [p.post_id for p in first.posts]
    assert len(index.search_calls) == 1

    clock.now += settings.feed_cache_ttl_seconds + 1
    recomputed = await service.get_feed("reader", page=1, limit=20)
    assert recomputed.from_cache is False


async def test_feed_overrides_change_the_ranking(redis, store, corpus) -> None:
    await set_interest_vector(redis, "reader", [1.0, 0.0, 0.0, 0.0])
    index = FakeIndex(hits=[hit(p.post_id, 0.5) for p in corpus])
    service = _feed_service(redis, store, index, Clock())

    page = await service.get_feed(
        "reader",
        limit=10,
        overrides=RankingOverrides(
            similarity_weight=0, recency_weight=1, engagement_weight=0, apply_diversity=False
        ),
    )

    # age_days = i % 30, so the newest posts are every 30th id
    assert all(int(p.post_id[1:]) % 30 == 0 for p in page.posts)
    assert page.ranking_params_used.recency_weight == 1


async def test_feed_for_new_user_uses_cold_start(redis, store, corpus) -> None:
    service = _feed_service(redis, store, FakeIndex(), Clock())

    page = await service.get_feed("newcomer", limit=20)

    assert len(page.posts) == 20
    assert all(p.factors.similarity == 0.0 for p in page.posts)


async def test_failed_computation_serves_fallback(redis) -> None:
    cache = FeedCacheManager(redis, clock=Clock())

    async def broken():
        raise RuntimeError("ranking exploded")

    async def fallback():
        return [ranked("cold-1", "a")], RankingParams()

    page = await cache.get_or_compute("u1", 1, 20, None, broken, fallback=fallback)

    assert page.degraded is True
    assert [p.post_id for p in page.posts] == ["cold-1"]
    assert await redis.get(keys.feed_key("u1", 1, 20, None)) is None


async def test_feed_survives_durable_store_outage(redis, store, corpus, monkeypatch) -> None:
    service = _feed_service(redis, store, FakeIndex(), Clock())

    async def db_down(post_ids):
        raise OperationalError("SELECT posts", {}, Exception("db down"))

    monkeypatch.setattr(store, "get_posts", db_down)

    page = await service.get_feed("newcomer", limit=20)

    assert page.degraded is True
    assert page.posts == []
    assert page.from_cache is False
    assert page.ranking_params_used == RankingParams()
