"""
Feed assembly — recall → ranking → cache, per request.

  1. Resolve ranking params   defaults ← saved preferences ← overrides
  2. Feed cache lookup        serve if fresh, params match, page filled
  3. Recall                   up to recall_default_limit candidates
  4. Rank                     score, board filter, diversity re-order
  5. Store full ranked set    page sliced after caller exclusions

Exclusions are applied when slicing, never at recall, so one cached ranked
set serves every exclusion list for its TTL.

If steps 3–4 exceed feed_compute_timeout_seconds the caller gets a page
built from cold-start candidates (marked degraded) and the personalised
computation finishes in the background.
"""
import logging
from typing import Iterable, Optional

from opentelemetry import trace

from feedpipe.config import settings
from feedpipe.pipeline.feed_cache import FeedCacheManager
from feedpipe.pipeline.ranking import RankingEngine
from feedpipe.pipeline.recall import RecallEngine
from feedpipe.schemas import FeedPage, RankedPost, RankingOverrides, RankingParams, WarmReport

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)


class FeedService:
    def __init__(
        self,
        recall: RecallEngine,
        ranking: RankingEngine,
        cache: FeedCacheManager,
    ) -> None:
        self.recall = recall
        self.ranking = ranking
        self.cache = cache

    async def get_feed(
        self,
        user_id: str,
        page: int = 1,
        limit: Optional[int] = None,
        board_filter: Optional[str] = None,
        exclude_post_ids: Iterable[str] = (),
        overrides: Optional[RankingOverrides] = None,
        force_refresh: bool = False,
    ) -> FeedPage:
        page = max(1, page)
        limit = max(1, min(limit or settings.feed_page_size, settings.feed_max_page_size))

        with tracer.start_as_current_span("feed.get_feed") as span:
            span.set_attribute("user.id", user_id)
            span.set_attribute("feed.page", page)
            span.set_attribute("feed.limit", limit)

            params = await self.ranking.resolve_params(user_id, overrides)

            async def compute() -> tuple[list[RankedPost], RankingParams]:
                result = await self.recall.recall(
                    user_id, settings.recall_default_limit, force_refresh=force_refresh
                )
                ranked = await self.ranking.rank(
                    user_id, result.candidates, params, board_id=board_filter
                )
                return ranked, params

            async def fallback() -> tuple[list[RankedPost], RankingParams]:
                candidates = await self.recall.cold_start(settings.recall_default_limit)
                ranked = await self.ranking.rank(user_id, candidates, params, board_id=board_filter)
                return ranked, params

            feed = await self.cache.get_or_compute(
                user_id,
                page,
                limit,
                board_filter,
                compute,
                exclude_post_ids=exclude_post_ids,
                force_refresh=force_refresh,
                expected_params=params,
                fallback=fallback,
            )
            span.set_attribute("feed.from_cache", feed.from_cache)
            span.set_attribute("feed.degraded", feed.degraded)
            span.set_attribute("feed.posts_returned", len(feed.posts))
            return feed

    async def warm(self, user_ids: Iterable[str]) -> WarmReport:
        """Precompute first pages for users expected to open the app soon."""
        report = WarmReport(warmed=0)
        for user_id in user_ids:
            try:
                await self.get_feed(user_id, force_refresh=True)
            except Exception as exc:
                logger.warning("Feed warm-up failed for user %s: %s", user_id, exc)
                report.failed.append(user_id)
                continue
            report.warmed += 1
        return report
