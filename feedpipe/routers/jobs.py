"""
Scheduler-triggered jobs. Every route requires a valid
X-Scheduler-Signature (HMAC-SHA256 of the raw body), except in development
when no signing key is configured.

  POST /jobs/flush             — drain the engagement buffer into TiDB
  POST /jobs/hot-comments      — refresh hot comments for active posts
  POST /jobs/warm-feeds        — precompute first feed pages for users
  POST /jobs/index-posts       — embed posts missing from Qdrant
  POST /jobs/refresh-interests — rebuild user interest vectors
"""
import logging
from typing import Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query, status
from redis.exceptions import RedisError

from feedpipe.dependencies import (
    get_feed_service,
    get_flush_coordinator,
    get_hot_comments,
    get_indexer,
    verify_scheduler,
)
from feedpipe.pipeline.feed import FeedService
from feedpipe.pipeline.flush import FlushCoordinator, HotCommentsCache
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.schemas import (
    FlushReport,
    FlushRequest,
    HotCommentsReport,
    IndexReport,
    InterestRefreshReport,
    UserBatchRequest,
    WarmReport,
)

logger = logging.getLogger(__name__)
router = APIRouter(dependencies=[Depends(verify_scheduler)])


@router.post("/flush", response_model=FlushReport)
async def flush(
    body: Optional[FlushRequest] = Body(None),
    coordinator: FlushCoordinator = Depends(get_flush_coordinator),
):
    batch_size = body.batch_size if body else None
    try:
        return await coordinator.flush(batch_size)
    except RedisError as exc:
        logger.error("Flush aborted — Redis unavailable: %s", exc)
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))


@router.post("/hot-comments", response_model=HotCommentsReport)
async def refresh_hot_comments(hot_comments: HotCommentsCache = Depends(get_hot_comments)):
    return await hot_comments.refresh()


@router.post("/warm-feeds", response_model=WarmReport)
async def warm_feeds(
    body: UserBatchRequest,
    feed_service: FeedService = Depends(get_feed_service),
):
    return await feed_service.warm(body.user_ids)


@router.post("/index-posts", response_model=IndexReport)
async def index_posts(
    batch_size: int = Query(100, ge=1, le=1000),
    indexer: EmbeddingIndexer = Depends(get_indexer),
):
    return await indexer.index_pending_posts(batch_size)


@router.post("/refresh-interests", response_model=InterestRefreshReport)
async def refresh_interests(
    body: UserBatchRequest,
    indexer: EmbeddingIndexer = Depends(get_indexer),
):
    return await indexer.refresh_interest_vectors(body.user_ids)
