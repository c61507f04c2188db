"""
Feed retrieval endpoints:
  GET  /feed/             — ranked, paginated, cached feed page
  GET  /feed/recall       — raw recall candidates (debugging / offline eval)
  POST /feed/impressions  — client-reported impressions → Kafka
"""
import asyncio
import logging
import time
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from feedpipe.clients.kafka_producer import publish_impressions
from feedpipe.config import settings
from feedpipe.dependencies import authenticated_user_id, get_feed_service, get_recall_engine
from feedpipe.pipeline.feed import FeedService
from feedpipe.pipeline.recall import RecallEngine
from feedpipe.schemas import FeedResponse, RankingOverrides, RecallResponse
from feedpipe.telemetry import FEED_LATENCY

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


def _resolve_user(user_id: Optional[str], header_user_id: Optional[str]) -> str:
    resolved = user_id or header_user_id
    if not resolved:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User id required")
    return resolved


def _split_ids(raw: Optional[str]) -> list[str]:
    return [part.strip() for part in (raw or "").split(",") if part.strip()]


@router.get("/", response_model=FeedResponse)
async def get_feed(
    user_id: Optional[str] = Query(None, description="Requesting user; defaults to X-User-Id"),
    page: int = Query(1, ge=1),
    limit: int = Query(settings.feed_page_size, ge=1, le=settings.feed_max_page_size),
    board: Optional[str] = Query(None, description="Only posts from this board"),
    exclude: Optional[str] = Query(None, description="Comma-separated post ids to skip"),
    similarity_weight: Optional[float] = Query(None, ge=0, le=1),
    recency_weight: Optional[float] = Query(None, ge=0, le=1),
    engagement_weight: Optional[float] = Query(None, ge=0, le=1),
    diversity: Optional[bool] = Query(None),
    refresh: bool = Query(False, description="Bypass recall and feed caches"),
    header_user_id: Optional[str] = Depends(authenticated_user_id),
    feed_service: FeedService = Depends(get_feed_service),
):
    start_time = time.time()
    user_id = _resolve_user(user_id, header_user_id)
    overrides = RankingOverrides(
        similarity_weight=similarity_weight,
        recency_weight=recency_weight,
        engagement_weight=engagement_weight,
        apply_diversity=diversity,
    )

    try:
        feed = await feed_service.get_feed(
            user_id,
            page=page,
            limit=limit,
            board_filter=board,
            exclude_post_ids=_split_ids(exclude),
            overrides=overrides,
            force_refresh=refresh,
        )
    except (RedisError, SQLAlchemyError) as exc:
        logger.error("Feed unavailable for user %s: %s", user_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Feed temporarily unavailable"
        )

    served_ids = [p.post_id for p in feed.posts]
    if served_ids:
        asyncio.create_task(publish_impressions(user_id, served_ids))

    latency_ms = (time.time() - start_time) * 1000
    FEED_LATENCY.observe(latency_ms / 1000)
    return FeedResponse(user_id=user_id, latency_ms=round(latency_ms, 2), **feed.model_dump())


@router.get("/recall", response_model=RecallResponse)
async def get_recall(
    user_id: Optional[str] = Query(None),
    limit: int = Query(settings.recall_default_limit, ge=1, le=settings.recall_max_limit),
    exclude: Optional[str] = Query(None),
    refresh: bool = Query(False),
    header_user_id: Optional[str] = Depends(authenticated_user_id),
    recall: RecallEngine = Depends(get_recall_engine),
):
    user_id = _resolve_user(user_id, header_user_id)
    with tracer.start_as_current_span("get_recall"):
        result = await recall.recall(user_id, limit, _split_ids(exclude), force_refresh=refresh)
    return RecallResponse(
        user_id=user_id,
        posts=result.candidates,
        total=len(result.candidates),
        cold_start=result.cold_start,
        from_cache=result.from_cache,
    )


@router.post("/impressions", status_code=204)
async def record_impressions(user_id: str, post_ids: list[str]):
    """
    Manually record that a user saw specific posts.
    Typically called by the client after rendering the feed.
    """
    await publish_impressions(user_id, post_ids)
