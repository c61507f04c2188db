"""
Engagement write path:
  POST /engagement/                — buffer a like / vote / comment operation
  POST /engagement/views/{post_id} — count a post view
  GET  /engagement/counts          — cached aggregate counts (≤ 50 ids)

Nothing here touches TiDB on the hot path except to seed a subject's
counts the first time it is seen; the flush job reconciles later.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace
from redis.exceptions import RedisError
from sqlalchemy.exc import SQLAlchemyError

from feedpipe.clients.kafka_producer import publish_engagement_event
from feedpipe.dependencies import authenticated_user_id, get_engagement_buffer
from feedpipe.errors import InvalidOperationError
from feedpipe.pipeline.engagement import EngagementBuffer
from feedpipe.schemas import AggregateCounts, CountsResponse, EngagementRequest, EngagementResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)

_UNAVAILABLE = (RedisError, SQLAlchemyError)


def _unavailable(exc: Exception) -> HTTPException:
    logger.error("Engagement store unavailable: %s", exc)
    return HTTPException(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        detail="Engagement temporarily unavailable",
    )


@router.post("/", response_model=EngagementResponse)
async def buffer_engagement(
    body: EngagementRequest,
    header_user_id: Optional[str] = Depends(authenticated_user_id),
    buffer: EngagementBuffer = Depends(get_engagement_buffer),
):
    user_id = body.user_id or header_user_id
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="User id required")

    with tracer.start_as_current_span("buffer_engagement") as span:
        span.set_attribute("engagement.kind", body.kind)
        span.set_attribute("engagement.subject", f"{body.subject_type}:{body.subject_id}")
        try:
            result = await buffer.buffer_operation(
                body.subject_type, body.subject_id, user_id, body.kind, body.payload
            )
        except InvalidOperationError as exc:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
        except _UNAVAILABLE as exc:
            raise _unavailable(exc)
        span.set_attribute("engagement.action", result.action)

    if result.applied:
        asyncio.create_task(
            publish_engagement_event(
                body.subject_type, body.subject_id, user_id, body.kind, result.action
            )
        )

    return EngagementResponse(
        success=True,
        action=result.action,
        previous_state=result.previous_state,
        comment_id=result.comment_id,
        aggregate_counts=result.counts,
    )


@router.post("/views/{post_id}", response_model=AggregateCounts)
async def record_view(
    post_id: str,
    buffer: EngagementBuffer = Depends(get_engagement_buffer),
):
    try:
        return await buffer.record_view(post_id)
    except InvalidOperationError as exc:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(exc))
    except _UNAVAILABLE as exc:
        raise _unavailable(exc)


@router.get("/counts", response_model=CountsResponse)
async def cached_counts(
    subject_type: str = Query("post"),
    ids: str = Query(..., description="Comma-separated subject ids"),
    buffer: EngagementBuffer = Depends(get_engagement_buffer),
):
    subject_ids = [i.strip() for i in ids.split(",") if i.strip()]
    try:
        results = await buffer.get_cached_counts(subject_type, subject_ids)
    except InvalidOperationError as exc:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except RedisError as exc:
        raise _unavailable(exc)
    return CountsResponse(subject_type=subject_type, results=results)
