"""
FastAPI dependency providers.

Pipeline components are cheap wrappers around the process-wide clients
(Redis, Qdrant, embedding service, session factory), so they are built per
request; tests swap them out with app.dependency_overrides.
"""
import hashlib
import hmac
import logging
from typing import Optional

from fastapi import Depends, Header, HTTPException, Request, status

from feedpipe.clients.embedding_client import embedding_client
from feedpipe.clients.qdrant_client import post_index
from feedpipe.clients.redis_client import get_redis
from feedpipe.config import settings
from feedpipe.database import get_session_factory
from feedpipe.errors import SchedulerAuthError
from feedpipe.pipeline.engagement import EngagementBuffer
from feedpipe.pipeline.feed import FeedService
from feedpipe.pipeline.feed_cache import FeedCacheManager
from feedpipe.pipeline.flush import FlushCoordinator, HotCommentsCache
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.pipeline.ranking import RankingEngine
from feedpipe.pipeline.recall import RecallEngine
from feedpipe.repository import DurableStore

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Scheduler-Signature"


def get_store() -> DurableStore:
    return DurableStore(get_session_factory())


def get_indexer(store: DurableStore = Depends(get_store)) -> EmbeddingIndexer:
    return EmbeddingIndexer(post_index, embedding_client, store, get_redis())


def get_recall_engine(
    store: DurableStore = Depends(get_store),
    indexer: EmbeddingIndexer = Depends(get_indexer),
) -> RecallEngine:
    return RecallEngine(get_redis(), post_index, indexer, store)


def get_feed_cache() -> FeedCacheManager:
    return FeedCacheManager(get_redis())


def get_feed_service(
    store: DurableStore = Depends(get_store),
    recall: RecallEngine = Depends(get_recall_engine),
    cache: FeedCacheManager = Depends(get_feed_cache),
) -> FeedService:
    return FeedService(recall, RankingEngine(store, get_redis()), cache)


def get_engagement_buffer(store: DurableStore = Depends(get_store)) -> EngagementBuffer:
    return EngagementBuffer(get_redis(), store)


def get_flush_coordinator(store: DurableStore = Depends(get_store)) -> FlushCoordinator:
    return FlushCoordinator(get_redis(), store)


def get_hot_comments(store: DurableStore = Depends(get_store)) -> HotCommentsCache:
    return HotCommentsCache(get_redis(), store)


# ─────────────────────────── Auth ─────────────────────────────────────────

def authenticated_user_id(x_user_id: Optional[str] = Header(None)) -> Optional[str]:
    """Identity asserted by the gateway in front of this service."""
    return x_user_id or None


def check_scheduler_signature(body: bytes, signature: Optional[str]) -> None:
    """Hex HMAC-SHA256 of the raw body, keyed with scheduler_signing_key."""
    key = settings.scheduler_signing_key
    if not key:
        if settings.environment == "development":
            return
        raise SchedulerAuthError("scheduler signing key is not configured")
    if not signature:
        raise SchedulerAuthError("missing scheduler signature")
    expected = hmac.new(key.encode(), body, hashlib.sha256).hexdigest()
    if not hmac.compare_digest(expected, signature.strip().lower()):
        raise SchedulerAuthError("invalid scheduler signature")


async def verify_scheduler(request: Request) -> None:
    try:
        check_scheduler_signature(await request.body(), request.headers.get(SIGNATURE_HEADER))
    except SchedulerAuthError as exc:
        logger.warning("Rejected scheduler call to %s: %s", request.url.path, exc)
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail=str(exc))
