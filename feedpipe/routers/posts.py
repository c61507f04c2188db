"""
Post endpoints:
  POST  /posts/                   — create a post and index it in Qdrant
  GET   /posts/{id}               — fetch a single post
  PATCH /posts/{id}               — edit title / content, re-index on change
  GET   /posts/{id}/hot-comments  — top comments (cached)
  GET   /posts/{id}/similar       — nearest posts by embedding
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status
from opentelemetry import trace

from feedpipe.dependencies import get_hot_comments, get_indexer, get_recall_engine, get_store
from feedpipe.models import Post
from feedpipe.pipeline.flush import HotCommentsCache
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.pipeline.recall import RecallEngine
from feedpipe.repository import DurableStore
from feedpipe.schemas import (
    Candidate,
    HotCommentsResponse,
    PostCreate,
    PostResponse,
    PostUpdate,
)

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


def _build_post_response(post: Post, indexed: bool) -> PostResponse:
    return PostResponse(
        post_id=post.post_id,
        user_id=post.user_id,
        board_id=post.board_id,
        title=post.title,
        content=post.content,
        like_count=post.like_count,
        dislike_count=post.dislike_count,
        view_count=post.view_count,
        comment_count=post.comment_count,
        indexed=indexed,
        created_at=post.created_at,
    )


@router.post("/", response_model=PostResponse, status_code=status.HTTP_201_CREATED)
async def create_post(
    body: PostCreate,
    store: DurableStore = Depends(get_store),
    indexer: EmbeddingIndexer = Depends(get_indexer),
):
    """
    1. Validate the author exists.
    2. Persist metadata to TiDB.
    3. Embed title + content and upsert into Qdrant. If the embedding
       service is down the post stays unindexed and /jobs/index-posts
       picks it up later.
    """
    with tracer.start_as_current_span("create_post") as span:
        if await store.get_user(body.user_id) is None:
            raise HTTPException(status_code=404, detail="Author not found")

        post = await store.create_post(body.user_id, body.board_id, body.title, body.content)
        span.set_attribute("post.id", post.post_id)

        indexed = await indexer.index_post(post)
        logger.info("Created post %s (indexed=%s)", post.post_id, indexed)
        return _build_post_response(post, indexed)


@router.get("/{post_id}", response_model=PostResponse)
async def get_post(post_id: str, store: DurableStore = Depends(get_store)):
    post = await store.get_post(post_id)
    if post is None or post.is_deleted:
        raise HTTPException(status_code=404, detail="Post not found")
    return _build_post_response(post, post.embedded_at is not None)


@router.patch("/{post_id}", response_model=PostResponse)
async def update_post(
    post_id: str,
    body: PostUpdate,
    store: DurableStore = Depends(get_store),
    indexer: EmbeddingIndexer = Depends(get_indexer),
):
    post = await store.update_post_content(post_id, body.title, body.content)
    if post is None:
        raise HTTPException(status_code=404, detail="Post not found")
    indexed = post.embedded_at is not None
    if not indexed:
        indexed = await indexer.index_post(post)
    return _build_post_response(post, indexed)


@router.get("/{post_id}/hot-comments", response_model=HotCommentsResponse)
async def hot_comments(
    post_id: str,
    cache: HotCommentsCache = Depends(get_hot_comments),
):
    comments, from_cache = await cache.get(post_id)
    return HotCommentsResponse(post_id=post_id, comments=comments, from_cache=from_cache)


@router.get("/{post_id}/similar", response_model=list[Candidate])
async def similar_posts(
    post_id: str,
    limit: int = Query(10, ge=1, le=100),
    recall: RecallEngine = Depends(get_recall_engine),
):
    try:
        return await recall.similar_posts(post_id, limit)
    except Exception as exc:
        logger.warning("Similar-post lookup failed for %s: %s", post_id, exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Vector index unavailable"
        )
