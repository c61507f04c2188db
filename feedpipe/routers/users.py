"""
User endpoints:
  POST /users/               — create a user
  GET  /users/{id}           — fetch a user
  PUT  /users/{id}/profile   — update profile text / ranking preferences
"""
import logging

from fastapi import APIRouter, Depends, HTTPException, status
from opentelemetry import trace

from feedpipe.dependencies import get_feed_cache, get_indexer, get_store
from feedpipe.models import User
from feedpipe.pipeline.feed_cache import FeedCacheManager
from feedpipe.pipeline.indexing import EmbeddingIndexer
from feedpipe.repository import DurableStore
from feedpipe.schemas import ProfileUpdate, UserCreate, UserResponse

logger = logging.getLogger(__name__)
router = APIRouter()
tracer = trace.get_tracer(__name__)


def _build_user_response(user: User) -> UserResponse:
    return UserResponse(
        user_id=user.user_id,
        username=user.username,
        display_name=user.display_name,
        profile_text=user.profile_text,
        ranking_preferences=user.ranking_preferences,
        has_interest_vector=bool(user.interest_vector),
        created_at=user.created_at,
    )


async def _refresh_vector(indexer: EmbeddingIndexer, user: User) -> None:
    try:
        vector = await indexer.refresh_user_vector(user)
    except Exception as exc:
        # recall regenerates on demand, so a failure here only delays personalisation
        logger.warning("Interest vector refresh failed for user %s: %s", user.user_id, exc)
        return
    if vector is not None:
        user.interest_vector = vector


@router.post("/", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def create_user(
    body: UserCreate,
    store: DurableStore = Depends(get_store),
    indexer: EmbeddingIndexer = Depends(get_indexer),
):
    """
    Register a new user. If profile text is given the interest vector is
    built immediately so the first feed is already personalised.
    """
    with tracer.start_as_current_span("create_user"):
        if await store.get_user_by_username(body.username):
            raise HTTPException(
                status_code=status.HTTP_409_CONFLICT,
                detail=f"Username '{body.username}' already taken",
            )
        user = await store.create_user(body.username, body.display_name, body.profile_text)
        if user.profile_text:
            await _refresh_vector(indexer, user)
        logger.info("Created user %s (%s)", user.user_id, user.username)
        return _build_user_response(user)


@router.get("/{user_id}", response_model=UserResponse)
async def get_user(user_id: str, store: DurableStore = Depends(get_store)):
    user = await store.get_user(user_id)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")
    return _build_user_response(user)


@router.put("/{user_id}/profile", response_model=UserResponse)
async def update_profile(
    user_id: str,
    body: ProfileUpdate,
    store: DurableStore = Depends(get_store),
    indexer: EmbeddingIndexer = Depends(get_indexer),
    feed_cache: FeedCacheManager = Depends(get_feed_cache),
):
    """
    Profile text changes rebuild the interest vector; any change drops the
    user's cached recall candidates and feed pages.
    """
    preferences = (
        body.ranking_preferences.model_dump(exclude_none=True)
        if body.ranking_preferences is not None
        else None
    )
    user = await store.update_profile(user_id, body.profile_text, preferences)
    if user is None:
        raise HTTPException(status_code=404, detail="User not found")

    if body.profile_text is not None:
        await _refresh_vector(indexer, user)

    removed = await feed_cache.invalidate(user_id)
    logger.info("Profile updated for user %s — dropped %d cached entries", user_id, removed)
    return _build_user_response(user)
