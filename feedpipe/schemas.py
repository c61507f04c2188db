"""
Pydantic schemas for the pipeline and the API layer.
Kept separate from ORM models to avoid coupling transport to storage; the
pipeline types double as the JSON layout of the Redis cache entries.
"""
from datetime import datetime
from typing import Literal, Optional

from pydantic import BaseModel, Field


# ──────────────────────────── Recall ──────────────────────────────────────

class Candidate(BaseModel):
    post_id: str
    similarity: float = 0.0
    created_at_ts: float = 0.0


class RecallResult(BaseModel):
    candidates: list[Candidate]
    cold_start: bool = False
    from_cache: bool = False


# ──────────────────────────── Ranking ─────────────────────────────────────

class RankingParams(BaseModel):
    similarity_weight: float = Field(0.5, ge=0, le=1)
    recency_weight: float = Field(0.3, ge=0, le=1)
    engagement_weight: float = Field(0.2, ge=0, le=1)
    apply_diversity: bool = True


class RankingOverrides(BaseModel):
    similarity_weight: Optional[float] = Field(None, ge=0, le=1)
    recency_weight: Optional[float] = Field(None, ge=0, le=1)
    engagement_weight: Optional[float] = Field(None, ge=0, le=1)
    apply_diversity: Optional[bool] = None


class RankingFactors(BaseModel):
    similarity: float
    recency: float
    engagement: float


class RankedPost(BaseModel):
    """A hydrated, ranked post."""
    post_id: str
    user_id: str
    board_id: Optional[str]
    title: Optional[str]
    content: Optional[str]
    created_at: datetime
    like_count: int
    comment_count: int
    view_count: int
    # Ranking signals exposed for debugging / learning
    rank_score: float
    factors: RankingFactors


# ──────────────────────────── Feed ────────────────────────────────────────

class FeedPage(BaseModel):
    posts: list[RankedPost]
    page: int
    limit: int
    total: int
    has_more: bool
    ranking_params_used: RankingParams
    from_cache: bool = False
    # True when the page was built from the non-personalised fallback
    degraded: bool = False


class FeedCacheEntry(BaseModel):
    user_id: str
    page: int
    limit: int
    board_filter: Optional[str]
    posts: list[RankedPost]
    ranking_params_used: RankingParams
    expires_at: float


class FeedResponse(FeedPage):
    user_id: str
    latency_ms: float


class RecallResponse(BaseModel):
    user_id: str
    posts: list[Candidate]
    total: int
    cold_start: bool
    from_cache: bool


# ──────────────────────────── Engagement ──────────────────────────────────

SubjectType = Literal["post", "comment"]
EngagementAction = Literal["created", "updated", "duplicate"]


class AggregateCounts(BaseModel):
    like_count: int = 0
    dislike_count: int = 0
    view_count: int = 0
    comment_count: int = 0
    has_cached_data: bool = True


class BufferResult(BaseModel):
    applied: bool
    action: EngagementAction
    previous_state: Optional[str] = None
    counts: AggregateCounts
    comment_id: Optional[str] = None


class EngagementRequest(BaseModel):
    subject_type: str
    subject_id: str
    user_id: Optional[str] = None
    kind: str
    payload: Optional[dict] = None


class EngagementResponse(BaseModel):
    success: bool
    action: EngagementAction
    previous_state: Optional[str] = None
    comment_id: Optional[str] = None
    aggregate_counts: AggregateCounts


class CountsResponse(BaseModel):
    subject_type: SubjectType
    results: dict[str, AggregateCounts]


# ──────────────────────────── Jobs ────────────────────────────────────────

class FlushRequest(BaseModel):
    batch_size: int = Field(100, ge=1, le=10000)


class FlushReport(BaseModel):
    processed: int = 0
    failed_subjects: list[str] = []
    counts_synced: int = 0


class HotCommentsReport(BaseModel):
    refreshed: int
    total_posts: int


class UserBatchRequest(BaseModel):
    user_ids: list[str] = Field(default_factory=list, max_length=500)


class WarmReport(BaseModel):
    warmed: int
    failed: list[str] = []


class IndexReport(BaseModel):
    indexed: int = 0
    failed: list[str] = []


class InterestRefreshReport(BaseModel):
    refreshed: int = 0
    skipped: int = 0
    failed: list[str] = []


# ──────────────────────────── Users / Posts ───────────────────────────────

class UserCreate(BaseModel):
    username: str = Field(..., min_length=3, max_length=100)
    display_name: Optional[str] = None
    profile_text: Optional[str] = None


class ProfileUpdate(BaseModel):
    profile_text: Optional[str] = None
    ranking_preferences: Optional[RankingOverrides] = None


class UserResponse(BaseModel):
    user_id: str
    username: str
    display_name: Optional[str]
    profile_text: Optional[str] = None
    ranking_preferences: Optional[dict] = None
    has_interest_vector: bool = False
    created_at: datetime


class PostCreate(BaseModel):
    user_id: str
    board_id: Optional[str] = None
    title: Optional[str] = Field(None, max_length=300)
    content: Optional[str] = None


class PostUpdate(BaseModel):
    title: Optional[str] = Field(None, max_length=300)
    content: Optional[str] = None


class PostResponse(BaseModel):
    post_id: str
    user_id: str
    board_id: Optional[str]
    title: Optional[str]
    content: Optional[str]
    like_count: int
    dislike_count: int
    view_count: int
    comment_count: int
    indexed: bool
    created_at: datetime

    class Config:
        from_attributes = True


class HotComment(BaseModel):
    comment_id: str
    user_id: str
    content: str
    like_count: int
    created_at: datetime


class HotCommentsResponse(BaseModel):
    post_id: str
    comments: list[HotComment]
    from_cache: bool
