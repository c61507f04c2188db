from datetime import datetime, timedelta
from typing import Optional

from feedpipe.clients.qdrant_client import VectorHit
from feedpipe.models import Comment, Post, User, Vote
from feedpipe.schemas import RankedPost, RankingFactors

NOW = datetime(2026, 3, 1, 12, 0, 0)


def make_user(user_id: str = "u1", **kwargs) -> User:
    kwargs.setdefault("username", f"user-{user_id}")
    return User(user_id=user_id, **kwargs)


def make_post(post_id: str, user_id: str = "author-1", age_days: float = 0.0, **kwargs) -> Post:
    kwargs.setdefault("title", f"title {post_id}")
    kwargs.setdefault("content", f"content of {post_id}")
    kwargs.setdefault("created_at", NOW - timedelta(days=age_days))
    return Post(post_id=post_id, user_id=user_id, **kwargs)


def make_comment(comment_id: str, post_id: str, like_count: int = 0, **kwargs) -> Comment:
    kwargs.setdefault("user_id", "commenter")
    kwargs.setdefault("content", f"comment {comment_id}")
    kwargs.setdefault("created_at", NOW)
    return Comment(comment_id=comment_id, post_id=post_id, like_count=like_count, **kwargs)


def make_vote(subject_id: str, user_id: str, vote_type: str = "like", subject_type: str = "post") -> Vote:
    return Vote(
        subject_type=subject_type,
        subject_id=subject_id,
        user_id=user_id,
        vote_type=vote_type,
        updated_at=NOW,
    )


def ranked(post_id: str, user_id: str, board_id: Optional[str] = None, score: float = 0.0) -> RankedPost:
    return RankedPost(
        post_id=post_id,
        user_id=user_id,
        board_id=board_id,
        title=None,
        content=None,
        created_at=NOW,
        like_count=0,
        comment_count=0,
        view_count=0,
        rank_score=score,
        factors=RankingFactors(similarity=0.0, recency=0.0, engagement=0.0),
    )


def hit(post_id: str, score: float, created_at_ts: float = 0.0) -> VectorHit:
    return VectorHit(post_id=post_id, score=score, created_at_ts=created_at_ts)


class FakeIndex:
    """In-memory stand-in for PostVectorIndex."""

    def __init__(self, hits=(), vectors=None, error: Optional[Exception] = None) -> None:
        self.hits = list(hits)
        self.vectors = dict(vectors or {})
        self.error = error
        self.search_calls: list[tuple[list[float], int]] = []
        self.upserts: dict[str, dict] = {}

    async def search(self, vector, limit):
        self.search_calls.append((vector, limit))
        if self.error is not None:
            raise self.error
        return self.hits[:limit]

    async def get_vectors(self, post_ids):
        return {pid: self.vectors[pid] for pid in post_ids if pid in self.vectors}

    async def upsert_post_vector(self, post_id, vector, payload):
        self.vectors[post_id] = vector
        self.upserts[post_id] = payload


class FakeEmbedder:
    def __init__(self, vector=None, error: Optional[Exception] = None) -> None:
        self.vector = vector or [1.0, 0.0, 0.0, 0.0]
        self.error = error
        self.calls: list[str] = []

    async def generate_embedding(self, text):
        self.calls.append(text)
        if self.error is not None:
            raise self.error
        return list(self.vector)
