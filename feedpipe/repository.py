"""
Durable store accessors.

Everything the pipeline reads from or writes to TiDB goes through
DurableStore. Flush-side writes are idempotent: vote rows are upserted to the
current state, counts are written as absolute values, comment creation is
keyed by the comment id minted in the buffer.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from feedpipe.models import Comment, Post, User, Vote
from feedpipe.time_utils import from_millis, utcnow_naive

logger = logging.getLogger(__name__)

POST_COUNT_FIELDS = ("like_count", "dislike_count", "view_count", "comment_count")
COMMENT_COUNT_FIELDS = ("like_count", "dislike_count")

COUNT_FIELDS = {"post": POST_COUNT_FIELDS, "comment": COMMENT_COUNT_FIELDS}

_FETCH_BATCH = 100


class SubjectNotFoundError(LookupError):
    pass


class DurableStore:
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    # ───────────────────────── Users ─────────────────────────────────────

    async def get_user(self, user_id: str) -> Optional[User]:
        async with self._session_factory() as session:
            return await session.get(User, user_id)

    async def create_user(
        self,
        username: str,
        display_name: Optional[str],
        profile_text: Optional[str],
    ) -> User:
        async with self._session_factory() as session, session.begin():
            user = User(username=username, display_name=display_name, profile_text=profile_text)
            session.add(user)
            await session.flush()
            await session.refresh(user)
            return user

    async def get_user_by_username(self, username: str) -> Optional[User]:
        async with self._session_factory() as session:
            result = await session.execute(select(User).where(User.username == username))
            return result.scalar_one_or_none()

    async def update_profile(
        self,
        user_id: str,
        profile_text: Optional[str],
        ranking_preferences: Optional[dict],
    ) -> Optional[User]:
        async with self._session_factory() as session, session.begin():
            user = await session.get(User, user_id)
            if user is None:
                return None
            if profile_text is not None:
                user.profile_text = profile_text
            if ranking_preferences is not None:
                user.ranking_preferences = ranking_preferences
            return user

    async def set_interest_vector(self, user_id: str, vector: list[float]) -> None:
        async with self._session_factory() as session, session.begin():
            user = await session.get(User, user_id)
            if user is not None:
                user.interest_vector = vector

    async def recent_liked_post_ids(self, user_id: str, limit: int = 50) -> list[str]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Vote.subject_id)
                .where(
                    Vote.user_id == user_id,
                    Vote.subject_type == "post",
                    Vote.vote_type == "like",
                )
                .order_by(Vote.updated_at.desc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    # ───────────────────────── Posts ─────────────────────────────────────

    async def get_post(self, post_id: str) -> Optional[Post]:
        async with self._session_factory() as session:
            return await session.get(Post, post_id)

    async def get_posts(self, post_ids: Iterable[str]) -> dict[str, Post]:
        """Bulk fetch live posts, in batches to bound the IN (...) list."""
        ids = list(dict.fromkeys(post_ids))
        posts: dict[str, Post] = {}
        async with self._session_factory() as session:
            for i in range(0, len(ids), _FETCH_BATCH):
                batch = ids[i : i + _FETCH_BATCH]
                rows = await session.execute(
                    select(Post).where(Post.post_id.in_(batch), Post.is_deleted.is_(False))
                )
                for post in rows.scalars().all():
                    posts[post.post_id] = post
        return posts

    async def create_post(
        self,
        user_id: str,
        board_id: Optional[str],
        title: Optional[str],
        content: Optional[str],
    ) -> Post:
        async with self._session_factory() as session, session.begin():
            post = Post(user_id=user_id, board_id=board_id, title=title, content=content)
            session.add(post)
            await session.flush()
            await session.refresh(post)
            return post

    async def update_post_content(
        self,
        post_id: str,
        title: Optional[str],
        content: Optional[str],
    ) -> Optional[Post]:
        """Returns the post, or None if it does not exist. Clears embedded_at on change."""
        async with self._session_factory() as session, session.begin():
            post = await session.get(Post, post_id)
            if post is None or post.is_deleted:
                return None
            changed = False
            if title is not None and title != post.title:
                post.title = title
                changed = True
            if content is not None and content != post.content:
                post.content = content
                changed = True
            if changed:
                post.embedded_at = None
            return post

    async def list_trending_posts(self, limit: int, since: datetime) -> list[Post]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Post)
                .where(Post.is_deleted.is_(False), Post.created_at >= since)
                .order_by(
                    Post.like_count.desc(),
                    Post.comment_count.desc(),
                    Post.created_at.desc(),
                    Post.post_id,
                )
                .limit(limit)
            )
            posts = list(rows.scalars().all())
            if len(posts) >= limit:
                return posts
            # Not enough recent activity — widen to the whole corpus
            rows = await session.execute(
                select(Post)
                .where(Post.is_deleted.is_(False))
                .order_by(
                    Post.like_count.desc(),
                    Post.comment_count.desc(),
                    Post.created_at.desc(),
                    Post.post_id,
                )
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def list_posts_missing_embedding(self, limit: int) -> list[Post]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Post)
                .where(Post.is_deleted.is_(False), Post.embedded_at.is_(None))
                .order_by(Post.created_at)
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def mark_post_embedded(self, post_id: str) -> None:
        async with self._session_factory() as session, session.begin():
            post = await session.get(Post, post_id)
            if post is not None:
                post.embedded_at = utcnow_naive()

    async def list_popular_posts(
        self,
        since: datetime,
        min_comments: int,
        min_likes: int,
        limit: int,
    ) -> list[Post]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Post)
                .where(
                    Post.is_deleted.is_(False),
                    Post.created_at >= since,
                    or_(Post.comment_count >= min_comments, Post.like_count >= min_likes),
                )
                .order_by(Post.comment_count.desc(), Post.post_id)
                .limit(limit)
            )
            return list(rows.scalars().all())

    async def top_comments(self, post_id: str, limit: int) -> list[Comment]:
        async with self._session_factory() as session:
            rows = await session.execute(
                select(Comment)
                .where(Comment.post_id == post_id, Comment.is_deleted.is_(False))
                .order_by(Comment.like_count.desc(), Comment.created_at.desc())
                .limit(limit)
            )
            return list(rows.scalars().all())

    # ───────────────────────── Engagement ────────────────────────────────

    async def get_comment_post_id(self, comment_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            comment = await session.get(Comment, comment_id)
            return comment.post_id if comment else None

    async def get_vote(self, subject_type: str, subject_id: str, user_id: str) -> Optional[str]:
        async with self._session_factory() as session:
            vote = await session.get(Vote, (subject_type, subject_id, user_id))
            return vote.vote_type if vote else None

    async def get_counts(self, subject_type: str, subject_id: str) -> Optional[dict[str, int]]:
        """Durable counts for a live subject, or None if it does not exist."""
        model = Post if subject_type == "post" else Comment
        async with self._session_factory() as session:
            row = await session.get(model, subject_id)
            if row is None or row.is_deleted:
                return None
            return {field: int(getattr(row, field) or 0) for field in COUNT_FIELDS[subject_type]}

    async def apply_votes(
        self,
        subject_type: str,
        subject_id: str,
        votes: dict[str, str],
        counts: Optional[dict[str, int]],
    ) -> None:
        """
        Write the current vote state of each user plus absolute counts,
        in one transaction. State 'none' deletes the row.
        """
        now = utcnow_naive()
        async with self._session_factory() as session, session.begin():
            for user_id, state in votes.items():
                existing = await session.get(Vote, (subject_type, subject_id, user_id))
                if state == "none":
                    if existing is not None:
                        await session.delete(existing)
                elif existing is None:
                    session.add(
                        Vote(
                            subject_type=subject_type,
                            subject_id=subject_id,
                            user_id=user_id,
                            vote_type=state,
                            updated_at=now,
                        )
                    )
                elif existing.vote_type != state:
                    existing.vote_type = state
                    existing.updated_at = now
            if counts is not None:
                await self._write_counts(session, subject_type, subject_id, counts)

    async def apply_comment_ops(
        self,
        post_id: str,
        ops: list[dict],
        comment_count: Optional[int],
    ) -> None:
        """Apply buffered comment operations for one post, in order."""
        now = utcnow_naive()
        async with self._session_factory() as session, session.begin():
            for op in ops:
                kind = op["kind"]
                payload = op.get("payload") or {}
                comment_id = payload["comment_id"]
                comment = await session.get(Comment, comment_id)
                if kind == "comment:create":
                    if comment is None:
                        session.add(
                            Comment(
                                comment_id=comment_id,
                                post_id=post_id,
                                user_id=op["user_id"],
                                content=payload.get("content", ""),
                                created_at=from_millis(op["timestamp"]),
                            )
                        )
                        # the create must exist before a later update in this batch
                        await session.flush()
                elif comment is None:
                    logger.warning(
                        "Skipping %s for unknown comment %s on post %s", kind, comment_id, post_id
                    )
                elif comment.post_id != post_id:
                    logger.warning(
                        "Skipping %s for comment %s: belongs to post %s, not %s",
                        kind,
                        comment_id,
                        comment.post_id,
                        post_id,
                    )
                elif kind == "comment:update":
                    comment.content = payload.get("content", comment.content)
                    comment.updated_at = now
                elif kind == "comment:delete":
                    comment.is_deleted = True
                    comment.updated_at = now
            if comment_count is not None:
                await self._write_counts(session, "post", post_id, {"comment_count": comment_count})

    async def set_counts(self, subject_type: str, subject_id: str, counts: dict[str, int]) -> None:
        async with self._session_factory() as session, session.begin():
            await self._write_counts(session, subject_type, subject_id, counts)

    async def _write_counts(
        self,
        session: AsyncSession,
        subject_type: str,
        subject_id: str,
        counts: dict[str, int],
    ) -> None:
        model = Post if subject_type == "post" else Comment
        row = await session.get(model, subject_id)
        if row is None:
            raise SubjectNotFoundError(f"{subject_type} {subject_id} not found")
        for field in COUNT_FIELDS[subject_type]:
            if field in counts:
                setattr(row, field, max(0, int(counts[field])))
