"""
Redis key builders.

Every key the pipeline reads or writes is built here, one function per
entity, so that tests and invalidation agree on the exact shape.

  user:{id}:feed:{page}:{limit}:{filter}   STRING  ranked feed cache entry (JSON)
  user:{id}:recall:posts                   STRING  recall candidate cache (JSON)
  user:{id}:interest_vector                STRING  interest vector mirror (JSON)
  {type}:{id}:counts                       HASH    aggregate counts
  {type}:{id}:vote:{user}                  STRING  none | like | dislike
  pending:votes:{type}                     ZSET    "{subject}|{user}" → op seq
  pending:counts:{type}                    ZSET    subject → op seq
  post:{id}:pending_comments               LIST    comment operations (JSON)
  pending:comment_subjects                 ZSET    post id → first op seq
  pending:seq                              STRING  monotonic op sequence
  post:{id}:hot_comments                   STRING  top comments (JSON)
  comment:{id}:deleted                     STRING  delete already buffered
  comment:{id}:post                        STRING  owning post of a buffered comment
  hot_posts                                STRING  cold-start candidates (JSON)
"""
from typing import Optional

SUBJECT_TYPES = ("post", "comment")

_MEMBER_SEP = "|"


def feed_key(user_id: str, page: int, limit: int, board_filter: Optional[str]) -> str:
    return f"user:{user_id}:feed:{page}:{limit}:{board_filter or 'all'}"


def feed_pattern(user_id: str) -> str:
    return f"user:{user_id}:feed:*"


def recall_key(user_id: str) -> str:
    return f"user:{user_id}:recall:posts"


def interest_vector_key(user_id: str) -> str:
    return f"user:{user_id}:interest_vector"


def counts_key(subject_type: str, subject_id: str) -> str:
    return f"{subject_type}:{subject_id}:counts"


def vote_key(subject_type: str, subject_id: str, user_id: str) -> str:
    return f"{subject_type}:{subject_id}:vote:{user_id}"


def pending_votes_key(subject_type: str) -> str:
    return f"pending:votes:{subject_type}"


def pending_counts_key(subject_type: str) -> str:
    return f"pending:counts:{subject_type}"


def pending_comments_key(post_id: str) -> str:
    return f"post:{post_id}:pending_comments"


def pending_comment_subjects_key() -> str:
    return "pending:comment_subjects"


def op_sequence_key() -> str:
    return "pending:seq"


def comment_deleted_key(comment_id: str) -> str:
    return f"comment:{comment_id}:deleted"


def comment_post_key(comment_id: str) -> str:
    return f"comment:{comment_id}:post"


def hot_comments_key(post_id: str) -> str:
    return f"post:{post_id}:hot_comments"


def hot_posts_key() -> str:
    return "hot_posts"


def vote_member(subject_id: str, user_id: str) -> str:
    """Member of pending:votes:{type} identifying one (subject, user) pair."""
    return f"{subject_id}{_MEMBER_SEP}{user_id}"


def split_vote_member(member: str) -> tuple[str, str]:
    subject_id, _, user_id = member.partition(_MEMBER_SEP)
    return subject_id, user_id
