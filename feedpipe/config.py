"""
Configuration management using Pydantic BaseSettings.
All values can be overridden via environment variables or a .env file.
"""
from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # ── TiDB (MySQL-protocol compatible) ───────────────────────────────────
    tidb_host: str = "tidb"
    tidb_port: int = 4000
    tidb_user: str = "root"
    tidb_password: str = ""
    tidb_database: str = "social_feed"
    # Full SQLAlchemy URL; overrides the tidb_* fields when set
    database_url: str = ""

    @property
    def tidb_url(self) -> str:
        if self.database_url:
            return self.database_url
        return (
            f"mysql+aiomysql://{self.tidb_user}:{self.tidb_password}"
            f"@{self.tidb_host}:{self.tidb_port}/{self.tidb_database}"
        )

    # ── Redis ──────────────────────────────────────────────────────────────
    redis_host: str = "redis"
    redis_port: int = 6379
    interest_vector_ttl: int = 86400     # 24h mirror of users.interest_vector

    # ── Qdrant ─────────────────────────────────────────────────────────────
    qdrant_host: str = "qdrant"
    qdrant_port: int = 6333
    qdrant_collection: str = "posts"
    embedding_dimension: int = 384       # all-MiniLM-L6-v2 output dim

    # ── Embedding service ──────────────────────────────────────────────────
    embedding_service_url: str = "http://embedding-service:8002"
    embedding_timeout_seconds: float = 2.0

    # ── Kafka (analytics events, best effort) ──────────────────────────────
    kafka_bootstrap_servers: str = "kafka:9092"
    kafka_topic_engagement: str = "engagement-events"
    kafka_topic_impressions: str = "impressions"

    # ── Recall ─────────────────────────────────────────────────────────────
    recall_default_limit: int = 1000
    recall_max_limit: int = 2000
    recall_cache_ttl: int = 7200         # 2h candidate cache per user
    recall_timeout_seconds: float = 3.0
    recall_cache_min_fill: float = 0.8
    hot_posts_ttl: int = 3600
    hot_posts_lookback_days: int = 30

    # ── Ranking ────────────────────────────────────────────────────────────
    default_similarity_weight: float = 0.5
    default_recency_weight: float = 0.3
    default_engagement_weight: float = 0.2
    default_apply_diversity: bool = True
    recency_half_life_days: float = 7.0
    like_saturation: int = 1000
    comment_saturation: int = 200
    view_saturation: int = 10000
    diversity_window: int = 5
    diversity_max_per_window: int = 2

    # ── Feed cache ─────────────────────────────────────────────────────────
    feed_cache_ttl_seconds: int = 1800   # 30 min
    feed_cache_min_fill: float = 0.8
    feed_compute_timeout_seconds: float = 8.0
    feed_page_size: int = 20
    feed_max_page_size: int = 100

    # ── Engagement flush / hot data ────────────────────────────────────────
    flush_default_batch_size: int = 100
    hot_comments_ttl: int = 1800
    hot_comments_per_post: int = 3
    hot_comments_post_limit: int = 50
    counts_batch_limit: int = 50
    engagement_state_ttl: int = 604800   # 7d; vote state and counts hashes outlive any flush interval

    # ── Scheduler ──────────────────────────────────────────────────────────
    scheduler_signing_key: str = ""

    # ── Observability ──────────────────────────────────────────────────────
    otel_exporter_otlp_endpoint: str = "http://jaeger:4317"
    service_name: str = "feed-pipeline"
    environment: str = "development"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
