"""
Feed Pipeline API — entry point.

Startup sequence:
  1. Configure OTel tracing (→ Jaeger via OTLP)
  2. Initialise DB connection pool (TiDB) and create tables
  3. Start Kafka producer (optional — analytics only)
  4. Connect to Redis
  5. Connect to Qdrant & ensure collection exists
  6. Start the embedding service HTTP client
  7. Expose Prometheus /metrics endpoint
"""
import logging

from contextlib import asynccontextmanager
from fastapi import FastAPI
from prometheus_client import make_asgi_app

from feedpipe.config import settings
from feedpipe.database import close_db, init_db
from feedpipe.telemetry import setup_tracing, instrument_app
from feedpipe.clients.embedding_client import embedding_client
from feedpipe.clients.kafka_producer import init_kafka, stop_kafka
from feedpipe.clients.qdrant_client import post_index
from feedpipe.clients.redis_client import close_redis, init_redis
from feedpipe.routers import engagement, feed, jobs, posts, users

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s — %(message)s",
)
logger = logging.getLogger(__name__)

# Set up tracing before the app is created so all imports are instrumented
setup_tracing()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Manage startup and shutdown of all external connections."""
    logger.info("Starting Feed Pipeline API (env=%s)", settings.environment)

    await init_db()
    await init_kafka()
    await init_redis()
    await post_index.start()
    await embedding_client.start()

    logger.info("All services connected. API ready.")
    yield

    logger.info("Shutting down...")
    await embedding_client.stop()
    await post_index.stop()
    await close_redis()
    await stop_kafka()
    await close_db()


app = FastAPI(
    title="Feed Pipeline API",
    description=(
        "Personalised content feed: vector recall, multi-signal ranking, "
        "cached pages and a write-behind engagement buffer."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

# ── Routers ────────────────────────────────────────────────────────────────
app.include_router(users.router, prefix="/users", tags=["Users"])
app.include_router(posts.router, prefix="/posts", tags=["Posts"])
app.include_router(feed.router, prefix="/feed", tags=["Feed"])
app.include_router(engagement.router, prefix="/engagement", tags=["Engagement"])
app.include_router(jobs.router, prefix="/jobs", tags=["Jobs"])

# ── Prometheus metrics endpoint ────────────────────────────────────────────
metrics_app = make_asgi_app()
app.mount("/metrics", metrics_app)

# ── OTel FastAPI instrumentation ──────────────────────────────────────────
instrument_app(app)


@app.get("/health", tags=["Health"])
async def health():
    return {"status": "ok", "service": settings.service_name}
