"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for the feed read path and the engagement write path

Both are initialised once at startup and injected into FastAPI via middleware.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.httpx import HTTPXClientInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter, Histogram

from feedpipe.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FEED_LATENCY = Histogram(
    "feed_latency_seconds",
    "End-to-end latency of GET /feed",
    buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0],
)

FEED_CACHE_LOOKUPS = Counter(
    "feed_cache_lookups_total",
    "Feed cache lookups by outcome",
    ["result"],  # 'hit' | 'miss' | 'expired' | 'underfilled' | 'error'
)

RECALL_CANDIDATES = Histogram(
    "recall_candidates",
    "Number of candidates returned by the recall stage",
    buckets=[0, 10, 50, 100, 250, 500, 1000, 2000],
)

RECALL_FALLBACKS_TOTAL = Counter(
    "recall_fallbacks_total",
    "Recall requests served from the non-personalised cold-start set",
    ["reason"],  # 'no_vector' | 'index_error' | 'timeout'
)

ENGAGEMENT_OPERATIONS_TOTAL = Counter(
    "engagement_operations_total",
    "Buffered engagement operations by outcome",
    ["subject_type", "action"],
)

FLUSH_PROCESSED_TOTAL = Counter(
    "flush_operations_processed_total",
    "Engagement operations applied to the durable store",
    ["subject_type"],
)

FLUSH_FAILED_SUBJECTS_TOTAL = Counter(
    "flush_failed_subjects_total",
    "Subjects whose durable write failed during a flush",
    ["subject_type"],
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing() -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    resource = Resource.create(
        {
            "service.name": settings.service_name,
            "deployment.environment": settings.environment,
        }
    )

    provider = TracerProvider(resource=resource)

    try:
        otlp_exporter = OTLPSpanExporter(
            endpoint=settings.otel_exporter_otlp_endpoint,
            insecure=True,
        )
        provider.add_span_processor(BatchSpanProcessor(otlp_exporter))
        logger.info(
            "OTel tracing configured → %s", settings.otel_exporter_otlp_endpoint
        )
    except Exception as exc:
        logger.warning("Could not connect to OTLP exporter: %s — traces disabled", exc)

    trace.set_tracer_provider(provider)

    # Auto-instrument popular libraries so their spans appear in traces
    HTTPXClientInstrumentor().instrument()
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    FastAPIInstrumentor.instrument_app(app)
