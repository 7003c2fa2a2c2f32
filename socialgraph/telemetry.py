"""
Observability setup:
  - OpenTelemetry distributed tracing → Jaeger (via OTLP gRPC)
  - Prometheus metrics for follow transitions, outbox relay, reconciliation
    and the like cache

Tracing is initialised once per process (API or worker); the API mounts
the Prometheus registry at /metrics.
"""
import logging

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import BatchSpanProcessor
from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from opentelemetry.instrumentation.redis import RedisInstrumentor
from opentelemetry.instrumentation.sqlalchemy import SQLAlchemyInstrumentor
from prometheus_client import Counter

from socialgraph.config import settings

logger = logging.getLogger(__name__)

# ─────────────────────────── Prometheus Metrics ───────────────────────────
FOLLOW_TRANSITIONS_TOTAL = Counter(
    "follow_transitions_total",
    "Effective follow/unfollow transitions committed",
    ["event_type"],  # 'follow' or 'unfollow'
)

OUTBOX_RELAY_TOTAL = Counter(
    "outbox_relay_total",
    "Outbox events handed to the sender",
    ["result"],  # 'sent' or 'failed'
)

RECONCILE_CORRECTIONS_TOTAL = Counter(
    "reconcile_corrections_total",
    "Denormalised counters corrected by the reconciler",
    ["column"],  # 'follower_count' or 'following_count'
)

VIP_STATUS_CHANGES_TOTAL = Counter(
    "vip_status_changes_total",
    "Number of times a user's VIP flag was flipped",
    ["is_vip"],
)

LIKE_CACHE_REQUESTS_TOTAL = Counter(
    "like_cache_requests_total",
    "Like cache lookups",
    ["op", "result"],  # op: 'count' | 'member'; result: 'hit' | 'miss'
)

LIKE_COUNT_LOCK_TOTAL = Counter(
    "like_count_lock_total",
    "Attempts to take the like-counter repair lock",
    ["result"],  # 'acquired' or 'contended'
)


# ─────────────────────────── OpenTelemetry Setup ──────────────────────────
def setup_tracing(service_name: str = settings.service_name) -> None:
    """Configure the global OTel TracerProvider with OTLP/Jaeger export."""
    if not settings.otel_enabled:
        logger.info("OTel tracing disabled")
        return

    resource = Resource.create(
        {
            "service.name": service_name,
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

    # Auto-instrument the storage clients so their spans appear in traces
    RedisInstrumentor().instrument()
    SQLAlchemyInstrumentor().instrument()


def instrument_app(app) -> None:  # noqa: ANN001
    """Call after app is created to add FastAPI request spans."""
    if settings.otel_enabled:
        FastAPIInstrumentor.instrument_app(app)
