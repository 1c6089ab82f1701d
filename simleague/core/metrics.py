import time

from prometheus_client import REGISTRY, Counter, Histogram, Gauge


# ----------
# Core metrics
# ----------

# Events
EVENTS_CREATED_TOTAL = Counter(
    "events_created_total",
    "Total events created",
)

EVENT_TRANSITIONS_TOTAL = Counter(
    "event_transitions_total",
    "Event state transitions by action and outcome",
    labelnames=("action", "outcome"),  # outcome: changed | noop | rejected
)

# Runs
RUNS_CREATED_TOTAL = Counter(
    "runs_created_total",
    "Total runs created",
)

RESULTS_SUBMITTED_TOTAL = Counter(
    "results_submitted_total",
    "Total run results accepted",
)

RESULT_SUBMISSION_REJECTED_TOTAL = Counter(
    "result_submission_rejected_total",
    "Run result submissions rejected",
    labelnames=("reason",),  # duplicate | event_state | forbidden
)

# Leaderboard queries
LEADERBOARD_QUERIES_TOTAL = Counter(
    "leaderboard_queries_total",
    "Total leaderboard queries",
)

LEADERBOARD_QUERY_DURATION_SECONDS = Histogram(
    "leaderboard_query_duration_seconds",
    "Duration of leaderboard ranking (including DB)",
)

# Admin links
ADMIN_LINKS_ISSUED_TOTAL = Counter(
    "admin_links_issued_total",
    "Simulator admin-link tokens issued",
)

ADMIN_LINK_VERIFICATIONS_TOTAL = Counter(
    "admin_link_verifications_total",
    "Simulator admin-link token verifications",
    labelnames=("outcome",),  # ok | invalid | expired | event_mismatch
)

# System health metrics
DATABASE_HEALTH = Gauge(
    "database_health",
    "Database connection health status (1=healthy, 0=unhealthy)",
)

REDIS_HEALTH = Gauge(
    "redis_health",
    "Redis broker health status (1=healthy, 0=unhealthy)",
)

# Set initial values for health metrics so they appear in Prometheus
DATABASE_HEALTH.set(0)
REDIS_HEALTH.set(0)


def init_fastapi_instrumentation(app) -> None:
    """Attach Prometheus HTTP instrumentation to the app.

    Imported lazily so worker processes don't need FastAPI instrumentator.
    The registry itself is served by the /metrics route in main.
    """
    from prometheus_fastapi_instrumentator import Instrumentator

    Instrumentator(registry=REGISTRY).instrument(app)


class DurationTimer:
    """Simple context manager to measure durations with perf_counter."""

    def __init__(self):
        self._start = 0.0
        self.seconds = 0.0

    def __enter__(self):
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb):
        self.seconds = max(0.0, time.perf_counter() - self._start)
        return False
