from __future__ import annotations

from prometheus_client import Counter, Histogram

STAGE_INVOCATIONS_TOTAL = Counter(
    "hermes_stage_invocations_total",
    "Stage invocations grouped by terminal outcome",
    labelnames=("stage", "outcome"),
)

STAGE_LATENCY_SECONDS = Histogram(
    "hermes_stage_latency_seconds",
    "Latency of reasoning-service calls per stage",
    labelnames=("stage",),
    buckets=(0.5, 1, 2, 5, 10, 20, 30, 60, 120, float("inf")),
)

STAGE_SUPERSEDED_TOTAL = Counter(
    "hermes_stage_superseded_total",
    "Invocations discarded because a newer invocation of the same stage completed first",
    labelnames=("stage",),
)

CONTEXT_TRUNCATIONS_TOTAL = Counter(
    "hermes_context_truncations_total",
    "Assembled contexts that exceeded their character budget",
    labelnames=("stage", "mode"),
)

PERSISTENCE_FAILURES_TOTAL = Counter(
    "hermes_persistence_failures_total",
    "Failed writes to the persisted output mirror",
    labelnames=("backend",),
)


def record_stage_outcome(*, stage: str, outcome: str) -> None:
    STAGE_INVOCATIONS_TOTAL.labels(stage=stage, outcome=outcome).inc()


def observe_stage_latency(*, stage: str, latency: float) -> None:
    STAGE_LATENCY_SECONDS.labels(stage=stage).observe(max(latency, 0.0))


def increment_superseded(*, stage: str) -> None:
    STAGE_SUPERSEDED_TOTAL.labels(stage=stage).inc()


def increment_context_truncation(*, stage: str, mode: str) -> None:
    CONTEXT_TRUNCATIONS_TOTAL.labels(stage=stage, mode=mode).inc()


def increment_persistence_failure(*, backend: str) -> None:
    PERSISTENCE_FAILURES_TOTAL.labels(backend=backend).inc()
