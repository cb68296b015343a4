"""Prometheus instrumentation for the attestation engine.

Keeps labels minimal to avoid cardinality explosion: operation and reason
codes only, never digests or identities.
"""
from __future__ import annotations
from prometheus_client import (
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
    CONTENT_TYPE_LATEST,
)

# Registry must be created before metric objects reference it.
REGISTRY = CollectorRegistry()

SIGNING_OPS = Counter(
    "attestor_signing_operations_total",
    "Signing operations by record kind and outcome.",
    ["kind", "result"],
    registry=REGISTRY,
)
VERIFICATIONS = Counter(
    "attestor_verifications_total",
    "Verification verdicts.",
    ["result"],
    registry=REGISTRY,
)
VERIFY_REASONS = Counter(
    "attestor_verification_reasons_total",
    "Failing checks reported by verification, by reason code.",
    ["code"],
    registry=REGISTRY,
)
RETRIES = Counter(
    "attestor_retries_total",
    "Retries of retryable collaborator failures.",
    ["op", "code"],
    registry=REGISTRY,
)
VERIFY_LATENCY = Histogram(
    "attestor_verify_latency_ms",
    "End-to-end verification latency (ms).",
    buckets=(1, 2, 5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
    registry=REGISTRY,
)


def observe_verification(ok: bool, reason_codes: list[str], latency_ms: float) -> None:
    VERIFICATIONS.labels(result="ok" if ok else "fail").inc()
    for code in set(reason_codes):
        VERIFY_REASONS.labels(code=code).inc()
    VERIFY_LATENCY.observe(latency_ms)


def prometheus_latest() -> tuple[bytes, str]:
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
