"""Prometheus metrics instrumentation."""

from __future__ import annotations

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

REGISTRY = CollectorRegistry()

UPLOADS = Counter(
    "stdp_uploads_total",
    "Uploads by mode and outcome",
    labelnames=("mode", "outcome"),
    registry=REGISTRY,
)

UPLOADED_BYTES = Counter(
    "stdp_uploaded_bytes_total",
    "Bytes written to the blob store, chunks included",
    registry=REGISTRY,
)

UPLOAD_DURATION = Histogram(
    "stdp_upload_duration_seconds",
    "Wall-clock time of a complete upload",
    labelnames=("mode",),
    registry=REGISTRY,
)

RETRIES = Counter(
    "stdp_retries_total",
    "Retried operations after a transport failure",
    labelnames=("operation",),
    registry=REGISTRY,
)

INVOCATIONS = Counter(
    "stdp_generation_invocations_total",
    "Generation boundary calls",
    labelnames=("kind", "transport", "outcome"),
    registry=REGISTRY,
)

ESCALATIONS = Counter(
    "stdp_transport_escalations_total",
    "Inline requests escalated to storage-reference transport",
    registry=REGISTRY,
)

QUOTA_REJECTIONS = Counter(
    "stdp_quota_rejections_total",
    "Pre-flight quota checks that failed closed",
    labelnames=("code",),
    registry=REGISTRY,
)

QUOTA_FAIL_OPEN = Counter(
    "stdp_quota_fail_open_total",
    "Quota checks that proceeded because the ledger was unavailable",
    registry=REGISTRY,
)


def metrics_response() -> Response:
    """Return Prometheus metrics as an HTTP response."""
    payload = generate_latest(REGISTRY)
    return Response(content=payload, media_type=CONTENT_TYPE_LATEST)


__all__ = [
    "REGISTRY",
    "UPLOADS",
    "UPLOADED_BYTES",
    "UPLOAD_DURATION",
    "RETRIES",
    "INVOCATIONS",
    "ESCALATIONS",
    "QUOTA_REJECTIONS",
    "QUOTA_FAIL_OPEN",
    "metrics_response",
]
