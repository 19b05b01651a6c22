"""
Metric registry of the mock builder relay, using prometheus_client.

Exposed in Prometheus text format on the relay's ``/metrics`` endpoint.
"""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    generate_latest,
)

# Dedicated registry: no default Python process metrics.
REGISTRY = CollectorRegistry()

status_requests = Counter(
    "relay_status_requests_total",
    "Builder status requests served",
    registry=REGISTRY,
)

validator_registrations = Counter(
    "relay_validator_registrations_total",
    "Validator registrations accepted",
    registry=REGISTRY,
)

registered_validators = Gauge(
    "relay_registered_validators",
    "Distinct validators currently registered",
    registry=REGISTRY,
)

header_requests = Counter(
    "relay_header_requests_total",
    "Header requests answered without a bid",
    registry=REGISTRY,
)

blinded_block_submissions = Counter(
    "relay_blinded_block_submissions_total",
    "Blinded blocks submitted (always rejected)",
    registry=REGISTRY,
)

genesis_time = Gauge(
    "relay_genesis_time",
    "Genesis time of the network the relay serves",
    registry=REGISTRY,
)


def generate_metrics() -> bytes:
    """Render every relay metric in Prometheus text format."""
    return generate_latest(REGISTRY)
