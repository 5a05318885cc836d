"""Prometheus metrics shared by deployer services."""

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, generate_latest
from prometheus_client import CONTENT_TYPE_LATEST


REGISTRY = CollectorRegistry()

DEPLOYMENTS_TOTAL = Counter(
    "deployer_deployments_total",
    "Total number of deployment outcomes.",
    labelnames=["status"],
    registry=REGISTRY,
)
RECOVERY_TOTAL = Counter(
    "deployer_recovery_total",
    "Total number of recovery sub-step outcomes.",
    labelnames=["step", "status"],
    registry=REGISTRY,
)
TOOL_CALLS_TOTAL = Counter(
    "deployer_tool_calls_total",
    "External deployment tool invocations.",
    labelnames=["operation", "status"],
    registry=REGISTRY,
)
AUTHORITY_TRANSFERS_TOTAL = Counter(
    "deployer_authority_transfers_total",
    "Upgrade authority transfers to borrowers.",
    labelnames=["status"],
    registry=REGISTRY,
)
FILE_UPLOADS_TOTAL = Counter(
    "deployer_file_uploads_total",
    "Total number of accepted file uploads.",
    registry=REGISTRY,
)
ACTIVE_LOANS = Gauge(
    "deployer_active_loans",
    "Number of deployments currently in deployed state.",
    registry=REGISTRY,
)
DEPLOYMENT_DURATION = Histogram(
    "deployer_deployment_duration_seconds",
    "Duration of external deploy operations.",
    buckets=(1, 5, 15, 30, 60, 120, 300, 600),
    registry=REGISTRY,
)


def render_metrics() -> tuple[bytes, str]:
    """Return the exposition payload and its content type."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
