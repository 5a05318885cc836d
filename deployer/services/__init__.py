"""Service layer exports."""

from .binary_manager import BinaryManager, StoredBinary, ValidationResult, validate_binary
from .deployment_adapter import CliDeploymentAdapter, CloseResult, DeployResult, DeploymentAdapter
from .deployment_orchestrator import DeploymentOrchestrator
from .expiry_scheduler import ExpirySweepScheduler
from .indexer_client import IndexerClient
from .loan_event_monitor import LoanEventMonitor
from .protocol_client import ProtocolClient, load_keypair

__all__ = [
    "BinaryManager",
    "StoredBinary",
    "ValidationResult",
    "validate_binary",
    "DeploymentAdapter",
    "CliDeploymentAdapter",
    "DeployResult",
    "CloseResult",
    "DeploymentOrchestrator",
    "ExpirySweepScheduler",
    "IndexerClient",
    "LoanEventMonitor",
    "ProtocolClient",
    "load_keypair",
]
