"""Public model package exports for the deployer service."""

from .base import BaseRecordModel, CamelModel, Lamports, utc_now
from .deployments import (
    ALLOWED_TRANSITIONS,
    DEPLOYMENT_KEY_PREFIX,
    DeploymentRecord,
    can_transition,
    deployment_key,
)
from .enums import DeploymentStatus, LoanState, UploadStatus
from .exceptions import (
    BinaryValidationError,
    DeployerError,
    DeploymentToolError,
    IndexerError,
    ModelValidationError,
    ParseError,
    ProtocolTransactionError,
    RecordNotFoundError,
    StatusConflictError,
    UploadNotFoundError,
)
from .loans import LoanRequestedEvent, OnChainLoan, ProtocolConfigSnapshot
from .uploads import UPLOAD_KEY_PREFIX, FileUploadRecord, upload_key

__all__ = [
    "BaseRecordModel",
    "CamelModel",
    "Lamports",
    "utc_now",
    "ALLOWED_TRANSITIONS",
    "DEPLOYMENT_KEY_PREFIX",
    "DeploymentRecord",
    "can_transition",
    "deployment_key",
    "DeploymentStatus",
    "LoanState",
    "UploadStatus",
    "BinaryValidationError",
    "DeployerError",
    "DeploymentToolError",
    "IndexerError",
    "ModelValidationError",
    "ParseError",
    "ProtocolTransactionError",
    "RecordNotFoundError",
    "StatusConflictError",
    "UploadNotFoundError",
    "LoanRequestedEvent",
    "OnChainLoan",
    "ProtocolConfigSnapshot",
    "UPLOAD_KEY_PREFIX",
    "FileUploadRecord",
    "upload_key",
]
