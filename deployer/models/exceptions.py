"""Custom exceptions for the deployer model, store and service layers."""


class DeployerError(Exception):
    """Base class for deployer failures."""


class ModelValidationError(DeployerError):
    """Raised when a persisted payload cannot be parsed into a model."""


class RecordNotFoundError(DeployerError):
    """Raised when a requested record does not exist."""


class StatusConflictError(DeployerError):
    """Raised when a status transition is illegal or lost a compare-and-swap."""


class BinaryValidationError(DeployerError):
    """Raised when an uploaded binary is rejected."""


class UploadNotFoundError(DeployerError):
    """Raised when no ready upload exists for a borrower."""


class DeploymentToolError(DeployerError):
    """Raised when the external deployment tool fails."""


class ParseError(DeploymentToolError):
    """Raised when deployment tool output does not match the expected format."""


class IndexerError(DeployerError):
    """Raised when the indexing service cannot be queried."""


class ProtocolTransactionError(DeployerError):
    """Raised when an on-chain protocol call fails or reverts."""
