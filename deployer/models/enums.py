"""Reusable enums for deployment domain models."""

from enum import Enum


class StringEnum(str, Enum):
    """Base enum class with string behavior for JSON serialization."""


class DeploymentStatus(StringEnum):
    """Deployment orchestration lifecycle states."""

    PENDING = "pending"
    DEPLOYING = "deploying"
    DEPLOYED = "deployed"
    RECOVERING = "recovering"
    RECOVERED = "recovered"
    FAILED = "failed"


class UploadStatus(StringEnum):
    """Uploaded binary lifecycle states."""

    PENDING = "pending"
    READY = "ready"
    DEPLOYED = "deployed"


class LoanState(StringEnum):
    """On-chain loan states, ordered as the lending program encodes them."""

    ACTIVE = "active"
    REPAID = "repaid"
    RECOVERED = "recovered"
    PENDING = "pending"
    REPAID_PENDING_TRANSFER = "repaidPendingTransfer"

    @classmethod
    def from_ordinal(cls, value: int) -> "LoanState":
        """Map the on-chain enum ordinal to a `LoanState`."""
        members = list(cls)
        if value < 0 or value >= len(members):
            raise ValueError("Unknown loan state ordinal={0}".format(value))
        return members[value]
