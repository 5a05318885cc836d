"""Deployment record model and its status state machine."""

import logging
from typing import Dict, FrozenSet, Optional

from pydantic import Field

from .base import BaseRecordModel, Lamports
from .enums import DeploymentStatus
from .exceptions import StatusConflictError


logger = logging.getLogger(__name__)

DEPLOYMENT_KEY_PREFIX = "deployment:"

ALLOWED_TRANSITIONS: Dict[DeploymentStatus, FrozenSet[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.DEPLOYING, DeploymentStatus.FAILED}),
    DeploymentStatus.DEPLOYING: frozenset(
        {DeploymentStatus.DEPLOYING, DeploymentStatus.DEPLOYED, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.DEPLOYED: frozenset({DeploymentStatus.RECOVERING}),
    DeploymentStatus.RECOVERING: frozenset(
        {DeploymentStatus.RECOVERING, DeploymentStatus.RECOVERED, DeploymentStatus.FAILED}
    ),
    DeploymentStatus.RECOVERED: frozenset(),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.PENDING}),
}


def can_transition(current: DeploymentStatus, target: DeploymentStatus) -> bool:
    """Return whether `current -> target` is a legal status edge."""
    return target in ALLOWED_TRANSITIONS.get(current, frozenset())


def deployment_key(loan_id: str) -> str:
    """Return the store key for a loan's deployment record."""
    return "{0}{1}".format(DEPLOYMENT_KEY_PREFIX, loan_id)


class DeploymentRecord(BaseRecordModel):
    """Orchestration progress for one loan; never deleted."""

    loan_id: str = Field(..., pattern=r"^\d+$")
    borrower: str = Field(..., min_length=1)
    principal: Lamports = Field(default=0, ge=0)
    status: DeploymentStatus = Field(default=DeploymentStatus.PENDING)

    file_id: Optional[str] = Field(default=None)
    binary_hash: Optional[str] = Field(default=None)
    binary_path: Optional[str] = Field(default=None)
    deployment_cost: Optional[float] = Field(default=None, ge=0)

    program_id: Optional[str] = Field(default=None)
    deploy_tx_ref: Optional[str] = Field(default=None)
    set_recorded_tx_ref: Optional[str] = Field(default=None)
    recover_loan_tx_ref: Optional[str] = Field(default=None)
    recovery_tx_ref: Optional[str] = Field(default=None)
    funds_return_tx_ref: Optional[str] = Field(default=None)
    authority_transfer_tx_ref: Optional[str] = Field(default=None)

    recovered_from_pending: bool = Field(default=False)
    attempts: int = Field(default=0, ge=0)
    error: Optional[str] = Field(default=None)

    @property
    def key(self) -> str:
        """Store key of this record."""
        return deployment_key(self.loan_id)

    def transition(self, target: DeploymentStatus) -> DeploymentStatus:
        """Move to `target` status, returning the previous status.

        Raises:
            StatusConflictError: If the edge is not allowed.
        """
        previous = self.status
        if not can_transition(previous, target):
            logger.error(
                "Illegal deployment transition loan_id=%s from=%s to=%s",
                self.loan_id,
                previous.value,
                target.value,
            )
            raise StatusConflictError(
                "Illegal transition {0} -> {1} for loan {2}".format(previous.value, target.value, self.loan_id)
            )
        self.status = target
        self.touch()
        return previous
