"""Read-only views of on-chain loans and indexer events."""

import logging
from typing import Optional

from pydantic import Field, field_validator

from .base import CamelModel, Lamports
from .enums import LoanState


logger = logging.getLogger(__name__)

_EMPTY_PROGRAM_IDS = {"", "11111111111111111111111111111111"}


class OnChainLoan(CamelModel):
    """Ground-truth loan account as read from the lending program."""

    loan_id: str = Field(..., pattern=r"^\d+$")
    borrower: str = Field(..., min_length=1)
    program_id: Optional[str] = Field(default=None)
    principal: Lamports = Field(..., ge=0)
    duration: int = Field(..., ge=0)
    start_timestamp: int = Field(..., ge=0)
    state: LoanState = Field(...)
    reclaimed_amount: Lamports = Field(default=0, ge=0)

    @field_validator("program_id", mode="before")
    @classmethod
    def _normalize_program_id(cls, value: Optional[str]) -> Optional[str]:
        """Treat the default (all-zero) program id as unset."""
        if value is None:
            return None
        text = str(value).strip()
        return None if text in _EMPTY_PROGRAM_IDS else text

    @property
    def expires_at(self) -> int:
        """Unix timestamp after which the loan may be recovered."""
        return self.start_timestamp + self.duration

    def is_expired(self, now: float) -> bool:
        """Return whether the loan term has elapsed at `now`."""
        return now >= self.expires_at


class LoanRequestedEvent(CamelModel):
    """Loan-request event as reported by the indexing service."""

    loan_id: str = Field(..., pattern=r"^\d+$")
    borrower: str = Field(..., min_length=1)
    principal: Lamports = Field(default=0, ge=0)
    duration: int = Field(default=0, ge=0)
    interest_rate_bps: int = Field(default=0, ge=0)
    admin_fee: Lamports = Field(default=0, ge=0)
    slot: int = Field(default=0, ge=0)
    tx_ref: Optional[str] = Field(default=None)


class ProtocolConfigSnapshot(CamelModel):
    """Latest protocol configuration row from the indexing service."""

    admin: Optional[str] = Field(default=None)
    deployer: Optional[str] = Field(default=None)
    treasury: Optional[str] = Field(default=None)
    loan_counter: int = Field(default=0, ge=0)
    total_deposits: Lamports = Field(default=0, ge=0)
    total_loans_outstanding: Lamports = Field(default=0, ge=0)
    total_yield_distributed: Lamports = Field(default=0, ge=0)
    is_paused: bool = Field(default=False)
    slot: int = Field(default=0, ge=0)
