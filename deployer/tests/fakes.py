"""In-memory collaborators shared by the service tests."""

from decimal import Decimal
from typing import Dict, List, Optional, Tuple

from deployer.models.enums import LoanState
from deployer.models.exceptions import DeploymentToolError, IndexerError, ProtocolTransactionError
from deployer.models.loans import LoanRequestedEvent, OnChainLoan, ProtocolConfigSnapshot
from deployer.services.deployment_adapter import CloseResult, DeployResult, DeploymentAdapter


ELF_BINARY = b"\x7fELF" + b"\x00" * 60


class FakeDeploymentAdapter(DeploymentAdapter):
    """Adapter that records calls and fails a configurable number of times."""

    def __init__(self, deploy_failures: int = 0, close_failures: int = 0, rent: Optional[Decimal] = None) -> None:
        self.deploy_failures = deploy_failures
        self.close_failures = close_failures
        self.rent = rent
        self.deploy_calls: List[str] = []
        self.close_calls: List[str] = []
        self.rent_calls: List[int] = []

    async def deploy(self, binary_path: str) -> DeployResult:
        self.deploy_calls.append(binary_path)
        if self.deploy_failures > 0:
            self.deploy_failures -= 1
            raise DeploymentToolError("deploy tool exited with status 1")
        number = len(self.deploy_calls)
        return DeployResult(program_id="Prog{0}".format(number), tx_ref="DeployTx{0}".format(number))

    async def close(self, program_id: str) -> CloseResult:
        self.close_calls.append(program_id)
        if self.close_failures > 0:
            self.close_failures -= 1
            raise DeploymentToolError("close tool exited with status 1")
        return CloseResult(tx_ref="CloseTx-{0}".format(program_id))

    async def estimate_rent(self, size_bytes: int) -> Decimal:
        self.rent_calls.append(size_bytes)
        if self.rent is None:
            raise DeploymentToolError("rent quote unavailable")
        return self.rent

    async def program_data_address(self, program_id: str) -> str:
        return "Data-{0}".format(program_id)


class FakeProtocolClient:
    """Protocol client over an in-memory loan table."""

    def __init__(self) -> None:
        self.loans: Dict[str, OnChainLoan] = {}
        self.calls: List[Tuple[str, tuple]] = []
        self.failing: set = set()
        self.confirmed = True

    def add_loan(
        self,
        loan_id: str,
        borrower: str = "borrower-1",
        principal: int = 1_000_000_000,
        start_timestamp: int = 1_000,
        duration: int = 100,
        state: LoanState = LoanState.ACTIVE,
        reclaimed_amount: int = 0,
        program_id: Optional[str] = None,
    ) -> OnChainLoan:
        loan = OnChainLoan(
            loan_id=loan_id,
            borrower=borrower,
            principal=principal,
            start_timestamp=start_timestamp,
            duration=duration,
            state=state,
            reclaimed_amount=reclaimed_amount,
            program_id=program_id,
        )
        self.loans[loan_id] = loan
        return loan

    def calls_named(self, name: str) -> List[tuple]:
        return [args for call_name, args in self.calls if call_name == name]

    def _call(self, name: str, *args) -> str:
        self.calls.append((name, args))
        if name in self.failing:
            raise ProtocolTransactionError("{0} reverted".format(name))
        return "sig-{0}-{1}".format(name, len(self.calls))

    async def record_deployed_program(self, loan_id: str, program_id: str) -> str:
        tx_ref = self._call("record_deployed_program", loan_id, program_id)
        if loan_id in self.loans:
            self.loans[loan_id] = self.loans[loan_id].model_copy(update={"program_id": program_id})
        return tx_ref

    async def recover_loan(self, loan_id: str) -> str:
        tx_ref = self._call("recover_loan", loan_id)
        self.loans[loan_id] = self.loans[loan_id].model_copy(update={"state": LoanState.RECOVERED})
        return tx_ref

    async def return_reclaimed_funds(self, loan_id: str, amount: int) -> str:
        tx_ref = self._call("return_reclaimed_funds", loan_id, amount)
        self.loans[loan_id] = self.loans[loan_id].model_copy(update={"reclaimed_amount": amount})
        return tx_ref

    async def transfer_authority_to_borrower(self, loan_id: str, borrower: str, program_data: str) -> str:
        return self._call("transfer_authority_to_borrower", loan_id, borrower, program_data)

    async def get_loan(self, loan_id: str) -> Optional[OnChainLoan]:
        if "get_loan" in self.failing:
            raise ProtocolTransactionError("getLoan failed")
        return self.loans.get(loan_id)

    async def loan_counter(self) -> int:
        return len(self.loans)

    async def list_loans(self) -> List[OnChainLoan]:
        if "list_loans" in self.failing:
            raise ProtocolTransactionError("loanCounter failed")
        return list(self.loans.values())

    async def wait_for_confirmation(self, tx_ref: str, attempts: int = 5, delay_sec: float = 2.0) -> bool:
        self.calls.append(("wait_for_confirmation", (tx_ref,)))
        return self.confirmed


class FakeIndexerClient:
    """Indexer returning a fixed set of loan events."""

    def __init__(self, events: Optional[List[LoanRequestedEvent]] = None) -> None:
        self.events = list(events or [])
        self.config: Optional[ProtocolConfigSnapshot] = None
        self.fail = False

    async def fetch_loan_requests(self) -> List[LoanRequestedEvent]:
        if self.fail:
            raise IndexerError("Indexer unreachable")
        return list(self.events)

    async def fetch_loan_by_id(self, loan_id: str) -> Optional[LoanRequestedEvent]:
        if self.fail:
            raise IndexerError("Indexer unreachable")
        return next((event for event in self.events if event.loan_id == loan_id), None)

    async def fetch_loans_by_borrower(self, borrower: str) -> List[LoanRequestedEvent]:
        if self.fail:
            raise IndexerError("Indexer unreachable")
        return [event for event in self.events if event.borrower == borrower]

    async def fetch_recent_loans(self, limit: int = 10) -> List[LoanRequestedEvent]:
        if self.fail:
            raise IndexerError("Indexer unreachable")
        return sorted(self.events, key=lambda event: event.slot, reverse=True)[:limit]

    async def fetch_protocol_config(self) -> Optional[ProtocolConfigSnapshot]:
        if self.fail:
            raise IndexerError("Indexer unreachable")
        return self.config


async def no_sleep(delay: float) -> None:
    """Sleep replacement that returns immediately."""
    return None
