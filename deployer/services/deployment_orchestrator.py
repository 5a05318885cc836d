"""Deployment lifecycle orchestration: creation, deploy retries, expiry recovery."""

import asyncio
from contextlib import asynccontextmanager
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, Set

from deployer.core.metrics import ACTIVE_LOANS, AUTHORITY_TRANSFERS_TOTAL, DEPLOYMENTS_TOTAL, RECOVERY_TOTAL
from deployer.models.deployments import DeploymentRecord
from deployer.models.enums import DeploymentStatus, LoanState
from deployer.models.exceptions import DeployerError, StatusConflictError
from deployer.models.loans import LoanRequestedEvent, OnChainLoan
from deployer.repositories.state_repository import DeploymentStateRepository

from .deployment_adapter import DeploymentAdapter
from .protocol_client import ProtocolClient


logger = logging.getLogger(__name__)

INTERRUPTED_DEPLOYMENT_ERROR = "interrupted during deployment; re-notify required"

_RECOVERABLE_STATES = (LoanState.ACTIVE, LoanState.PENDING)
_AWAITING_CLOSE = (DeploymentStatus.DEPLOYED, DeploymentStatus.RECOVERING)


def _awaits_close(record: Optional[DeploymentRecord]) -> bool:
    """Programs of loans recovered while still pending stay open."""
    return record is not None and record.status in _AWAITING_CLOSE and not record.recovered_from_pending


class _LoanLock:
    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class DeploymentOrchestrator:
    """Drive every loan's deployment record through its lifecycle.

    Transitions for a single loan are serialized by a per-loan lock and each
    write is a compare-and-swap against the status observed under that lock,
    so a writer that bypasses the lock loses instead of overwriting.
    """

    def __init__(
        self,
        repository: DeploymentStateRepository,
        adapter: DeploymentAdapter,
        protocol_client: ProtocolClient,
        queue: "asyncio.Queue[LoanRequestedEvent]",
        max_retries: int = 3,
        retry_delay_sec: float = 5.0,
        confirmation_delay_sec: float = 2.0,
        confirmation_attempts: int = 5,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._repository = repository
        self._adapter = adapter
        self._protocol = protocol_client
        self._queue = queue
        self._max_retries = max(1, max_retries)
        self._retry_delay_sec = retry_delay_sec
        self._confirmation_delay_sec = confirmation_delay_sec
        self._confirmation_attempts = confirmation_attempts
        self._sleep = sleep
        self._clock = clock
        self._loan_locks: Dict[str, _LoanLock] = {}
        self._sweep_lock = asyncio.Lock()
        self._consumer_task: Optional[asyncio.Task] = None
        self._in_flight: Set[asyncio.Task] = set()

    # ── Lifecycle ────────────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._consumer_task is not None and not self._consumer_task.done()

    async def start(self) -> None:
        """Start the single queue consumer."""
        if self.is_running:
            logger.info("Deployment orchestrator already running.")
            return
        self._consumer_task = asyncio.create_task(self._consume(), name="deployment-orchestrator")
        logger.info("Deployment orchestrator started max_retries=%d", self._max_retries)

    async def stop(self, grace_sec: float = 10.0) -> None:
        """Stop consuming and give in-flight work `grace_sec` to finish."""
        if self._consumer_task is not None:
            self._consumer_task.cancel()
            try:
                await self._consumer_task
            except asyncio.CancelledError:
                logger.info("Deployment orchestrator consumer cancelled.")
            except Exception:
                logger.exception("Unexpected error while stopping deployment orchestrator.")
            finally:
                self._consumer_task = None

        if not self._in_flight:
            return
        done, pending = await asyncio.wait(set(self._in_flight), timeout=grace_sec)
        for task in pending:
            task.cancel()
        logger.info("Deployment orchestrator stopped finished=%d cancelled=%d", len(done), len(pending))

    def spawn(self, coro: Awaitable, name: Optional[str] = None) -> asyncio.Task:
        """Run `coro` as a tracked task so shutdown can wait for it."""
        task = asyncio.ensure_future(coro)
        if name:
            task.set_name(name)
        self._in_flight.add(task)
        task.add_done_callback(self._on_task_done)
        return task

    async def run_tracked(self, coro: Awaitable, name: Optional[str] = None) -> None:
        """Spawn `coro` and wait for it; failures are logged by the task callback."""
        await asyncio.wait({self.spawn(coro, name=name)})

    def _on_task_done(self, task: asyncio.Task) -> None:
        self._in_flight.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Background task failed name=%s", task.get_name(), exc_info=exc)

    async def _consume(self) -> None:
        logger.info("Deployment orchestrator consumer running.")
        while True:
            event = await self._queue.get()
            try:
                self.spawn(self.handle_loan_requested(event), name="deploy-loan-{0}".format(event.loan_id))
            finally:
                self._queue.task_done()

    @asynccontextmanager
    async def _locked(self, loan_id: str) -> AsyncIterator[None]:
        """Hold the loan's lock; the entry is dropped once nobody holds or waits on it."""
        entry = self._loan_locks.get(loan_id)
        if entry is None:
            entry = _LoanLock()
            self._loan_locks[loan_id] = entry
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._loan_locks[loan_id]

    # ── Creation and deployment ──────────────────────────────────────────

    async def handle_loan_requested(self, event: LoanRequestedEvent) -> Optional[DeploymentRecord]:
        """Entry point for loan-request events coming from the monitor."""
        logger.info("Handling loan request loan_id=%s borrower=%s", event.loan_id, event.borrower)
        return await self.trigger_deployment(event.loan_id, event.borrower, event.principal)

    async def trigger_deployment(self, loan_id: str, borrower: str, principal: int) -> Optional[DeploymentRecord]:
        """Create a pending record for `loan_id` and deploy it.

        A record that exists and has not failed makes this a no-op. Returns the
        final record, or None when nothing was started.
        """
        async with self._locked(loan_id):
            record = await self._create_pending_record(loan_id, borrower, principal)
        if record is None:
            return None
        return await self.process_deployment_with_retries(loan_id)

    async def _create_pending_record(
        self,
        loan_id: str,
        borrower: str,
        principal: int,
    ) -> Optional[DeploymentRecord]:
        existing = await self._repository.get_deployment(loan_id)
        if existing is not None and existing.status != DeploymentStatus.FAILED:
            logger.info(
                "Deployment already in progress loan_id=%s status=%s",
                loan_id,
                existing.status.value,
            )
            return None

        upload = await self._repository.find_ready_upload(borrower)
        if upload is None:
            logger.error("No ready upload for borrower loan_id=%s borrower=%s", loan_id, borrower)
            return None
        if not await self._repository.claim_upload(upload):
            return None

        binding = {
            "principal": principal,
            "file_id": upload.file_id,
            "binary_hash": upload.binary_hash,
            "binary_path": upload.file_path,
            "deployment_cost": upload.estimated_cost,
            "attempts": 0,
            "error": None,
        }
        if existing is None:
            record = DeploymentRecord(loan_id=loan_id, borrower=borrower, **binding)
            expected: Optional[DeploymentStatus] = None
        else:
            record = existing
            expected = record.transition(DeploymentStatus.PENDING)
            for field_name, value in binding.items():
                setattr(record, field_name, value)

        if not await self._repository.compare_and_save_deployment(record, expected):
            return None
        logger.info(
            "Deployment record created loan_id=%s borrower=%s file_id=%s re_armed=%s",
            loan_id,
            borrower,
            upload.file_id,
            existing is not None,
        )
        return record

    async def process_deployment_with_retries(self, loan_id: str) -> Optional[DeploymentRecord]:
        """Deploy the bound binary with exponential backoff between attempts."""
        for attempt in range(1, self._max_retries + 1):
            async with self._locked(loan_id):
                record = await self._repository.get_deployment(loan_id)
                if record is None:
                    logger.error("Deployment record missing loan_id=%s", loan_id)
                    return None
                if record.status not in (DeploymentStatus.PENDING, DeploymentStatus.DEPLOYING):
                    logger.info("Skipping deployment loan_id=%s status=%s", loan_id, record.status.value)
                    return record

                observed = record.status
                record.transition(DeploymentStatus.DEPLOYING)
                record.attempts = attempt
                if not await self._repository.compare_and_save_deployment(record, observed):
                    return None

                if record.program_id:
                    # A program already exists for this loan; never deploy a second one.
                    record.transition(DeploymentStatus.DEPLOYED)
                    record.error = None
                    await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYING)
                    return record

                try:
                    if not record.binary_path:
                        raise DeployerError("No binary bound to deployment")
                    result = await self._adapter.deploy(record.binary_path)
                except Exception as exc:
                    logger.warning(
                        "Deployment attempt failed loan_id=%s attempt=%d/%d error=%s",
                        loan_id,
                        attempt,
                        self._max_retries,
                        exc,
                    )
                    record.error = str(exc)
                    if attempt >= self._max_retries:
                        record.transition(DeploymentStatus.FAILED)
                        await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYING)
                        DEPLOYMENTS_TOTAL.labels(status="failed").inc()
                        logger.error("Deployment failed permanently loan_id=%s error=%s", loan_id, exc)
                        return record
                    await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYING)
                    delay = self.retry_delay_for(attempt)
                else:
                    record.program_id = result.program_id
                    record.deploy_tx_ref = result.tx_ref
                    record.error = None
                    record.transition(DeploymentStatus.DEPLOYED)
                    await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYING)
                    DEPLOYMENTS_TOTAL.labels(status="success").inc()
                    logger.info(
                        "Program deployed loan_id=%s program_id=%s tx_ref=%s attempt=%d",
                        loan_id,
                        result.program_id,
                        result.tx_ref,
                        attempt,
                    )
                    await self._record_program_on_chain(record)
                    break

            await self._sleep(delay)
        await self._refresh_active_loans()
        return await self._repository.get_deployment(loan_id)

    def retry_delay_for(self, attempt: int) -> float:
        """Backoff before attempt `attempt + 1`."""
        return self._retry_delay_sec * (2 ** (attempt - 1))

    async def _record_program_on_chain(self, record: DeploymentRecord) -> bool:
        """Best-effort `setDeployedProgram`; the caller holds the loan lock."""
        try:
            tx_ref = await self._protocol.record_deployed_program(record.loan_id, record.program_id)
        except DeployerError as exc:
            logger.exception("Failed to record deployed program loan_id=%s", record.loan_id)
            record.error = "setDeployedProgram failed: {0}".format(exc)
            await self._repository.compare_and_save_deployment(record, record.status)
            return False
        record.set_recorded_tx_ref = tx_ref
        record.error = None
        await self._repository.compare_and_save_deployment(record, record.status)
        logger.info("Recorded deployed program loan_id=%s tx_ref=%s", record.loan_id, tx_ref)
        return True

    async def _refresh_active_loans(self) -> None:
        records = await self._repository.list_deployments()
        ACTIVE_LOANS.set(sum(1 for record in records if record.status == DeploymentStatus.DEPLOYED))

    # ── Notification flows ───────────────────────────────────────────────

    async def handle_loan_notification(self, signature: str, borrower: str, loan_id: Optional[str] = None) -> None:
        """Confirm a borrower-submitted loan transaction, then deploy for it."""
        await self._sleep(self._confirmation_delay_sec)
        confirmed = await self._protocol.wait_for_confirmation(signature, attempts=self._confirmation_attempts)
        if not confirmed:
            logger.error("Loan transaction not confirmed signature=%s borrower=%s", signature, borrower)
            return

        try:
            if loan_id is None:
                counter = await self._protocol.loan_counter()
                if counter <= 0:
                    logger.error("No loans on chain to derive loan id signature=%s", signature)
                    return
                loan_id = str(counter - 1)
            loan = await self._protocol.get_loan(loan_id)
        except DeployerError:
            logger.exception("Failed to resolve notified loan signature=%s borrower=%s", signature, borrower)
            return

        principal = loan.principal if loan is not None else 0
        logger.info("Loan notification confirmed loan_id=%s borrower=%s principal=%d", loan_id, borrower, principal)
        await self.trigger_deployment(loan_id, borrower, principal)

    async def handle_repaid(self, loan_id: str, borrower: str) -> Optional[str]:
        """Hand program upgrade authority to the borrower of a repaid loan.

        One attempt only; the outcome is counted and stored on the record.
        """
        async with self._locked(loan_id):
            record = await self._repository.get_deployment(loan_id)
            program_id = record.program_id if record is not None else None
            try:
                if not program_id:
                    loan = await self._protocol.get_loan(loan_id)
                    program_id = loan.program_id if loan is not None else None
                if not program_id:
                    raise DeployerError("No program id known for loan {0}".format(loan_id))
                program_data = await self._adapter.program_data_address(program_id)
                tx_ref = await self._protocol.transfer_authority_to_borrower(loan_id, borrower, program_data)
            except DeployerError as exc:
                logger.exception("Authority transfer failed loan_id=%s borrower=%s", loan_id, borrower)
                AUTHORITY_TRANSFERS_TOTAL.labels(status="failure").inc()
                if record is not None:
                    record.error = "authority transfer failed: {0}".format(exc)
                    await self._repository.compare_and_save_deployment(record, record.status)
                return None

            AUTHORITY_TRANSFERS_TOTAL.labels(status="success").inc()
            logger.info("Authority transferred loan_id=%s borrower=%s tx_ref=%s", loan_id, borrower, tx_ref)
            if record is not None:
                record.authority_transfer_tx_ref = tx_ref
                record.error = None
                await self._repository.compare_and_save_deployment(record, record.status)
            return tx_ref

    # ── Expiry sweep ─────────────────────────────────────────────────────

    def is_recovery_eligible(self, loan: OnChainLoan, record: Optional[DeploymentRecord], now: float) -> bool:
        if not loan.is_expired(now):
            return False
        if loan.state in _RECOVERABLE_STATES:
            return True
        if loan.state == LoanState.RECOVERED:
            return loan.reclaimed_amount == 0 or _awaits_close(record)
        return False

    async def run_expiry_sweep(self) -> int:
        """Recover every expired loan; returns how many were eligible.

        Concurrent calls are serialized. Failures are left for the next pass.
        """
        async with self._sweep_lock:
            logger.info("Expiry sweep started.")
            try:
                await self.reconcile_recorded_programs()
            except Exception:
                logger.exception("Reconciliation failed during expiry sweep.")

            try:
                loans = await self._protocol.list_loans()
            except DeployerError:
                logger.exception("Failed to enumerate loans for expiry sweep.")
                return 0

            now = self._clock()
            records = {record.loan_id: record for record in await self._repository.list_deployments()}
            eligible = [loan for loan in loans if self.is_recovery_eligible(loan, records.get(loan.loan_id), now)]
            recovered = 0
            for loan in eligible:
                try:
                    if await self.recover_expired_loan(loan):
                        recovered += 1
                except Exception:
                    logger.exception("Unhandled error recovering loan loan_id=%s", loan.loan_id)
            await self._refresh_active_loans()
            logger.info(
                "Expiry sweep finished loans=%d eligible=%d fully_recovered=%d",
                len(loans),
                len(eligible),
                recovered,
            )
            return len(eligible)

    async def recover_expired_loan(self, loan: OnChainLoan) -> bool:
        """Run each recovery step that still applies to `loan`.

        Steps are independent: a failed step does not stop the others, and the
        record's `error` reflects the failures of this pass. Returns True when
        every applicable step succeeded.
        """
        loan_id = loan.loan_id
        failures: List[str] = []
        async with self._locked(loan_id):
            record = await self._repository.get_deployment(loan_id)

            if loan.state in _RECOVERABLE_STATES:
                try:
                    tx_ref = await self._protocol.recover_loan(loan_id)
                except DeployerError as exc:
                    failures.append(self._note_recovery_failure(loan_id, "recover_loan", exc))
                else:
                    RECOVERY_TOTAL.labels(step="recover_loan", status="success").inc()
                    logger.info("Loan recovered on chain loan_id=%s tx_ref=%s", loan_id, tx_ref)
                    if record is not None:
                        record.recover_loan_tx_ref = tx_ref
                        if loan.state == LoanState.PENDING:
                            record.recovered_from_pending = True
                        await self._repository.compare_and_save_deployment(record, record.status)

            program_id = (record.program_id if record is not None else None) or loan.program_id
            if _awaits_close(record) and loan.state != LoanState.PENDING and program_id:
                try:
                    await self._close_program(record, program_id)
                except DeployerError as exc:
                    failures.append(self._note_recovery_failure(loan_id, "close_program", exc))

            if loan.reclaimed_amount == 0:
                try:
                    tx_ref = await self._protocol.return_reclaimed_funds(loan_id, loan.principal)
                except DeployerError as exc:
                    failures.append(self._note_recovery_failure(loan_id, "return_funds", exc))
                else:
                    RECOVERY_TOTAL.labels(step="return_funds", status="success").inc()
                    logger.info(
                        "Reclaimed funds returned loan_id=%s amount=%d tx_ref=%s",
                        loan_id,
                        loan.principal,
                        tx_ref,
                    )
                    if record is not None:
                        record.funds_return_tx_ref = tx_ref

            if record is not None:
                record.error = "; ".join(failures) if failures else None
                await self._repository.compare_and_save_deployment(record, record.status)
        return not failures

    async def _close_program(self, record: DeploymentRecord, program_id: str) -> None:
        if record.status == DeploymentStatus.DEPLOYED:
            record.transition(DeploymentStatus.RECOVERING)
            if not await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYED):
                raise StatusConflictError("Deployment changed while starting recovery")

        result = await self._adapter.close(program_id)
        record.recovery_tx_ref = result.tx_ref
        record.transition(DeploymentStatus.RECOVERED)
        await self._repository.compare_and_save_deployment(record, DeploymentStatus.RECOVERING)
        RECOVERY_TOTAL.labels(step="close_program", status="success").inc()
        logger.info(
            "Program closed loan_id=%s program_id=%s tx_ref=%s already_closed=%s",
            record.loan_id,
            program_id,
            result.tx_ref,
            result.already_closed,
        )

    def _note_recovery_failure(self, loan_id: str, step: str, exc: Exception) -> str:
        RECOVERY_TOTAL.labels(step=step, status="failure").inc()
        logger.error("Recovery step failed loan_id=%s step=%s error=%s", loan_id, step, exc)
        return "{0} failed: {1}".format(step, exc)

    # ── Reconciliation ───────────────────────────────────────────────────

    async def reconcile_recorded_programs(self) -> int:
        """Re-issue `setDeployedProgram` for deployments the chain never learned about."""
        reconciled = 0
        for candidate in await self._repository.list_deployments():
            if (
                candidate.status != DeploymentStatus.DEPLOYED
                or candidate.set_recorded_tx_ref
                or candidate.recovered_from_pending
                or not candidate.program_id
            ):
                continue
            try:
                loan = await self._protocol.get_loan(candidate.loan_id)
            except DeployerError:
                logger.exception("Failed to read loan for reconciliation loan_id=%s", candidate.loan_id)
                continue
            # setDeployedProgram re-activates the loan, so recovered loans are left alone.
            if loan is None or loan.program_id or loan.state not in _RECOVERABLE_STATES:
                continue
            async with self._locked(candidate.loan_id):
                record = await self._repository.get_deployment(candidate.loan_id)
                if (
                    record is None
                    or record.status != DeploymentStatus.DEPLOYED
                    or record.set_recorded_tx_ref
                    or record.recovered_from_pending
                ):
                    continue
                if await self._record_program_on_chain(record):
                    reconciled += 1
        if reconciled:
            logger.info("Reconciled deployed programs count=%d", reconciled)
        return reconciled

    async def resume_interrupted(self) -> int:
        """Resume `pending` records and fail ones stuck in `deploying` after a restart."""
        resumed = 0
        for record in await self._repository.list_deployments():
            if record.status == DeploymentStatus.PENDING:
                logger.info("Resuming pending deployment loan_id=%s", record.loan_id)
                self.spawn(
                    self.process_deployment_with_retries(record.loan_id),
                    name="resume-loan-{0}".format(record.loan_id),
                )
                resumed += 1
            elif record.status == DeploymentStatus.DEPLOYING:
                async with self._locked(record.loan_id):
                    record.error = INTERRUPTED_DEPLOYMENT_ERROR
                    record.transition(DeploymentStatus.FAILED)
                    if await self._repository.compare_and_save_deployment(record, DeploymentStatus.DEPLOYING):
                        DEPLOYMENTS_TOTAL.labels(status="failed").inc()
                        logger.warning("Marked interrupted deployment failed loan_id=%s", record.loan_id)
        await self._refresh_active_loans()
        return resumed
