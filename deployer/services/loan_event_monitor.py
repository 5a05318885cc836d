"""Background monitor that turns indexer loan events into orchestrator work."""

import asyncio
import logging
from typing import List, Optional, Set

from deployer.models.enums import DeploymentStatus
from deployer.models.exceptions import IndexerError
from deployer.models.loans import LoanRequestedEvent, ProtocolConfigSnapshot
from deployer.repositories.state_repository import DeploymentStateRepository

from .indexer_client import IndexerClient


logger = logging.getLogger(__name__)


class LoanEventMonitor:
    """Poll the indexer for new loan requests and hand them to a single consumer.

    Delivery is at-least-once: the seen-set is rebuilt from persisted
    deployment records on start, and consumers must tolerate duplicates.
    """

    def __init__(
        self,
        indexer: IndexerClient,
        repository: DeploymentStateRepository,
        queue: "asyncio.Queue[LoanRequestedEvent]",
        poll_interval_sec: float = 5.0,
    ) -> None:
        self._indexer = indexer
        self._repository = repository
        self._queue = queue
        self._poll_interval_sec = poll_interval_sec
        self._processed_loans: Set[str] = set()
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def processed_loans(self) -> Set[str]:
        return set(self._processed_loans)

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Load dedup state and start the polling loop."""
        if self.is_running:
            logger.info("Loan event monitor already running.")
            return
        await self._load_processed_loans()
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="loan-event-monitor")
        logger.info("Loan event monitor started interval_sec=%s", self._poll_interval_sec)

    async def stop(self) -> None:
        """Gracefully stop the polling loop."""
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Loan event monitor task cancelled.")
        except Exception:
            logger.exception("Unexpected error while stopping loan event monitor.")
        finally:
            self._task = None

    async def _load_processed_loans(self) -> None:
        try:
            self._processed_loans.update(await self._repository.known_loan_ids())
            logger.info("Loaded processed loans count=%d", len(self._processed_loans))
        except Exception:
            logger.exception("Error loading processed loans")

    async def _run_loop(self) -> None:
        logger.info("Loan event monitor loop running.")
        while not self._stop_event.is_set():
            try:
                await self.poll_once()
            except Exception:
                logger.exception("Unhandled error during loan event poll cycle.")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._poll_interval_sec)
            except asyncio.TimeoutError:
                continue

    async def poll_once(self) -> int:
        """Run one fetch-and-dispatch cycle and return the number of emitted events."""
        try:
            events = await self._indexer.fetch_loan_requests()
        except IndexerError as exc:
            logger.error("Failed to fetch loan requests from indexer error=%s", exc)
            return 0

        logger.debug("Fetched loan requests count=%d", len(events))
        emitted = 0
        for event in events:
            if event.loan_id in self._processed_loans:
                continue

            existing = await self._repository.get_deployment(event.loan_id)
            if existing is not None and existing.status != DeploymentStatus.FAILED:
                continue

            logger.info(
                "New loan detected for deployment loan_id=%s borrower=%s principal=%s tx_ref=%s",
                event.loan_id,
                event.borrower,
                event.principal,
                event.tx_ref,
            )
            await self._queue.put(event)
            self._processed_loans.add(event.loan_id)
            await self._repository.set_last_processed_loan_id(event.loan_id)
            emitted += 1
        return emitted

    async def get_loan_by_id(self, loan_id: str) -> Optional[LoanRequestedEvent]:
        return await self._indexer.fetch_loan_by_id(loan_id)

    async def get_loans_by_borrower(self, borrower: str) -> List[LoanRequestedEvent]:
        return await self._indexer.fetch_loans_by_borrower(borrower)

    async def get_recent_loans(self, limit: int = 10) -> List[LoanRequestedEvent]:
        return await self._indexer.fetch_recent_loans(limit)

    async def get_protocol_config(self) -> Optional[ProtocolConfigSnapshot]:
        snapshot = await self._indexer.fetch_protocol_config()
        if snapshot is not None:
            logger.info(
                "Fetched protocol config loan_counter=%d outstanding=%d paused=%s slot=%d",
                snapshot.loan_counter,
                snapshot.total_loans_outstanding,
                snapshot.is_paused,
                snapshot.slot,
            )
        return snapshot

    async def is_protocol_paused(self) -> bool:
        snapshot = await self.get_protocol_config()
        return snapshot.is_paused if snapshot is not None else False
