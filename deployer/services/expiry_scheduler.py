"""Periodic timer that runs the expiry sweep."""

import asyncio
import logging
from typing import Optional

from .deployment_orchestrator import DeploymentOrchestrator


logger = logging.getLogger(__name__)


class ExpirySweepScheduler:
    """Run `run_expiry_sweep` after a warm-up delay and then on a fixed interval."""

    def __init__(
        self,
        orchestrator: DeploymentOrchestrator,
        initial_delay_sec: float = 60.0,
        interval_sec: float = 1800.0,
        enabled: bool = True,
    ) -> None:
        self._orchestrator = orchestrator
        self._initial_delay_sec = initial_delay_sec
        self._interval_sec = interval_sec
        self._enabled = enabled
        self._task: Optional[asyncio.Task] = None
        self._stop_event = asyncio.Event()

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the sweep timer in a background task if enabled."""
        if not self._enabled:
            logger.info("Expiry sweep disabled by configuration.")
            return
        if self.is_running:
            logger.info("Expiry sweep scheduler already running.")
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run_loop(), name="expiry-sweep-scheduler")
        logger.info(
            "Expiry sweep scheduler started initial_delay_sec=%s interval_sec=%s",
            self._initial_delay_sec,
            self._interval_sec,
        )

    async def stop(self) -> None:
        """Gracefully stop the sweep timer."""
        if not self._task:
            return
        self._stop_event.set()
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            logger.info("Expiry sweep scheduler task cancelled.")
        except Exception:
            logger.exception("Unexpected error while stopping expiry sweep scheduler.")
        finally:
            self._task = None

    async def _wait(self, timeout: float) -> bool:
        """Wait up to `timeout`; True when a stop was requested."""
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return True

    async def _run_loop(self) -> None:
        if await self._wait(self._initial_delay_sec):
            return
        while not self._stop_event.is_set():
            try:
                await self._orchestrator.run_expiry_sweep()
            except Exception:
                logger.exception("Unhandled error during expiry sweep.")
            if await self._wait(self._interval_sec):
                return
