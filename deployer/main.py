"""Application entrypoint for the program loan deployer service."""

import asyncio
from dataclasses import dataclass
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import uvicorn

from deployer.api.router import build_router
from deployer.core import AppSettings, get_logger, load_settings, setup_logging
from deployer.models.loans import LoanRequestedEvent
from deployer.repositories import DeploymentStateRepository, SqliteKeyValueStore
from deployer.services import (
    BinaryManager,
    CliDeploymentAdapter,
    DeploymentAdapter,
    DeploymentOrchestrator,
    ExpirySweepScheduler,
    IndexerClient,
    LoanEventMonitor,
    ProtocolClient,
    load_keypair,
)


logger = get_logger(__name__)


@dataclass
class DeployerServices:
    """Wired service graph shared by the router and lifecycle hooks."""

    settings: AppSettings
    repository: DeploymentStateRepository
    adapter: DeploymentAdapter
    binary_manager: BinaryManager
    protocol_client: ProtocolClient
    monitor: LoanEventMonitor
    orchestrator: DeploymentOrchestrator
    scheduler: ExpirySweepScheduler


def build_services(settings: AppSettings) -> DeployerServices:
    """Construct every service from settings.

    The lending program client talks to `chain.rpc_url`; the deploy tool gets
    its own `--url` from `deploy_tool.cluster` or `deploy_tool.url`.

    Raises:
        ValueError: If the signer keypair cannot be loaded.
    """
    try:
        signer = load_keypair(settings.signer_keypair_path)
    except (OSError, TypeError, ValueError) as exc:
        raise ValueError(
            "chain.signer_keypair_path must point to a readable keypair: {0}".format(exc)
        ) from exc

    repository = DeploymentStateRepository(SqliteKeyValueStore(settings.db_path))
    adapter = CliDeploymentAdapter(
        tool_path=settings.deploy_tool_path,
        keygen_path=settings.keygen_tool_path,
        keypair_path=settings.deployer_keypair_path,
        cluster_url=settings.deploy_tool_url,
        timeout_sec=settings.tool_timeout_sec,
    )
    binary_manager = BinaryManager(
        storage_path=settings.binary_storage_path,
        upload_path=settings.upload_path,
        adapter=adapter,
        max_binary_bytes=settings.max_upload_bytes,
    )
    protocol_client = ProtocolClient(
        rpc_url=settings.rpc_url,
        program_id=settings.program_id,
        signer=signer,
        commitment=settings.commitment,
        tx_timeout_sec=settings.tx_timeout_sec,
    )
    queue: "asyncio.Queue[LoanRequestedEvent]" = asyncio.Queue(maxsize=settings.event_queue_size)
    monitor = LoanEventMonitor(
        indexer=IndexerClient(settings.indexer_url, timeout_sec=settings.indexer_timeout_sec),
        repository=repository,
        queue=queue,
        poll_interval_sec=settings.poll_interval_sec,
    )
    orchestrator = DeploymentOrchestrator(
        repository=repository,
        adapter=adapter,
        protocol_client=protocol_client,
        queue=queue,
        max_retries=settings.max_retries,
        retry_delay_sec=settings.retry_delay_sec,
        confirmation_delay_sec=settings.confirmation_delay_sec,
        confirmation_attempts=settings.confirmation_attempts,
    )
    scheduler = ExpirySweepScheduler(
        orchestrator=orchestrator,
        initial_delay_sec=settings.sweep_initial_delay_sec,
        interval_sec=settings.sweep_interval_sec,
        enabled=settings.sweep_enabled,
    )
    return DeployerServices(
        settings=settings,
        repository=repository,
        adapter=adapter,
        binary_manager=binary_manager,
        protocol_client=protocol_client,
        monitor=monitor,
        orchestrator=orchestrator,
        scheduler=scheduler,
    )


def create_app(services: Optional[DeployerServices] = None) -> FastAPI:
    """Create and configure a FastAPI application instance."""
    if services is None:
        settings = load_settings()
        setup_logging(settings.log_level)
        services = build_services(settings)
    settings = services.settings
    app = FastAPI(title=settings.app_name, debug=settings.debug)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(
        build_router(
            repository=services.repository,
            binary_manager=services.binary_manager,
            orchestrator=services.orchestrator,
            monitor=services.monitor,
        )
    )
    app.state.services = services

    # ── Background services ──────────────────────────────────────────────

    @app.on_event("startup")
    async def _startup_background_services() -> None:
        """Start background services on application startup."""
        try:
            services.binary_manager.init()
            await services.orchestrator.start()
            await services.orchestrator.resume_interrupted()
            if settings.monitor_enabled:
                await services.monitor.start()
            else:
                logger.info("Loan event monitor disabled by configuration.")
            await services.scheduler.start()
        except Exception:
            logger.exception("Failed to start background services during startup.")

    @app.on_event("shutdown")
    async def _shutdown_background_services() -> None:
        """Stop background services on application shutdown."""
        try:
            await services.monitor.stop()
            await services.scheduler.stop()
            await services.orchestrator.stop()
        except Exception:
            logger.exception("Failed to stop background services during shutdown.")
        finally:
            await services.repository.close()

    logger.info(
        "Application initialized: %s cluster=%s tool_url=%s rpc_url=%s",
        settings.app_name,
        settings.cluster,
        settings.deploy_tool_url,
        settings.rpc_url,
    )
    return app


def run() -> None:
    """Start the ASGI server."""
    settings = load_settings()
    setup_logging(settings.log_level)
    try:
        uvicorn.run(
            "deployer.main:create_app",
            factory=True,
            host=settings.host,
            port=settings.port,
            reload=settings.debug,
        )
    except Exception:
        logger.exception("Failed to start uvicorn server.")
        raise


if __name__ == "__main__":
    run()
