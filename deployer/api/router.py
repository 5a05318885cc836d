"""HTTP boundary for uploads, loan notifications and deployment state."""

from datetime import datetime, timezone
import hashlib
import logging
import os
import tempfile
import time
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, File, Form, HTTPException, Query, Response, UploadFile, status
from pydantic import Field

from deployer.core.metrics import FILE_UPLOADS_TOTAL, render_metrics
from deployer.models.base import CamelModel
from deployer.models.enums import DeploymentStatus
from deployer.models.exceptions import BinaryValidationError, IndexerError, UploadNotFoundError
from deployer.models.uploads import FileUploadRecord
from deployer.repositories.state_repository import DeploymentStateRepository
from deployer.services.binary_manager import BinaryManager
from deployer.services.deployment_orchestrator import DeploymentOrchestrator
from deployer.services.loan_event_monitor import LoanEventMonitor


logger = logging.getLogger(__name__)

BINARY_EXTENSION = ".so"


class NotifyLoanRequest(CamelModel):
    """Borrower notification that a loan request transaction was submitted."""

    signature: str = Field(..., min_length=1)
    borrower: str = Field(..., min_length=1)
    loan_id: Optional[str] = Field(default=None, pattern=r"^\d+$")


class NotifyRepaidRequest(CamelModel):
    """Borrower notification that a loan was repaid."""

    signature: str = Field(..., min_length=1)
    borrower: str = Field(..., min_length=1)
    loan_id: str = Field(..., pattern=r"^\d+$")


def make_file_id(borrower: str, binary_hash: str) -> str:
    """Derive a short unique upload id."""
    seed = "{0}:{1}:{2}".format(borrower, binary_hash, time.time_ns())
    return hashlib.sha256(seed.encode("utf-8")).hexdigest()[:16]


def _write_temp_file(directory: str, data: bytes) -> str:
    handle, path = tempfile.mkstemp(dir=directory, suffix=BINARY_EXTENSION)
    with os.fdopen(handle, "wb") as output:
        output.write(data)
    return path


def build_router(
    repository: DeploymentStateRepository,
    binary_manager: BinaryManager,
    orchestrator: DeploymentOrchestrator,
    monitor: LoanEventMonitor,
) -> APIRouter:
    """Build and return the deployer API router.

    Args:
        repository: Persistent deployment and upload state.
        binary_manager: Binary validation, storage and pricing.
        orchestrator: Deployment lifecycle driver.
        monitor: Loan event monitor, also used for indexer pass-through queries.

    Returns:
        APIRouter: Fully configured router with all endpoints.
    """
    router = APIRouter()

    @router.post("/upload", summary="Upload a program binary for a future loan")
    async def upload_binary(file: UploadFile = File(...), borrower: str = Form(...)) -> dict:
        borrower = borrower.strip()
        if not borrower:
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Borrower is required.")
        if not (file.filename or "").endswith(BINARY_EXTENSION):
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Only {0} files are allowed.".format(BINARY_EXTENSION),
            )

        data = await file.read(binary_manager.max_binary_bytes + 1)
        try:
            binary_manager.ensure_valid(data)
        except BinaryValidationError as exc:
            logger.warning("Rejected binary upload borrower=%s reason=%s", borrower, exc)
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(exc))

        binary_hash = hashlib.sha256(data).hexdigest()
        file_id = make_file_id(borrower, binary_hash)
        temp_path = _write_temp_file(binary_manager.upload_path, data)
        try:
            stored = await binary_manager.store_binary(file_id, temp_path)
            estimated_cost = await binary_manager.estimate_cost(stored.destination_path)
        except OSError as exc:
            logger.exception("Failed to store uploaded binary borrower=%s", borrower)
            raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=str(exc))
        finally:
            try:
                os.remove(temp_path)
            except OSError:
                logger.warning("Failed to remove temporary upload path=%s", temp_path)

        record = FileUploadRecord(
            file_id=file_id,
            borrower=borrower,
            file_name=file.filename,
            file_path=stored.destination_path,
            file_size=len(data),
            binary_hash=stored.hash,
            estimated_cost=float(estimated_cost),
        )
        await repository.save_upload(record)
        FILE_UPLOADS_TOTAL.inc()
        logger.info("Binary uploaded file_id=%s borrower=%s size=%d", file_id, borrower, len(data))
        return {
            "success": True,
            "fileId": file_id,
            "estimatedCost": float(estimated_cost),
            "binaryHash": stored.hash,
            "message": "Binary uploaded successfully. Proceed to request a loan.",
        }

    @router.post("/notify-loan", status_code=status.HTTP_202_ACCEPTED, summary="Notify a submitted loan request")
    async def notify_loan(payload: NotifyLoanRequest, response: Response, background_tasks: BackgroundTasks) -> dict:
        if payload.loan_id is not None:
            existing = await repository.get_deployment(payload.loan_id)
            if existing is not None and existing.status != DeploymentStatus.FAILED:
                response.status_code = status.HTTP_200_OK
                return {
                    "success": True,
                    "message": "Deployment already in progress",
                    "status": existing.status.value,
                }

        try:
            await repository.require_ready_upload(payload.borrower)
        except UploadNotFoundError:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail="No uploaded binary found. Please upload your program first.",
            )

        logger.info(
            "Loan notification received borrower=%s loan_id=%s signature=%s",
            payload.borrower,
            payload.loan_id,
            payload.signature,
        )
        background_tasks.add_task(
            orchestrator.run_tracked,
            orchestrator.handle_loan_notification(payload.signature, payload.borrower, payload.loan_id),
            "notify-loan-{0}".format(payload.signature[:16]),
        )
        return {
            "success": True,
            "message": "Loan notification received. Deployment will start after confirmation.",
            "status": DeploymentStatus.PENDING.value,
        }

    @router.post("/notify-repaid", status_code=status.HTTP_202_ACCEPTED, summary="Notify a repaid loan")
    async def notify_repaid(payload: NotifyRepaidRequest, background_tasks: BackgroundTasks) -> dict:
        logger.info("Repayment notification received loan_id=%s borrower=%s", payload.loan_id, payload.borrower)
        background_tasks.add_task(
            orchestrator.run_tracked,
            orchestrator.handle_repaid(payload.loan_id, payload.borrower),
            "repaid-loan-{0}".format(payload.loan_id),
        )
        return {"success": True, "message": "Authority transfer scheduled."}

    @router.get("/deployments/borrower/{borrower}", summary="List deployments for a borrower")
    async def deployments_by_borrower(borrower: str) -> list:
        records = await repository.list_deployments_by_borrower(borrower)
        return [record.to_record() for record in records]

    @router.get("/deployments/{loan_id}", summary="Get a deployment record")
    async def get_deployment(loan_id: str) -> dict:
        record = await repository.get_deployment(loan_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Deployment not found")
        return record.to_record()

    @router.get("/uploads/{file_id}", summary="Get an upload record")
    async def get_upload(file_id: str) -> dict:
        record = await repository.get_upload(file_id)
        if record is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Upload not found")
        return record.to_record()

    @router.post("/check-expired-loans", status_code=status.HTTP_202_ACCEPTED, summary="Run the expiry sweep")
    async def check_expired_loans(background_tasks: BackgroundTasks) -> dict:
        background_tasks.add_task(orchestrator.run_tracked, orchestrator.run_expiry_sweep(), "manual-expiry-sweep")
        return {"success": True, "message": "Expired loan check started."}

    @router.get("/health", summary="Service health")
    async def health() -> dict:
        records = await repository.list_deployments()
        return {
            "status": "healthy",
            "activeLoans": sum(1 for record in records if record.status == DeploymentStatus.DEPLOYED),
            "totalDeployments": len(records),
            "pendingReconciliation": sum(
                1
                for record in records
                if record.status == DeploymentStatus.DEPLOYED and not record.set_recorded_tx_ref
            ),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @router.get("/metrics", summary="Prometheus metrics")
    def metrics() -> Response:
        payload, content_type = render_metrics()
        return Response(content=payload, media_type=content_type)

    @router.get("/loans/recent", summary="Recent loan requests from the indexer")
    async def recent_loans(limit: int = Query(default=10, ge=1, le=100)) -> list:
        try:
            loans = await monitor.get_recent_loans(limit)
        except IndexerError as exc:
            logger.exception("Indexer lookup failed limit=%d", limit)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        return [loan.model_dump(by_alias=True) for loan in loans]

    @router.get("/loans/borrower/{borrower}", summary="Loan requests for a borrower")
    async def loans_by_borrower(borrower: str) -> list:
        try:
            loans = await monitor.get_loans_by_borrower(borrower)
        except IndexerError as exc:
            logger.exception("Indexer lookup failed borrower=%s", borrower)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        return [loan.model_dump(by_alias=True) for loan in loans]

    @router.get("/loans/{loan_id}", summary="Loan request by id")
    async def loan_by_id(loan_id: str) -> dict:
        try:
            loan = await monitor.get_loan_by_id(loan_id)
        except IndexerError as exc:
            logger.exception("Indexer lookup failed loan_id=%s", loan_id)
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        if loan is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Loan not found")
        return loan.model_dump(by_alias=True)

    @router.get("/protocol-config", summary="Latest protocol configuration")
    async def protocol_config() -> dict:
        try:
            snapshot = await monitor.get_protocol_config()
        except IndexerError as exc:
            logger.exception("Indexer protocol config lookup failed.")
            raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(exc))
        if snapshot is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Protocol config not found")
        return snapshot.model_dump(by_alias=True)

    return router
