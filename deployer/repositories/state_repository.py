"""Typed async access to deployment, upload and cursor records."""

import asyncio
import logging
from typing import List, Optional, Set

from deployer.models.deployments import DEPLOYMENT_KEY_PREFIX, DeploymentRecord, deployment_key
from deployer.models.enums import DeploymentStatus, UploadStatus
from deployer.models.exceptions import RecordNotFoundError, UploadNotFoundError
from deployer.models.uploads import UPLOAD_KEY_PREFIX, FileUploadRecord, upload_key

from .kv_store import KeyValueStore


logger = logging.getLogger(__name__)

LAST_PROCESSED_LOAN_KEY = "last-processed-loan-id"


class DeploymentStateRepository:
    """Persist and fetch deployer state from a key-value store.

    Every call is offloaded to a worker thread so the event loop never blocks
    on disk I/O.
    """

    def __init__(self, store: KeyValueStore) -> None:
        self._store = store

    async def _get(self, key: str) -> Optional[dict]:
        try:
            return await asyncio.to_thread(self._store.get, key)
        except RecordNotFoundError:
            return None

    # ── Deployments ──────────────────────────────────────────────────────

    async def get_deployment(self, loan_id: str) -> Optional[DeploymentRecord]:
        """Return the deployment record for `loan_id`, if any."""
        payload = await self._get(deployment_key(loan_id))
        return DeploymentRecord.from_record(payload) if payload is not None else None

    async def save_deployment(self, record: DeploymentRecord) -> DeploymentRecord:
        """Unconditionally persist a deployment record."""
        record.touch()
        await asyncio.to_thread(self._store.put, record.key, record.to_record())
        return record

    async def compare_and_save_deployment(
        self,
        record: DeploymentRecord,
        expected_status: Optional[DeploymentStatus],
    ) -> bool:
        """Persist `record` only if the stored status still equals `expected_status`.

        Args:
            record: Record carrying the new state.
            expected_status: Status observed before the change, or None when the
                record must not exist yet.

        Returns:
            bool: True when the write won the compare-and-swap.
        """
        record.touch()
        expected = expected_status.value if expected_status is not None else None
        written = await asyncio.to_thread(self._store.put_if_status, record.key, expected, record.to_record())
        if not written:
            logger.warning(
                "Deployment compare-and-swap lost loan_id=%s expected=%s target=%s",
                record.loan_id,
                expected,
                record.status.value,
            )
        return written

    async def list_deployments(self) -> List[DeploymentRecord]:
        """Return every deployment record."""
        rows = await asyncio.to_thread(self._store.iterate_prefix, DEPLOYMENT_KEY_PREFIX)
        return [DeploymentRecord.from_record(value) for _, value in rows]

    async def list_deployments_by_borrower(self, borrower: str) -> List[DeploymentRecord]:
        """Return deployment records belonging to `borrower`."""
        return [record for record in await self.list_deployments() if record.borrower == borrower]

    async def known_loan_ids(self) -> Set[str]:
        """Return loan ids that already have a deployment record."""
        rows = await asyncio.to_thread(self._store.iterate_prefix, DEPLOYMENT_KEY_PREFIX)
        return {key[len(DEPLOYMENT_KEY_PREFIX):] for key, _ in rows}

    # ── Uploads ──────────────────────────────────────────────────────────

    async def save_upload(self, record: FileUploadRecord) -> FileUploadRecord:
        """Persist an upload record."""
        record.touch()
        await asyncio.to_thread(self._store.put, record.key, record.to_record())
        return record

    async def get_upload(self, file_id: str) -> Optional[FileUploadRecord]:
        """Return an upload record by id, if any."""
        payload = await self._get(upload_key(file_id))
        return FileUploadRecord.from_record(payload) if payload is not None else None

    async def find_ready_upload(self, borrower: str) -> Optional[FileUploadRecord]:
        """Return the newest `ready` upload for `borrower`."""
        rows = await asyncio.to_thread(self._store.iterate_prefix, UPLOAD_KEY_PREFIX)
        candidates = [
            FileUploadRecord.from_record(value)
            for _, value in rows
            if value.get("borrower") == borrower and value.get("status") == UploadStatus.READY.value
        ]
        if not candidates:
            return None
        return max(candidates, key=lambda item: item.created_at)

    async def require_ready_upload(self, borrower: str) -> FileUploadRecord:
        """Return the newest `ready` upload for `borrower`.

        Raises:
            UploadNotFoundError: If the borrower has nothing ready to deploy.
        """
        upload = await self.find_ready_upload(borrower)
        if upload is None:
            raise UploadNotFoundError("No ready upload for borrower {0}".format(borrower))
        return upload

    async def claim_upload(self, upload: FileUploadRecord) -> bool:
        """Atomically move an upload from `ready` to `deployed`.

        Returns:
            bool: False when another deployment claimed it first.
        """
        claimed = upload.model_copy(update={"status": UploadStatus.DEPLOYED})
        claimed.touch()
        won = await asyncio.to_thread(
            self._store.put_if_status,
            claimed.key,
            UploadStatus.READY.value,
            claimed.to_record(),
        )
        if won:
            upload.status = UploadStatus.DEPLOYED
        else:
            logger.warning("Upload already claimed file_id=%s borrower=%s", upload.file_id, upload.borrower)
        return won

    # ── Cursor ───────────────────────────────────────────────────────────

    async def set_last_processed_loan_id(self, loan_id: str) -> None:
        await asyncio.to_thread(self._store.put, LAST_PROCESSED_LOAN_KEY, loan_id)

    async def get_last_processed_loan_id(self) -> Optional[str]:
        value = await self._get(LAST_PROCESSED_LOAN_KEY)
        return str(value) if value is not None else None

    async def close(self) -> None:
        await asyncio.to_thread(self._store.close)
