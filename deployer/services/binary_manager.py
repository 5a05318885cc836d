"""Validation, content-addressed storage and cost estimation for program binaries."""

import asyncio
from dataclasses import dataclass
from decimal import ROUND_CEILING, Decimal
import hashlib
import logging
import math
import os
import shutil
from typing import Optional

from deployer.models.exceptions import BinaryValidationError, DeploymentToolError

from .deployment_adapter import DeploymentAdapter


logger = logging.getLogger(__name__)

ELF_MAGIC = b"\x7fELF"
MAX_BINARY_BYTES = 100 * 1024 * 1024

TRANSACTION_FEE = Decimal("0.000005")
USABLE_BYTES_PER_TRANSACTION = 1012
SETUP_TRANSACTIONS = 2
COMPUTE_BUFFER_PER_BYTE = Decimal("0.000000001")
FALLBACK_BASE_RENT = Decimal("0.01")
FALLBACK_BYTE_COST = Decimal("0.00000696")
COST_PRECISION = Decimal("0.0001")

_HASH_CHUNK_BYTES = 1024 * 1024


@dataclass(frozen=True)
class ValidationResult:
    """Outcome of a binary validation."""

    valid: bool
    reason: Optional[str] = None


@dataclass(frozen=True)
class StoredBinary:
    """Content address and location of a stored binary."""

    hash: str
    destination_path: str


def validate_binary(binary_data: bytes, max_size: int = MAX_BINARY_BYTES) -> ValidationResult:
    """Check that `binary_data` looks like a deployable ELF executable."""
    if len(binary_data) == 0:
        return ValidationResult(valid=False, reason="Empty binary")
    if binary_data[:4] != ELF_MAGIC:
        return ValidationResult(valid=False, reason="Invalid ELF header")
    if len(binary_data) > max_size:
        return ValidationResult(valid=False, reason="Binary too large (>{0}MB)".format(max_size // (1024 * 1024)))
    return ValidationResult(valid=True)


def transaction_fees(size_bytes: int) -> Decimal:
    """Fee for writing `size_bytes` in chunks plus account setup and finalization."""
    write_chunks = math.ceil(size_bytes / USABLE_BYTES_PER_TRANSACTION)
    return TRANSACTION_FEE * (write_chunks + SETUP_TRANSACTIONS)


def compute_buffer(size_bytes: int) -> Decimal:
    return COMPUTE_BUFFER_PER_BYTE * size_bytes


def fallback_rent(size_bytes: int) -> Decimal:
    """Heuristic rent used when the chain rent quote is unavailable."""
    return FALLBACK_BASE_RENT + FALLBACK_BYTE_COST * size_bytes


def round_cost(amount: Decimal) -> Decimal:
    return amount.quantize(COST_PRECISION, rounding=ROUND_CEILING)


def _sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as handle:
        for chunk in iter(lambda: handle.read(_HASH_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _read_prefix(path: str, limit: int) -> bytes:
    with open(path, "rb") as handle:
        return handle.read(limit)


class BinaryManager:
    """Validate uploads, keep them in content-addressed storage and price deployments."""

    def __init__(
        self,
        storage_path: str,
        upload_path: str,
        adapter: DeploymentAdapter,
        max_binary_bytes: int = MAX_BINARY_BYTES,
    ) -> None:
        self._storage_path = storage_path
        self._upload_path = upload_path
        self._adapter = adapter
        self._max_binary_bytes = max_binary_bytes

    @property
    def upload_path(self) -> str:
        return self._upload_path

    @property
    def max_binary_bytes(self) -> int:
        return self._max_binary_bytes

    def init(self) -> None:
        """Create storage directories."""
        os.makedirs(self._storage_path, exist_ok=True)
        os.makedirs(self._upload_path, exist_ok=True)

    def validate(self, binary_data: bytes) -> ValidationResult:
        return validate_binary(binary_data, max_size=self._max_binary_bytes)

    def ensure_valid(self, binary_data: bytes) -> None:
        """Raise `BinaryValidationError` with the rejection reason for invalid bytes."""
        result = self.validate(binary_data)
        if not result.valid:
            raise BinaryValidationError(result.reason)

    async def validate_file(self, path: str) -> ValidationResult:
        """Validate a binary on disk; reads at most one byte past the ceiling."""
        data = await asyncio.to_thread(_read_prefix, path, self._max_binary_bytes + 1)
        return self.validate(data)

    async def store_binary(self, file_id: str, source_path: str) -> StoredBinary:
        """Hash `source_path` and copy it to `<storage>/<file_id>_<hash>.so`."""
        binary_hash = await asyncio.to_thread(_sha256_file, source_path)
        destination_path = os.path.join(self._storage_path, "{0}_{1}.so".format(file_id, binary_hash))
        await asyncio.to_thread(shutil.copyfile, source_path, destination_path)
        logger.info("Stored binary file_id=%s hash=%s", file_id, binary_hash)
        return StoredBinary(hash=binary_hash, destination_path=destination_path)

    async def estimate_cost_for_size(self, size_bytes: int) -> Decimal:
        """Estimate deployment cost in native units for a binary of `size_bytes`.

        The chain rent quote is preferred; when it cannot be obtained the
        heuristic `fallback_rent` is used instead of failing the estimate.
        """
        try:
            rent = await self._adapter.estimate_rent(size_bytes)
        except (DeploymentToolError, ValueError):
            logger.warning("Rent quote unavailable, using fallback size_bytes=%d", size_bytes)
            rent = fallback_rent(size_bytes)
        total = rent + transaction_fees(size_bytes) + compute_buffer(size_bytes)
        return round_cost(total)

    async def estimate_cost(self, file_path: str) -> Decimal:
        """Estimate deployment cost for the file at `file_path`.

        Raises:
            OSError: If the file cannot be inspected.
        """
        try:
            stats = await asyncio.to_thread(os.stat, file_path)
        except OSError:
            logger.exception("Error estimating deployment cost path=%s", file_path)
            raise
        cost = await self.estimate_cost_for_size(stats.st_size)
        logger.info("Estimated deployment cost path=%s size=%d cost=%s", file_path, stats.st_size, cost)
        return cost
