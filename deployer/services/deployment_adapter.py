"""Adapter around the external program deployment tool.

The deployment protocol (chunked buffer writes, finalization, closing) is
owned by the external command-line tool, so this module shells out to it and
turns its textual output into structured results. `DeploymentAdapter` is the
interface the orchestrator depends on; `CliDeploymentAdapter` is the
subprocess implementation.
"""

from abc import ABC, abstractmethod
import asyncio
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
import logging
import os
import re
import tempfile
from typing import Optional, Sequence

from deployer.core.metrics import DEPLOYMENT_DURATION, TOOL_CALLS_TOTAL
from deployer.models.exceptions import DeploymentToolError, ParseError


logger = logging.getLogger(__name__)

MAX_RENT_QUOTE_BYTES = 10 * 1024 * 1024

DEPLOY_SUCCESS_MARKER = "Program Id:"
CLOSE_SUCCESS_MARKER = "closed"
_ALREADY_CLOSED_MARKERS = ("has been closed", "already closed", "Unable to find the account")

_PROGRAM_ID_PATTERN = re.compile(r"Program Id: (\w+)")
_SIGNATURE_PATTERN = re.compile(r"Signature: (\w+)")
_RENT_PATTERN = re.compile(r"Rent-exempt minimum:\s*([0-9]+(?:\.[0-9]+)?)")
_PROGRAM_DATA_PATTERN = re.compile(r"ProgramData Address:\s*(\w+)")
_BASE58_LINE_PATTERN = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,90}$")


@dataclass(frozen=True)
class DeployResult:
    """Outcome of a successful program deployment."""

    program_id: str
    tx_ref: str


@dataclass(frozen=True)
class CloseResult:
    """Outcome of a program close; `already_closed` marks an idempotent no-op."""

    tx_ref: Optional[str]
    already_closed: bool = False


@dataclass(frozen=True)
class ToolOutput:
    """Captured result of one tool invocation."""

    returncode: int
    stdout: str
    stderr: str


class DeploymentAdapter(ABC):
    """Publishing and closing capability for on-chain programs."""

    @abstractmethod
    async def deploy(self, binary_path: str) -> DeployResult:
        """Deploy the binary under a fresh program identity."""

    @abstractmethod
    async def close(self, program_id: str) -> CloseResult:
        """Close a deployed program and reclaim its balance."""

    @abstractmethod
    async def estimate_rent(self, size_bytes: int) -> Decimal:
        """Return the rent-exempt minimum for an account of `size_bytes`."""

    @abstractmethod
    async def program_data_address(self, program_id: str) -> str:
        """Return the data account that holds a program's upgrade authority."""


class CliDeploymentAdapter(DeploymentAdapter):
    """Run the external deployment tool as a subprocess."""

    def __init__(
        self,
        tool_path: str,
        keygen_path: str,
        keypair_path: str,
        cluster_url: str,
        timeout_sec: int = 600,
    ) -> None:
        """Create an adapter bound to one authority keypair and cluster.

        Args:
            tool_path: Executable of the deployment tool.
            keygen_path: Executable used to mint fresh program identities.
            keypair_path: Authority keypair file passed to every command.
            cluster_url: Value for `--url`: a cluster moniker or an RPC endpoint.
            timeout_sec: Upper bound for a single invocation.
        """
        self._tool_path = tool_path
        self._keygen_path = keygen_path
        self._keypair_path = keypair_path
        self._cluster_url = cluster_url
        self._timeout_sec = timeout_sec

    async def _run(self, args: Sequence[str]) -> ToolOutput:
        """Execute a command without a shell and capture its output."""
        logger.debug("Executing deployment tool command args=%s", list(args))
        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            raise DeploymentToolError("Failed to start {0}: {1}".format(args[0], exc)) from exc

        try:
            stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=self._timeout_sec)
        except asyncio.TimeoutError as exc:
            process.kill()
            await process.wait()
            raise DeploymentToolError(
                "Command timed out after {0}s: {1}".format(self._timeout_sec, " ".join(args[:3]))
            ) from exc

        return ToolOutput(
            returncode=process.returncode if process.returncode is not None else -1,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )

    def _common_args(self) -> list[str]:
        return ["--keypair", self._keypair_path, "--url", self._cluster_url]

    async def _generate_program_identity(self, directory: str) -> tuple[str, str]:
        """Mint a new program keypair file and return `(path, address)`."""
        keypair_file = os.path.join(directory, "program-keypair.json")
        created = await self._run(
            [
                self._keygen_path,
                "new",
                "--no-bip39-passphrase",
                "--silent",
                "--force",
                "--outfile",
                keypair_file,
            ]
        )
        if created.returncode != 0:
            raise DeploymentToolError("Program keypair generation failed: {0}".format(created.stderr.strip()))

        shown = await self._run([self._keygen_path, "pubkey", keypair_file])
        address = shown.stdout.strip()
        if shown.returncode != 0 or not _BASE58_LINE_PATTERN.match(address):
            raise ParseError("Failed to read program identity from keygen output")
        return keypair_file, address

    async def _latest_tx_ref(self, address: str) -> Optional[str]:
        """Return the newest transaction signature touching `address`."""
        try:
            output = await self._run(
                [self._tool_path, "transaction-history", address, "--limit", "1", "--url", self._cluster_url]
            )
        except DeploymentToolError:
            logger.warning("Transaction history lookup failed address=%s", address)
            return None
        if output.returncode != 0:
            logger.warning("Transaction history lookup failed address=%s stderr=%s", address, output.stderr.strip())
            return None
        for line in output.stdout.splitlines():
            candidate = line.strip()
            if _BASE58_LINE_PATTERN.match(candidate):
                return candidate
        return None

    async def deploy(self, binary_path: str) -> DeployResult:
        logger.info("Deploying program binary_path=%s", binary_path)
        try:
            with DEPLOYMENT_DURATION.time():
                with tempfile.TemporaryDirectory(prefix="program-identity-") as identity_dir:
                    keypair_file, address = await self._generate_program_identity(identity_dir)
                    output = await self._run(
                        [
                            self._tool_path,
                            "program",
                            "deploy",
                            binary_path,
                            "--program-id",
                            keypair_file,
                            *self._common_args(),
                            "--commitment",
                            "confirmed",
                        ]
                    )

                if output.returncode != 0:
                    raise DeploymentToolError(
                        "Deployment error: {0}".format(output.stderr.strip() or output.stdout.strip())
                    )
                if output.stderr.strip() and DEPLOY_SUCCESS_MARKER not in output.stderr:
                    raise DeploymentToolError("Deployment error: {0}".format(output.stderr.strip()))

                match = _PROGRAM_ID_PATTERN.search(output.stdout)
                if not match:
                    raise ParseError("Failed to parse program ID from deployment output")
                program_id = match.group(1)
                if program_id != address:
                    logger.warning("Deployed program id differs from generated identity id=%s identity=%s", program_id, address)

                tx_ref = await self._latest_tx_ref(program_id)
                if tx_ref is None:
                    signature_match = _SIGNATURE_PATTERN.search(output.stdout)
                    tx_ref = signature_match.group(1) if signature_match else "unknown"
        except Exception:
            TOOL_CALLS_TOTAL.labels(operation="deploy", status="failure").inc()
            logger.exception("Failed to deploy program binary_path=%s", binary_path)
            raise

        TOOL_CALLS_TOTAL.labels(operation="deploy", status="success").inc()
        logger.info("Program deployed program_id=%s tx_ref=%s", program_id, tx_ref)
        return DeployResult(program_id=program_id, tx_ref=tx_ref)

    async def close(self, program_id: str) -> CloseResult:
        logger.info("Closing program program_id=%s", program_id)
        try:
            output = await self._run(
                [
                    self._tool_path,
                    "program",
                    "close",
                    program_id,
                    "--bypass-warning",
                    *self._common_args(),
                    "--commitment",
                    "confirmed",
                ]
            )
            combined = "{0}\n{1}".format(output.stdout, output.stderr)
            if any(marker in combined for marker in _ALREADY_CLOSED_MARKERS):
                TOOL_CALLS_TOTAL.labels(operation="close", status="already_closed").inc()
                logger.info("Program already closed program_id=%s", program_id)
                return CloseResult(tx_ref=None, already_closed=True)

            if output.returncode != 0:
                raise DeploymentToolError("Close error: {0}".format(output.stderr.strip() or output.stdout.strip()))
            if output.stderr.strip() and CLOSE_SUCCESS_MARKER not in output.stderr.lower():
                raise DeploymentToolError("Close error: {0}".format(output.stderr.strip()))
            if CLOSE_SUCCESS_MARKER not in combined.lower():
                raise ParseError("Failed to confirm program close from tool output")

            signature_match = _SIGNATURE_PATTERN.search(output.stdout)
            tx_ref = signature_match.group(1) if signature_match else None
        except Exception:
            TOOL_CALLS_TOTAL.labels(operation="close", status="failure").inc()
            logger.exception("Failed to close program program_id=%s", program_id)
            raise

        TOOL_CALLS_TOTAL.labels(operation="close", status="success").inc()
        logger.info("Program closed program_id=%s tx_ref=%s", program_id, tx_ref)
        return CloseResult(tx_ref=tx_ref)

    async def estimate_rent(self, size_bytes: int) -> Decimal:
        if size_bytes <= 0 or size_bytes > MAX_RENT_QUOTE_BYTES:
            TOOL_CALLS_TOTAL.labels(operation="rent", status="rejected").inc()
            raise ValueError("size_bytes must be between 1 and {0}".format(MAX_RENT_QUOTE_BYTES))
        try:
            output = await self._run([self._tool_path, "rent", str(size_bytes), "--url", self._cluster_url])
            if output.returncode != 0:
                raise DeploymentToolError("Rent quote error: {0}".format(output.stderr.strip()))
            match = _RENT_PATTERN.search(output.stdout)
            if not match:
                raise ParseError("Failed to parse rent quote from tool output")
            rent = Decimal(match.group(1))
        except (DeploymentToolError, InvalidOperation):
            TOOL_CALLS_TOTAL.labels(operation="rent", status="failure").inc()
            logger.exception("Rent quote failed size_bytes=%d", size_bytes)
            raise

        TOOL_CALLS_TOTAL.labels(operation="rent", status="success").inc()
        logger.debug("Rent quote size_bytes=%d rent=%s", size_bytes, rent)
        return rent

    async def program_data_address(self, program_id: str) -> str:
        try:
            output = await self._run([self._tool_path, "program", "show", program_id, "--url", self._cluster_url])
            if output.returncode != 0:
                raise DeploymentToolError("Program show error: {0}".format(output.stderr.strip()))
            match = _PROGRAM_DATA_PATTERN.search(output.stdout)
            if not match:
                raise ParseError("Failed to parse program data address for {0}".format(program_id))
        except DeploymentToolError:
            TOOL_CALLS_TOTAL.labels(operation="show", status="failure").inc()
            logger.exception("Program data lookup failed program_id=%s", program_id)
            raise

        TOOL_CALLS_TOTAL.labels(operation="show", status="success").inc()
        return match.group(1)
