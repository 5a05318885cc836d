"""Tests for the subprocess deployment adapter with scripted tool output."""

from decimal import Decimal
import unittest
from unittest.mock import AsyncMock

from deployer.models.exceptions import DeploymentToolError, ParseError
from deployer.services.deployment_adapter import CliDeploymentAdapter, ToolOutput


PROGRAM_ID = "7Xq2mD8kRt5pLw3nFvYb9cHs4eJuA6gZ1oNiKyBTaSfE"
SIGNATURE = "5VfYpZ3tCq8wLk2nR9dHm4xJb7sEa6uG1oPiKyBTcSfNWq2mD8kRt5pLw3nFvYb9"


def ok(stdout: str = "", stderr: str = "") -> ToolOutput:
    return ToolOutput(returncode=0, stdout=stdout, stderr=stderr)


def failed(stderr: str) -> ToolOutput:
    return ToolOutput(returncode=1, stdout="", stderr=stderr)


class CliDeploymentAdapterTests(unittest.IsolatedAsyncioTestCase):
    """Parse tool output for deploy, close, rent and show."""

    def setUp(self) -> None:
        """Build an adapter whose subprocess runner is scripted."""
        self.adapter = CliDeploymentAdapter(
            tool_path="solana",
            keygen_path="solana-keygen",
            keypair_path="/keys/deployer.json",
            cluster_url="devnet",
            timeout_sec=5,
        )
        self.run = AsyncMock()
        self.adapter._run = self.run

    async def test_deploy_parses_program_id_and_history(self) -> None:
        """Program id comes from the marker line, tx ref from the history lookup."""
        self.run.side_effect = [
            ok(),
            ok(PROGRAM_ID + "\n"),
            ok("Program Id: {0}\n".format(PROGRAM_ID)),
            ok("{0}\n1 transactions found\n".format(SIGNATURE)),
        ]
        result = await self.adapter.deploy("/binaries/p.so")
        self.assertEqual(result.program_id, PROGRAM_ID)
        self.assertEqual(result.tx_ref, SIGNATURE)
        deploy_args = self.run.await_args_list[2].args[0]
        self.assertEqual(deploy_args[:4], ["solana", "program", "deploy", "/binaries/p.so"])
        self.assertIn("--keypair", deploy_args)
        self.assertEqual(deploy_args[deploy_args.index("--url") + 1], "devnet")

    async def test_deploy_without_marker_is_parse_error(self) -> None:
        """Missing program id marker counts as a parse failure."""
        self.run.side_effect = [ok(), ok(PROGRAM_ID + "\n"), ok("something unexpected\n")]
        with self.assertRaises(ParseError):
            await self.adapter.deploy("/binaries/p.so")

    async def test_deploy_nonzero_exit_raises(self) -> None:
        """A failing tool surfaces its stderr."""
        self.run.side_effect = [ok(), ok(PROGRAM_ID + "\n"), failed("Error: insufficient funds")]
        with self.assertRaises(DeploymentToolError) as ctx:
            await self.adapter.deploy("/binaries/p.so")
        self.assertIn("insufficient funds", str(ctx.exception))

    async def test_deploy_falls_back_to_unknown_tx_ref(self) -> None:
        """Without history or a signature line the tx ref is `unknown`."""
        self.run.side_effect = [
            ok(),
            ok(PROGRAM_ID + "\n"),
            ok("Program Id: {0}\n".format(PROGRAM_ID)),
            failed("history unavailable"),
        ]
        result = await self.adapter.deploy("/binaries/p.so")
        self.assertEqual(result.tx_ref, "unknown")

    async def test_close_parses_signature(self) -> None:
        """A successful close reports the closing signature."""
        self.run.side_effect = [ok("Closed Program Id {0}\nSignature: {1}\n".format(PROGRAM_ID, SIGNATURE))]
        result = await self.adapter.close(PROGRAM_ID)
        self.assertFalse(result.already_closed)
        self.assertEqual(result.tx_ref, SIGNATURE)

    async def test_close_already_closed_is_success(self) -> None:
        """Closing a closed program is an idempotent no-op."""
        self.run.side_effect = [failed("Error: Program {0} has been closed".format(PROGRAM_ID))]
        result = await self.adapter.close(PROGRAM_ID)
        self.assertTrue(result.already_closed)
        self.assertIsNone(result.tx_ref)

    async def test_close_failure_raises(self) -> None:
        """Other close failures propagate."""
        self.run.side_effect = [failed("Error: RPC request timed out")]
        with self.assertRaises(DeploymentToolError):
            await self.adapter.close(PROGRAM_ID)

    async def test_estimate_rent_parses_quote(self) -> None:
        """The rent-exempt minimum is parsed as a decimal."""
        self.run.side_effect = [ok("Rent-exempt minimum: 0.00779088 SOL\n")]
        self.assertEqual(await self.adapter.estimate_rent(1000), Decimal("0.00779088"))
        self.run.assert_awaited_once_with(["solana", "rent", "1000", "--url", "devnet"])

    async def test_estimate_rent_rejects_out_of_range_without_tool_call(self) -> None:
        """Sizes outside (0, 10 MiB] never reach the tool."""
        for size in (0, -1, 10 * 1024 * 1024 + 1):
            with self.assertRaises(ValueError):
                await self.adapter.estimate_rent(size)
        self.run.assert_not_awaited()

    async def test_program_data_address(self) -> None:
        """The program data account is read from `program show`."""
        self.run.side_effect = [ok("Program Id: {0}\nProgramData Address: DataAcct123\n".format(PROGRAM_ID))]
        self.assertEqual(await self.adapter.program_data_address(PROGRAM_ID), "DataAcct123")


if __name__ == "__main__":
    unittest.main()
