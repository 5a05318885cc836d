"""Tests for the lending program client against a scripted RPC endpoint."""

import struct
from types import SimpleNamespace
from typing import List, Optional, Tuple
import unittest

import base58
from solders.hash import Hash
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction_status import TransactionConfirmationStatus

from deployer.common.protocol_layout import (
    BPF_LOADER_UPGRADEABLE_ID,
    LOAN_DISCRIMINATOR,
    PROTOCOL_CONFIG_DISCRIMINATOR,
    decode_loan,
    decode_protocol_config,
    find_config_address,
    find_event_authority_address,
    instruction_discriminator,
)
from deployer.models.enums import LoanState
from deployer.models.exceptions import ProtocolTransactionError
from deployer.services.protocol_client import ProtocolClient


PROGRAM_ID = "4dWBvsjopo5Z145Xmse3Lx41G1GKpMyWMLc6p4a52T4N"
BORROWER = Pubkey.new_unique()
DEPLOYED = Pubkey.new_unique()
TREASURY = Pubkey.new_unique()
SIGNATURE = Signature.default()


def loan_bytes(
    loan_id: int,
    program: Pubkey = Pubkey.default(),
    state: int = 0,
    principal: int = 1_000_000_000,
    duration: int = 86_400,
    start_ts: int = 1_700_000_000,
    reclaimed: Optional[int] = None,
) -> bytes:
    """Encode a `Loan` account the way the program lays it out."""
    reclaimed_field = b"\x01" + struct.pack("<Q", reclaimed) if reclaimed is not None else b"\x00"
    return (
        LOAN_DISCRIMINATOR
        + struct.pack("<Q", loan_id)
        + bytes(BORROWER)
        + bytes(program)
        + struct.pack("<QqHHQq", principal, duration, 500, 100, 0, start_ts)
        + bytes([state])
        + bytes(Pubkey.default())
        + b"\x00\x00\x00"
        + reclaimed_field
        + b"\x00"
        + bytes([254])
    )


def config_bytes(loan_counter: int = 3, paused: bool = False) -> bytes:
    """Encode a `ProtocolConfig` account."""
    return (
        PROTOCOL_CONFIG_DISCRIMINATOR
        + bytes(Pubkey.new_unique())
        + bytes(TREASURY)
        + bytes(Pubkey.new_unique())
        + struct.pack("<HHHQQQQ?B", 5000, 500, 100, 10, 20, 30, loan_counter, paused, 255)
    )


def status(err: Optional[str] = None, confirmation=TransactionConfirmationStatus.Confirmed) -> SimpleNamespace:
    return SimpleNamespace(err=err, confirmation_status=confirmation)


class FakeRpc:
    """Answers the handful of JSON-RPC calls the client makes."""

    def __init__(self) -> None:
        self.accounts: List[Tuple[Pubkey, bytes]] = []
        self.config: Optional[bytes] = config_bytes()
        self.statuses: list = [status()]
        self.sent: List[bytes] = []

    def add_loan(self, data: bytes) -> Pubkey:
        address = Pubkey.new_unique()
        self.accounts.append((address, data))
        return address

    def get_latest_blockhash(self, commitment=None):
        return SimpleNamespace(value=SimpleNamespace(blockhash=Hash.default()))

    def send_raw_transaction(self, txn, opts=None):
        self.sent.append(txn)
        return SimpleNamespace(value=SIGNATURE)

    def get_signature_statuses(self, signatures, search_transaction_history=False):
        current = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return SimpleNamespace(value=[current])

    def get_program_accounts(self, pubkey, commitment=None, encoding=None, filters=None):
        matched = []
        for address, data in self.accounts:
            if all(
                data[f.offset:f.offset + len(base58.b58decode(f.bytes))] == base58.b58decode(f.bytes)
                for f in filters or []
            ):
                matched.append(SimpleNamespace(pubkey=address, account=SimpleNamespace(data=data)))
        return SimpleNamespace(value=matched)

    def get_account_info(self, pubkey, commitment=None):
        if self.config is None:
            return SimpleNamespace(value=None)
        return SimpleNamespace(value=SimpleNamespace(data=self.config))


class LayoutTests(unittest.TestCase):
    """Decode account data and encode instruction data."""

    def test_decode_loan_reads_every_field(self) -> None:
        """Option fields and the program pubkey are decoded in order."""
        account = decode_loan(loan_bytes(7, program=DEPLOYED, state=2, reclaimed=4200))
        self.assertEqual(account.loan_id, 7)
        self.assertEqual(account.borrower, str(BORROWER))
        self.assertEqual(account.program_pubkey, str(DEPLOYED))
        self.assertEqual(account.interest_rate_bps, 500)
        self.assertEqual(account.state, 2)
        self.assertIsNone(account.repaid_ts)
        self.assertEqual(account.reclaimed_amount, 4200)

    def test_decode_rejects_other_accounts(self) -> None:
        """A config account is not a loan and vice versa."""
        with self.assertRaises(ValueError):
            decode_loan(config_bytes())
        with self.assertRaises(ValueError):
            decode_protocol_config(loan_bytes(1))

    def test_truncated_account_raises(self) -> None:
        """Short data is reported instead of decoding garbage."""
        with self.assertRaises(ValueError):
            decode_loan(loan_bytes(1)[:60])

    def test_decode_protocol_config(self) -> None:
        """Treasury, counter and pause flag come from fixed offsets."""
        config = decode_protocol_config(config_bytes(loan_counter=11, paused=True))
        self.assertEqual(config.treasury, str(TREASURY))
        self.assertEqual(config.loan_counter, 11)
        self.assertTrue(config.is_paused)


class ProtocolClientTests(unittest.IsolatedAsyncioTestCase):
    """Instruction building, submission and reads."""

    def setUp(self) -> None:
        self.rpc = FakeRpc()
        self.signer = Keypair()
        self.client = ProtocolClient(
            rpc_url="http://127.0.0.1:8899",
            program_id=PROGRAM_ID,
            signer=self.signer,
            tx_timeout_sec=1.0,
            poll_interval_sec=0,
            rpc_client=self.rpc,
        )

    async def test_get_loan_maps_account_to_loan_view(self) -> None:
        """Ordinal state, unset program and missing reclaim amount are normalized."""
        self.rpc.add_loan(loan_bytes(3, state=3))
        loan = await self.client.get_loan("3")
        self.assertEqual(loan.loan_id, "3")
        self.assertEqual(loan.borrower, str(BORROWER))
        self.assertIsNone(loan.program_id)
        self.assertEqual(loan.state, LoanState.PENDING)
        self.assertEqual(loan.reclaimed_amount, 0)
        self.assertEqual(loan.expires_at, 1_700_000_000 + 86_400)

    async def test_get_loan_with_recorded_program(self) -> None:
        """A recovered loan keeps its program id and reclaimed lamports."""
        self.rpc.add_loan(loan_bytes(4, program=DEPLOYED, state=2, reclaimed=900))
        loan = await self.client.get_loan("4")
        self.assertEqual(loan.program_id, str(DEPLOYED))
        self.assertEqual(loan.state, LoanState.RECOVERED)
        self.assertEqual(loan.reclaimed_amount, 900)

    async def test_get_loan_filters_by_loan_id(self) -> None:
        """Only the account whose id matches is returned; unknown ids are None."""
        self.rpc.add_loan(loan_bytes(1))
        self.rpc.add_loan(loan_bytes(2, program=DEPLOYED))
        self.assertEqual((await self.client.get_loan("2")).program_id, str(DEPLOYED))
        self.assertIsNone(await self.client.get_loan("9"))

    async def test_negative_duration_is_clamped(self) -> None:
        """Malformed signed fields do not break the loan view."""
        self.rpc.add_loan(loan_bytes(5, duration=-10))
        self.assertEqual((await self.client.get_loan("5")).duration, 0)

    async def test_list_loans_sorted_by_id(self) -> None:
        self.rpc.add_loan(loan_bytes(8))
        self.rpc.add_loan(loan_bytes(2))
        self.assertEqual([loan.loan_id for loan in await self.client.list_loans()], ["2", "8"])

    async def test_loan_counter_and_missing_config(self) -> None:
        """The counter is read from the config account, which must exist."""
        self.assertEqual(await self.client.loan_counter(), 3)
        self.rpc.config = None
        with self.assertRaises(ProtocolTransactionError):
            await self.client.get_protocol_config()

    async def test_record_deployed_program_confirms(self) -> None:
        """A confirmed transaction returns its signature."""
        self.rpc.add_loan(loan_bytes(6))
        tx_ref = await self.client.record_deployed_program("6", str(DEPLOYED))
        self.assertEqual(tx_ref, str(SIGNATURE))
        self.assertEqual(len(self.rpc.sent), 1)

    async def test_failed_transaction_raises(self) -> None:
        """A landed transaction with an error is a failure, not a success."""
        self.rpc.add_loan(loan_bytes(6, state=0))
        self.rpc.statuses = [status(err="InstructionError(0, Custom(6003))")]
        with self.assertRaises(ProtocolTransactionError) as ctx:
            await self.client.recover_loan("6")
        self.assertIn("recoverLoan failed", str(ctx.exception))
        self.assertIn("6003", str(ctx.exception))

    async def test_unconfirmed_transaction_times_out(self) -> None:
        """A transaction that never lands is reported after the timeout."""
        self.client._tx_timeout_sec = 0
        self.rpc.add_loan(loan_bytes(6))
        self.rpc.statuses = [None]
        with self.assertRaises(ProtocolTransactionError) as ctx:
            await self.client.return_reclaimed_funds("6", 100)
        self.assertIn("not confirmed", str(ctx.exception))

    async def test_processed_status_keeps_polling(self) -> None:
        """A processed-only status is not final; the later confirmed one is."""
        self.rpc.add_loan(loan_bytes(6))
        self.rpc.statuses = [status(confirmation=TransactionConfirmationStatus.Processed), status()]
        self.assertEqual(await self.client.record_deployed_program("6", str(DEPLOYED)), str(SIGNATURE))

    async def test_missing_loan_is_not_sent(self) -> None:
        """Instructions for unknown loans never reach the RPC endpoint."""
        with self.assertRaises(ProtocolTransactionError):
            await self.client.record_deployed_program("42", str(DEPLOYED))
        self.assertEqual(self.rpc.sent, [])

    async def test_invalid_program_id_is_protocol_error(self) -> None:
        self.rpc.add_loan(loan_bytes(6))
        with self.assertRaises(ProtocolTransactionError):
            await self.client.record_deployed_program("6", "not-base58!")
        self.assertEqual(self.rpc.sent, [])

    async def test_wait_for_confirmation(self) -> None:
        """Missing then confirmed is True; an errored or malformed signature is False."""
        self.rpc.statuses = [None, status()]
        self.assertTrue(await self.client.wait_for_confirmation(str(SIGNATURE), attempts=3, delay_sec=0))
        self.rpc.statuses = [status(err="boom")]
        self.assertFalse(await self.client.wait_for_confirmation(str(SIGNATURE), attempts=2, delay_sec=0))
        self.assertFalse(await self.client.wait_for_confirmation("sig-unknown", attempts=1, delay_sec=0))


class InstructionBuildTests(unittest.TestCase):
    """Account order and data for each lending program instruction."""

    def setUp(self) -> None:
        self.signer = Keypair()
        self.client = ProtocolClient(
            rpc_url="http://127.0.0.1:8899",
            program_id=PROGRAM_ID,
            signer=self.signer,
            rpc_client=FakeRpc(),
        )
        self.program = Pubkey.from_string(PROGRAM_ID)
        self.loan_address = Pubkey.new_unique()

    def assert_event_accounts(self, accounts) -> None:
        self.assertEqual(accounts[-2].pubkey, find_event_authority_address(self.program))
        self.assertEqual(accounts[-1].pubkey, self.program)

    def test_set_deployed_program(self) -> None:
        ix = self.client.build_set_deployed_program(self.loan_address, 7, str(DEPLOYED))
        self.assertEqual(ix.program_id, self.program)
        self.assertEqual(
            bytes(ix.data),
            instruction_discriminator("set_deployed_program") + struct.pack("<Q", 7) + bytes(DEPLOYED),
        )
        self.assertEqual(
            [meta.pubkey for meta in ix.accounts[:3]],
            [self.signer.pubkey(), find_config_address(self.program), self.loan_address],
        )
        self.assertTrue(ix.accounts[0].is_signer)
        self.assert_event_accounts(ix.accounts)

    def test_recover_loan_pays_treasury(self) -> None:
        ix = self.client.build_recover_loan(self.loan_address, TREASURY)
        self.assertEqual(bytes(ix.data), instruction_discriminator("recover_loan"))
        self.assertEqual(ix.accounts[5].pubkey, TREASURY)
        self.assertTrue(ix.accounts[5].is_writable)
        self.assertEqual(ix.accounts[6].pubkey, SYSTEM_PROGRAM_ID)
        self.assert_event_accounts(ix.accounts)

    def test_return_reclaimed_sol_amount(self) -> None:
        ix = self.client.build_return_reclaimed_sol(self.loan_address, 5000)
        self.assertEqual(bytes(ix.data)[8:], struct.pack("<Q", 5000))
        self.assertTrue(ix.accounts[4].is_signer)
        self.assertTrue(ix.accounts[4].is_writable)
        self.assert_event_accounts(ix.accounts)

    def test_transfer_authority_accounts(self) -> None:
        program_data = Pubkey.new_unique()
        ix = self.client.build_transfer_authority(self.loan_address, 7, str(BORROWER), str(program_data))
        self.assertEqual(bytes(ix.data)[8:], struct.pack("<Q", 7))
        self.assertEqual(
            [meta.pubkey for meta in ix.accounts[3:6]],
            [BORROWER, program_data, BPF_LOADER_UPGRADEABLE_ID],
        )
        self.assert_event_accounts(ix.accounts)


if __name__ == "__main__":
    unittest.main()
