"""Solana JSON-RPC client for the lending program's instructions and accounts."""

import asyncio
import json
import logging
import time
from typing import Any, List, Optional, Sequence, Tuple

import base58
from solana.rpc.api import Client
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.system_program import ID as SYSTEM_PROGRAM_ID
from solders.transaction import Transaction
from solders.transaction_status import TransactionConfirmationStatus

from deployer.common.protocol_layout import (
    BPF_LOADER_UPGRADEABLE_ID,
    LOAN_DISCRIMINATOR,
    LOAN_ID_OFFSET,
    LoanAccount,
    ProtocolConfigAccount,
    decode_loan,
    decode_protocol_config,
    encode_u64,
    find_admin_address,
    find_config_address,
    find_event_authority_address,
    find_vault_address,
    recover_loan_data,
    return_reclaimed_sol_data,
    set_deployed_program_data,
    transfer_authority_to_borrower_data,
)
from deployer.models.enums import LoanState
from deployer.models.exceptions import ProtocolTransactionError
from deployer.models.loans import OnChainLoan


logger = logging.getLogger(__name__)

SET_DEPLOYED_PROGRAM = "setDeployedProgram"
RECOVER_LOAN = "recoverLoan"
RETURN_RECLAIMED_SOL = "returnReclaimedSol"
TRANSFER_AUTHORITY_TO_BORROWER = "transferAuthorityToBorrower"

_SETTLED_STATUSES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def load_keypair(path: str) -> Keypair:
    """Load a keypair from a JSON array of 64 secret-key bytes."""
    with open(path, "r", encoding="utf-8") as handle:
        return Keypair.from_bytes(bytes(json.load(handle)))


def to_onchain_loan(account: LoanAccount) -> OnChainLoan:
    """Map a decoded loan account to the orchestrator's loan view."""
    return OnChainLoan(
        loan_id=str(account.loan_id),
        borrower=account.borrower,
        program_id=account.program_pubkey,
        principal=account.principal,
        duration=max(0, account.duration),
        start_timestamp=max(0, account.start_ts),
        state=LoanState.from_ordinal(account.state),
        reclaimed_amount=account.reclaimed_amount or 0,
    )


def _b58(data: bytes) -> str:
    return base58.b58encode(data).decode("ascii")


class ProtocolClient:
    """Build, sign and submit lending program instructions with the deployer identity.

    The signer acts as both protocol admin and deployer, which is how the
    program's `set_deployed_program`, `recover_loan`, `return_reclaimed_sol`
    and `transfer_authority_to_borrower` constraints are satisfied.
    """

    def __init__(
        self,
        rpc_url: str,
        program_id: str,
        signer: Keypair,
        commitment: str = "confirmed",
        tx_timeout_sec: float = 60.0,
        poll_interval_sec: float = 1.0,
        rpc_client: Optional[Any] = None,
    ) -> None:
        """Initialize the RPC client and derive the program's fixed addresses."""
        try:
            self._client = rpc_client if rpc_client is not None else Client(rpc_url, commitment=commitment)
            self._program_id = Pubkey.from_string(program_id)
            self._signer = signer
            self._commitment = commitment
            self._tx_timeout_sec = tx_timeout_sec
            self._poll_interval_sec = poll_interval_sec
            self._config_address = find_config_address(self._program_id)
            self._vault_address = find_vault_address(self._program_id)
            self._admin_address = find_admin_address(self._program_id)
            self._event_authority = find_event_authority_address(self._program_id)
            self._send_lock = asyncio.Lock()
            logger.info("Protocol client initialized program=%s signer=%s", program_id, signer.pubkey())
        except Exception:
            logger.exception("Failed to initialize protocol client.")
            raise

    # ── Instruction building ─────────────────────────────────────────────

    def _event_accounts(self) -> List[AccountMeta]:
        return [
            AccountMeta(self._event_authority, is_signer=False, is_writable=False),
            AccountMeta(self._program_id, is_signer=False, is_writable=False),
        ]

    def build_set_deployed_program(self, loan_address: Pubkey, loan_id: int, program_id: str) -> Instruction:
        accounts = [
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(self._config_address, is_signer=False, is_writable=True),
            AccountMeta(loan_address, is_signer=False, is_writable=True),
        ]
        data = set_deployed_program_data(loan_id, Pubkey.from_string(program_id))
        return Instruction(self._program_id, data, accounts + self._event_accounts())

    def build_recover_loan(self, loan_address: Pubkey, treasury: Pubkey) -> Instruction:
        accounts = [
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(self._config_address, is_signer=False, is_writable=True),
            AccountMeta(loan_address, is_signer=False, is_writable=True),
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(self._admin_address, is_signer=False, is_writable=True),
            AccountMeta(treasury, is_signer=False, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(self._program_id, recover_loan_data(), accounts + self._event_accounts())

    def build_return_reclaimed_sol(self, loan_address: Pubkey, amount: int) -> Instruction:
        accounts = [
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(self._config_address, is_signer=False, is_writable=False),
            AccountMeta(loan_address, is_signer=False, is_writable=True),
            AccountMeta(self._vault_address, is_signer=False, is_writable=True),
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=True),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        return Instruction(self._program_id, return_reclaimed_sol_data(amount), accounts + self._event_accounts())

    def build_transfer_authority(
        self,
        loan_address: Pubkey,
        loan_id: int,
        borrower: str,
        program_data: str,
    ) -> Instruction:
        accounts = [
            AccountMeta(self._signer.pubkey(), is_signer=True, is_writable=False),
            AccountMeta(self._config_address, is_signer=False, is_writable=False),
            AccountMeta(loan_address, is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(borrower), is_signer=False, is_writable=True),
            AccountMeta(Pubkey.from_string(program_data), is_signer=False, is_writable=True),
            AccountMeta(BPF_LOADER_UPGRADEABLE_ID, is_signer=False, is_writable=False),
            AccountMeta(SYSTEM_PROGRAM_ID, is_signer=False, is_writable=False),
        ]
        data = transfer_authority_to_borrower_data(loan_id)
        return Instruction(self._program_id, data, accounts + self._event_accounts())

    # ── Submission ───────────────────────────────────────────────────────

    def _fetch_status(self, signature: Signature) -> Any:
        response = self._client.get_signature_statuses([signature], search_transaction_history=True)
        return response.value[0]

    @staticmethod
    def _is_settled(status: Any) -> bool:
        return status is not None and (status.err is not None or status.confirmation_status in _SETTLED_STATUSES)

    def _send(self, name: str, instructions: Sequence[Instruction]) -> str:
        """Blocking sign-send-confirm for one transaction."""
        blockhash = self._client.get_latest_blockhash(commitment=self._commitment).value.blockhash
        tx = Transaction.new_signed_with_payer(list(instructions), self._signer.pubkey(), [self._signer], blockhash)
        signature = self._client.send_raw_transaction(
            bytes(tx),
            opts=TxOpts(skip_preflight=False, preflight_commitment=self._commitment),
        ).value

        deadline = time.monotonic() + self._tx_timeout_sec
        status = self._fetch_status(signature)
        while not self._is_settled(status) and time.monotonic() < deadline:
            time.sleep(self._poll_interval_sec)
            status = self._fetch_status(signature)

        if not self._is_settled(status):
            raise ProtocolTransactionError(
                "{0} not confirmed within {1}s signature={2}".format(name, self._tx_timeout_sec, signature)
            )
        if status.err is not None:
            raise ProtocolTransactionError("{0} failed signature={1} err={2}".format(name, signature, status.err))
        return str(signature)

    async def _transact(self, name: str, instructions: Sequence[Instruction]) -> str:
        """Submit a transaction; sends are serialized behind one signer."""
        async with self._send_lock:
            try:
                tx_ref = await asyncio.to_thread(self._send, name, instructions)
            except ProtocolTransactionError:
                logger.exception("Protocol instruction failed instruction=%s", name)
                raise
            except Exception as exc:
                logger.exception("Protocol instruction errored instruction=%s", name)
                raise ProtocolTransactionError("{0} failed: {1}".format(name, exc)) from exc
        logger.info("Protocol instruction confirmed instruction=%s tx_ref=%s", name, tx_ref)
        return tx_ref

    async def _require_loan(self, loan_id: str) -> Tuple[Pubkey, LoanAccount]:
        try:
            found = await asyncio.to_thread(self._find_loan_account, int(loan_id))
        except Exception as exc:
            logger.exception("Failed to read loan loan_id=%s", loan_id)
            raise ProtocolTransactionError("getLoan failed: {0}".format(exc)) from exc
        if found is None:
            raise ProtocolTransactionError("Loan account not found loan_id={0}".format(loan_id))
        return found

    async def record_deployed_program(self, loan_id: str, program_id: str) -> str:
        loan_address, _ = await self._require_loan(loan_id)
        try:
            instruction = self.build_set_deployed_program(loan_address, int(loan_id), program_id)
        except ValueError as exc:
            raise ProtocolTransactionError("Invalid program id {0}: {1}".format(program_id, exc)) from exc
        return await self._transact(SET_DEPLOYED_PROGRAM, [instruction])

    async def recover_loan(self, loan_id: str) -> str:
        loan_address, _ = await self._require_loan(loan_id)
        config = await self.get_protocol_config()
        instruction = self.build_recover_loan(loan_address, Pubkey.from_string(config.treasury))
        return await self._transact(RECOVER_LOAN, [instruction])

    async def return_reclaimed_funds(self, loan_id: str, amount: int) -> str:
        loan_address, _ = await self._require_loan(loan_id)
        instruction = self.build_return_reclaimed_sol(loan_address, int(amount))
        return await self._transact(RETURN_RECLAIMED_SOL, [instruction])

    async def transfer_authority_to_borrower(self, loan_id: str, borrower: str, program_data: str) -> str:
        loan_address, _ = await self._require_loan(loan_id)
        try:
            instruction = self.build_transfer_authority(loan_address, int(loan_id), borrower, program_data)
        except ValueError as exc:
            raise ProtocolTransactionError("Invalid authority transfer accounts: {0}".format(exc)) from exc
        return await self._transact(TRANSFER_AUTHORITY_TO_BORROWER, [instruction])

    # ── Reads ────────────────────────────────────────────────────────────

    def _find_loan_account(self, loan_id: int) -> Optional[Tuple[Pubkey, LoanAccount]]:
        response = self._client.get_program_accounts(
            self._program_id,
            commitment=self._commitment,
            encoding="base64",
            filters=[
                MemcmpOpts(offset=0, bytes=_b58(LOAN_DISCRIMINATOR)),
                MemcmpOpts(offset=LOAN_ID_OFFSET, bytes=_b58(encode_u64(loan_id))),
            ],
        )
        for keyed in response.value:
            return keyed.pubkey, decode_loan(bytes(keyed.account.data))
        return None

    def _read_loan(self, loan_id: int) -> Optional[OnChainLoan]:
        found = self._find_loan_account(loan_id)
        if found is None:
            return None
        return to_onchain_loan(found[1])

    def _read_all_loans(self) -> List[OnChainLoan]:
        response = self._client.get_program_accounts(
            self._program_id,
            commitment=self._commitment,
            encoding="base64",
            filters=[MemcmpOpts(offset=0, bytes=_b58(LOAN_DISCRIMINATOR))],
        )
        loans = [to_onchain_loan(decode_loan(bytes(keyed.account.data))) for keyed in response.value]
        return sorted(loans, key=lambda loan: int(loan.loan_id))

    def _read_protocol_config(self) -> ProtocolConfigAccount:
        response = self._client.get_account_info(self._config_address, commitment=self._commitment)
        if response.value is None:
            raise ProtocolTransactionError("Protocol config account not found")
        return decode_protocol_config(bytes(response.value.data))

    async def get_loan(self, loan_id: str) -> Optional[OnChainLoan]:
        """Return the on-chain loan account, or None if it does not exist."""
        try:
            return await asyncio.to_thread(self._read_loan, int(loan_id))
        except Exception as exc:
            logger.exception("Failed to read loan loan_id=%s", loan_id)
            raise ProtocolTransactionError("getLoan failed: {0}".format(exc)) from exc

    async def get_protocol_config(self) -> ProtocolConfigAccount:
        try:
            return await asyncio.to_thread(self._read_protocol_config)
        except ProtocolTransactionError:
            raise
        except Exception as exc:
            logger.exception("Failed to read protocol config.")
            raise ProtocolTransactionError("protocolConfig failed: {0}".format(exc)) from exc

    async def loan_counter(self) -> int:
        return (await self.get_protocol_config()).loan_counter

    async def list_loans(self) -> List[OnChainLoan]:
        """Enumerate every loan account the program owns."""
        try:
            return await asyncio.to_thread(self._read_all_loans)
        except Exception as exc:
            logger.exception("Failed to enumerate loan accounts.")
            raise ProtocolTransactionError("listLoans failed: {0}".format(exc)) from exc

    async def wait_for_confirmation(self, tx_ref: str, attempts: int = 5, delay_sec: float = 2.0) -> bool:
        """Poll a transaction signature; True once it is confirmed without error."""
        try:
            signature = Signature.from_string(tx_ref)
        except Exception:
            logger.warning("Malformed transaction signature tx_ref=%s", tx_ref)
            return False

        for attempt in range(1, attempts + 1):
            try:
                status = await asyncio.to_thread(self._fetch_status, signature)
                if self._is_settled(status):
                    return status.err is None
                logger.info("Transaction not found yet tx_ref=%s attempt=%d/%d", tx_ref, attempt, attempts)
            except Exception:
                logger.warning("Error fetching transaction tx_ref=%s attempt=%d/%d", tx_ref, attempt, attempts)
            if attempt < attempts:
                await asyncio.sleep(delay_sec)
        return False
