"""Lending program account layouts, PDA seeds and instruction encoding.

Every layout here MUST match the program's Anchor structs byte for byte.
Accounts start with an 8-byte discriminator, then borsh-encoded fields:

    pub struct ProtocolConfig {
        admin: Pubkey, treasury: Pubkey, deployer: Pubkey,
        admin_fee_split_bps: u16, default_interest_rate_bps: u16, default_admin_fee_bps: u16,
        total_deposits: u64, total_loans_outstanding: u64, total_yield_distributed: u64,
        loan_counter: u64, is_paused: bool, bump: u8,
    }

    pub struct Loan {
        loan_id: u64, borrower: Pubkey, program_pubkey: Pubkey, principal: u64,
        duration: i64, interest_rate_bps: u16, admin_fee_bps: u16, admin_fee_paid: u64,
        start_ts: i64, state: LoanState, authority_pda: Pubkey,
        repaid_ts: Option<i64>, recovered_ts: Option<i64>, interest_paid: Option<u64>,
        reclaimed_amount: Option<u64>, reclaimed_ts: Option<i64>, bump: u8,
    }
"""

from __future__ import annotations

from dataclasses import dataclass
import hashlib
import struct
from typing import Optional

from solders.pubkey import Pubkey

# ---------------------------------------------------------------------------
# Well-known programs and PDA seeds
# ---------------------------------------------------------------------------
BPF_LOADER_UPGRADEABLE_ID = Pubkey.from_string("BPFLoaderUpgradeab1e11111111111111111111111")

PROTOCOL_CONFIG_SEED = b"config"
VAULT_SEED = b"vault"
ADMIN_SEED = b"admin"
EVENT_AUTHORITY_SEED = b"__event_authority"

# ---------------------------------------------------------------------------
# Byte offsets
# ---------------------------------------------------------------------------
DISCRIMINATOR_SIZE = 8
PUBKEY_SIZE = 32
LOAN_ID_OFFSET = DISCRIMINATOR_SIZE
LOAN_COUNTER_OFFSET = DISCRIMINATOR_SIZE + 3 * PUBKEY_SIZE + 3 * 2 + 3 * 8


def account_discriminator(name: str) -> bytes:
    """Anchor account discriminator: first 8 bytes of sha256("account:<Name>")."""
    return hashlib.sha256("account:{0}".format(name).encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]


def instruction_discriminator(name: str) -> bytes:
    """Anchor instruction discriminator: first 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256("global:{0}".format(name).encode("utf-8")).digest()[:DISCRIMINATOR_SIZE]


LOAN_DISCRIMINATOR = account_discriminator("Loan")
PROTOCOL_CONFIG_DISCRIMINATOR = account_discriminator("ProtocolConfig")


def encode_u64(value: int) -> bytes:
    return struct.pack("<Q", value)


# ---------------------------------------------------------------------------
# Program-derived addresses
# ---------------------------------------------------------------------------

def find_config_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([PROTOCOL_CONFIG_SEED], program_id)[0]


def find_vault_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([VAULT_SEED], program_id)[0]


def find_admin_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([ADMIN_SEED], program_id)[0]


def find_event_authority_address(program_id: Pubkey) -> Pubkey:
    return Pubkey.find_program_address([EVENT_AUTHORITY_SEED], program_id)[0]


# ---------------------------------------------------------------------------
# Instruction data
# ---------------------------------------------------------------------------

def set_deployed_program_data(loan_id: int, program_pubkey: Pubkey) -> bytes:
    return instruction_discriminator("set_deployed_program") + encode_u64(loan_id) + bytes(program_pubkey)


def recover_loan_data() -> bytes:
    return instruction_discriminator("recover_loan")


def return_reclaimed_sol_data(amount: int) -> bytes:
    return instruction_discriminator("return_reclaimed_sol") + encode_u64(amount)


def transfer_authority_to_borrower_data(loan_id: int) -> bytes:
    return instruction_discriminator("transfer_authority_to_borrower") + encode_u64(loan_id)


# ---------------------------------------------------------------------------
# Account decoding
# ---------------------------------------------------------------------------

class _BorshReader:
    """Sequential little-endian reader over account data."""

    def __init__(self, data: bytes, offset: int = 0) -> None:
        self._data = data
        self._offset = offset

    def _take(self, size: int) -> bytes:
        end = self._offset + size
        if end > len(self._data):
            raise ValueError("Account data truncated at offset={0} size={1}".format(self._offset, size))
        chunk = self._data[self._offset:end]
        self._offset = end
        return chunk

    def u8(self) -> int:
        return self._take(1)[0]

    def u16(self) -> int:
        return struct.unpack("<H", self._take(2))[0]

    def u64(self) -> int:
        return struct.unpack("<Q", self._take(8))[0]

    def i64(self) -> int:
        return struct.unpack("<q", self._take(8))[0]

    def boolean(self) -> bool:
        return self.u8() != 0

    def pubkey(self) -> str:
        return str(Pubkey.from_bytes(self._take(PUBKEY_SIZE)))

    def option_u64(self) -> Optional[int]:
        return self.u64() if self.u8() else None

    def option_i64(self) -> Optional[int]:
        return self.i64() if self.u8() else None


def _check_discriminator(data: bytes, expected: bytes, name: str) -> None:
    if data[:DISCRIMINATOR_SIZE] != expected:
        raise ValueError("Account is not a {0}".format(name))


@dataclass(frozen=True)
class LoanAccount:
    """Decoded `Loan` account."""

    loan_id: int
    borrower: str
    program_pubkey: str
    principal: int
    duration: int
    interest_rate_bps: int
    admin_fee_bps: int
    admin_fee_paid: int
    start_ts: int
    state: int
    authority_pda: str
    repaid_ts: Optional[int]
    recovered_ts: Optional[int]
    interest_paid: Optional[int]
    reclaimed_amount: Optional[int]
    reclaimed_ts: Optional[int]


@dataclass(frozen=True)
class ProtocolConfigAccount:
    """Decoded `ProtocolConfig` account."""

    admin: str
    treasury: str
    deployer: str
    admin_fee_split_bps: int
    default_interest_rate_bps: int
    default_admin_fee_bps: int
    total_deposits: int
    total_loans_outstanding: int
    total_yield_distributed: int
    loan_counter: int
    is_paused: bool


def decode_loan(data: bytes) -> LoanAccount:
    """Decode raw `Loan` account data.

    Raises:
        ValueError: If the discriminator does not match or data is truncated.
    """
    _check_discriminator(data, LOAN_DISCRIMINATOR, "Loan")
    reader = _BorshReader(data, DISCRIMINATOR_SIZE)
    return LoanAccount(
        loan_id=reader.u64(),
        borrower=reader.pubkey(),
        program_pubkey=reader.pubkey(),
        principal=reader.u64(),
        duration=reader.i64(),
        interest_rate_bps=reader.u16(),
        admin_fee_bps=reader.u16(),
        admin_fee_paid=reader.u64(),
        start_ts=reader.i64(),
        state=reader.u8(),
        authority_pda=reader.pubkey(),
        repaid_ts=reader.option_i64(),
        recovered_ts=reader.option_i64(),
        interest_paid=reader.option_u64(),
        reclaimed_amount=reader.option_u64(),
        reclaimed_ts=reader.option_i64(),
    )


def decode_protocol_config(data: bytes) -> ProtocolConfigAccount:
    """Decode raw `ProtocolConfig` account data.

    Raises:
        ValueError: If the discriminator does not match or data is truncated.
    """
    _check_discriminator(data, PROTOCOL_CONFIG_DISCRIMINATOR, "ProtocolConfig")
    reader = _BorshReader(data, DISCRIMINATOR_SIZE)
    return ProtocolConfigAccount(
        admin=reader.pubkey(),
        treasury=reader.pubkey(),
        deployer=reader.pubkey(),
        admin_fee_split_bps=reader.u16(),
        default_interest_rate_bps=reader.u16(),
        default_admin_fee_bps=reader.u16(),
        total_deposits=reader.u64(),
        total_loans_outstanding=reader.u64(),
        total_yield_distributed=reader.u64(),
        loan_counter=reader.u64(),
        is_paused=reader.boolean(),
    )
