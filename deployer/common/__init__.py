"""Shared lending program layouts."""

from .protocol_layout import (
    LoanAccount,
    ProtocolConfigAccount,
    decode_loan,
    decode_protocol_config,
)

__all__ = [
    "LoanAccount",
    "ProtocolConfigAccount",
    "decode_loan",
    "decode_protocol_config",
]
