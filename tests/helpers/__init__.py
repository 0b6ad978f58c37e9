"""Test helpers for the escrow orchestrator test suite"""

from tests.helpers.ledger_stubs import (
    PROGRAM_ID,
    FakeLedger,
    ManualClock,
    encode_escrow_account,
    new_pubkey,
)

__all__ = [
    "PROGRAM_ID",
    "FakeLedger",
    "ManualClock",
    "encode_escrow_account",
    "new_pubkey",
]
