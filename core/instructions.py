"""
Escrow Orchestrator Core: Instruction encoding

Plain instruction descriptions produced by the transaction builder, plus
their conversion to solders ``Instruction`` objects. Escrow program
instructions use the Anchor wire layout: 8-byte discriminator
(sha256("global:<name>")[:8]) followed by little-endian arguments.
"""

import hashlib
import struct
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple

from solders.instruction import AccountMeta, Instruction
from solders.pubkey import Pubkey

from core.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    as_pubkey,
)

# SPL token instruction index for SyncNative
SYNC_NATIVE_INDEX = 17
# System program instruction index for Transfer
SYSTEM_TRANSFER_INDEX = 2


@dataclass(frozen=True)
class AccountRef:
    """One account slot in an instruction."""
    name: str
    pubkey: Pubkey
    is_signer: bool = False
    is_writable: bool = False

    def to_meta(self) -> AccountMeta:
        return AccountMeta(pubkey=self.pubkey, is_signer=self.is_signer, is_writable=self.is_writable)


@dataclass
class InstructionSpec:
    """
    Instruction description.

    ``creates`` lists accounts this instruction brings into existence; the
    builder uses it to enforce create-before-use ordering.
    """
    name: str
    program_id: Pubkey
    accounts: List[AccountRef] = field(default_factory=list)
    args: List[Tuple[str, Any]] = field(default_factory=list)
    creates: Tuple[Pubkey, ...] = ()
    raw_data: Optional[bytes] = None

    def account(self, name: str) -> Pubkey:
        for ref in self.accounts:
            if ref.name == name:
                return ref.pubkey
        raise KeyError(f"Instruction {self.name} has no account named {name!r}")

    def touched(self) -> List[Pubkey]:
        return [ref.pubkey for ref in self.accounts]

    def data(self) -> bytes:
        if self.raw_data is not None:
            return self.raw_data
        return anchor_discriminator(self.name) + encode_args(self.args)

    def to_solders(self) -> Instruction:
        return Instruction(
            program_id=self.program_id,
            data=self.data(),
            accounts=[ref.to_meta() for ref in self.accounts],
        )

    def describe(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "program_id": str(self.program_id),
            "accounts": {ref.name: str(ref.pubkey) for ref in self.accounts},
            "args": {k: (str(v) if isinstance(v, Pubkey) else v[1] if isinstance(v, tuple) else v)
                     for k, v in self.args},
        }


def anchor_discriminator(name: str) -> bytes:
    """First 8 bytes of sha256("global:<name>")."""
    return hashlib.sha256(f"global:{name}".encode("utf-8")).digest()[:8]


def encode_args(args: Sequence[Tuple[str, Any]]) -> bytes:
    """
    Encode arguments in declaration order.

    Each arg value is either a Pubkey, a str (length-prefixed u32 + utf-8),
    or a (type, value) tuple with type in {"u8", "u32", "u64"}.
    """
    out = bytearray()
    for name, value in args:
        if isinstance(value, Pubkey):
            out += bytes(value)
        elif isinstance(value, str):
            encoded = value.encode("utf-8")
            out += struct.pack("<I", len(encoded)) + encoded
        elif isinstance(value, tuple) and len(value) == 2:
            kind, number = value
            fmt = {"u8": "<B", "u32": "<I", "u64": "<Q"}.get(kind)
            if fmt is None:
                raise ValueError(f"Unsupported integer type {kind!r} for arg {name}")
            try:
                out += struct.pack(fmt, number)
            except struct.error as e:
                raise ValueError(f"Arg {name}={number} does not fit {kind}: {e}")
        else:
            raise TypeError(f"Cannot encode arg {name} of type {type(value).__name__}")
    return bytes(out)


def u64(value: int) -> Tuple[str, int]:
    return ("u64", value)


def create_associated_account(payer: Pubkey, ata: Pubkey, owner: Pubkey, mint: Pubkey) -> InstructionSpec:
    """Associated token account creation (idempotent variant)."""
    return InstructionSpec(
        name="create_associated_token_account",
        program_id=ASSOCIATED_TOKEN_PROGRAM_ID,
        accounts=[
            AccountRef("payer", payer, is_signer=True, is_writable=True),
            AccountRef("associated_token", ata, is_writable=True),
            AccountRef("owner", owner),
            AccountRef("mint", mint),
            AccountRef("system_program", SYSTEM_PROGRAM_ID),
            AccountRef("token_program", TOKEN_PROGRAM_ID),
        ],
        creates=(ata,),
        raw_data=bytes([1]),
    )


def system_transfer(source: Pubkey, destination: Pubkey, lamports: int) -> InstructionSpec:
    return InstructionSpec(
        name="system_transfer",
        program_id=SYSTEM_PROGRAM_ID,
        accounts=[
            AccountRef("from", source, is_signer=True, is_writable=True),
            AccountRef("to", destination, is_writable=True),
        ],
        args=[("lamports", u64(lamports))],
        raw_data=struct.pack("<IQ", SYSTEM_TRANSFER_INDEX, lamports),
    )


def sync_native(account: Pubkey) -> InstructionSpec:
    return InstructionSpec(
        name="sync_native",
        program_id=TOKEN_PROGRAM_ID,
        accounts=[AccountRef("account", account, is_writable=True)],
        raw_data=bytes([SYNC_NATIVE_INDEX]),
    )


def program_instruction(
    name: str,
    program_id,
    accounts: List[AccountRef],
    args: Optional[List[Tuple[str, Any]]] = None,
) -> InstructionSpec:
    """Escrow program instruction with Anchor encoding."""
    return InstructionSpec(
        name=name,
        program_id=as_pubkey(program_id),
        accounts=accounts,
        args=list(args or []),
    )
