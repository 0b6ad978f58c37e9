"""
Escrow Orchestrator Core: Address Deriver

Deterministic program-derived addresses for escrow instances, singleton
registries and associated token accounts. Pure functions, no I/O.

Seed classes:
- "state" + seed (u64, little-endian, 8 bytes)  -> one escrow instance
- "admin_list" / "vendor_list" / "escrow_config" -> singleton registries
"""

import logging
import secrets
from typing import Callable, Iterable, Optional, Sequence, Set, Tuple, Union

from solders.pubkey import Pubkey

logger = logging.getLogger(__name__)

ESCROW_STATE_SEED = b"state"
ADMIN_LIST_SEED = b"admin_list"
VENDOR_LIST_SEED = b"vendor_list"
ESCROW_CONFIG_SEED = b"escrow_config"

REGISTRY_SEEDS = {
    "admin_list": ADMIN_LIST_SEED,
    "vendor_list": VENDOR_LIST_SEED,
    "escrow_config": ESCROW_CONFIG_SEED,
}

TOKEN_PROGRAM_ID = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")
ASSOCIATED_TOKEN_PROGRAM_ID = Pubkey.from_string("ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL")
SYSTEM_PROGRAM_ID = Pubkey.from_string("11111111111111111111111111111111")
RENT_SYSVAR_ID = Pubkey.from_string("SysvarRent111111111111111111111111111111111")
WRAPPED_NATIVE_MINT = Pubkey.from_string("So11111111111111111111111111111111111111112")

MAX_SEED_LENGTH = 32
MAX_SEEDS = 16
U64_MAX = 2 ** 64 - 1

PubkeyLike = Union[Pubkey, str]


def as_pubkey(value: PubkeyLike) -> Pubkey:
    """Coerce a base58 string or Pubkey into a Pubkey."""
    if isinstance(value, Pubkey):
        return value
    if isinstance(value, str):
        return Pubkey.from_string(value)
    raise TypeError(f"Expected Pubkey or base58 string, got {type(value).__name__}")


def escrow_seed_bytes(seed: int) -> bytes:
    """
    Serialize an escrow seed as 8 little-endian bytes.

    Raises:
        TypeError: seed is not an int (bool included)
        ValueError: seed does not fit in an unsigned 64-bit integer
    """
    if isinstance(seed, bool) or not isinstance(seed, int):
        raise TypeError(f"Escrow seed must be an int, got {type(seed).__name__}")
    if seed < 0 or seed > U64_MAX:
        raise ValueError(f"Escrow seed {seed} does not fit in 8 bytes (0..{U64_MAX})")
    return seed.to_bytes(8, "little")


def derive_address(seeds: Sequence[bytes], program_id: PubkeyLike) -> Tuple[Pubkey, int]:
    """
    Derive the program address and bump for an ordered seed sequence.

    Args:
        seeds: Ordered byte-string seeds (each <= 32 bytes, at most 16)
        program_id: Namespace the address is derived under

    Returns:
        (address, bump)
    """
    if len(seeds) > MAX_SEEDS:
        raise ValueError(f"At most {MAX_SEEDS} seeds allowed, got {len(seeds)}")
    for idx, seed in enumerate(seeds):
        if not isinstance(seed, (bytes, bytearray)):
            raise TypeError(f"Seed #{idx} must be bytes, got {type(seed).__name__}")
        if len(seed) > MAX_SEED_LENGTH:
            raise ValueError(f"Seed #{idx} is {len(seed)} bytes (max {MAX_SEED_LENGTH})")
    return Pubkey.find_program_address([bytes(s) for s in seeds], as_pubkey(program_id))


def escrow_address(seed: int, program_id: PubkeyLike) -> Pubkey:
    """Address of the escrow state account for ``seed``."""
    address, _ = derive_address([ESCROW_STATE_SEED, escrow_seed_bytes(seed)], program_id)
    return address


def registry_address(name: str, program_id: PubkeyLike) -> Pubkey:
    """Address of a singleton registry ("admin_list", "vendor_list", "escrow_config")."""
    try:
        seed = REGISTRY_SEEDS[name]
    except KeyError:
        raise ValueError(f"Unknown registry {name!r}; expected one of {sorted(REGISTRY_SEEDS)}")
    address, _ = derive_address([seed], program_id)
    return address


def associated_token_address(mint: PubkeyLike, owner: PubkeyLike) -> Pubkey:
    """
    Associated token account for (owner, mint).

    Works for off-curve owners such as an escrow address.
    """
    address, _ = Pubkey.find_program_address(
        [bytes(as_pubkey(owner)), bytes(TOKEN_PROGRAM_ID), bytes(as_pubkey(mint))],
        ASSOCIATED_TOKEN_PROGRAM_ID,
    )
    return address


class SeedAllocator:
    """
    Collision-resistant escrow seed source.

    Draws random 64-bit nonces and rejects any seed already known locally or
    whose derived escrow address already has an account on the ledger.
    """

    def __init__(
        self,
        program_id: PubkeyLike,
        known_seeds: Optional[Iterable[int]] = None,
        account_exists: Optional[Callable[[Pubkey], bool]] = None,
        max_attempts: int = 8,
        randbits: Callable[[int], int] = secrets.randbits,
    ):
        self.program_id = as_pubkey(program_id)
        self.known_seeds: Set[int] = set(known_seeds or [])
        self.account_exists = account_exists
        self.max_attempts = max_attempts
        self._randbits = randbits

    def next_seed(self) -> int:
        for attempt in range(1, self.max_attempts + 1):
            candidate = self._randbits(64)
            if candidate == 0 or candidate in self.known_seeds:
                logger.debug(f"Seed candidate rejected locally (attempt {attempt})")
                continue
            if self.account_exists is not None:
                address = escrow_address(candidate, self.program_id)
                if self.account_exists(address):
                    logger.warning(f"Seed {candidate} collides with existing escrow {address}")
                    self.known_seeds.add(candidate)
                    continue
            self.known_seeds.add(candidate)
            return candidate
        raise RuntimeError(f"Could not allocate a unique escrow seed after {self.max_attempts} attempts")
