"""
Escrow Orchestrator Core: Escrow Lifecycle Machine

Explicit escrow lifecycle with transition validation.

States: PENDING → LISTED → MATCHED → (DELIVERED →) SETTLED
                  LISTED → CANCELLED

Every transition is driven by a confirmed transaction signature or by an
authoritative ledger read. The machine never advances speculatively: an
ambiguous read-back (escrow present, vault empty) is parked until a holder
read disambiguates settled from cancelled.
"""

import logging
import struct
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from solders.pubkey import Pubkey

from core.exceptions import InvalidTransition

logger = logging.getLogger(__name__)


class EscrowStatus(Enum):
    """Escrow lifecycle states"""
    PENDING = "pending"        # Listing intent created, not yet confirmed
    LISTED = "listed"          # Asset locked in vault
    MATCHED = "matched"        # Buyer funds locked alongside the asset
    DELIVERED = "delivered"    # Confirm-delivery landed, escrow account not yet closed
    SETTLED = "settled"        # Seller paid, asset with buyer
    CANCELLED = "cancelled"    # Asset returned to seller


class Readback(Enum):
    """Classification of a ledger read of one escrow."""
    ABSENT = "absent"
    LISTED = "listed"
    MATCHED = "matched"
    SETTLED_OR_CANCELLED = "settled_or_cancelled"


FUNDED_STATES = {EscrowStatus.LISTED, EscrowStatus.MATCHED}
TERMINAL_STATES = {EscrowStatus.SETTLED, EscrowStatus.CANCELLED}

# Ledger instruction -> state reached once its transaction is confirmed
CONFIRMED_TARGETS = {
    "initialize": EscrowStatus.LISTED,
    "exchange": EscrowStatus.MATCHED,
    "confirm_delivery": EscrowStatus.DELIVERED,
    "cancel": EscrowStatus.CANCELLED,
}

STATUS_RANK = {
    EscrowStatus.PENDING: 0,
    EscrowStatus.LISTED: 1,
    EscrowStatus.MATCHED: 2,
    EscrowStatus.DELIVERED: 3,
    EscrowStatus.SETTLED: 4,
    EscrowStatus.CANCELLED: 4,
}


@dataclass
class EscrowAccountData:
    """Decoded escrow state account."""
    seed: int
    bump: int
    initializer: Pubkey
    fee_recipient: Pubkey
    settlement_mint: Pubkey
    asset_mint: Pubkey
    initializer_amount: int
    taker_amount: int
    content_ref: str
    price: int
    buyer: Optional[Pubkey]


# Byte offset of asset_mint inside the escrow account; used for memcmp scans.
ASSET_MINT_OFFSET = 8 + 8 + 1 + 32 + 32 + 32

# Fixed-size prefix up to and including the content_ref length field
ESCROW_HEADER_SIZE = 8 + 9 + 4 * 32 + 20


def decode_escrow_account(data: bytes) -> EscrowAccountData:
    """
    Decode an escrow state account.

    Layout: discriminator(8) seed(u64) bump(u8) initializer(32)
    fee_recipient(32) settlement_mint(32) asset_mint(32)
    initializer_amount(u64) taker_amount(u64) content_ref(u32 len + utf-8)
    price(u64) buyer(32, all zero when unset)
    """
    if len(data) < ESCROW_HEADER_SIZE:
        raise ValueError(f"Malformed escrow account data: {len(data)} bytes, need at least {ESCROW_HEADER_SIZE}")
    try:
        offset = 8
        seed, bump = struct.unpack_from("<QB", data, offset)
        offset += 9
        keys = []
        for _ in range(4):
            keys.append(Pubkey.from_bytes(data[offset:offset + 32]))
            offset += 32
        initializer_amount, taker_amount, ref_len = struct.unpack_from("<QQI", data, offset)
        offset += 20
        if len(data) < offset + ref_len + 40:
            raise ValueError(
                f"Malformed escrow account data: {len(data)} bytes, content_ref of {ref_len} bytes needs {offset + ref_len + 40}"
            )
        content_ref = data[offset:offset + ref_len].decode("utf-8")
        offset += ref_len
        (price,) = struct.unpack_from("<Q", data, offset)
        offset += 8
        buyer_raw = data[offset:offset + 32]
    except struct.error as e:
        raise ValueError(f"Malformed escrow account data ({len(data)} bytes): {e}")
    except UnicodeDecodeError as e:
        raise ValueError(f"Malformed escrow account data: content_ref is not utf-8 ({e})")

    buyer = None
    if any(buyer_raw):
        buyer = Pubkey.from_bytes(buyer_raw)

    return EscrowAccountData(
        seed=seed,
        bump=bump,
        initializer=keys[0],
        fee_recipient=keys[1],
        settlement_mint=keys[2],
        asset_mint=keys[3],
        initializer_amount=initializer_amount,
        taker_amount=taker_amount,
        content_ref=content_ref,
        price=price,
        buyer=buyer,
    )


@dataclass
class EscrowRecord:
    """
    One physical-asset listing held in trust.

    ``vault_balance`` is the last observed balance of the escrow's vault;
    it is positive exactly while the escrow is LISTED or MATCHED.
    """
    seed: int
    initializer: str
    asset_mint: str
    settlement_mint: str
    initializer_amount: int = 1
    taker_amount: int = 0
    content_ref: str = ""
    counterparty: Optional[str] = None
    price: int = 0
    address: Optional[str] = None
    status: str = EscrowStatus.PENDING.value
    vault_balance: int = 0

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    signatures: Dict[str, str] = field(default_factory=dict)
    history: List[Dict[str, Any]] = field(default_factory=list)
    needs_disambiguation: bool = False

    def __post_init__(self):
        if self.initializer_amount < 0 or self.taker_amount < 0:
            raise ValueError("Escrow amounts must be non-negative")

    @property
    def status_enum(self) -> EscrowStatus:
        return EscrowStatus(self.status)

    def is_terminal(self) -> bool:
        return self.status_enum in TERMINAL_STATES

    def invariant_holds(self) -> bool:
        """vault_balance > 0 iff status in {listed, matched}"""
        return (self.vault_balance > 0) == (self.status_enum in FUNDED_STATES)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "seed": self.seed,
            "address": self.address,
            "initializer": self.initializer,
            "counterparty": self.counterparty,
            "asset_mint": self.asset_mint,
            "settlement_mint": self.settlement_mint,
            "initializer_amount": self.initializer_amount,
            "taker_amount": self.taker_amount,
            "content_ref": self.content_ref,
            "price": self.price,
            "status": self.status,
            "vault_balance": self.vault_balance,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
            "signatures": dict(self.signatures),
            "needs_disambiguation": self.needs_disambiguation,
        }


def classify_readback(escrow_present: bool, vault_balance: Optional[int], buyer_set: bool = False) -> Readback:
    """
    Classify a ledger read of one escrow.

    Absence alone is never read as settled or cancelled.
    """
    if not escrow_present:
        return Readback.ABSENT
    if vault_balance and vault_balance > 0:
        return Readback.MATCHED if buyer_set else Readback.LISTED
    return Readback.SETTLED_OR_CANCELLED


class EscrowStateMachine:
    """
    Escrow state machine with transition validation.

    Holds the escrows of one session keyed by seed. Callers feed it
    confirmed signatures (``apply_confirmed``) or ledger reads
    (``apply_readback``); nothing else moves an escrow.
    """

    VALID_TRANSITIONS = {
        EscrowStatus.PENDING: {EscrowStatus.LISTED},
        EscrowStatus.LISTED: {EscrowStatus.MATCHED, EscrowStatus.CANCELLED},
        EscrowStatus.MATCHED: {EscrowStatus.DELIVERED, EscrowStatus.SETTLED},
        EscrowStatus.DELIVERED: {EscrowStatus.SETTLED},
        # Terminal states have no outbound transitions
        EscrowStatus.SETTLED: set(),
        EscrowStatus.CANCELLED: set(),
    }

    def __init__(self, audit=None, metrics=None):
        self.escrows: Dict[int, EscrowRecord] = {}
        self.audit = audit
        self.metrics = metrics

    def track(self, record: EscrowRecord) -> EscrowRecord:
        """Start tracking an escrow (idempotent on seed)."""
        existing = self.escrows.get(record.seed)
        if existing is not None:
            return existing
        self.escrows[record.seed] = record
        logger.info(f"Tracking escrow seed={record.seed} status={record.status}")
        return record

    def create(self, seed: int, initializer: str, asset_mint: str, settlement_mint: str,
               **kwargs) -> EscrowRecord:
        """Create and track a PENDING escrow for a new listing intent."""
        if seed in self.escrows:
            raise ValueError(f"Escrow seed={seed} already tracked")
        record = EscrowRecord(
            seed=seed,
            initializer=initializer,
            asset_mint=asset_mint,
            settlement_mint=settlement_mint,
            **kwargs,
        )
        return self.track(record)

    def get(self, seed: int) -> Optional[EscrowRecord]:
        return self.escrows.get(seed)

    def _require(self, seed: int) -> EscrowRecord:
        record = self.escrows.get(seed)
        if record is None:
            raise KeyError(f"Escrow seed={seed} is not tracked")
        return record

    def transition(
        self,
        seed: int,
        new_status: EscrowStatus,
        *,
        signature: Optional[str] = None,
        source: str = "transaction",
    ) -> EscrowRecord:
        """
        Move an escrow to ``new_status``.

        Raises:
            InvalidTransition: when the move is not in VALID_TRANSITIONS
        """
        record = self._require(seed)
        current = record.status_enum
        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Invalid escrow transition {current.value} → {new_status.value}",
                address=record.address,
            )

        now = datetime.now(timezone.utc)
        record.status = new_status.value
        record.updated_at = now
        record.needs_disambiguation = False
        if signature:
            record.signatures[new_status.value] = signature
        record.history.append({
            "at": now.isoformat(),
            "from": current.value,
            "to": new_status.value,
            "signature": signature,
            "source": source,
        })
        if new_status not in FUNDED_STATES:
            record.vault_balance = 0

        logger.info(f"Escrow {seed} transitioned: {current.value} → {new_status.value} ({source})")
        if self.audit is not None:
            self.audit.log_transition("escrow", str(seed), current.value, new_status.value,
                                      signature=signature, address=record.address)
        if self.metrics is not None:
            self.metrics.record_transition("escrow", new_status.value)
        return record

    def apply_confirmed(self, seed: int, instruction: str, signature: str,
                        *, settle_on_delivery: bool = True) -> EscrowRecord:
        """
        Advance an escrow after a confirmed transaction.

        ``confirm_delivery`` lands in DELIVERED and, unless
        ``settle_on_delivery`` is False, is closed out to SETTLED.
        """
        if not signature:
            raise InvalidTransition(f"Refusing to apply {instruction} without a confirmed signature")
        try:
            target = CONFIRMED_TARGETS[instruction]
        except KeyError:
            raise InvalidTransition(f"Instruction {instruction!r} does not move an escrow")

        record = self.transition(seed, target, signature=signature)
        if target in FUNDED_STATES and record.vault_balance <= 0:
            # A confirmed initialize deposits the asset; it stays in the vault until delivery
            record.vault_balance = max(record.initializer_amount, 1)
        if target == EscrowStatus.DELIVERED and settle_on_delivery:
            record = self.transition(seed, EscrowStatus.SETTLED, signature=signature)
        return record

    def observe_vault(self, seed: int, balance: int) -> bool:
        """Record an observed vault balance; returns whether the invariant holds."""
        record = self._require(seed)
        record.vault_balance = max(0, int(balance))
        holds = record.invariant_holds()
        if not holds:
            logger.warning(
                f"Escrow {seed} vault invariant broken: status={record.status} vault={record.vault_balance}"
            )
        return holds

    def apply_readback(
        self,
        seed: int,
        readback: Readback,
        *,
        vault_balance: int = 0,
        counterparty: Optional[str] = None,
    ) -> EscrowRecord:
        """
        Fold a ledger read into the machine.

        Forward moves only; a read never rolls an escrow back. An ambiguous
        read marks the record for disambiguation and leaves status as is.
        """
        record = self._require(seed)
        current = record.status_enum

        if readback == Readback.ABSENT:
            logger.debug(f"Escrow {seed} not on ledger; keeping {current.value}")
            return record

        if readback == Readback.SETTLED_OR_CANCELLED:
            if not record.is_terminal():
                record.needs_disambiguation = True
                record.vault_balance = 0
                logger.info(f"Escrow {seed} read back settled-or-cancelled; holder read required")
            return record

        target = EscrowStatus.LISTED if readback == Readback.LISTED else EscrowStatus.MATCHED
        if counterparty and readback == Readback.MATCHED:
            record.counterparty = counterparty
        if STATUS_RANK[target] > STATUS_RANK[current]:
            # pending -> matched passes through listed
            if current == EscrowStatus.PENDING and target == EscrowStatus.MATCHED:
                self.transition(seed, EscrowStatus.LISTED, source="ledger_read")
            self.transition(seed, target, source="ledger_read")
        record.vault_balance = max(0, int(vault_balance))
        return record

    def resolve_ambiguous(self, seed: int, holder: Optional[str]) -> EscrowRecord:
        """
        Disambiguate settled vs cancelled from the asset's current holder.

        Holder == counterparty -> SETTLED; holder == initializer -> CANCELLED.
        Any other holder leaves the escrow parked.
        """
        record = self._require(seed)
        if record.is_terminal():
            return record
        if holder is None:
            logger.warning(f"Escrow {seed}: holder read returned nothing; still ambiguous")
            return record

        current = record.status_enum
        if record.counterparty and holder == record.counterparty:
            # Walk forward through any steps that landed since our last read
            for step in (EscrowStatus.LISTED, EscrowStatus.MATCHED):
                if STATUS_RANK[record.status_enum] < STATUS_RANK[step]:
                    self.transition(seed, step, source="holder_read")
            return self.transition(seed, EscrowStatus.SETTLED, source="holder_read")
        if holder == record.initializer and current in (EscrowStatus.PENDING, EscrowStatus.LISTED):
            if current == EscrowStatus.PENDING:
                self.transition(seed, EscrowStatus.LISTED, source="holder_read")
            return self.transition(seed, EscrowStatus.CANCELLED, source="holder_read")

        logger.warning(
            f"Escrow {seed}: holder {holder} matches neither seller nor buyer in state {current.value}"
        )
        return record

    def get_active(self) -> List[EscrowRecord]:
        return [e for e in self.escrows.values() if not e.is_terminal()]

    def get_summary(self) -> Dict[str, Any]:
        counts = {status.value: 0 for status in EscrowStatus}
        for record in self.escrows.values():
            counts[record.status] += 1
        return {
            "total_escrows": len(self.escrows),
            "active_escrows": len(self.get_active()),
            "awaiting_holder_read": sum(1 for e in self.escrows.values() if e.needs_disambiguation),
            "status_breakdown": counts,
        }
