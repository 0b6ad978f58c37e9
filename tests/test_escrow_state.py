"""
Tests for the escrow lifecycle machine.

Covers transition validation, the vault/status invariant, read-back folding
and settled-vs-cancelled disambiguation from the asset holder.
"""

import pytest

from core.escrow_state import (
    ASSET_MINT_OFFSET,
    EscrowRecord,
    EscrowStateMachine,
    EscrowStatus,
    Readback,
    classify_readback,
    decode_escrow_account,
)
from core.exceptions import InvalidTransition
from tests.helpers import encode_escrow_account, new_pubkey

SELLER = "SeLLer1111111111111111111111111111111111111"
BUYER = "Buyer11111111111111111111111111111111111111"


@pytest.fixture
def machine(audit, metrics):
    m = EscrowStateMachine(audit=audit, metrics=metrics)
    m.create(7, SELLER, "mintA", "wsol", price=1_000_000)
    return m


class TestEscrowRecord:
    """Test EscrowRecord dataclass"""

    def test_defaults(self):
        record = EscrowRecord(seed=1, initializer=SELLER, asset_mint="m", settlement_mint="s")
        assert record.status == EscrowStatus.PENDING.value
        assert record.vault_balance == 0
        assert record.invariant_holds()
        assert not record.is_terminal()

    def test_negative_amount_rejected(self):
        with pytest.raises(ValueError):
            EscrowRecord(seed=1, initializer=SELLER, asset_mint="m", settlement_mint="s", taker_amount=-1)

    def test_invariant(self):
        record = EscrowRecord(seed=1, initializer=SELLER, asset_mint="m", settlement_mint="s",
                              status="listed", vault_balance=1)
        assert record.invariant_holds()
        record.vault_balance = 0
        assert not record.invariant_holds()


class TestTransitions:
    """Test transition validation"""

    def test_happy_path(self, machine):
        machine.apply_confirmed(7, "initialize", "sig1")
        machine.observe_vault(7, 1)
        machine.apply_confirmed(7, "exchange", "sig2")
        record = machine.apply_confirmed(7, "confirm_delivery", "sig3")
        assert record.status == "settled"
        assert record.vault_balance == 0
        assert record.signatures == {"listed": "sig1", "matched": "sig2", "delivered": "sig3", "settled": "sig3"}
        assert [h["to"] for h in record.history] == ["listed", "matched", "delivered", "settled"]

    def test_invariant_holds_after_every_confirmed_step(self, machine):
        for instruction in ("initialize", "exchange", "confirm_delivery"):
            record = machine.apply_confirmed(7, instruction, f"sig-{instruction}")
            assert record.invariant_holds(), f"{instruction} left {record.status} with vault {record.vault_balance}"
        assert record.vault_balance == 0

    def test_confirmed_initialize_records_deposit(self, machine):
        record = machine.apply_confirmed(7, "initialize", "sig1")
        assert record.status == "listed"
        assert record.vault_balance == record.initializer_amount

    def test_delivery_without_settle(self, machine):
        machine.apply_confirmed(7, "initialize", "sig1")
        machine.apply_confirmed(7, "exchange", "sig2")
        record = machine.apply_confirmed(7, "confirm_delivery", "sig3", settle_on_delivery=False)
        assert record.status == "delivered"
        assert record.invariant_holds()

    def test_cancel_from_listed(self, machine):
        machine.apply_confirmed(7, "initialize", "sig1")
        record = machine.apply_confirmed(7, "cancel", "sig2")
        assert record.status == "cancelled"
        assert record.is_terminal()

    def test_cancel_after_match_rejected(self, machine):
        machine.apply_confirmed(7, "initialize", "sig1")
        machine.apply_confirmed(7, "exchange", "sig2")
        with pytest.raises(InvalidTransition):
            machine.apply_confirmed(7, "cancel", "sig3")

    def test_skip_rejected(self, machine):
        with pytest.raises(InvalidTransition):
            machine.transition(7, EscrowStatus.SETTLED)

    def test_terminal_has_no_exits(self, machine):
        machine.apply_confirmed(7, "initialize", "sig1")
        machine.apply_confirmed(7, "cancel", "sig2")
        with pytest.raises(InvalidTransition):
            machine.transition(7, EscrowStatus.LISTED)

    def test_requires_signature(self, machine):
        with pytest.raises(InvalidTransition, match="without a confirmed signature"):
            machine.apply_confirmed(7, "initialize", "")

    def test_unknown_instruction(self, machine):
        with pytest.raises(InvalidTransition):
            machine.apply_confirmed(7, "sync_native", "sig")

    def test_duplicate_create(self, machine):
        with pytest.raises(ValueError, match="already tracked"):
            machine.create(7, SELLER, "mintA", "wsol")

    def test_untracked_seed(self, machine):
        with pytest.raises(KeyError):
            machine.transition(99, EscrowStatus.LISTED)

    def test_transitions_audited_and_counted(self, machine, audit, metrics):
        machine.apply_confirmed(7, "initialize", "sig1")
        entries = audit.get_recent(entry_type="transition")
        assert entries[-1]["from"] == "pending"
        assert entries[-1]["to"] == "listed"
        assert entries[-1]["signature"] == "sig1"
        assert metrics.sample("escrow_lifecycle_transitions_total", machine="escrow", state="listed") == 1.0


class TestReadback:
    """Test folding ledger reads into the machine"""

    def test_classify(self):
        assert classify_readback(False, None) == Readback.ABSENT
        assert classify_readback(True, 1) == Readback.LISTED
        assert classify_readback(True, 1, buyer_set=True) == Readback.MATCHED
        assert classify_readback(True, 0) == Readback.SETTLED_OR_CANCELLED
        assert classify_readback(True, None) == Readback.SETTLED_OR_CANCELLED

    def test_absent_is_noop(self, machine):
        record = machine.apply_readback(7, Readback.ABSENT)
        assert record.status == "pending"

    def test_pending_to_listed(self, machine):
        record = machine.apply_readback(7, Readback.LISTED, vault_balance=1)
        assert record.status == "listed"
        assert record.invariant_holds()

    def test_pending_to_matched_passes_listed(self, machine):
        record = machine.apply_readback(7, Readback.MATCHED, vault_balance=1, counterparty=BUYER)
        assert record.status == "matched"
        assert record.counterparty == BUYER
        assert [h["to"] for h in record.history] == ["listed", "matched"]

    def test_never_rolls_back(self, machine):
        machine.apply_readback(7, Readback.MATCHED, vault_balance=1, counterparty=BUYER)
        record = machine.apply_readback(7, Readback.LISTED, vault_balance=1)
        assert record.status == "matched"

    def test_ambiguous_parks_record(self, machine):
        machine.apply_readback(7, Readback.LISTED, vault_balance=1)
        record = machine.apply_readback(7, Readback.SETTLED_OR_CANCELLED)
        assert record.status == "listed"
        assert record.needs_disambiguation
        assert record.vault_balance == 0
        assert machine.get_summary()["awaiting_holder_read"] == 1


class TestDisambiguation:
    """Test settled vs cancelled resolution from the asset holder"""

    def test_holder_is_buyer_settles(self, machine):
        machine.apply_readback(7, Readback.MATCHED, vault_balance=1, counterparty=BUYER)
        machine.apply_readback(7, Readback.SETTLED_OR_CANCELLED)
        record = machine.resolve_ambiguous(7, BUYER)
        assert record.status == "settled"
        assert not record.needs_disambiguation

    def test_holder_is_seller_cancels(self, machine):
        machine.apply_readback(7, Readback.LISTED, vault_balance=1)
        machine.apply_readback(7, Readback.SETTLED_OR_CANCELLED)
        record = machine.resolve_ambiguous(7, SELLER)
        assert record.status == "cancelled"

    def test_pending_drained_before_first_read(self, machine):
        """An escrow first seen already closed walks forward through listed"""
        machine.apply_readback(7, Readback.SETTLED_OR_CANCELLED)
        record = machine.resolve_ambiguous(7, SELLER)
        assert record.status == "cancelled"
        assert [h["to"] for h in record.history] == ["listed", "cancelled"]

    def test_unknown_holder_stays_parked(self, machine):
        machine.apply_readback(7, Readback.LISTED, vault_balance=1)
        machine.apply_readback(7, Readback.SETTLED_OR_CANCELLED)
        record = machine.resolve_ambiguous(7, "Stranger111111111111111111111111111111111111")
        assert record.status == "listed"
        assert record.needs_disambiguation

    def test_no_holder(self, machine):
        record = machine.resolve_ambiguous(7, None)
        assert record.status == "pending"


class TestAccountDecoding:
    """Test escrow account layout decoding"""

    def test_decode(self):
        seller, mint, settle, buyer = new_pubkey(), new_pubkey(), new_pubkey(), new_pubkey()
        data = encode_escrow_account(42, seller, mint, settle, price=5_000, buyer=buyer, content_ref="bafyX")
        decoded = decode_escrow_account(data)
        assert decoded.seed == 42
        assert decoded.initializer == seller
        assert decoded.asset_mint == mint
        assert decoded.settlement_mint == settle
        assert decoded.price == 5_000
        assert decoded.buyer == buyer
        assert decoded.content_ref == "bafyX"
        assert data[ASSET_MINT_OFFSET:ASSET_MINT_OFFSET + 32] == bytes(mint)

    def test_unset_buyer(self):
        data = encode_escrow_account(1, new_pubkey(), new_pubkey(), new_pubkey(), price=1)
        assert decode_escrow_account(data).buyer is None

    def test_truncated(self):
        with pytest.raises(ValueError, match="Malformed"):
            decode_escrow_account(b"\x00" * 20)

    def test_header_only(self):
        """A 44-byte registry account is rejected, not decoded"""
        with pytest.raises(ValueError, match="Malformed"):
            decode_escrow_account(b"\x00" * 44)

    def test_truncated_after_content_ref(self):
        data = encode_escrow_account(1, new_pubkey(), new_pubkey(), new_pubkey(), price=1, content_ref="bafyLong")
        with pytest.raises(ValueError, match="Malformed"):
            decode_escrow_account(data[:-20])
