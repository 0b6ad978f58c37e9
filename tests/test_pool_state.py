"""
Tests for the fractional pool lifecycle.

Funding bounds, custody gating of token unlock, trading locks and
resale distribution math.
"""

import pytest

from core.exceptions import InvalidIntent, InvalidTransition, TradingLocked
from core.pool_state import (
    PoolRecord,
    PoolStateMachine,
    PoolStatus,
    TokenStatus,
)


def make_machine(**overrides):
    params = dict(pool_id="pool1", total_shares=10, target_amount_usd=1000.0)
    params.update(overrides)
    machine = PoolStateMachine()
    machine.track(PoolRecord(**params))
    return machine


def active_tradable(machine, pool_id="pool1"):
    """Drive a pool through funding, custody and unlock"""
    pool = machine.get(pool_id)
    machine.buy_shares(pool_id, "alice", pool.shares_available, signature="sigBuy")
    machine.sweep_funds(pool_id, signature="sigSweep")
    machine.record_mint(pool_id, "TokenMint1", signature="sigMint")
    machine.submit_tracking(pool_id, "1Z999")
    machine.mark_received(pool_id)
    machine.verify_custody(pool_id)
    machine.store(pool_id)
    return machine.get(pool_id)


class TestPoolRecord:
    """Test PoolRecord dataclass"""

    def test_progress_figures(self):
        pool = PoolRecord(pool_id="p", total_shares=1000, target_amount_usd=150_000.0,
                          share_price_usd=150.0, shares_sold=420)
        assert pool.percent_filled == 42.0
        assert pool.funded_usd == 63000
        assert pool.shares_available == 580

    def test_default_share_price(self):
        pool = PoolRecord(pool_id="p", total_shares=100, target_amount_usd=5000.0)
        assert pool.share_price_usd == 50.0

    def test_shares_sold_bounds(self):
        with pytest.raises(ValueError):
            PoolRecord(pool_id="p", total_shares=10, target_amount_usd=100.0, shares_sold=11)
        with pytest.raises(ValueError):
            PoolRecord(pool_id="p", total_shares=0, target_amount_usd=100.0)

    def test_liquidity_split(self):
        amm = PoolRecord(pool_id="p", total_shares=10, target_amount_usd=100.0, liquidity_model="amm")
        assert amm.amm_liquidity_percent == 30
        assert amm.vendor_percent == 67
        p2p = PoolRecord(pool_id="p", total_shares=10, target_amount_usd=100.0, amm_liquidity_percent=40)
        assert p2p.amm_liquidity_percent is None
        assert p2p.vendor_percent is None

    def test_round_trip_dict(self):
        pool = PoolRecord(pool_id="p", total_shares=10, target_amount_usd=100.0, shares_sold=3,
                          participants={"w": 3})
        restored = PoolRecord.from_dict(pool.to_dict())
        assert restored.shares_sold == 3
        assert restored.participants == {"w": 3}
        assert restored.created_at == pool.created_at


class TestFunding:
    """Test share purchases"""

    def test_partial_purchase(self):
        machine = make_machine()
        pool = machine.buy_shares("pool1", "alice", 4, signature="sig")
        assert pool.shares_sold == 4
        assert pool.participants == {"alice": 4}
        assert pool.status == "open"

    def test_last_share_fills_pool(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 6, signature="s1")
        pool = machine.buy_shares("pool1", "bob", 4, signature="s2")
        assert pool.status == "filled"
        assert 0 <= pool.shares_sold <= pool.total_shares

    def test_oversell_rejected(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 8, signature="s1")
        with pytest.raises(InvalidIntent, match="Only 2 shares available"):
            machine.buy_shares("pool1", "bob", 3, signature="s2")
        assert machine.get("pool1").shares_sold == 8

    def test_min_buy_in(self):
        machine = make_machine(min_buy_in_usd=250.0)
        assert "below minimum" in machine.check_purchase("pool1", "alice", 2)
        assert machine.check_purchase("pool1", "alice", 3) is None

    def test_max_investors(self):
        machine = make_machine(max_investors=1)
        machine.buy_shares("pool1", "alice", 1, signature="s1")
        assert "maximum" in machine.check_purchase("pool1", "bob", 1)
        # Existing investors may add
        assert machine.check_purchase("pool1", "alice", 1) is None

    def test_invalid_share_count(self):
        machine = make_machine()
        assert machine.check_purchase("pool1", "alice", 0) is not None
        assert machine.check_purchase("pool1", "alice", 1.5) is not None

    def test_purchase_requires_signature(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.buy_shares("pool1", "alice", 1, signature="")

    def test_sweep_records_vendor_payout(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 10, signature="s1")
        pool = machine.sweep_funds("pool1", signature="s2")
        assert pool.status == "funded"
        assert pool.vendor_payout_usd == 970.0

    def test_sweep_before_filled_rejected(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.sweep_funds("pool1", signature="s")


class TestCustodyAndTokens:
    """Test custody gating and the token axis"""

    def test_tokens_locked_until_verified(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 10, signature="s1")
        machine.sweep_funds("pool1", signature="s2")
        machine.record_mint("pool1", "TokenMint1", signature="s3")
        assert not machine.can_trade("pool1")
        with pytest.raises(InvalidTransition, match="custody is verified"):
            machine.unlock("pool1")

    def test_verify_requires_received(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 10, signature="s1")
        machine.sweep_funds("pool1", signature="s2")
        machine.submit_tracking("pool1", "1Z999")
        with pytest.raises(InvalidTransition, match="received"):
            machine.verify_custody("pool1")

    def test_verification_unlocks_minted_tokens(self):
        pool = active_tradable(make_machine())
        assert pool.status == "active"
        assert pool.token_status == "unlocked"
        assert pool.custody_steps == ["tracking_submitted", "received", "verified", "stored"]

    def test_freeze_and_thaw(self):
        machine = make_machine()
        active_tradable(machine)
        machine.freeze("pool1")
        with pytest.raises(TradingLocked):
            machine.require_tradable("pool1")
        machine.thaw("pool1")
        assert machine.can_trade("pool1")

    def test_thaw_requires_frozen(self):
        machine = make_machine()
        active_tradable(machine)
        with pytest.raises(InvalidTransition):
            machine.thaw("pool1")

    def test_transfer_shares(self):
        machine = make_machine()
        active_tradable(machine)
        pool = machine.transfer_shares("pool1", "alice", "bob", 3, signature="sigT")
        assert pool.participants == {"alice": 7, "bob": 3}
        with pytest.raises(InvalidIntent):
            machine.transfer_shares("pool1", "bob", "carol", 4, signature="sigT2")


class TestExit:
    """Test graduation, resale and distribution"""

    def test_graduation_market_cap(self):
        machine = make_machine()
        active_tradable(machine)
        pool = machine.graduate("pool1")
        assert pool.status == "graduated"
        assert pool.graduated_market_cap_usd == 1000.0

    def test_resale_and_distribution(self):
        machine = make_machine()
        machine.buy_shares("pool1", "alice", 6, signature="s1")
        machine.buy_shares("pool1", "bob", 4, signature="s2")
        machine.sweep_funds("pool1", signature="s3")
        machine.record_mint("pool1", "TokenMint1", signature="s4")
        machine.submit_tracking("pool1", "1Z")
        machine.mark_received("pool1")
        machine.verify_custody("pool1")
        machine.store("pool1")
        machine.list_for_resale("pool1", 2000.0)
        pool = machine.record_sale("pool1", 2000.0, signature="s5")
        assert pool.royalty_usd == 60.0
        assert pool.distribution_pool_usd == 1940.0
        assert machine.distribution_plan("pool1") == {"alice": 1164.0, "bob": 776.0}

        # No share transfers once sold
        with pytest.raises(TradingLocked):
            machine.transfer_shares("pool1", "alice", "carol", 1, signature="s6")

        pool = machine.mark_distributed("pool1", signature="s7")
        assert pool.token_status == TokenStatus.BURNED.value
        assert machine.close("pool1").status == PoolStatus.CLOSED.value

    def test_distribution_requires_sale(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.distribution_plan("pool1")

    def test_graduate_refused_leaves_market_cap_unset(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.graduate("pool1")
        assert machine.get("pool1").graduated_market_cap_usd is None

    def test_resale_listing_refused_leaves_price_unset(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.list_for_resale("pool1", 2500.0)
        pool = machine.get("pool1")
        assert pool.resale_listing_price_usd is None
        assert pool.status == "open"

    def test_summary(self):
        machine = make_machine()
        summary = machine.get_summary()
        assert summary["total_pools"] == 1
        assert summary["tradable"] == 0
        assert summary["status_breakdown"] == {"open": 1}


class TestRefusedStepsLeaveStateUnchanged:
    """A step refused by the lifecycle machine must not leave partial updates"""

    def test_second_mint_keeps_original_mint(self):
        machine = make_machine()
        machine.record_mint("pool1", "MintA", signature="sig1")
        with pytest.raises(InvalidTransition):
            machine.record_mint("pool1", "MintB", signature="sig2")
        pool = machine.get("pool1")
        assert pool.token_mint == "MintA"
        assert pool.token_status == TokenStatus.MINTED.value

    def test_late_mint_on_unlocked_pool(self):
        machine = make_machine()
        active_tradable(machine)
        with pytest.raises(InvalidTransition):
            machine.record_mint("pool1", "OtherMint", signature="sigLate")
        assert machine.get("pool1").token_mint == "TokenMint1"
        assert machine.can_trade("pool1")

    def test_sweep_refused_before_filled(self):
        machine = make_machine()
        with pytest.raises(InvalidTransition):
            machine.sweep_funds("pool1", signature="sigSweep")
        pool = machine.get("pool1")
        assert pool.vendor_payout_usd is None
        assert pool.history == []
