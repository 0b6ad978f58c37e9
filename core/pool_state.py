"""
Escrow Orchestrator Core: Pool Lifecycle Machine

Fractional-ownership pools move along two independent axes:

Funding:      OPEN → FILLED → FUNDED → CUSTODY → ACTIVE → GRADUATED | LISTED
              LISTED → SOLD → DISTRIBUTED → CLOSED
Tokenization: PENDING → MINTED → UNLOCKED → FROZEN | BURNED
              FROZEN → UNLOCKED (admin thaw)

Share trading is allowed only while the token axis is UNLOCKED. No share
transfer happens once a pool is SOLD, DISTRIBUTED or CLOSED.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from core.exceptions import InvalidIntent, InvalidTransition, TradingLocked

logger = logging.getLogger(__name__)

VENDOR_PAYOUT_BPS = 9700      # vendor receives 97% of target at funding
RESALE_ROYALTY_BPS = 300      # platform royalty on resale
DEFAULT_AMM_PERCENT = 30


class PoolStatus(Enum):
    """Funding axis"""
    OPEN = "open"
    FILLED = "filled"
    FUNDED = "funded"
    CUSTODY = "custody"
    ACTIVE = "active"
    GRADUATED = "graduated"
    LISTED = "listed"
    SOLD = "sold"
    DISTRIBUTED = "distributed"
    CLOSED = "closed"


class TokenStatus(Enum):
    """Tokenization axis"""
    PENDING = "pending"
    MINTED = "minted"
    UNLOCKED = "unlocked"
    FROZEN = "frozen"
    BURNED = "burned"


class LiquidityModel(Enum):
    P2P = "p2p"
    AMM = "amm"
    HYBRID = "hybrid"


class CustodyStep(Enum):
    """Physical custody progress while the pool sits in CUSTODY."""
    TRACKING_SUBMITTED = "tracking_submitted"
    RECEIVED = "received"
    VERIFIED = "verified"
    STORED = "stored"


SHARE_FROZEN_STATES = {PoolStatus.SOLD, PoolStatus.DISTRIBUTED, PoolStatus.CLOSED}


@dataclass
class PoolRecord:
    """
    Fractional pool over one asset.

    ``participants`` maps wallet -> shares held. ``share_price_usd``
    defaults to target / total_shares.
    """
    pool_id: str
    total_shares: int
    target_amount_usd: float
    min_buy_in_usd: float = 0.0
    share_price_usd: Optional[float] = None
    max_investors: Optional[int] = None
    shares_sold: int = 0
    status: str = PoolStatus.OPEN.value
    token_mint: Optional[str] = None
    token_status: str = TokenStatus.PENDING.value
    liquidity_model: str = LiquidityModel.P2P.value
    amm_liquidity_percent: Optional[int] = None
    vendor_wallet: Optional[str] = None
    asset_id: Optional[str] = None

    participants: Dict[str, int] = field(default_factory=dict)
    custody_steps: List[str] = field(default_factory=list)
    tracking_number: Optional[str] = None
    vendor_payout_usd: Optional[float] = None
    graduated_market_cap_usd: Optional[float] = None
    resale_listing_price_usd: Optional[float] = None
    resale_price_usd: Optional[float] = None
    royalty_usd: Optional[float] = None
    distribution_pool_usd: Optional[float] = None

    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: Optional[datetime] = None
    history: List[Dict[str, Any]] = field(default_factory=list)

    def __post_init__(self):
        if self.total_shares <= 0:
            raise ValueError(f"total_shares must be positive, got {self.total_shares}")
        if self.target_amount_usd <= 0:
            raise ValueError(f"target_amount_usd must be positive, got {self.target_amount_usd}")
        if not 0 <= self.shares_sold <= self.total_shares:
            raise ValueError(f"shares_sold {self.shares_sold} outside [0, {self.total_shares}]")
        if self.share_price_usd is None:
            self.share_price_usd = self.target_amount_usd / self.total_shares
        model = LiquidityModel(self.liquidity_model)
        if model == LiquidityModel.P2P:
            self.amm_liquidity_percent = None
        elif self.amm_liquidity_percent is None:
            self.amm_liquidity_percent = DEFAULT_AMM_PERCENT
        elif not 0 <= self.amm_liquidity_percent <= 97:
            raise ValueError(f"amm_liquidity_percent must be in [0, 97], got {self.amm_liquidity_percent}")

    @property
    def status_enum(self) -> PoolStatus:
        return PoolStatus(self.status)

    @property
    def token_status_enum(self) -> TokenStatus:
        return TokenStatus(self.token_status)

    @property
    def shares_available(self) -> int:
        return self.total_shares - self.shares_sold

    @property
    def percent_filled(self) -> float:
        return 100.0 * self.shares_sold / self.total_shares

    @property
    def funded_usd(self) -> float:
        return self.shares_sold * self.share_price_usd

    @property
    def vendor_percent(self) -> Optional[int]:
        """Vendor share of AMM/hybrid proceeds: 100 - amm% - 3."""
        if self.amm_liquidity_percent is None:
            return None
        return 100 - self.amm_liquidity_percent - RESALE_ROYALTY_BPS // 100

    def can_trade(self) -> bool:
        return self.token_mint is not None and self.token_status_enum == TokenStatus.UNLOCKED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "pool_id": self.pool_id,
            "asset_id": self.asset_id,
            "total_shares": self.total_shares,
            "shares_sold": self.shares_sold,
            "share_price_usd": self.share_price_usd,
            "target_amount_usd": self.target_amount_usd,
            "min_buy_in_usd": self.min_buy_in_usd,
            "max_investors": self.max_investors,
            "status": self.status,
            "token_mint": self.token_mint,
            "token_status": self.token_status,
            "liquidity_model": self.liquidity_model,
            "amm_liquidity_percent": self.amm_liquidity_percent,
            "vendor_wallet": self.vendor_wallet,
            "participants": dict(self.participants),
            "custody_steps": list(self.custody_steps),
            "tracking_number": self.tracking_number,
            "vendor_payout_usd": self.vendor_payout_usd,
            "graduated_market_cap_usd": self.graduated_market_cap_usd,
            "resale_listing_price_usd": self.resale_listing_price_usd,
            "resale_price_usd": self.resale_price_usd,
            "royalty_usd": self.royalty_usd,
            "distribution_pool_usd": self.distribution_pool_usd,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PoolRecord":
        fields = {k: v for k, v in data.items()
                  if k in cls.__dataclass_fields__ and k not in ("created_at", "updated_at", "history")}
        record = cls(**fields)
        if data.get("created_at"):
            record.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            record.updated_at = datetime.fromisoformat(data["updated_at"])
        return record


class PoolStateMachine:
    """
    Pool lifecycle with validated transitions on both axes.

    Share purchases are applied only from confirmed transactions (a
    signature is required) and re-check every funding rule at apply time.
    """

    VALID_TRANSITIONS = {
        PoolStatus.OPEN: {PoolStatus.FILLED},
        PoolStatus.FILLED: {PoolStatus.FUNDED},
        PoolStatus.FUNDED: {PoolStatus.CUSTODY},
        PoolStatus.CUSTODY: {PoolStatus.ACTIVE},
        PoolStatus.ACTIVE: {PoolStatus.GRADUATED, PoolStatus.LISTED},
        PoolStatus.GRADUATED: {PoolStatus.LISTED},
        PoolStatus.LISTED: {PoolStatus.SOLD},
        PoolStatus.SOLD: {PoolStatus.DISTRIBUTED},
        PoolStatus.DISTRIBUTED: {PoolStatus.CLOSED},
        PoolStatus.CLOSED: set(),
    }

    TOKEN_TRANSITIONS = {
        TokenStatus.PENDING: {TokenStatus.MINTED},
        TokenStatus.MINTED: {TokenStatus.UNLOCKED},
        TokenStatus.UNLOCKED: {TokenStatus.FROZEN, TokenStatus.BURNED},
        TokenStatus.FROZEN: {TokenStatus.UNLOCKED, TokenStatus.BURNED},
        TokenStatus.BURNED: set(),
    }

    def __init__(self, audit=None, metrics=None):
        self.pools: Dict[str, PoolRecord] = {}
        self.audit = audit
        self.metrics = metrics

    def track(self, pool: PoolRecord) -> PoolRecord:
        existing = self.pools.get(pool.pool_id)
        if existing is not None:
            return existing
        self.pools[pool.pool_id] = pool
        logger.info(f"Tracking pool {pool.pool_id} ({pool.status}/{pool.token_status})")
        return pool

    def get(self, pool_id: str) -> PoolRecord:
        pool = self.pools.get(pool_id)
        if pool is None:
            raise KeyError(f"Pool {pool_id} is not tracked")
        return pool

    def _stamp(self, pool: PoolRecord, axis: str, old: str, new: str, **details) -> None:
        now = datetime.now(timezone.utc)
        pool.updated_at = now
        entry = {"at": now.isoformat(), "axis": axis, "from": old, "to": new}
        entry.update(details)
        pool.history.append(entry)
        logger.info(f"Pool {pool.pool_id} {axis}: {old} → {new}")
        if self.audit is not None:
            self.audit.log_transition(f"pool_{axis}", pool.pool_id, old, new,
                                      signature=details.get("signature"))
        if self.metrics is not None:
            self.metrics.record_transition(f"pool_{axis}", new)

    def _check_transition(self, pool: PoolRecord, new_status: PoolStatus) -> None:
        current = pool.status_enum
        if new_status not in self.VALID_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Invalid pool transition {current.value} → {new_status.value} for {pool.pool_id}"
            )

    def _check_token_transition(self, pool: PoolRecord, new_status: TokenStatus) -> None:
        current = pool.token_status_enum
        if new_status not in self.TOKEN_TRANSITIONS.get(current, set()):
            raise InvalidTransition(
                f"Invalid token transition {current.value} → {new_status.value} for {pool.pool_id}"
            )

    def transition(self, pool_id: str, new_status: PoolStatus, **details) -> PoolRecord:
        pool = self.get(pool_id)
        current = pool.status_enum
        self._check_transition(pool, new_status)
        pool.status = new_status.value
        self._stamp(pool, "funding", current.value, new_status.value, **details)
        return pool

    def transition_token(self, pool_id: str, new_status: TokenStatus, **details) -> PoolRecord:
        pool = self.get(pool_id)
        current = pool.token_status_enum
        self._check_token_transition(pool, new_status)
        pool.token_status = new_status.value
        self._stamp(pool, "token", current.value, new_status.value, **details)
        return pool

    # Funding ---------------------------------------------------------------

    def check_purchase(self, pool_id: str, wallet: str, shares: int) -> Optional[str]:
        """Return the reason a purchase would be refused, or None."""
        pool = self.get(pool_id)
        if isinstance(shares, bool) or not isinstance(shares, int) or shares <= 0:
            return f"Share count must be a positive integer, got {shares!r}"
        if pool.status_enum != PoolStatus.OPEN:
            return f"Pool {pool_id} is {pool.status}, not open for investment"
        if shares > pool.shares_available:
            return f"Only {pool.shares_available} shares available, requested {shares}"
        cost = shares * pool.share_price_usd
        if cost < pool.min_buy_in_usd:
            return f"Investment ${cost:.2f} below minimum buy-in ${pool.min_buy_in_usd:.2f}"
        if (pool.max_investors is not None and wallet not in pool.participants
                and len(pool.participants) >= pool.max_investors):
            return f"Pool {pool_id} already has the maximum of {pool.max_investors} investors"
        return None

    def buy_shares(self, pool_id: str, wallet: str, shares: int, signature: str) -> PoolRecord:
        """
        Apply a confirmed share purchase.

        Moves the pool to FILLED when the last share is sold.
        """
        if not signature:
            raise InvalidTransition(f"Refusing to apply a purchase on {pool_id} without a confirmed signature")
        reason = self.check_purchase(pool_id, wallet, shares)
        if reason:
            raise InvalidIntent(reason, instruction="buy_shares")

        pool = self.get(pool_id)
        pool.shares_sold += shares
        pool.participants[wallet] = pool.participants.get(wallet, 0) + shares
        pool.updated_at = datetime.now(timezone.utc)
        logger.info(
            f"Pool {pool_id}: {wallet} bought {shares} shares "
            f"({pool.shares_sold}/{pool.total_shares}, {pool.percent_filled:.1f}%)"
        )
        if self.audit is not None:
            self.audit.log_intent("buy_shares", status="confirmed", signature=signature,
                                  details={"pool_id": pool_id, "wallet": wallet, "shares": shares})
        if pool.shares_sold == pool.total_shares:
            self.transition(pool_id, PoolStatus.FILLED, signature=signature)
        return pool

    def sweep_funds(self, pool_id: str, signature: str) -> PoolRecord:
        """Funds swept to custody: FILLED → FUNDED, recording the vendor payout."""
        pool = self.get(pool_id)
        self._check_transition(pool, PoolStatus.FUNDED)
        pool.vendor_payout_usd = round(pool.target_amount_usd * VENDOR_PAYOUT_BPS / 10_000, 2)
        return self.transition(pool_id, PoolStatus.FUNDED, signature=signature,
                               vendor_payout_usd=pool.vendor_payout_usd)

    # Custody ---------------------------------------------------------------

    def _require_status(self, pool: PoolRecord, *allowed: PoolStatus) -> None:
        if pool.status_enum not in allowed:
            raise InvalidTransition(
                f"Pool {pool.pool_id} is {pool.status}; expected one of {[s.value for s in allowed]}"
            )

    def submit_tracking(self, pool_id: str, tracking_number: str) -> PoolRecord:
        """Vendor shipped the asset: FUNDED → CUSTODY."""
        if not tracking_number:
            raise InvalidIntent("Tracking number is required", instruction="submit_tracking")
        pool = self.get(pool_id)
        self._require_status(pool, PoolStatus.FUNDED)
        pool.tracking_number = tracking_number
        pool.custody_steps.append(CustodyStep.TRACKING_SUBMITTED.value)
        return self.transition(pool_id, PoolStatus.CUSTODY, tracking_number=tracking_number)

    def mark_received(self, pool_id: str) -> PoolRecord:
        pool = self.get(pool_id)
        self._require_status(pool, PoolStatus.CUSTODY)
        if CustodyStep.RECEIVED.value not in pool.custody_steps:
            pool.custody_steps.append(CustodyStep.RECEIVED.value)
            pool.updated_at = datetime.now(timezone.utc)
        return pool

    def verify_custody(self, pool_id: str) -> PoolRecord:
        """Custody externally verified; unlocks tokens that are already minted."""
        pool = self.get(pool_id)
        self._require_status(pool, PoolStatus.CUSTODY)
        if CustodyStep.RECEIVED.value not in pool.custody_steps:
            raise InvalidTransition(f"Pool {pool_id}: asset must be received before verification")
        if CustodyStep.VERIFIED.value not in pool.custody_steps:
            pool.custody_steps.append(CustodyStep.VERIFIED.value)
            pool.updated_at = datetime.now(timezone.utc)
        if pool.token_status_enum == TokenStatus.MINTED:
            self.transition_token(pool_id, TokenStatus.UNLOCKED, reason="custody_verified")
        return pool

    def store(self, pool_id: str) -> PoolRecord:
        """Asset stored in the vault: CUSTODY → ACTIVE."""
        pool = self.get(pool_id)
        self._require_status(pool, PoolStatus.CUSTODY)
        if CustodyStep.VERIFIED.value not in pool.custody_steps:
            raise InvalidTransition(f"Pool {pool_id}: custody must be verified before storing")
        pool.custody_steps.append(CustodyStep.STORED.value)
        return self.transition(pool_id, PoolStatus.ACTIVE)

    # Tokenization ------------------------------------------------------------

    def record_mint(self, pool_id: str, token_mint: str, signature: str) -> PoolRecord:
        pool = self.get(pool_id)
        if not token_mint:
            raise InvalidIntent("Token mint address required", instruction="mint_asset")
        self._check_token_transition(pool, TokenStatus.MINTED)
        pool.token_mint = token_mint
        return self.transition_token(pool_id, TokenStatus.MINTED, signature=signature)

    def unlock(self, pool_id: str) -> PoolRecord:
        """Unlock minted tokens; requires verified custody."""
        pool = self.get(pool_id)
        if CustodyStep.VERIFIED.value not in pool.custody_steps:
            raise InvalidTransition(f"Pool {pool_id}: tokens stay locked until custody is verified")
        return self.transition_token(pool_id, TokenStatus.UNLOCKED)

    def freeze(self, pool_id: str, reason: str = "admin") -> PoolRecord:
        return self.transition_token(pool_id, TokenStatus.FROZEN, reason=reason)

    def thaw(self, pool_id: str) -> PoolRecord:
        pool = self.get(pool_id)
        if pool.token_status_enum != TokenStatus.FROZEN:
            raise InvalidTransition(f"Pool {pool_id} tokens are {pool.token_status}, not frozen")
        return self.transition_token(pool_id, TokenStatus.UNLOCKED, reason="admin_thaw")

    def can_trade(self, pool_id: str) -> bool:
        pool = self.get(pool_id)
        return pool.can_trade() and pool.status_enum not in SHARE_FROZEN_STATES

    def require_tradable(self, pool_id: str) -> PoolRecord:
        pool = self.get(pool_id)
        if not self.can_trade(pool_id):
            raise TradingLocked(
                f"Trading disabled for pool {pool_id}: token_status={pool.token_status}, "
                f"mint={'set' if pool.token_mint else 'unset'}, status={pool.status}",
                address=pool.token_mint,
            )
        return pool

    def transfer_shares(self, pool_id: str, sender: str, recipient: str, shares: int,
                        signature: str) -> PoolRecord:
        """Apply a confirmed secondary-market share transfer."""
        pool = self.require_tradable(pool_id)
        if not signature:
            raise InvalidTransition("Refusing to apply a share transfer without a confirmed signature")
        held = pool.participants.get(sender, 0)
        if shares <= 0 or shares > held:
            raise InvalidIntent(f"{sender} holds {held} shares of {pool_id}, cannot transfer {shares}")
        pool.participants[sender] = held - shares
        if pool.participants[sender] == 0:
            del pool.participants[sender]
        pool.participants[recipient] = pool.participants.get(recipient, 0) + shares
        pool.updated_at = datetime.now(timezone.utc)
        return pool

    # Exit --------------------------------------------------------------------

    def graduate(self, pool_id: str) -> PoolRecord:
        pool = self.get(pool_id)
        self._check_transition(pool, PoolStatus.GRADUATED)
        pool.graduated_market_cap_usd = pool.shares_sold * pool.share_price_usd
        return self.transition(pool_id, PoolStatus.GRADUATED,
                               market_cap_usd=pool.graduated_market_cap_usd)

    def list_for_resale(self, pool_id: str, price_usd: float) -> PoolRecord:
        if price_usd <= 0:
            raise InvalidIntent(f"Resale price must be positive, got {price_usd}")
        pool = self.get(pool_id)
        self._check_transition(pool, PoolStatus.LISTED)
        pool.resale_listing_price_usd = price_usd
        return self.transition(pool_id, PoolStatus.LISTED, listing_price_usd=price_usd)

    def record_sale(self, pool_id: str, sale_price_usd: float, signature: Optional[str] = None) -> PoolRecord:
        """Underlying asset sold: LISTED → SOLD, splitting royalty and distribution pool."""
        if sale_price_usd <= 0:
            raise InvalidIntent(f"Sale price must be positive, got {sale_price_usd}")
        pool = self.get(pool_id)
        self._require_status(pool, PoolStatus.LISTED)
        pool.resale_price_usd = sale_price_usd
        pool.royalty_usd = round(sale_price_usd * RESALE_ROYALTY_BPS / 10_000, 2)
        pool.distribution_pool_usd = round(sale_price_usd - pool.royalty_usd, 2)
        return self.transition(pool_id, PoolStatus.SOLD, signature=signature,
                               sale_price_usd=sale_price_usd)

    def distribution_plan(self, pool_id: str) -> Dict[str, float]:
        """Pro-rata payout per participant: shares / total_shares of the distribution pool."""
        pool = self.get(pool_id)
        if pool.distribution_pool_usd is None:
            raise InvalidTransition(f"Pool {pool_id} has no recorded sale to distribute")
        return {
            wallet: round(pool.distribution_pool_usd * shares / pool.total_shares, 2)
            for wallet, shares in pool.participants.items()
        }

    def mark_distributed(self, pool_id: str, signature: Optional[str] = None) -> PoolRecord:
        pool = self.transition(pool_id, PoolStatus.DISTRIBUTED, signature=signature)
        if pool.token_status_enum in (TokenStatus.UNLOCKED, TokenStatus.FROZEN):
            self.transition_token(pool_id, TokenStatus.BURNED, reason="proceeds_distributed")
        return pool

    def close(self, pool_id: str) -> PoolRecord:
        return self.transition(pool_id, PoolStatus.CLOSED)

    def get_summary(self) -> Dict[str, Any]:
        counts: Dict[str, int] = {}
        for pool in self.pools.values():
            counts[pool.status] = counts.get(pool.status, 0) + 1
        return {
            "total_pools": len(self.pools),
            "tradable": sum(1 for p in self.pools if self.can_trade(p)),
            "status_breakdown": counts,
        }
