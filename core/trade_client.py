"""
Escrow Orchestrator Core: Trade quote/execute client

Secondary-market trades of pool shares against the liquidity service.

Quotes are debounced: amount changes reset a timer and only the last amount
is fetched once the timer expires. A fetch that completes after a newer
amount change is discarded. Execution is guarded by pool tradability,
quote freshness, price impact and slippage checks.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional

from core.exceptions import (
    ConfirmationTimeout,
    InvalidIntent,
    PriceImpactTooHigh,
    SlippageExceeded,
    StaleQuote,
    TransactionFailed,
)
from core.submission import Signer, SubmissionStatus, sign_serialized
from infra.retry import metrics_hook, with_retry

logger = logging.getLogger(__name__)

MIN_DEBOUNCE_MS = 300
DEFAULT_DEBOUNCE_MS = 500
DEFAULT_SLIPPAGE_BPS = 100

DIRECTIONS = ("buy", "sell")


@dataclass
class TradeQuote:
    """Priced trade for one pool in one direction."""
    pool_id: str
    direction: str
    input_mint: str
    output_mint: str
    input_amount: int
    output_amount: int
    price_impact_pct: float
    slippage_bps: int
    fetched_at: float
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)

    @property
    def min_output_amount(self) -> int:
        return self.output_amount * (10_000 - self.slippage_bps) // 10_000

    def age(self, now: float) -> float:
        return now - self.fetched_at


def validate_amount(amount: Any) -> int:
    """Reject non-positive or non-integer amounts before any remote call."""
    if isinstance(amount, bool) or not isinstance(amount, (int, float)):
        raise InvalidIntent(f"Trade amount must be a number, got {amount!r}")
    if amount <= 0:
        raise InvalidIntent(f"Trade amount must be positive, got {amount}")
    if isinstance(amount, float):
        if not amount.is_integer():
            raise InvalidIntent(f"Trade amount must be in whole base units, got {amount}")
        amount = int(amount)
    return amount


@dataclass
class _Ticket:
    generation: int
    amount: int


class QuoteDebouncer:
    """
    Debounced, last-write-wins quote fetching.

    ``on_amount_change`` records the newest amount and restarts the delay;
    ``poll`` fetches once the delay has elapsed with no further change.
    ``begin``/``complete`` split the fetch so a late result can be checked
    against the current generation and dropped if superseded.
    """

    def __init__(
        self,
        fetch: Callable[[int], TradeQuote],
        delay_ms: int = DEFAULT_DEBOUNCE_MS,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
    ):
        if delay_ms < MIN_DEBOUNCE_MS:
            raise ValueError(f"Debounce delay must be >= {MIN_DEBOUNCE_MS}ms, got {delay_ms}")
        self._fetch = fetch
        self.delay = delay_ms / 1000.0
        self._clock = clock
        self.metrics = metrics

        self.generation = 0
        self._pending_amount: Optional[int] = None
        self._due_at: Optional[float] = None
        self.latest: Optional[TradeQuote] = None
        self.last_error: Optional[str] = None
        self.requests_issued = 0

    def on_amount_change(self, amount: Any) -> None:
        self.generation += 1
        try:
            self._pending_amount = validate_amount(amount)
        except InvalidIntent as e:
            # Invalid input clears both the pending fetch and the shown quote
            self._pending_amount = None
            self._due_at = None
            self.latest = None
            self.last_error = str(e)
            logger.debug(f"Quote input rejected locally: {e}")
            return
        self.last_error = None
        self._due_at = self._clock() + self.delay

    @property
    def pending(self) -> bool:
        return self._pending_amount is not None

    def begin(self) -> Optional[_Ticket]:
        """Claim the pending amount if its delay has elapsed."""
        if self._pending_amount is None or self._due_at is None:
            return None
        if self._clock() < self._due_at:
            return None
        ticket = _Ticket(generation=self.generation, amount=self._pending_amount)
        self._pending_amount = None
        self._due_at = None
        self.requests_issued += 1
        return ticket

    def complete(self, ticket: _Ticket, quote: TradeQuote) -> Optional[TradeQuote]:
        """Accept ``quote`` unless a newer amount change superseded the ticket."""
        if ticket.generation != self.generation:
            logger.debug(f"Discarding superseded quote for amount={ticket.amount}")
            if self.metrics is not None:
                self.metrics.record_quote("discarded")
            return None
        self.latest = quote
        if self.metrics is not None:
            self.metrics.record_quote("accepted")
        return quote

    def poll(self) -> Optional[TradeQuote]:
        ticket = self.begin()
        if ticket is None:
            return None
        try:
            quote = self._fetch(ticket.amount)
        except Exception as e:
            if ticket.generation == self.generation:
                self.last_error = str(e)
            logger.warning(f"Quote fetch failed for amount={ticket.amount}: {e}")
            raise
        return self.complete(ticket, quote)


class TradeClient:
    """
    Quote and execute pool-share trades.

    Trading is refused with TradingLocked whenever the pool's token axis is
    not unlocked; no degraded quote is ever returned.
    """

    def __init__(
        self,
        liquidity_api,
        pools,
        submitter,
        stable_mint: str,
        max_quote_age_seconds: float = 30.0,
        max_price_impact_pct: float = 5.0,
        default_slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
        quote_max_attempts: int = 3,
        quote_base_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        metrics=None,
    ):
        self.api = liquidity_api
        self.pools = pools
        self.submitter = submitter
        self.stable_mint = stable_mint
        self.max_quote_age_seconds = max_quote_age_seconds
        self.max_price_impact_pct = max_price_impact_pct
        self.default_slippage_bps = default_slippage_bps
        self.quote_max_attempts = quote_max_attempts
        self.quote_base_delay = quote_base_delay
        self._clock = clock
        self.metrics = metrics

    def _mints(self, token_mint: str, direction: str):
        if direction == "buy":
            return self.stable_mint, token_mint
        return token_mint, self.stable_mint

    def quote(self, pool_id: str, direction: str, amount: Any,
              slippage_bps: Optional[int] = None) -> TradeQuote:
        amount = validate_amount(amount)
        if direction not in DIRECTIONS:
            raise InvalidIntent(f"Direction must be one of {DIRECTIONS}, got {direction!r}")
        slippage = self.default_slippage_bps if slippage_bps is None else slippage_bps
        if not 0 <= slippage <= 10_000:
            raise InvalidIntent(f"Slippage must be within [0, 10000] bps, got {slippage}")

        pool = self.pools.require_tradable(pool_id)
        input_mint, output_mint = self._mints(pool.token_mint, direction)
        raw = with_retry(
            lambda: self.api.get_quote(input_mint, output_mint, amount, slippage),
            max_attempts=self.quote_max_attempts,
            base_delay=self.quote_base_delay,
            label=f"quote {pool_id}",
            on_retry=metrics_hook(self.metrics, "quote"),
        )
        quote = TradeQuote(
            pool_id=pool_id,
            direction=direction,
            input_mint=input_mint,
            output_mint=output_mint,
            input_amount=amount,
            output_amount=int(raw["output_amount"]),
            price_impact_pct=float(raw.get("price_impact_pct", 0.0)),
            slippage_bps=slippage,
            fetched_at=self._clock(),
            raw=raw,
        )
        logger.info(
            f"Quote {pool_id} {direction} {amount} → {quote.output_amount} "
            f"(impact {quote.price_impact_pct:.2f}%, slippage {slippage}bps)"
        )
        if self.metrics is not None:
            self.metrics.record_quote("issued")
        return quote

    def debouncer(self, pool_id: str, direction: str, slippage_bps: Optional[int] = None,
                  delay_ms: int = DEFAULT_DEBOUNCE_MS) -> QuoteDebouncer:
        """Debouncer bound to one pool/direction."""
        return QuoteDebouncer(
            lambda amount: self.quote(pool_id, direction, amount, slippage_bps),
            delay_ms=delay_ms,
            clock=self._clock,
            metrics=self.metrics,
        )

    def check_quote(self, quote: TradeQuote, confirm_price_impact: bool = False) -> None:
        """Freshness and price-impact guards; raise instead of executing."""
        age = quote.age(self._clock())
        if age > self.max_quote_age_seconds:
            raise StaleQuote(
                f"Quote too stale for {quote.pool_id}: {age:.1f}s old (max: {self.max_quote_age_seconds}s)",
                instruction="swap",
            )
        if quote.price_impact_pct > self.max_price_impact_pct and not confirm_price_impact:
            raise PriceImpactTooHigh(
                f"Price impact {quote.price_impact_pct:.2f}% exceeds {self.max_price_impact_pct:.2f}% "
                f"for {quote.pool_id}; re-confirm to proceed",
                instruction="swap",
            )

    def execute(self, quote: TradeQuote, signer: Signer, confirm_price_impact: bool = False) -> str:
        """
        Execute a quoted trade; returns the confirmed signature.

        Raises:
            TradingLocked, StaleQuote, PriceImpactTooHigh, SlippageExceeded,
            ConfirmationTimeout (still pending), TransactionFailed
        """
        self.pools.require_tradable(quote.pool_id)
        self.check_quote(quote, confirm_price_impact)

        # Price the swap again; the transaction is built from this fresh quote
        fresh = with_retry(
            lambda: self.api.get_quote(quote.input_mint, quote.output_mint, quote.input_amount, quote.slippage_bps),
            max_attempts=self.quote_max_attempts,
            base_delay=self.quote_base_delay,
            label=f"requote {quote.pool_id}",
            on_retry=metrics_hook(self.metrics, "quote"),
        )
        if int(fresh["output_amount"]) < quote.min_output_amount:
            raise SlippageExceeded(
                f"Output fell to {fresh['output_amount']} below minimum {quote.min_output_amount} "
                f"({quote.slippage_bps}bps); re-quote required",
                instruction="swap",
            )
        fresh_impact = float(fresh.get("price_impact_pct", 0.0))
        if fresh_impact > self.max_price_impact_pct:
            # A confirmation only covers the impact the user was shown
            if not confirm_price_impact or fresh_impact > quote.price_impact_pct:
                raise PriceImpactTooHigh(
                    f"Re-quoted price impact {fresh_impact:.2f}% exceeds {self.max_price_impact_pct:.2f}% "
                    f"for {quote.pool_id}; re-confirm to proceed",
                    instruction="swap",
                )

        # Suspension point: re-validate before building
        self.pools.require_tradable(quote.pool_id)
        unsigned = self.api.build_swap(fresh, str(signer.public_key))
        transaction = sign_serialized(unsigned, signer)
        outcome = self.submitter.submit_signed(transaction, label=f"swap {quote.pool_id}")

        if outcome.status == SubmissionStatus.CONFIRMED:
            logger.info(f"Trade confirmed for {quote.pool_id}: {outcome.signature}")
            return outcome.signature
        if outcome.status == SubmissionStatus.UNCONFIRMED:
            raise ConfirmationTimeout(
                f"Swap {outcome.signature} not confirmed before deadline; may still land",
                signature=outcome.signature,
                instruction="swap",
            )
        raise TransactionFailed(
            f"Swap failed for {quote.pool_id}: {outcome.error}",
            signature=outcome.signature,
            instruction="swap",
        )
