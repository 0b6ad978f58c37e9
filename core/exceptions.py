"""Shared exception types for escrow, pool and trading orchestration."""

from typing import Optional


class OrchestratorError(RuntimeError):
    """
    Base error for every intent failure.

    Carries enough context (derived address, instruction name) for a user to
    retry the intent by hand. ``transient`` errors are reported as pending,
    never as hard failures.
    """

    transient = False

    def __init__(
        self,
        message: str,
        *,
        address: Optional[str] = None,
        instruction: Optional[str] = None,
        original: Optional[Exception] = None,
    ):
        super().__init__(message)
        self.message = message
        self.address = address
        self.instruction = instruction
        self.original = original

    def context(self) -> dict:
        return {
            "error": type(self).__name__,
            "message": self.message,
            "address": self.address,
            "instruction": self.instruction,
            "transient": self.transient,
        }


class NotConnected(OrchestratorError):
    """No signer available; the intent is blocked before any transaction is built."""


class RateLimited(OrchestratorError):
    """Remote service signalled a rate limit."""

    transient = True


class AccountNotFound(OrchestratorError):
    """
    Derived address has no account data.

    ``reason`` is ``"not_created"`` when the address is well formed but the
    ledger has not created it yet, ``"wrong_seed"`` when the seed is known
    not to match any escrow the record store or ledger has seen.
    """

    NOT_CREATED = "not_created"
    WRONG_SEED = "wrong_seed"

    def __init__(self, message: str, *, reason: str = NOT_CREATED, **kwargs):
        super().__init__(message, **kwargs)
        self.reason = reason

    def context(self) -> dict:
        ctx = super().context()
        ctx["reason"] = self.reason
        return ctx


class InsufficientFunds(OrchestratorError):
    """Balance checked ahead of building is below what the intent needs."""

    def __init__(self, message: str, *, required: int = 0, available: int = 0, **kwargs):
        super().__init__(message, **kwargs)
        self.required = required
        self.available = available


class StaleQuote(OrchestratorError):
    """Quote is older than the freshness window; re-quote instead of executing."""


class SlippageExceeded(OrchestratorError):
    """Quoted price moved past the accepted bound; re-quote required."""


class PriceImpactTooHigh(SlippageExceeded):
    """Price impact above the configured threshold without explicit re-confirmation."""


class TradingLocked(OrchestratorError):
    """Pool tokens are not in the unlocked state."""


class ConfirmationTimeout(OrchestratorError):
    """Confirmation deadline passed; the transaction may still land."""

    transient = True

    def __init__(self, message: str, *, signature: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.signature = signature


class TransactionFailed(OrchestratorError):
    """Ledger reported the transaction as failed."""

    def __init__(self, message: str, *, signature: Optional[str] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.signature = signature


class Unauthorized(OrchestratorError):
    """Privileged instruction attempted by an account outside the admin set."""


class InvalidTransition(OrchestratorError):
    """Lifecycle machine refused a state change."""


class InvalidIntent(OrchestratorError):
    """Intent parameters rejected locally before any remote call."""
