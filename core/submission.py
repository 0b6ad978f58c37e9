"""
Escrow Orchestrator Core: Signing and submission

Signs built instruction lists with an injected Signer, submits them, and
polls for confirmation against a bounded deadline. A deadline miss is
reported as UNCONFIRMED (the transaction may still land), never FAILED.
"""

import logging
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

from solders.hash import Hash
from solders.keypair import Keypair
from solders.message import MessageV0, to_bytes_versioned
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction

from core.exceptions import InvalidIntent, NotConnected, RateLimited, TransactionFailed
from core.transaction_builder import BuiltTransaction
from infra.retry import metrics_hook, with_retry

logger = logging.getLogger(__name__)


class Signer(ABC):
    """Signing capability for exactly one account."""

    @property
    @abstractmethod
    def public_key(self) -> Pubkey:
        ...

    @abstractmethod
    def sign_message(self, message: bytes) -> Signature:
        ...


class KeypairSigner(Signer):
    """Signer backed by an in-process keypair."""

    def __init__(self, keypair: Keypair):
        self._keypair = keypair

    @classmethod
    def from_base58(cls, secret: str) -> "KeypairSigner":
        return cls(Keypair.from_base58_string(secret))

    @property
    def public_key(self) -> Pubkey:
        return self._keypair.pubkey()

    def sign_message(self, message: bytes) -> Signature:
        return self._keypair.sign_message(message)


class SubmissionStatus(Enum):
    CONFIRMED = "confirmed"
    UNCONFIRMED = "unconfirmed"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class SubmissionOutcome:
    status: SubmissionStatus
    signature: Optional[str] = None
    error: Optional[str] = None
    polls: int = 0

    @property
    def confirmed(self) -> bool:
        return self.status == SubmissionStatus.CONFIRMED


def sign_versioned(message: MessageV0, signer: Signer) -> VersionedTransaction:
    """Attach a single signer's signature to a compiled message."""
    signature = signer.sign_message(to_bytes_versioned(message))
    return VersionedTransaction.populate(message, [signature])


def sign_serialized(raw_transaction: bytes, signer: Signer) -> VersionedTransaction:
    """
    Sign an unsigned serialized transaction (as returned by the liquidity service).

    The transaction must name exactly one required signer: ``signer``.
    """
    unsigned = VersionedTransaction.from_bytes(raw_transaction)
    message = unsigned.message
    required = message.header.num_required_signatures
    if required != 1:
        raise InvalidIntent(f"Swap transaction requires {required} signers; only single-signer trades are supported")
    fee_payer = message.account_keys[0]
    if fee_payer != signer.public_key:
        raise InvalidIntent(f"Swap transaction is for {fee_payer}, signer is {signer.public_key}")
    return sign_versioned(message, signer)


class TransactionSubmitter:
    """
    Sign, submit and confirm transactions.

    ``clock`` and ``sleep`` are injectable so confirmation deadlines can be
    tested without real waits.
    """

    def __init__(
        self,
        ledger,
        signer: Optional[Signer],
        confirm_timeout: float = 60.0,
        poll_interval: float = 2.0,
        commitment: str = "confirmed",
        send_max_attempts: int = 3,
        send_base_delay: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
        metrics=None,
    ):
        self.ledger = ledger
        self.signer = signer
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.commitment = commitment
        self.send_max_attempts = send_max_attempts
        self.send_base_delay = send_base_delay
        self._clock = clock
        self._sleep = sleep
        self.metrics = metrics

    def _require_signer(self) -> Signer:
        if self.signer is None:
            raise NotConnected("No signer connected; submission blocked")
        return self.signer

    def sign(self, built: BuiltTransaction) -> VersionedTransaction:
        signer = self._require_signer()
        if built.signer != signer.public_key:
            raise InvalidIntent(
                f"{built.intent} must be signed by {built.signer}, connected signer is {signer.public_key}",
                instruction=built.primary_instruction(),
            )
        blockhash = self.ledger.get_latest_blockhash()
        message = MessageV0.try_compile(
            signer.public_key,
            [ix.to_solders() for ix in built.instructions],
            [],
            Hash.from_string(blockhash),
        )
        return sign_versioned(message, signer)

    def submit_and_confirm(self, built: BuiltTransaction) -> SubmissionOutcome:
        """Sign, send and confirm one built transaction."""
        if built.is_empty:
            logger.info(f"{built.intent}: nothing to submit")
            return self._record(built.intent, SubmissionOutcome(SubmissionStatus.SKIPPED))

        transaction = self.sign(built)
        try:
            signature = self.send(bytes(transaction), label=built.intent)
        except TransactionFailed as e:
            logger.error(f"{built.intent} rejected on submission: {e}")
            return self._record(built.intent, SubmissionOutcome(SubmissionStatus.FAILED, error=str(e)))
        return self._record(built.intent, self.confirm(signature))

    def submit_signed(self, transaction: VersionedTransaction, label: str = "transaction") -> SubmissionOutcome:
        """Send an already signed transaction and wait for confirmation."""
        try:
            signature = self.send(bytes(transaction), label=label)
        except TransactionFailed as e:
            return self._record(label, SubmissionOutcome(SubmissionStatus.FAILED, error=str(e)))
        return self._record(label, self.confirm(signature))

    def send(self, raw: bytes, label: str = "transaction") -> str:
        signature = with_retry(
            lambda: self.ledger.send_transaction(raw),
            max_attempts=self.send_max_attempts,
            base_delay=self.send_base_delay,
            label=f"send {label}",
            on_retry=metrics_hook(self.metrics, "send"),
        )
        logger.info(f"Submitted {label}: {signature}")
        return signature

    def confirm(self, signature: str) -> SubmissionOutcome:
        """
        Poll until confirmed, failed or the deadline passes.

        After the deadline one final poll is made before reporting UNCONFIRMED.
        """
        deadline = self._clock() + self.confirm_timeout
        polls = 0
        while True:
            polls += 1
            outcome = self._poll_once(signature, polls)
            if outcome is not None:
                return outcome
            if self._clock() >= deadline:
                break
            self._sleep(self.poll_interval)

        # Deadline passed: one more look before giving up
        polls += 1
        outcome = self._poll_once(signature, polls)
        if outcome is not None:
            return outcome
        logger.warning(f"Transaction {signature} unconfirmed after {self.confirm_timeout:.0f}s ({polls} polls)")
        return SubmissionOutcome(SubmissionStatus.UNCONFIRMED, signature=signature, polls=polls)

    def _poll_once(self, signature: str, polls: int) -> Optional[SubmissionOutcome]:
        try:
            status = self.ledger.get_signature_status(signature)
        except RateLimited:
            logger.warning(f"Rate limited polling {signature}; treating poll {polls} as no status")
            return None
        if status is None:
            return None
        if status.failed:
            logger.error(f"Transaction {signature} failed on ledger: {status.error}")
            return SubmissionOutcome(SubmissionStatus.FAILED, signature=signature,
                                     error=str(status.error), polls=polls)
        if status.reached(self.commitment):
            logger.info(f"Transaction {signature} {status.confirmation_status} after {polls} poll(s)")
            return SubmissionOutcome(SubmissionStatus.CONFIRMED, signature=signature, polls=polls)
        return None

    def _record(self, label: str, outcome: SubmissionOutcome) -> SubmissionOutcome:
        if self.metrics is not None:
            self.metrics.record_submission(label, outcome.status.value)
        return outcome
