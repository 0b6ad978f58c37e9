"""
Escrow & fractional-pool orchestrator runner.

Wires config, ledger/liquidity/content adapters, the record store and the
lifecycle machines into one session object, and exposes a small CLI:

    python -m runner.orchestrator derive --seed 42
    python -m runner.orchestrator reconcile --asset <mint>
    python -m runner.orchestrator quote <pool_id> buy 1000000
    python -m runner.orchestrator validate
"""

import json
import logging
import os
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from core.addresses import (
    as_pubkey,
    associated_token_address,
    escrow_address,
    registry_address,
)
from core.audit_log import AuditLogger
from core.escrow_state import (
    CONFIRMED_TARGETS,
    EscrowRecord,
    EscrowStateMachine,
    Readback,
    classify_readback,
    decode_escrow_account,
)
from core.exceptions import NotConnected, OrchestratorError
from core.metadata import DescriptiveMetadata, from_document, to_document
from core.pool_state import PoolRecord, PoolStateMachine
from core.reconciler import CanonicalView, StateReconciler, gather_ledger_facts
from core.submission import KeypairSigner, Signer, SubmissionStatus, TransactionSubmitter
from core.trade_client import TradeClient, TradeQuote
from core.transaction_builder import (
    BuildContext,
    BuiltTransaction,
    BuyAsset,
    CancelEscrow,
    ConfirmDelivery,
    Intent,
    ListAsset,
    TransactionBuilder,
)
from infra.content_store import ContentStore
from infra.ledger_rpc import LedgerClient
from infra.liquidity_api import LiquidityApi
from infra.metrics import MetricsRecorder
from infra.record_store import RecordStore
from tools.config_validator import AppSchema, load_app_config

logger = logging.getLogger(__name__)

# Sale-request status written once each escrow instruction is confirmed
SALE_STATUS_AFTER = {
    "initialize": "listed",
    "exchange": "matched",
    "confirm_delivery": "settled",
    "cancel": "cancelled",
}


@dataclass
class IntentResult:
    """Outcome of one intent"""
    status: str  # "success" | "pending" | "failed" | "dry_run"
    intent: str
    signature: Optional[str] = None
    address: Optional[str] = None
    instruction: Optional[str] = None
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = None

    def __post_init__(self):
        if self.timestamp is None:
            self.timestamp = datetime.now(timezone.utc)

    @property
    def success(self) -> bool:
        return self.status == "success"


def _intent_name(intent: Intent) -> str:
    return type(intent).__name__


class Orchestrator:
    """
    One user session over the escrow program and the liquidity service.

    Every collaborator can be injected; anything not injected is built from
    config. Lifecycle machines only move on confirmed signatures or ledger
    reads, so a failed intent leaves them in their last confirmed state.
    """

    def __init__(
        self,
        config: AppSchema,
        ledger=None,
        liquidity_api=None,
        content_store=None,
        records: Optional[RecordStore] = None,
        signer: Optional[Signer] = None,
        audit: Optional[AuditLogger] = None,
        metrics: Optional[MetricsRecorder] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.mode = config.app.mode
        self.program_id = as_pubkey(config.app.program_id)

        self.metrics = metrics or MetricsRecorder(
            enabled=config.monitoring.metrics_enabled, port=config.monitoring.metrics_port
        )
        self.audit = audit or AuditLogger(config.audit.file)
        self.records = records or RecordStore(config.records.path)
        self.ledger = ledger or LedgerClient(
            rpc_url=config.ledger.rpc_url,
            commitment=config.ledger.commitment,
            timeout=config.ledger.request_timeout_seconds,
            scan_max_attempts=config.ledger.scan_max_attempts,
            scan_base_delay=config.ledger.scan_base_delay_seconds,
            metrics=self.metrics,
        )
        self.liquidity_api = liquidity_api or LiquidityApi(
            base_url=config.trading.liquidity_api_url,
            api_key_env=config.trading.api_key_env,
            timeout=config.trading.request_timeout_seconds,
        )
        self.content_store = content_store or ContentStore(
            pin_url=config.content.pin_url,
            gateway_url=config.content.gateway_url,
            jwt_env=config.content.jwt_env,
        )
        self.signer = signer if signer is not None else self._signer_from_env()

        self.escrows = EscrowStateMachine(audit=self.audit, metrics=self.metrics)
        self.pools = PoolStateMachine(audit=self.audit, metrics=self.metrics)
        self.builder = TransactionBuilder(self.ledger, BuildContext(
            program_id=self.program_id,
            settlement_mint=config.escrow.settlement_mint,
            fee_treasury=config.escrow.fee_treasury,
            fee_bps=config.escrow.fee_bps,
            rent_reserve=config.escrow.rent_reserve_lamports,
            admin_set=set(config.escrow.admins) or None,
        ))
        self.submitter = TransactionSubmitter(
            self.ledger,
            self.signer,
            confirm_timeout=config.ledger.confirm_timeout_seconds,
            poll_interval=config.ledger.confirm_poll_interval_seconds,
            commitment=config.ledger.commitment,
            clock=clock,
            sleep=sleep,
            metrics=self.metrics,
        )
        self.reconciler = StateReconciler(self.records, metrics=self.metrics, audit=self.audit)
        self.trader = TradeClient(
            self.liquidity_api,
            self.pools,
            self.submitter,
            stable_mint=config.trading.stable_mint,
            max_quote_age_seconds=config.trading.quote_max_age_seconds,
            max_price_impact_pct=config.trading.max_price_impact_pct,
            default_slippage_bps=config.trading.default_slippage_bps,
            clock=clock,
            metrics=self.metrics,
        )
        self.load_pools()
        logger.info(f"Orchestrator ready (mode={self.mode}, program={self.program_id}, "
                    f"signer={'connected' if self.signer else 'none'})")

    def _signer_from_env(self) -> Optional[Signer]:
        secret = os.getenv(self.config.ledger.signer_secret_env)
        if not secret:
            return None
        return KeypairSigner.from_base58(secret)

    # ----- escrows -----

    def refresh_escrow(self, seed: int) -> Optional[EscrowRecord]:
        """
        Re-read one escrow from the ledger and fold the read into the machine.

        Settled vs cancelled is only decided from an explicit holder read.
        """
        address = escrow_address(seed, self.program_id)
        info = self.ledger.get_account_info(address)
        record = self.escrows.get(seed)
        if info is None:
            if record is not None:
                self.escrows.apply_readback(seed, Readback.ABSENT)
            return record

        state = decode_escrow_account(info.data)
        if record is None:
            record = self.escrows.track(EscrowRecord(
                seed=seed,
                initializer=str(state.initializer),
                asset_mint=str(state.asset_mint),
                settlement_mint=str(state.settlement_mint),
                initializer_amount=state.initializer_amount,
                taker_amount=state.taker_amount,
                content_ref=state.content_ref,
                price=state.price,
                address=str(address),
            ))
        if state.buyer is not None:
            record.counterparty = str(state.buyer)

        vault_balance = self.ledger.get_token_balance(associated_token_address(state.asset_mint, address)) or 0
        readback = classify_readback(True, vault_balance, state.buyer is not None)
        self.escrows.apply_readback(seed, readback, vault_balance=vault_balance,
                                    counterparty=record.counterparty)
        if record.needs_disambiguation:
            holder = self.ledger.get_token_largest_holder(state.asset_mint)
            self.escrows.resolve_ambiguous(seed, str(holder) if holder else None)
        self.records.upsert("escrows", str(seed), record.to_dict())
        return record

    def submit_intent(self, intent: Intent) -> IntentResult:
        """
        Build, submit and confirm one intent.

        Transient failures (rate limits, confirmation deadline) come back as
        "pending"; everything else that goes wrong is "failed" with context.
        """
        name = _intent_name(intent)
        seed = getattr(intent, "seed", None)
        try:
            if isinstance(intent, (BuyAsset, ConfirmDelivery, CancelEscrow)):
                # Prior reads may be stale after any suspension point
                self.refresh_escrow(seed)
            built = self.builder.build(intent)
        except OrchestratorError as e:
            return self._fail(name, e)

        if isinstance(intent, ListAsset) and built.seed is not None and self.escrows.get(built.seed) is None:
            self.escrows.track(EscrowRecord(
                seed=built.seed,
                initializer=str(built.signer),
                asset_mint=str(as_pubkey(intent.asset_mint)),
                settlement_mint=self.config.escrow.settlement_mint,
                initializer_amount=intent.initializer_amount,
                taker_amount=intent.taker_amount if intent.taker_amount is not None else intent.price,
                content_ref=intent.content_ref,
                price=intent.price,
                address=str(built.escrow),
            ))

        address = str(built.escrow) if built.escrow else None
        if built.is_empty:
            self.metrics.record_intent(built.intent, "noop")
            self.audit.log_intent(built.intent, status="noop", address=address, details=built.details)
            return IntentResult(status="success", intent=built.intent, address=address, details=built.details)

        if self.mode != "LIVE":
            self.metrics.record_intent(built.intent, "dry_run")
            self.audit.log_intent(built.intent, status="built", address=address,
                                  instructions=built.instruction_names(), details=built.details)
            return IntentResult(status="dry_run", intent=built.intent, address=address,
                                instruction=built.primary_instruction(), details=built.details)

        try:
            outcome = self.submitter.submit_and_confirm(built)
        except OrchestratorError as e:
            if e.instruction is None:
                e.instruction = built.primary_instruction()
            if e.address is None:
                e.address = address
            return self._fail(built.intent, e)

        return self._settle_outcome(built, outcome)

    def _settle_outcome(self, built: BuiltTransaction, outcome) -> IntentResult:
        address = str(built.escrow) if built.escrow else None
        instruction = built.primary_instruction()
        result = IntentResult(
            status="failed", intent=built.intent, signature=outcome.signature,
            address=address, instruction=instruction, details=built.details,
        )
        if outcome.status == SubmissionStatus.CONFIRMED:
            result.status = "success"
            if built.seed is not None and instruction in CONFIRMED_TARGETS and self.escrows.get(built.seed):
                record = self.escrows.apply_confirmed(built.seed, instruction, outcome.signature)
                self.records.upsert("escrows", str(built.seed), record.to_dict())
                self._record_sale_status(built, record, instruction, outcome.signature)
        elif outcome.status == SubmissionStatus.UNCONFIRMED:
            result.status = "pending"
            result.error = f"Transaction {outcome.signature} not confirmed before deadline; it may still land"
        else:
            result.error = outcome.error

        self.metrics.record_intent(built.intent, result.status)
        self.audit.log_intent(built.intent, status=result.status, signature=outcome.signature,
                              address=address, instructions=built.instruction_names(),
                              error=result.error, details=built.details)
        if self.escrows.escrows:
            self.metrics.record_active_escrows(len(self.escrows.get_active()))
        return result

    def _record_sale_status(self, built: BuiltTransaction, record: EscrowRecord,
                            instruction: str, signature: str) -> None:
        status = SALE_STATUS_AFTER[instruction]
        existing = self.records.find("sale_requests", nft_id=record.asset_mint, seed=record.seed)
        fields = {"status": status, "last_signature": signature}
        if record.counterparty:
            fields["buyer"] = record.counterparty
        if existing:
            self.records.update("sale_requests", existing[0]["_id"], **fields)
            return
        self.records.insert("sale_requests", {
            "nft_id": record.asset_mint,
            "seller": record.initializer,
            "seed": record.seed,
            "escrow_address": str(built.escrow),
            "initializer_amount": record.initializer_amount,
            "taker_amount": record.taker_amount,
            "file_cid": record.content_ref,
            "sale_price": record.price,
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            **fields,
        })

    def _fail(self, intent: str, error: OrchestratorError) -> IntentResult:
        status = "pending" if error.transient else "failed"
        logger.warning(f"Intent {intent} {status}: {error}")
        self.metrics.record_intent(intent, status)
        self.audit.log_intent(intent, status=status, address=error.address,
                              error=str(error), details=error.context())
        return IntentResult(
            status=status,
            intent=intent,
            signature=getattr(error, "signature", None),
            address=error.address,
            instruction=error.instruction,
            error=str(error),
            details=error.context(),
        )

    # ----- reconciliation -----

    def load_metadata(self) -> List[DescriptiveMetadata]:
        records = []
        for doc in self.records.all("metadata"):
            try:
                records.append(from_document(doc, asset_id=doc.get("_id")))
            except ValueError as e:
                logger.warning(f"Skipping invalid metadata record {doc.get('_id')}: {e}")
        return records

    def reconcile(self, asset_ids: Optional[List[str]] = None) -> Dict[str, CanonicalView]:
        facts = gather_ledger_facts(self.ledger, self.program_id, asset_ids)
        for fact in facts.values():
            if fact.escrow is not None and self.escrows.get(fact.escrow.seed) is not None:
                self.refresh_escrow(fact.escrow.seed)
        return self.reconciler.reconcile(facts, self.load_metadata())

    def sync_ownership(self, asset_ids: Optional[List[str]] = None) -> List[Dict[str, Any]]:
        facts = gather_ledger_facts(self.ledger, self.program_id, asset_ids)
        return self.reconciler.sync_ownership(facts, self.load_metadata())

    def publish_metadata(self, metadata: DescriptiveMetadata) -> str:
        """Pin a metadata version and record it; returns the content URI."""
        document = to_document(metadata)
        uri = self.content_store.pin_json(document, label=f"{metadata.asset_id}-metadata")
        document["uri"] = uri
        self.records.upsert("metadata", metadata.asset_id, document)
        return uri

    # ----- pools -----

    def load_pools(self) -> None:
        for doc in self.records.all("pools"):
            try:
                self.pools.track(PoolRecord.from_dict(doc))
            except (TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid pool record {doc.get('_id')}: {e}")

    def save_pool(self, pool_id: str) -> None:
        self.records.upsert("pools", pool_id, self.pools.get(pool_id).to_dict())

    def quote(self, pool_id: str, direction: str, amount: Any,
              slippage_bps: Optional[int] = None) -> TradeQuote:
        return self.trader.quote(pool_id, direction, amount, slippage_bps)

    def execute_trade(self, quote: TradeQuote, confirm_price_impact: bool = False) -> IntentResult:
        try:
            if self.signer is None:
                raise NotConnected("No signer connected; trade blocked", instruction="swap")
            signature = self.trader.execute(quote, self.signer, confirm_price_impact)
        except OrchestratorError as e:
            return self._fail("swap", e)
        self.metrics.record_intent("swap", "success")
        self.audit.log_intent("swap", status="success", signature=signature,
                              details={"pool_id": quote.pool_id, "direction": quote.direction,
                                       "amount": quote.input_amount})
        return IntentResult(status="success", intent="swap", signature=signature,
                            details={"pool_id": quote.pool_id})


def setup_logging(config: AppSchema) -> None:
    log_path = Path(config.logging.file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logging.basicConfig(
        level=getattr(logging, config.logging.level.upper()),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.FileHandler(log_path), logging.StreamHandler()],
    )


def _derive(args, config: AppSchema) -> Dict[str, Any]:
    program_id = config.app.program_id
    if args.seed is not None:
        return {"seed": args.seed, "escrow": str(escrow_address(args.seed, program_id))}
    if args.registry:
        return {"registry": args.registry, "address": str(registry_address(args.registry, program_id))}
    if args.ata:
        mint, owner = args.ata
        return {"mint": mint, "owner": owner, "ata": str(associated_token_address(mint, owner))}
    raise SystemExit("derive needs --seed, --registry or --ata MINT OWNER")


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point"""
    import argparse

    parser = argparse.ArgumentParser(description="Escrow & fractional-pool orchestrator")
    parser.add_argument("--config-dir", default="config", help="Config directory")
    sub = parser.add_subparsers(dest="command", required=True)

    derive = sub.add_parser("derive", help="Derive escrow, registry or token account addresses")
    derive.add_argument("--seed", type=int)
    derive.add_argument("--registry", choices=["admin_list", "vendor_list", "escrow_config"])
    derive.add_argument("--ata", nargs=2, metavar=("MINT", "OWNER"))

    reconcile = sub.add_parser("reconcile", help="Reconcile ledger state with the record store")
    reconcile.add_argument("--asset", action="append", dest="assets", help="Asset mint (repeatable)")
    reconcile.add_argument("--sync-ownership", action="store_true")

    quote = sub.add_parser("quote", help="Quote a pool share trade")
    quote.add_argument("pool_id")
    quote.add_argument("direction", choices=["buy", "sell"])
    quote.add_argument("amount", type=int)
    quote.add_argument("--slippage-bps", type=int)

    sub.add_parser("validate", help="Validate configuration and exit")

    args = parser.parse_args(argv)

    try:
        config = load_app_config(args.config_dir)
    except ValueError as e:
        print(str(e), file=sys.stderr)
        return 1
    if args.command == "validate":
        print("Configuration is valid")
        return 0

    setup_logging(config)
    if args.command == "derive":
        print(json.dumps(_derive(args, config), indent=2))
        return 0

    orchestrator = Orchestrator(config)
    orchestrator.metrics.start()
    try:
        if args.command == "reconcile":
            views = orchestrator.reconcile(args.assets)
            output: Dict[str, Any] = {"assets": {k: v.to_dict() for k, v in views.items()}}
            if args.sync_ownership:
                output["ownership"] = orchestrator.sync_ownership(args.assets)
            print(json.dumps(output, indent=2, default=str))
        elif args.command == "quote":
            q = orchestrator.quote(args.pool_id, args.direction, args.amount, args.slippage_bps)
            print(json.dumps({
                "pool_id": q.pool_id,
                "direction": q.direction,
                "input_amount": q.input_amount,
                "output_amount": q.output_amount,
                "min_output_amount": q.min_output_amount,
                "price_impact_pct": q.price_impact_pct,
                "slippage_bps": q.slippage_bps,
            }, indent=2))
    except (OrchestratorError, KeyError) as e:
        logger.error(f"{args.command} failed: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
