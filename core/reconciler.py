"""
Escrow Orchestrator Core: State Reconciler

Merges ledger facts with off-chain metadata and request records.

Precedence:
1. Ownership and balances come from the ledger.
2. Descriptive fields come from the newest metadata record per asset.
3. Status is the more advanced of the record-store status and the
   ledger-derived escrow state.

When the ledger shows funds locked for an asset with no sale request, a
request is synthesized and persisted so the two stores converge.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from core.addresses import PubkeyLike, as_pubkey, associated_token_address
from core.escrow_state import (
    ASSET_MINT_OFFSET,
    Readback,
    classify_readback,
    decode_escrow_account,
)
from core.metadata import TRAIT_CURRENT_OWNER, DescriptiveMetadata, latest_by_asset

logger = logging.getLogger(__name__)

# Surfaced market status, least to most advanced
STATUS_RANK = {
    "unlisted": 0,
    "pending": 1,
    "listed": 2,
    "matched": 3,
    "delivered": 4,
    "settled": 5,
    "cancelled": 5,
}

# Record-store vocabulary -> surfaced status
RECORD_STATUS_ALIASES = {
    "requested": "pending",
    "pending": "pending",
    "approved": "listed",
    "active": "listed",
    "listed": "listed",
    "in_escrow": "matched",
    "matched": "matched",
    "delivered": "delivered",
    "sold": "settled",
    "settled": "settled",
    "cancelled": "cancelled",
    "canceled": "cancelled",
    "delisted": "cancelled",
    "holding": "unlisted",
    "unlisted": "unlisted",
}


def normalize_status(status: Optional[str]) -> Optional[str]:
    if status is None:
        return None
    return RECORD_STATUS_ALIASES.get(str(status).strip().lower())


def more_advanced(a: Optional[str], b: Optional[str]) -> Optional[str]:
    """Return whichever status ranks higher (ties keep ``a``)."""
    if a is None:
        return b
    if b is None:
        return a
    return b if STATUS_RANK.get(b, -1) > STATUS_RANK.get(a, -1) else a


@dataclass
class EscrowFacts:
    """Ledger snapshot of one escrow."""
    seed: int
    address: str
    initializer: str
    price: int
    vault_balance: int
    buyer: Optional[str] = None
    content_ref: str = ""
    initializer_amount: int = 1
    taker_amount: int = 0

    @property
    def readback(self) -> Readback:
        return classify_readback(True, self.vault_balance, self.buyer is not None)


@dataclass
class LedgerFacts:
    """Everything the ledger says about one asset."""
    asset_id: str
    holder: Optional[str] = None
    escrow: Optional[EscrowFacts] = None

    def derived_status(self) -> Optional[str]:
        """
        Escrow state implied by the ledger, or None when it cannot be told.

        A drained vault is settled or cancelled only if the holder says which.
        """
        if self.escrow is None:
            return None
        readback = self.escrow.readback
        if readback == Readback.LISTED:
            return "listed"
        if readback == Readback.MATCHED:
            return "matched"
        if readback == Readback.SETTLED_OR_CANCELLED and self.holder:
            if self.escrow.buyer and self.holder == self.escrow.buyer:
                return "settled"
            if self.holder == self.escrow.initializer:
                return "cancelled"
        return None


@dataclass
class CanonicalView:
    """Reconciled view of one asset."""
    asset_id: str
    owner: Optional[str]
    status: str
    title: str = ""
    description: str = ""
    image: Optional[str] = None
    price: Optional[float] = None
    traits: Dict[str, Any] = field(default_factory=dict)
    escrow_seed: Optional[int] = None
    escrow_address: Optional[str] = None
    vault_balance: int = 0
    record_status: Optional[str] = None
    ledger_status: Optional[str] = None
    synthesized_request: Optional[str] = None
    metadata_updated_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset_id": self.asset_id,
            "owner": self.owner,
            "status": self.status,
            "title": self.title,
            "description": self.description,
            "image": self.image,
            "price": self.price,
            "traits": dict(self.traits),
            "escrow_seed": self.escrow_seed,
            "escrow_address": self.escrow_address,
            "vault_balance": self.vault_balance,
            "record_status": self.record_status,
            "ledger_status": self.ledger_status,
            "synthesized_request": self.synthesized_request,
            "metadata_updated_at": self.metadata_updated_at.isoformat() if self.metadata_updated_at else None,
        }


def gather_ledger_facts(ledger, program_id: PubkeyLike,
                        asset_ids: Optional[Iterable[str]] = None) -> Dict[str, LedgerFacts]:
    """
    Read escrow accounts (and holders where needed) from the ledger.

    Scans go through the ledger client's rate-limit retry. When several
    escrows reference one asset, a funded escrow is preferred over a
    drained one, then the highest seed.
    """
    program = as_pubkey(program_id)
    accounts = []
    if asset_ids is None:
        accounts = ledger.scan_program_accounts(program)
    else:
        for asset_id in asset_ids:
            accounts.extend(ledger.scan_program_accounts(
                program, [{"memcmp": {"offset": ASSET_MINT_OFFSET, "bytes": str(as_pubkey(asset_id))}}]
            ))

    facts: Dict[str, LedgerFacts] = {}
    for account in accounts:
        try:
            state = decode_escrow_account(account.data)
        except ValueError as e:
            logger.debug(f"Skipping non-escrow account {account.address}: {e}")
            continue
        vault = associated_token_address(state.asset_mint, account.address)
        vault_balance = ledger.get_token_balance(vault) or 0
        escrow = EscrowFacts(
            seed=state.seed,
            address=str(account.address),
            initializer=str(state.initializer),
            price=state.price,
            vault_balance=vault_balance,
            buyer=str(state.buyer) if state.buyer else None,
            content_ref=state.content_ref,
            initializer_amount=state.initializer_amount,
            taker_amount=state.taker_amount,
        )
        asset_id = str(state.asset_mint)
        current = facts.get(asset_id)
        if current is None or _prefer(escrow, current.escrow):
            facts[asset_id] = LedgerFacts(asset_id=asset_id, escrow=escrow)

    for asset_id, fact in facts.items():
        holder = ledger.get_token_largest_holder(asset_id)
        fact.holder = str(holder) if holder else None

    if asset_ids is not None:
        for asset_id in asset_ids:
            if asset_id not in facts:
                holder = ledger.get_token_largest_holder(asset_id)
                facts[asset_id] = LedgerFacts(asset_id=asset_id, holder=str(holder) if holder else None)
    logger.info(f"Gathered ledger facts for {len(facts)} asset(s)")
    return facts


def _prefer(candidate: EscrowFacts, current: Optional[EscrowFacts]) -> bool:
    if current is None:
        return True
    if (candidate.vault_balance > 0) != (current.vault_balance > 0):
        return candidate.vault_balance > 0
    return candidate.seed > current.seed


class StateReconciler:
    """
    Reconcile ledger facts with the record store.

    ``records`` is a RecordStore (or anything with the same find/insert/
    append_to/upsert methods).
    """

    def __init__(self, records, metrics=None, audit=None):
        self.records = records
        self.metrics = metrics
        self.audit = audit

    def _sale_request_for(self, asset_id: str, seed: Optional[int]) -> Optional[Dict[str, Any]]:
        matches = self.records.find("sale_requests", nft_id=asset_id)
        if seed is not None:
            seeded = [m for m in matches if m.get("seed") == seed]
            matches = seeded or [m for m in matches if m.get("seed") is None]
        if not matches:
            return None
        return max(matches, key=lambda d: d.get("updated_at") or "")

    def reconcile(
        self,
        ledger_facts: Dict[str, LedgerFacts],
        metadata_records: Iterable[DescriptiveMetadata],
        heal: bool = True,
    ) -> Dict[str, CanonicalView]:
        latest = latest_by_asset(metadata_records)
        views: Dict[str, CanonicalView] = {}

        for asset_id in sorted(set(ledger_facts) | set(latest)):
            facts = ledger_facts.get(asset_id) or LedgerFacts(asset_id=asset_id)
            meta = latest.get(asset_id)
            escrow = facts.escrow

            request = self._sale_request_for(asset_id, escrow.seed if escrow else None)
            record_status = normalize_status(request.get("status")) if request else None
            if record_status is None and meta is not None:
                record_status = normalize_status(meta.market_status)
            ledger_status = facts.derived_status()
            status = more_advanced(record_status, ledger_status) or "unlisted"

            view = CanonicalView(
                asset_id=asset_id,
                owner=facts.holder,
                status=status,
                escrow_seed=escrow.seed if escrow else None,
                escrow_address=escrow.address if escrow else None,
                vault_balance=escrow.vault_balance if escrow else 0,
                record_status=record_status,
                ledger_status=ledger_status,
            )
            if meta is not None:
                descriptive = meta.descriptive_fields()
                view.title = descriptive["title"]
                view.description = descriptive["description"]
                view.image = descriptive["image"]
                view.price = descriptive["price"]
                view.traits = descriptive["traits"]
                view.metadata_updated_at = meta.updated_at

            if heal and request is None and escrow is not None and escrow.vault_balance > 0:
                view.synthesized_request = self._synthesize_sale_request(asset_id, escrow, status)

            if record_status is not None and ledger_status is not None and record_status != status:
                logger.info(f"{asset_id}: record store says {record_status}, ledger says {ledger_status}; surfacing {status}")
            views[asset_id] = view

        logger.info(f"Reconciled {len(views)} asset(s)")
        return views

    def _synthesize_sale_request(self, asset_id: str, escrow: EscrowFacts, status: str) -> str:
        document = {
            "nft_id": asset_id,
            "seller": escrow.initializer,
            "seed": escrow.seed,
            "escrow_address": escrow.address,
            "initializer_amount": escrow.initializer_amount,
            "taker_amount": escrow.taker_amount,
            "file_cid": escrow.content_ref,
            "sale_price": escrow.price,
            "timestamp": int(datetime.now(timezone.utc).timestamp() * 1000),
            "status": status,
            "synthesized": True,
        }
        record_id = self.records.insert("sale_requests", document)
        logger.warning(f"Synthesized missing sale request {record_id} for {asset_id} (escrow seed {escrow.seed})")
        if self.metrics is not None:
            self.metrics.record_repair("sale_request_synthesized")
        if self.audit is not None:
            self.audit.log_intent("synthesize_sale_request", status="repaired",
                                  address=escrow.address, details={"asset_id": asset_id, "record_id": record_id})
        return record_id

    def sync_ownership(self, ledger_facts: Dict[str, LedgerFacts],
                       metadata_records: Iterable[DescriptiveMetadata]) -> List[Dict[str, Any]]:
        """
        Compare recorded owners with ledger holders.

        Writes a transfer-history entry and the new owner for each asset
        whose recorded owner differs from the ledger.
        """
        latest = latest_by_asset(metadata_records)
        report = []
        for asset_id, facts in sorted(ledger_facts.items()):
            meta = latest.get(asset_id)
            db_owner = meta.trait(TRAIT_CURRENT_OWNER) if meta is not None else None
            ledger_owner = facts.holder
            changed = ledger_owner is not None and db_owner != ledger_owner
            report.append({"asset_id": asset_id, "db_owner": db_owner,
                           "ledger_owner": ledger_owner, "changed": changed})
            if not changed:
                continue
            entry = {
                "from": db_owner,
                "to": ledger_owner,
                "at": datetime.now(timezone.utc).isoformat(),
                "source": "ledger_sync",
            }
            self.records.append_to("metadata", asset_id, "transfer_history", entry)
            self.records.upsert("metadata", asset_id, {"current_owner": ledger_owner})
            logger.info(f"Ownership of {asset_id} synced: {db_owner} → {ledger_owner}")
            if self.metrics is not None:
                self.metrics.record_repair("ownership_synced")
        return report
