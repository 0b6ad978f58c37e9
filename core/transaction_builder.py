"""
Escrow Orchestrator Core: Transaction Builder

Turns a user intent into an ordered instruction list. Every account an
instruction touches is either already on the ledger or created by an
earlier instruction in the same list. Checks that can fail before
submission (missing accounts, short balances, non-admin actors) run
before anything is built.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Set, Union

from solders.pubkey import Pubkey

from core.addresses import (
    ASSOCIATED_TOKEN_PROGRAM_ID,
    RENT_SYSVAR_ID,
    SYSTEM_PROGRAM_ID,
    TOKEN_PROGRAM_ID,
    WRAPPED_NATIVE_MINT,
    PubkeyLike,
    SeedAllocator,
    as_pubkey,
    associated_token_address,
    escrow_address,
    registry_address,
)
from core.escrow_state import decode_escrow_account
from core.exceptions import (
    AccountNotFound,
    InsufficientFunds,
    InvalidIntent,
    NotConnected,
    Unauthorized,
)
from core.instructions import (
    AccountRef,
    InstructionSpec,
    create_associated_account,
    program_instruction,
    sync_native,
    system_transfer,
    u64,
)

logger = logging.getLogger(__name__)

DEFAULT_FEE_BPS = 500
DEFAULT_RENT_RESERVE = 1_000_000  # lamports kept back for account rent and fees


# ===== Intents =====

@dataclass
class ListAsset:
    """Seller locks an asset in a new escrow."""
    seller: Optional[PubkeyLike]
    asset_mint: PubkeyLike
    price: int
    content_ref: str = ""
    initializer_amount: int = 1
    taker_amount: Optional[int] = None
    seed: Optional[int] = None
    fee_recipient: Optional[PubkeyLike] = None


@dataclass
class BuyAsset:
    """Buyer funds an existing escrow."""
    buyer: Optional[PubkeyLike]
    seed: int
    asset_mint: PubkeyLike
    price: int


@dataclass
class ConfirmDelivery:
    """Admin releases funds to the seller and the asset to the buyer."""
    admin: Optional[PubkeyLike]
    seed: int


@dataclass
class CancelEscrow:
    """Seller withdraws an unmatched listing."""
    seller: Optional[PubkeyLike]
    seed: int


@dataclass
class RestrictedTransfer:
    """Admin-only move of a restricted asset between holders."""
    admin: Optional[PubkeyLike]
    asset_mint: PubkeyLike
    source_owner: PubkeyLike
    destination_owner: PubkeyLike
    amount: int = 1


@dataclass
class MintAsset:
    """Admin mints a new asset to a recipient."""
    admin: Optional[PubkeyLike]
    asset_mint: PubkeyLike
    recipient: PubkeyLike
    content_ref: str = ""


@dataclass
class AdminUpdate:
    """Add or remove an account from the admin registry."""
    actor: Optional[PubkeyLike]
    target: PubkeyLike
    add: bool = True


@dataclass
class ConfigUpdate:
    """Initialize or update the escrow config treasury."""
    actor: Optional[PubkeyLike]
    treasury: PubkeyLike
    initialize: bool = False


Intent = Union[ListAsset, BuyAsset, ConfirmDelivery, CancelEscrow, RestrictedTransfer,
               MintAsset, AdminUpdate, ConfigUpdate]


@dataclass
class BuildContext:
    """Deployment parameters the builder needs for every intent."""
    program_id: PubkeyLike
    settlement_mint: PubkeyLike = WRAPPED_NATIVE_MINT
    fee_treasury: Optional[PubkeyLike] = None
    fee_bps: int = DEFAULT_FEE_BPS
    rent_reserve: int = DEFAULT_RENT_RESERVE
    admin_set: Optional[Set[str]] = None

    def __post_init__(self):
        if not 0 <= self.fee_bps <= 10_000:
            raise ValueError(f"fee_bps must be within [0, 10000], got {self.fee_bps}")

    @property
    def wrapped_native(self) -> bool:
        return as_pubkey(self.settlement_mint) == WRAPPED_NATIVE_MINT


@dataclass
class BuiltTransaction:
    """Ordered instructions plus the facts later stages need."""
    intent: str
    signer: Pubkey
    instructions: List[InstructionSpec] = field(default_factory=list)
    escrow: Optional[Pubkey] = None
    seed: Optional[int] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_empty(self) -> bool:
        return not self.instructions

    def instruction_names(self) -> List[str]:
        return [ix.name for ix in self.instructions]

    def primary_instruction(self) -> Optional[str]:
        """Name of the last (program) instruction, used for audit and machine updates."""
        return self.instructions[-1].name if self.instructions else None


def fee_split(price: int, fee_bps: int) -> Dict[str, int]:
    """Seller / treasury split of a sale price (fee rounded down)."""
    fee = price * fee_bps // 10_000
    return {"seller_amount": price - fee, "fee_amount": fee}


def validate_ordering(instructions: List[InstructionSpec]) -> None:
    """
    Enforce create-before-use.

    Raises:
        ValueError: an instruction touches an account created later in the list
    """
    for idx, ix in enumerate(instructions):
        for created in ix.creates:
            for earlier in instructions[:idx]:
                if created in earlier.touched():
                    raise ValueError(
                        f"Account {created} used by {earlier.name} before {ix.name} creates it"
                    )


class TransactionBuilder:
    """
    Builds ordered instruction lists for escrow, transfer and registry intents.

    ``ledger`` needs ``get_account_info``, ``get_balance`` and
    ``get_token_balance`` (see infra.ledger_rpc.LedgerClient).
    """

    def __init__(self, ledger, context: BuildContext, seed_allocator: Optional[SeedAllocator] = None):
        self.ledger = ledger
        self.context = context
        self.program_id = as_pubkey(context.program_id)
        self.seed_allocator = seed_allocator or SeedAllocator(
            self.program_id, account_exists=lambda addr: ledger.get_account_info(addr) is not None
        )

    def build(self, intent: Intent) -> BuiltTransaction:
        handlers = {
            ListAsset: self._build_list,
            BuyAsset: self._build_buy,
            ConfirmDelivery: self._build_confirm_delivery,
            CancelEscrow: self._build_cancel,
            RestrictedTransfer: self._build_restricted_transfer,
            MintAsset: self._build_mint,
            AdminUpdate: self._build_admin_update,
            ConfigUpdate: self._build_config_update,
        }
        handler = handlers.get(type(intent))
        if handler is None:
            raise InvalidIntent(f"Unsupported intent type {type(intent).__name__}")

        built = handler(intent)
        validate_ordering(built.instructions)
        logger.info(
            f"Built {built.intent}: {len(built.instructions)} instruction(s) "
            f"{built.instruction_names()} escrow={built.escrow}"
        )
        return built

    # ----- shared checks -----

    @staticmethod
    def _require_signer(actor: Optional[PubkeyLike], intent: str) -> Pubkey:
        if actor is None:
            raise NotConnected(f"No signer connected; {intent} blocked", instruction=intent)
        return as_pubkey(actor)

    def _require_admin(self, actor: Pubkey, instruction: str) -> None:
        admins = self.context.admin_set
        if admins is not None and str(actor) not in admins:
            raise Unauthorized(
                f"{actor} is not in the admin set; {instruction} rejected locally",
                address=str(actor),
                instruction=instruction,
            )

    def _load_escrow(self, seed: int, instruction: str):
        address = escrow_address(seed, self.program_id)
        info = self.ledger.get_account_info(address)
        if info is None:
            raise AccountNotFound(
                f"Escrow for seed {seed} has no account data",
                reason=AccountNotFound.WRONG_SEED,
                address=str(address),
                instruction=instruction,
            )
        return address, decode_escrow_account(info.data)

    def _ensure_ata(self, instructions: List[InstructionSpec], payer: Pubkey, owner: Pubkey,
                    mint: Pubkey) -> Pubkey:
        ata = associated_token_address(mint, owner)
        if any(ata in ix.creates for ix in instructions):
            return ata
        if self.ledger.get_account_info(ata) is None:
            instructions.append(create_associated_account(payer, ata, owner, mint))
        return ata

    # ----- escrow intents -----

    def _build_list(self, intent: ListAsset) -> BuiltTransaction:
        seller = self._require_signer(intent.seller, "initialize")
        if intent.price <= 0:
            raise InvalidIntent(f"Listing price must be positive, got {intent.price}", instruction="initialize")
        mint = as_pubkey(intent.asset_mint)
        settlement = as_pubkey(self.context.settlement_mint)

        seed = intent.seed if intent.seed is not None else self.seed_allocator.next_seed()
        escrow = escrow_address(seed, self.program_id)
        built = BuiltTransaction(intent="list_asset", signer=seller, escrow=escrow, seed=seed)

        existing = self.ledger.get_account_info(escrow)
        if existing is not None:
            try:
                state = decode_escrow_account(existing.data)
            except ValueError as e:
                raise InvalidIntent(
                    f"Seed {seed} address holds a non-escrow account: {e}",
                    address=str(escrow),
                    instruction="initialize",
                )
            if state.initializer != seller or state.asset_mint != mint:
                raise InvalidIntent(
                    f"Seed {seed} belongs to another escrow (initializer {state.initializer}, "
                    f"asset {state.asset_mint})",
                    address=str(escrow),
                    instruction="initialize",
                )
            logger.info(f"Escrow {escrow} for seed {seed} already exists; skipping initialize")
            built.details["already_initialized"] = True
            return built

        seller_asset_ata = associated_token_address(mint, seller)
        held = self.ledger.get_token_balance(seller_asset_ata)
        if held is None:
            raise AccountNotFound(
                f"Seller has no token account for asset {mint}",
                reason=AccountNotFound.NOT_CREATED,
                address=str(seller_asset_ata),
                instruction="initialize",
            )
        if held < intent.initializer_amount:
            raise InsufficientFunds(
                f"Seller holds {held} of asset {mint}, listing needs {intent.initializer_amount}",
                required=intent.initializer_amount,
                available=held,
                address=str(seller_asset_ata),
                instruction="initialize",
            )

        fee_recipient = as_pubkey(intent.fee_recipient or self.context.fee_treasury or seller)
        taker_amount = intent.taker_amount if intent.taker_amount is not None else intent.price
        asset_vault = associated_token_address(mint, escrow)

        built.instructions.append(program_instruction(
            "initialize",
            self.program_id,
            accounts=[
                AccountRef("seller", seller, is_signer=True, is_writable=True),
                AccountRef("mint_a", settlement),
                AccountRef("mint_b", mint),
                AccountRef("seller_ata_a", associated_token_address(settlement, seller)),
                AccountRef("seller_ata_b", seller_asset_ata, is_writable=True),
                AccountRef("escrow", escrow, is_writable=True),
                AccountRef("vault", asset_vault, is_writable=True),
                AccountRef("associated_token_program", ASSOCIATED_TOKEN_PROGRAM_ID),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
                AccountRef("system_program", SYSTEM_PROGRAM_ID),
                AccountRef("rent", RENT_SYSVAR_ID),
            ],
            args=[
                ("seed", u64(seed)),
                ("initializer_amount", u64(intent.initializer_amount)),
                ("taker_amount", u64(taker_amount)),
                ("content_ref", intent.content_ref),
                ("fee_recipient", fee_recipient),
                ("price", u64(intent.price)),
                ("settlement_authority", settlement),
            ],
        ))
        built.details.update({"price": intent.price, "asset_mint": str(mint), "vault": str(asset_vault)})
        return built

    def _build_buy(self, intent: BuyAsset) -> BuiltTransaction:
        buyer = self._require_signer(intent.buyer, "exchange")
        if intent.price <= 0:
            raise InvalidIntent(f"Purchase price must be positive, got {intent.price}", instruction="exchange")
        mint = as_pubkey(intent.asset_mint)
        settlement = as_pubkey(self.context.settlement_mint)
        escrow, state = self._load_escrow(intent.seed, "exchange")
        if state.asset_mint != mint:
            raise InvalidIntent(
                f"Escrow {escrow} holds {state.asset_mint}, not {mint}",
                address=str(escrow), instruction="exchange",
            )

        buyer_funds_ata = associated_token_address(settlement, buyer)
        if self.context.wrapped_native:
            available = self.ledger.get_balance(buyer)
            required = intent.price + self.context.rent_reserve
        else:
            available = self.ledger.get_token_balance(buyer_funds_ata) or 0
            required = intent.price
        if available < required:
            raise InsufficientFunds(
                f"Buyer balance {available} below required {required}",
                required=required,
                available=available,
                address=str(buyer),
                instruction="exchange",
            )

        instructions: List[InstructionSpec] = []
        self._ensure_ata(instructions, buyer, buyer, settlement)
        buyer_asset_ata = self._ensure_ata(instructions, buyer, buyer, mint)
        if self.context.wrapped_native:
            instructions.append(system_transfer(buyer, buyer_funds_ata, intent.price))
            instructions.append(sync_native(buyer_funds_ata))
        funds_vault = self._ensure_ata(instructions, buyer, escrow, settlement)

        instructions.append(program_instruction(
            "exchange",
            self.program_id,
            accounts=[
                AccountRef("taker", buyer, is_signer=True, is_writable=True),
                AccountRef("mint_a", settlement),
                AccountRef("mint_b", mint),
                AccountRef("taker_funds_ata", buyer_funds_ata, is_writable=True),
                AccountRef("taker_nft_ata", buyer_asset_ata, is_writable=True),
                AccountRef("vault", funds_vault, is_writable=True),
                AccountRef("escrow", escrow, is_writable=True),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
                AccountRef("associated_token_program", ASSOCIATED_TOKEN_PROGRAM_ID),
                AccountRef("system_program", SYSTEM_PROGRAM_ID),
                AccountRef("rent", RENT_SYSVAR_ID),
            ],
        ))
        return BuiltTransaction(
            intent="buy_asset", signer=buyer, instructions=instructions, escrow=escrow,
            seed=intent.seed, details={"price": intent.price, "funds_vault": str(funds_vault)},
        )

    def _build_confirm_delivery(self, intent: ConfirmDelivery) -> BuiltTransaction:
        admin = self._require_signer(intent.admin, "confirm_delivery")
        self._require_admin(admin, "confirm_delivery")
        escrow, state = self._load_escrow(intent.seed, "confirm_delivery")
        if state.buyer is None:
            raise InvalidIntent(
                f"Escrow {escrow} has no buyer; nothing to deliver",
                address=str(escrow), instruction="confirm_delivery",
            )

        settlement = state.settlement_mint
        asset_vault = associated_token_address(state.asset_mint, escrow)
        funds_vault = associated_token_address(settlement, escrow)

        asset_held = self.ledger.get_token_balance(asset_vault) or 0
        if asset_held < 1:
            raise InsufficientFunds(
                f"Asset vault holds {asset_held}; expected the listed asset",
                required=1, available=asset_held, address=str(asset_vault), instruction="confirm_delivery",
            )
        funds_held = self.ledger.get_token_balance(funds_vault) or 0
        if funds_held < state.price:
            raise InsufficientFunds(
                f"Settlement vault holds {funds_held}, sale price is {state.price}",
                required=state.price, available=funds_held, address=str(funds_vault),
                instruction="confirm_delivery",
            )

        treasury = as_pubkey(self.context.fee_treasury or state.fee_recipient)
        instructions: List[InstructionSpec] = []
        seller_funds_ata = self._ensure_ata(instructions, admin, state.initializer, settlement)
        fee_ata = self._ensure_ata(instructions, admin, treasury, settlement)
        seller_asset_ata = associated_token_address(state.asset_mint, state.initializer)
        buyer_asset_ata = self._ensure_ata(instructions, admin, state.buyer, state.asset_mint)

        instructions.append(program_instruction(
            "confirm_delivery",
            self.program_id,
            accounts=[
                AccountRef("luxhub", admin, is_signer=True, is_writable=True),
                AccountRef("escrow", escrow, is_writable=True),
                AccountRef("nft_vault", asset_vault, is_writable=True),
                AccountRef("wsol_vault", funds_vault, is_writable=True),
                AccountRef("mint_a", settlement),
                AccountRef("mint_b", state.asset_mint),
                AccountRef("seller_funds_ata", seller_funds_ata, is_writable=True),
                AccountRef("luxhub_fee_ata", fee_ata, is_writable=True),
                AccountRef("seller_nft_ata", seller_asset_ata, is_writable=True),
                AccountRef("buyer_nft_ata", buyer_asset_ata, is_writable=True),
                AccountRef("admin_list", registry_address("admin_list", self.program_id)),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
            ],
        ))
        details = fee_split(state.price, self.context.fee_bps)
        details.update({"price": state.price, "seller": str(state.initializer), "buyer": str(state.buyer)})
        return BuiltTransaction(
            intent="confirm_delivery", signer=admin, instructions=instructions,
            escrow=escrow, seed=intent.seed, details=details,
        )

    def _build_cancel(self, intent: CancelEscrow) -> BuiltTransaction:
        seller = self._require_signer(intent.seller, "cancel")
        escrow, state = self._load_escrow(intent.seed, "cancel")
        if state.initializer != seller:
            raise Unauthorized(
                f"Only the initializer {state.initializer} may cancel escrow {escrow}",
                address=str(escrow), instruction="cancel",
            )
        if state.buyer is not None:
            raise InvalidIntent(
                f"Escrow {escrow} already matched; cancel refused",
                address=str(escrow), instruction="cancel",
            )

        instructions: List[InstructionSpec] = []
        seller_asset_ata = self._ensure_ata(instructions, seller, seller, state.asset_mint)
        instructions.append(program_instruction(
            "cancel",
            self.program_id,
            accounts=[
                AccountRef("initializer", seller, is_signer=True, is_writable=True),
                AccountRef("mint_b", state.asset_mint),
                AccountRef("initializer_ata", seller_asset_ata, is_writable=True),
                AccountRef("escrow", escrow, is_writable=True),
                AccountRef("vault", associated_token_address(state.asset_mint, escrow), is_writable=True),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
            ],
        ))
        return BuiltTransaction(intent="cancel_escrow", signer=seller, instructions=instructions,
                                escrow=escrow, seed=intent.seed)

    # ----- admin intents -----

    def _build_restricted_transfer(self, intent: RestrictedTransfer) -> BuiltTransaction:
        admin = self._require_signer(intent.admin, "restricted_transfer")
        self._require_admin(admin, "restricted_transfer")
        if intent.amount <= 0:
            raise InvalidIntent(f"Transfer amount must be positive, got {intent.amount}",
                                instruction="restricted_transfer")
        mint = as_pubkey(intent.asset_mint)
        source_ata = associated_token_address(mint, intent.source_owner)
        held = self.ledger.get_token_balance(source_ata)
        if held is None:
            raise AccountNotFound(
                f"Source holder has no token account for {mint}",
                address=str(source_ata), instruction="restricted_transfer",
            )
        if held < intent.amount:
            raise InsufficientFunds(
                f"Source holds {held}, transfer needs {intent.amount}",
                required=intent.amount, available=held, address=str(source_ata),
                instruction="restricted_transfer",
            )

        instructions: List[InstructionSpec] = []
        destination_ata = self._ensure_ata(instructions, admin, as_pubkey(intent.destination_owner), mint)
        instructions.append(program_instruction(
            "restricted_transfer",
            self.program_id,
            accounts=[
                AccountRef("authority", admin, is_signer=True, is_writable=True),
                AccountRef("admin_list", registry_address("admin_list", self.program_id)),
                AccountRef("mint", mint),
                AccountRef("from_ata", source_ata, is_writable=True),
                AccountRef("to_ata", destination_ata, is_writable=True),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
            ],
            args=[("amount", u64(intent.amount))],
        ))
        return BuiltTransaction(intent="restricted_transfer", signer=admin, instructions=instructions,
                                details={"amount": intent.amount, "mint": str(mint)})

    def _build_mint(self, intent: MintAsset) -> BuiltTransaction:
        admin = self._require_signer(intent.admin, "mint_asset")
        self._require_admin(admin, "mint_asset")
        mint = as_pubkey(intent.asset_mint)
        recipient = as_pubkey(intent.recipient)
        instructions: List[InstructionSpec] = []
        recipient_ata = self._ensure_ata(instructions, admin, recipient, mint)
        instructions.append(program_instruction(
            "mint_asset",
            self.program_id,
            accounts=[
                AccountRef("admin", admin, is_signer=True, is_writable=True),
                AccountRef("admin_list", registry_address("admin_list", self.program_id)),
                AccountRef("mint", mint, is_writable=True),
                AccountRef("recipient", recipient),
                AccountRef("recipient_ata", recipient_ata, is_writable=True),
                AccountRef("token_program", TOKEN_PROGRAM_ID),
            ],
            args=[("content_ref", intent.content_ref)],
        ))
        return BuiltTransaction(intent="mint_asset", signer=admin, instructions=instructions,
                                details={"mint": str(mint), "recipient": str(recipient)})

    def _build_admin_update(self, intent: AdminUpdate) -> BuiltTransaction:
        name = "add_admin" if intent.add else "remove_admin"
        actor = self._require_signer(intent.actor, name)
        # An empty registry is bootstrapped by its first admin
        if self.context.admin_set:
            self._require_admin(actor, name)
        target = as_pubkey(intent.target)
        ix = program_instruction(
            name,
            self.program_id,
            accounts=[
                AccountRef("admin_list", registry_address("admin_list", self.program_id), is_writable=True),
                AccountRef("admin", actor, is_signer=True, is_writable=True),
                AccountRef("new_admin" if intent.add else "remove_admin", target),
            ],
        )
        return BuiltTransaction(intent=name, signer=actor, instructions=[ix], details={"target": str(target)})

    def _build_config_update(self, intent: ConfigUpdate) -> BuiltTransaction:
        name = "initialize_escrow_config" if intent.initialize else "update_escrow_config"
        actor = self._require_signer(intent.actor, name)
        self._require_admin(actor, name)
        treasury = as_pubkey(intent.treasury)
        accounts = [
            AccountRef("escrow_config", registry_address("escrow_config", self.program_id), is_writable=True),
            AccountRef("admin", actor, is_signer=True, is_writable=True),
        ]
        if intent.initialize:
            accounts.append(AccountRef("system_program", SYSTEM_PROGRAM_ID))
        else:
            accounts.append(AccountRef("admin_list", registry_address("admin_list", self.program_id)))
        ix = program_instruction(name, self.program_id, accounts=accounts, args=[("treasury", treasury)])
        return BuiltTransaction(intent=name, signer=actor, instructions=[ix], details={"treasury": str(treasury)})
