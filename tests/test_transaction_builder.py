"""
Tests for the transaction builder.

Pre-submission checks, create-before-use ordering, fee split and the
admin gate.
"""

import pytest

from core.addresses import WRAPPED_NATIVE_MINT, associated_token_address, escrow_address
from core.exceptions import (
    AccountNotFound,
    InsufficientFunds,
    InvalidIntent,
    NotConnected,
    Unauthorized,
)
from core.instructions import create_associated_account, sync_native
from core.transaction_builder import (
    AdminUpdate,
    BuildContext,
    BuyAsset,
    CancelEscrow,
    ConfigUpdate,
    ConfirmDelivery,
    ListAsset,
    MintAsset,
    RestrictedTransfer,
    TransactionBuilder,
    fee_split,
    validate_ordering,
)
from tests.helpers import PROGRAM_ID, encode_escrow_account, new_pubkey

PRICE = 1_000_000
RENT = 1_000_000


@pytest.fixture
def parties():
    return {
        "seller": new_pubkey(),
        "buyer": new_pubkey(),
        "admin": new_pubkey(),
        "treasury": new_pubkey(),
        "mint": new_pubkey(),
    }


@pytest.fixture
def builder(ledger, parties):
    context = BuildContext(
        program_id=PROGRAM_ID,
        fee_treasury=parties["treasury"],
        fee_bps=500,
        rent_reserve=RENT,
        admin_set={str(parties["admin"])},
    )
    return TransactionBuilder(ledger, context)


def put_escrow(ledger, parties, seed=42, buyer=None, price=PRICE):
    address = escrow_address(seed, PROGRAM_ID)
    data = encode_escrow_account(seed, parties["seller"], parties["mint"], WRAPPED_NATIVE_MINT,
                                 price=price, fee_recipient=parties["treasury"], buyer=buyer)
    ledger.add_account(address, data=data, owner=PROGRAM_ID)
    return address


class TestHelpers:
    """Test fee split and ordering validation"""

    def test_fee_split_rounds_fee_down(self):
        assert fee_split(1_000_000, 500) == {"seller_amount": 950_000, "fee_amount": 50_000}
        assert fee_split(999, 500) == {"seller_amount": 950, "fee_amount": 49}
        assert fee_split(1_000, 0) == {"seller_amount": 1_000, "fee_amount": 0}

    def test_use_before_create_rejected(self):
        owner, mint = new_pubkey(), new_pubkey()
        ata = associated_token_address(mint, owner)
        with pytest.raises(ValueError, match="before"):
            validate_ordering([sync_native(ata), create_associated_account(owner, ata, owner, mint)])

    def test_create_then_use_ok(self):
        owner, mint = new_pubkey(), new_pubkey()
        ata = associated_token_address(mint, owner)
        validate_ordering([create_associated_account(owner, ata, owner, mint), sync_native(ata)])

    def test_fee_bps_bounds(self):
        with pytest.raises(ValueError):
            BuildContext(program_id=PROGRAM_ID, fee_bps=10_001)


class TestListAsset:
    """Test listing builds"""

    def test_no_signer_blocks(self, builder, parties):
        with pytest.raises(NotConnected):
            builder.build(ListAsset(seller=None, asset_mint=parties["mint"], price=PRICE))

    def test_non_positive_price(self, builder, parties):
        with pytest.raises(InvalidIntent):
            builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=0))

    def test_missing_token_account(self, builder, parties):
        with pytest.raises(AccountNotFound) as exc_info:
            builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=PRICE, seed=1))
        assert exc_info.value.reason == AccountNotFound.NOT_CREATED
        assert exc_info.value.instruction == "initialize"

    def test_insufficient_asset(self, builder, ledger, parties):
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 0)
        with pytest.raises(InsufficientFunds) as exc_info:
            builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=PRICE, seed=1))
        assert exc_info.value.required == 1
        assert exc_info.value.available == 0

    def test_builds_initialize(self, builder, ledger, parties):
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 1)
        built = builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"],
                                        price=PRICE, content_ref="bafyRef", seed=9))
        assert built.instruction_names() == ["initialize"]
        assert built.seed == 9
        assert built.escrow == escrow_address(9, PROGRAM_ID)
        ix = built.instructions[0]
        assert ix.account("escrow") == built.escrow
        assert ix.account("vault") == associated_token_address(parties["mint"], built.escrow)
        assert dict(ix.args)["fee_recipient"] == parties["treasury"]
        assert ix.to_solders().program_id == PROGRAM_ID

    def test_allocates_seed(self, builder, ledger, parties):
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 1)
        built = builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=PRICE))
        assert built.seed is not None and built.seed > 0
        assert built.escrow == escrow_address(built.seed, PROGRAM_ID)

    def test_existing_escrow_is_noop(self, builder, ledger, parties):
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 1)
        put_escrow(ledger, parties, seed=42)
        built = builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"],
                                        price=PRICE, seed=42))
        assert built.is_empty
        assert built.details["already_initialized"] is True

    def test_existing_escrow_of_other_seller_refused(self, builder, ledger, parties):
        other = {**parties, "seller": new_pubkey(), "mint": new_pubkey()}
        address = put_escrow(ledger, other, seed=42)
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 1)
        with pytest.raises(InvalidIntent, match="belongs to another escrow") as exc_info:
            builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=PRICE, seed=42))
        assert exc_info.value.address == str(address)

    def test_existing_escrow_for_other_asset_refused(self, builder, ledger, parties):
        put_escrow(ledger, {**parties, "mint": new_pubkey()}, seed=42)
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 1)
        with pytest.raises(InvalidIntent, match="belongs to another escrow"):
            builder.build(ListAsset(seller=parties["seller"], asset_mint=parties["mint"], price=PRICE, seed=42))


class TestBuyAsset:
    """Test purchase builds"""

    def test_wrong_seed(self, builder, ledger, parties):
        ledger.lamports[str(parties["buyer"])] = PRICE + RENT
        with pytest.raises(AccountNotFound) as exc_info:
            builder.build(BuyAsset(buyer=parties["buyer"], seed=404, asset_mint=parties["mint"], price=PRICE))
        assert exc_info.value.reason == AccountNotFound.WRONG_SEED
        assert exc_info.value.address == str(escrow_address(404, PROGRAM_ID))

    def test_mint_mismatch(self, builder, ledger, parties):
        put_escrow(ledger, parties)
        ledger.lamports[str(parties["buyer"])] = PRICE + RENT
        with pytest.raises(InvalidIntent):
            builder.build(BuyAsset(buyer=parties["buyer"], seed=42, asset_mint=new_pubkey(), price=PRICE))

    def test_balance_must_cover_rent_reserve(self, builder, ledger, parties):
        put_escrow(ledger, parties)
        ledger.lamports[str(parties["buyer"])] = PRICE + RENT - 1
        with pytest.raises(InsufficientFunds) as exc_info:
            builder.build(BuyAsset(buyer=parties["buyer"], seed=42, asset_mint=parties["mint"], price=PRICE))
        assert exc_info.value.required == PRICE + RENT

    def test_fresh_buyer_ordering(self, builder, ledger, parties):
        """Every token account is created before the instruction that uses it"""
        put_escrow(ledger, parties)
        ledger.lamports[str(parties["buyer"])] = PRICE + RENT
        built = builder.build(BuyAsset(buyer=parties["buyer"], seed=42, asset_mint=parties["mint"], price=PRICE))
        assert built.instruction_names() == [
            "create_associated_token_account",
            "create_associated_token_account",
            "system_transfer",
            "sync_native",
            "create_associated_token_account",
            "exchange",
        ]
        escrow = escrow_address(42, PROGRAM_ID)
        assert built.instructions[-1].account("vault") == associated_token_address(WRAPPED_NATIVE_MINT, escrow)
        assert built.primary_instruction() == "exchange"

    def test_existing_accounts_not_recreated(self, builder, ledger, parties):
        escrow = put_escrow(ledger, parties)
        ledger.lamports[str(parties["buyer"])] = PRICE + RENT
        ledger.add_token_account(associated_token_address(WRAPPED_NATIVE_MINT, parties["buyer"]), 0)
        ledger.add_token_account(associated_token_address(parties["mint"], parties["buyer"]), 0)
        ledger.add_token_account(associated_token_address(WRAPPED_NATIVE_MINT, escrow), 0)
        built = builder.build(BuyAsset(buyer=parties["buyer"], seed=42, asset_mint=parties["mint"], price=PRICE))
        assert built.instruction_names() == ["system_transfer", "sync_native", "exchange"]

    def test_token_settlement_checks_token_balance(self, ledger, parties):
        usdc = new_pubkey()
        builder = TransactionBuilder(ledger, BuildContext(program_id=PROGRAM_ID, settlement_mint=usdc))
        put_escrow(ledger, parties)
        ledger.add_token_account(associated_token_address(usdc, parties["buyer"]), PRICE - 1)
        with pytest.raises(InsufficientFunds):
            builder.build(BuyAsset(buyer=parties["buyer"], seed=42, asset_mint=parties["mint"], price=PRICE))


class TestConfirmDelivery:
    """Test admin delivery builds"""

    def fund_vaults(self, ledger, parties, escrow, funds=PRICE):
        ledger.add_token_account(associated_token_address(parties["mint"], escrow), 1)
        ledger.add_token_account(associated_token_address(WRAPPED_NATIVE_MINT, escrow), funds)

    def test_non_admin_rejected(self, builder, ledger, parties):
        escrow = put_escrow(ledger, parties, buyer=parties["buyer"])
        self.fund_vaults(ledger, parties, escrow)
        with pytest.raises(Unauthorized):
            builder.build(ConfirmDelivery(admin=parties["seller"], seed=42))

    def test_requires_buyer(self, builder, ledger, parties):
        put_escrow(ledger, parties)
        with pytest.raises(InvalidIntent, match="no buyer"):
            builder.build(ConfirmDelivery(admin=parties["admin"], seed=42))

    def test_underfunded_vault(self, builder, ledger, parties):
        escrow = put_escrow(ledger, parties, buyer=parties["buyer"])
        self.fund_vaults(ledger, parties, escrow, funds=PRICE - 1)
        with pytest.raises(InsufficientFunds):
            builder.build(ConfirmDelivery(admin=parties["admin"], seed=42))

    def test_builds_with_fee_split(self, builder, ledger, parties):
        escrow = put_escrow(ledger, parties, buyer=parties["buyer"])
        self.fund_vaults(ledger, parties, escrow)
        built = builder.build(ConfirmDelivery(admin=parties["admin"], seed=42))
        assert built.instruction_names() == ["create_associated_token_account"] * 3 + ["confirm_delivery"]
        assert built.details["fee_amount"] == 50_000
        assert built.details["seller_amount"] == 950_000
        ix = built.instructions[-1]
        assert ix.account("luxhub_fee_ata") == associated_token_address(WRAPPED_NATIVE_MINT, parties["treasury"])
        assert ix.account("buyer_nft_ata") == associated_token_address(parties["mint"], parties["buyer"])

    def test_treasury_is_seller_creates_once(self, ledger, parties):
        parties["treasury"] = parties["seller"]
        builder = TransactionBuilder(ledger, BuildContext(program_id=PROGRAM_ID, fee_treasury=parties["seller"]))
        escrow = put_escrow(ledger, parties, buyer=parties["buyer"])
        self.fund_vaults(ledger, parties, escrow)
        built = builder.build(ConfirmDelivery(admin=parties["admin"], seed=42))
        assert built.instruction_names().count("create_associated_token_account") == 2


class TestCancel:
    """Test cancel builds"""

    def test_only_initializer(self, builder, ledger, parties):
        put_escrow(ledger, parties)
        with pytest.raises(Unauthorized):
            builder.build(CancelEscrow(seller=parties["buyer"], seed=42))

    def test_matched_refused(self, builder, ledger, parties):
        put_escrow(ledger, parties, buyer=parties["buyer"])
        with pytest.raises(InvalidIntent, match="already matched"):
            builder.build(CancelEscrow(seller=parties["seller"], seed=42))

    def test_builds_cancel(self, builder, ledger, parties):
        put_escrow(ledger, parties)
        ledger.add_token_account(associated_token_address(parties["mint"], parties["seller"]), 0)
        built = builder.build(CancelEscrow(seller=parties["seller"], seed=42))
        assert built.instruction_names() == ["cancel"]


class TestAdminIntents:
    """Test restricted transfer, mint and registry builds"""

    def test_restricted_transfer(self, builder, ledger, parties):
        source, dest = new_pubkey(), new_pubkey()
        ledger.add_token_account(associated_token_address(parties["mint"], source), 1)
        built = builder.build(RestrictedTransfer(admin=parties["admin"], asset_mint=parties["mint"],
                                                 source_owner=source, destination_owner=dest))
        assert built.instruction_names() == ["create_associated_token_account", "restricted_transfer"]

    def test_restricted_transfer_non_admin(self, builder, parties):
        with pytest.raises(Unauthorized):
            builder.build(RestrictedTransfer(admin=parties["buyer"], asset_mint=parties["mint"],
                                             source_owner=new_pubkey(), destination_owner=new_pubkey()))

    def test_mint_asset(self, builder, parties):
        built = builder.build(MintAsset(admin=parties["admin"], asset_mint=parties["mint"],
                                        recipient=parties["seller"], content_ref="bafy"))
        assert built.instruction_names() == ["create_associated_token_account", "mint_asset"]

    def test_admin_bootstrap_with_empty_registry(self, ledger, parties):
        builder = TransactionBuilder(ledger, BuildContext(program_id=PROGRAM_ID, admin_set=set()))
        built = builder.build(AdminUpdate(actor=parties["seller"], target=parties["seller"]))
        assert built.instruction_names() == ["add_admin"]

    def test_remove_admin_requires_admin(self, builder, parties):
        with pytest.raises(Unauthorized):
            builder.build(AdminUpdate(actor=parties["buyer"], target=parties["admin"], add=False))

    def test_config_update(self, builder, parties):
        built = builder.build(ConfigUpdate(actor=parties["admin"], treasury=parties["treasury"], initialize=True))
        assert built.instruction_names() == ["initialize_escrow_config"]
        assert built.details["treasury"] == str(parties["treasury"])

    def test_unknown_intent(self, builder):
        with pytest.raises(InvalidIntent):
            builder.build(object())
