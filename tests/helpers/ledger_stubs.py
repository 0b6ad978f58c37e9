"""
Test helpers for ledger-facing tests.

In-memory ledger that mirrors infra.ledger_rpc.LedgerClient's read/submit
surface, an escrow account encoder matching core.escrow_state's decoder,
and a manual clock for deadline and debounce tests.
"""

import struct
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from core.addresses import SYSTEM_PROGRAM_ID, TOKEN_PROGRAM_ID, as_pubkey
from infra.ledger_rpc import AccountInfo, SignatureStatus

PROGRAM_ID = Pubkey.from_string("GRE7cbpBscopx6ygmCvhPqMNEUDWtu9gBVSzNMSPWkLX")


def new_pubkey() -> Pubkey:
    return Keypair().pubkey()


def encode_escrow_account(
    seed: int,
    initializer: Pubkey,
    asset_mint: Pubkey,
    settlement_mint: Pubkey,
    price: int,
    fee_recipient: Optional[Pubkey] = None,
    buyer: Optional[Pubkey] = None,
    content_ref: str = "bafy-test",
    initializer_amount: int = 1,
    taker_amount: Optional[int] = None,
    bump: int = 255,
) -> bytes:
    """Serialize an escrow account in the layout decode_escrow_account reads."""
    ref = content_ref.encode("utf-8")
    return (
        b"\x00" * 8
        + struct.pack("<QB", seed, bump)
        + bytes(initializer)
        + bytes(fee_recipient or initializer)
        + bytes(settlement_mint)
        + bytes(asset_mint)
        + struct.pack("<QQI", initializer_amount, price if taker_amount is None else taker_amount, len(ref))
        + ref
        + struct.pack("<Q", price)
        + (bytes(buyer) if buyer else b"\x00" * 32)
    )


@dataclass
class FakeLedger:
    """
    In-memory ledger.

    ``accounts`` maps address -> AccountInfo, ``token_balances`` maps token
    account -> amount, ``holders`` maps mint -> owner.
    """
    accounts: Dict[str, AccountInfo] = field(default_factory=dict)
    token_balances: Dict[str, int] = field(default_factory=dict)
    lamports: Dict[str, int] = field(default_factory=dict)
    holders: Dict[str, Pubkey] = field(default_factory=dict)
    statuses: Dict[str, List[Optional[SignatureStatus]]] = field(default_factory=dict)
    sent: List[bytes] = field(default_factory=list)
    next_signature: str = "5igSig111111111111111111111111111111111111111"
    blockhash: str = "11111111111111111111111111111111"
    scan_calls: int = 0
    status_calls: int = 0

    def add_account(self, address, data: bytes = b"", owner: Pubkey = SYSTEM_PROGRAM_ID, lamports: int = 1) -> None:
        address = as_pubkey(address)
        self.accounts[str(address)] = AccountInfo(address=address, lamports=lamports, owner=owner, data=data)

    def add_token_account(self, address, amount: int) -> None:
        self.add_account(address, owner=TOKEN_PROGRAM_ID)
        self.token_balances[str(as_pubkey(address))] = amount

    def get_account_info(self, address) -> Optional[AccountInfo]:
        return self.accounts.get(str(as_pubkey(address)))

    def account_exists(self, address) -> bool:
        return self.get_account_info(address) is not None

    def get_balance(self, address) -> int:
        return self.lamports.get(str(as_pubkey(address)), 0)

    def get_token_balance(self, address) -> Optional[int]:
        key = str(as_pubkey(address))
        if key not in self.accounts:
            return None
        return self.token_balances.get(key, 0)

    def get_token_largest_holder(self, mint) -> Optional[Pubkey]:
        return self.holders.get(str(as_pubkey(mint)))

    def scan_program_accounts(self, program_id, filters=None) -> List[AccountInfo]:
        self.scan_calls += 1
        results = []
        for info in self.accounts.values():
            if info.owner != as_pubkey(program_id):
                continue
            keep = True
            for flt in filters or []:
                memcmp = flt.get("memcmp")
                if memcmp:
                    expected = bytes(Pubkey.from_string(memcmp["bytes"]))
                    offset = memcmp["offset"]
                    keep = keep and info.data[offset:offset + len(expected)] == expected
            if keep:
                results.append(info)
        return results

    def get_latest_blockhash(self) -> str:
        return self.blockhash

    def send_transaction(self, raw: bytes) -> str:
        self.sent.append(raw)
        return self.next_signature

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        self.status_calls += 1
        queue = self.statuses.get(signature)
        if not queue:
            return None
        # Last entry repeats once the queue is drained
        return queue.pop(0) if len(queue) > 1 else queue[0]

    def confirm_next(self, *statuses: Optional[str], error=None) -> None:
        """Queue signature statuses for the next submission."""
        self.statuses[self.next_signature] = [
            None if s is None else SignatureStatus(self.next_signature, s, error) for s in statuses
        ]


class ManualClock:
    """Monotonic clock advanced by hand (or by the injected sleep)."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.now += seconds
