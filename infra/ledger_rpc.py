"""
Ledger service adapter (JSON-RPC over HTTP).

Thin wrapper around the ledger node's JSON-RPC API. Rate-limit responses are
raised as ``RateLimited``; account scans go through ``with_retry`` because
bulk scans are the calls most likely to be throttled.
"""

import base64
import logging
from dataclasses import dataclass
from itertools import count
from typing import Any, Dict, List, Optional

import requests
from solders.pubkey import Pubkey

from core.addresses import PubkeyLike, as_pubkey
from core.exceptions import RateLimited, TransactionFailed
from infra.retry import metrics_hook, with_retry

logger = logging.getLogger(__name__)

DEFAULT_RPC_URL = "https://api.devnet.solana.com"


@dataclass
class AccountInfo:
    """Snapshot of one ledger account."""
    address: Pubkey
    lamports: int
    owner: Pubkey
    data: bytes
    executable: bool = False


@dataclass
class SignatureStatus:
    """Confirmation status of a submitted transaction."""
    signature: str
    confirmation_status: Optional[str]  # processed | confirmed | finalized
    error: Optional[Any] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

    def reached(self, commitment: str) -> bool:
        order = {"processed": 0, "confirmed": 1, "finalized": 2}
        if self.confirmation_status is None or self.failed:
            return False
        return order.get(self.confirmation_status, -1) >= order.get(commitment, 1)


class LedgerClient:
    """
    JSON-RPC client for the ledger service.

    Supports:
    - Account reads (info, lamport balance, token balance)
    - Program account scans with rate-limit retry
    - Transaction submission and signature status polling
    """

    def __init__(
        self,
        rpc_url: str = DEFAULT_RPC_URL,
        commitment: str = "confirmed",
        timeout: float = 20.0,
        scan_max_attempts: int = 3,
        scan_base_delay: float = 1.0,
        session: Optional[requests.Session] = None,
        metrics=None,
    ):
        self.rpc_url = rpc_url
        self.commitment = commitment
        self.timeout = timeout
        self.scan_max_attempts = scan_max_attempts
        self.scan_base_delay = scan_base_delay
        self.metrics = metrics
        self._session = session or requests.Session()
        self._ids = count(1)
        logger.info(f"Initialized LedgerClient (rpc={rpc_url}, commitment={commitment})")

    def _call(self, method: str, params: Optional[List[Any]] = None) -> Any:
        payload = {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params or []}
        try:
            response = self._session.post(self.rpc_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code == 429:
                raise RateLimited(f"Too many requests on {method}", original=e)
            logger.error(f"Ledger RPC HTTP error on {method}: {status_code}")
            raise

        body = response.json()
        error = body.get("error")
        if error:
            message = str(error.get("message", error))
            code = error.get("code")
            if code in (429, -32429) or "too many requests" in message.lower():
                raise RateLimited(f"Too many requests on {method}: {message}")
            raise RuntimeError(f"Ledger RPC error on {method}: {message} (code={code})")
        return body.get("result")

    def get_account_info(self, address: PubkeyLike) -> Optional[AccountInfo]:
        """Return account snapshot, or None if the address has no account."""
        pubkey = as_pubkey(address)
        result = self._call(
            "getAccountInfo",
            [str(pubkey), {"encoding": "base64", "commitment": self.commitment}],
        )
        value = (result or {}).get("value")
        if value is None:
            return None
        return self._parse_account(pubkey, value)

    def account_exists(self, address: PubkeyLike) -> bool:
        return self.get_account_info(address) is not None

    def get_balance(self, address: PubkeyLike) -> int:
        """Native balance in lamports."""
        result = self._call("getBalance", [str(as_pubkey(address)), {"commitment": self.commitment}])
        return int((result or {}).get("value", 0))

    def get_token_balance(self, address: PubkeyLike) -> Optional[int]:
        """Raw token amount held by a token account, or None if it does not exist."""
        try:
            result = self._call(
                "getTokenAccountBalance",
                [str(as_pubkey(address)), {"commitment": self.commitment}],
            )
        except RuntimeError as e:
            if "could not find account" in str(e).lower() or "invalid param" in str(e).lower():
                return None
            raise
        value = (result or {}).get("value")
        if value is None:
            return None
        return int(value.get("amount", 0))

    def get_token_largest_holder(self, mint: PubkeyLike) -> Optional[Pubkey]:
        """Owner of the token account currently holding a (non-fungible) asset."""
        result = self._call("getTokenLargestAccounts", [str(as_pubkey(mint)), {"commitment": self.commitment}])
        for entry in (result or {}).get("value", []):
            if int(entry.get("amount", 0)) > 0:
                token_account = self._call(
                    "getAccountInfo",
                    [entry["address"], {"encoding": "jsonParsed", "commitment": self.commitment}],
                )
                parsed = (((token_account or {}).get("value") or {}).get("data") or {}).get("parsed") or {}
                owner = (parsed.get("info") or {}).get("owner")
                if owner:
                    return Pubkey.from_string(owner)
        return None

    def scan_program_accounts(
        self,
        program_id: PubkeyLike,
        filters: Optional[List[Dict[str, Any]]] = None,
    ) -> List[AccountInfo]:
        """Scan all accounts owned by a program (rate-limit retried)."""
        program = as_pubkey(program_id)
        params = [
            str(program),
            {"encoding": "base64", "commitment": self.commitment, "filters": filters or []},
        ]

        result = with_retry(
            lambda: self._call("getProgramAccounts", params),
            max_attempts=self.scan_max_attempts,
            base_delay=self.scan_base_delay,
            label=f"getProgramAccounts({program})",
            on_retry=metrics_hook(self.metrics, "scan"),
        )
        accounts = []
        for item in result or []:
            accounts.append(self._parse_account(Pubkey.from_string(item["pubkey"]), item["account"]))
        logger.debug(f"Scanned {len(accounts)} accounts for program {program}")
        return accounts

    def get_latest_blockhash(self) -> str:
        result = self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return result["value"]["blockhash"]

    def send_transaction(self, raw_transaction: bytes) -> str:
        """Submit a signed, serialized transaction; returns its signature."""
        encoded = base64.b64encode(raw_transaction).decode("ascii")
        try:
            return self._call(
                "sendTransaction",
                [encoded, {"encoding": "base64", "preflightCommitment": self.commitment}],
            )
        except RuntimeError as e:
            raise TransactionFailed(f"Submission rejected: {e}", original=e)

    def get_signature_status(self, signature: str) -> Optional[SignatureStatus]:
        result = self._call(
            "getSignatureStatuses",
            [[signature], {"searchTransactionHistory": True}],
        )
        values = (result or {}).get("value") or [None]
        status = values[0]
        if status is None:
            return None
        return SignatureStatus(
            signature=signature,
            confirmation_status=status.get("confirmationStatus"),
            error=status.get("err"),
        )

    @staticmethod
    def _parse_account(address: Pubkey, value: Dict[str, Any]) -> AccountInfo:
        raw = value.get("data") or ["", "base64"]
        data = base64.b64decode(raw[0]) if isinstance(raw, list) and raw[0] else b""
        return AccountInfo(
            address=address,
            lamports=int(value.get("lamports", 0)),
            owner=Pubkey.from_string(value["owner"]),
            data=data,
            executable=bool(value.get("executable", False)),
        )
