"""
Liquidity service adapter.

Quotes and unsigned swap transactions for a token pair. The API key is read
from the environment variable named in config, never from YAML.
"""

import base64
import logging
import os
from typing import Any, Dict, Optional

import requests

from core.exceptions import RateLimited

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://public-api-v2.bags.fm/api/v1"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"


class LiquidityApiError(RuntimeError):
    """Liquidity service returned an unusable response."""

    def __init__(self, message: str, status_code: Optional[int] = None, details: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class LiquidityApi:
    """
    HTTP client for the liquidity service.

    - ``get_quote``: GET /trade/quote
    - ``build_swap``: POST /trade/swap, returns the unsigned transaction bytes
    """

    def __init__(
        self,
        base_url: str = DEFAULT_BASE_URL,
        api_key: Optional[str] = None,
        api_key_env: str = "BAGS_API_KEY",
        timeout: float = 15.0,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv(api_key_env)
        self.api_key_env = api_key_env
        self.timeout = timeout
        self._session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        if not self.api_key:
            raise LiquidityApiError(f"Liquidity API key not configured (set {self.api_key_env})")
        return {"x-api-key": self.api_key, "Content-Type": "application/json"}

    def _req(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
             body: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        url = f"{self.base_url}{path}"
        try:
            response = self._session.request(
                method,
                url,
                headers=self._headers(),
                params=params,
                json=body,
                timeout=self.timeout,
            )
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            status_code = e.response.status_code if e.response is not None else None
            if status_code == 429:
                raise RateLimited(f"Too many requests on {method} {path}", original=e)
            text = e.response.text if e.response is not None else ""
            logger.error(f"Liquidity API error: {status_code} {method} {path} - {text[:200]}")
            raise LiquidityApiError(f"{method} {path} failed with HTTP {status_code}",
                                    status_code=status_code, details=text)
        return response.json()

    def get_quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Dict[str, Any]:
        """
        Raw quote for swapping ``amount`` (base units) of input_mint.

        Returns the service payload; ``outAmount`` and ``priceImpact`` are
        normalized into ``output_amount`` and ``price_impact_pct``.
        """
        payload = self._req("GET", "/trade/quote", params={
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": str(amount),
            "slippageBps": str(slippage_bps),
        })
        # Some deployments wrap the payload in {"success": ..., "response": {...}}
        quote = payload.get("response", payload) if isinstance(payload, dict) else payload
        out_amount = quote.get("outAmount", quote.get("expectedOutput"))
        if out_amount is None:
            raise LiquidityApiError("Quote response missing outAmount", details=quote)
        impact = quote.get("priceImpact", quote.get("priceImpactPct", 0)) or 0
        quote["output_amount"] = int(float(out_amount))
        quote["price_impact_pct"] = float(str(impact).rstrip("%"))
        logger.debug(f"Quote {input_mint[:6]}→{output_mint[:6]} amount={amount}: out={quote['output_amount']}")
        return quote

    def build_swap(self, quote: Dict[str, Any], user_public_key: str, wrap_and_unwrap_sol: bool = True) -> bytes:
        """Request the unsigned swap transaction for a previously fetched quote."""
        payload = self._req("POST", "/trade/swap", body={
            "quote": {k: v for k, v in quote.items() if k not in ("output_amount", "price_impact_pct")},
            "userPublicKey": user_public_key,
            "wrapAndUnwrapSol": wrap_and_unwrap_sol,
            "computeUnitPriceMicroLamports": "auto",
        })
        body = payload.get("response", payload) if isinstance(payload, dict) else payload
        encoded = body.get("swapTransaction") or body.get("serializedTransaction")
        if not encoded:
            raise LiquidityApiError("Swap response missing transaction", details=body)
        return base64.b64decode(encoded)
