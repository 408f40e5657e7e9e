import logging
import threading
import time
from typing import Any, Dict, Optional, Tuple

import requests

WRAPPED_SOL_MINT = "So11111111111111111111111111111111111111112"
HELIUS_MAINNET_URL = "https://mainnet.helius-rpc.com/"
COINGECKO_SIMPLE_PRICE_URL = "https://api.coingecko.com/api/v3/simple/price"
DEXSCREENER_TOKENS_URL = "https://api.dexscreener.com/latest/dex/tokens"


def _positive_float(value: Any) -> Optional[float]:
    try:
        val = float(value)
    except (TypeError, ValueError):
        return None
    return val if val > 0 else None


def _extract_helius_price(payload: dict) -> Optional[float]:
    result = (payload or {}).get("result") or []
    asset = result[0] if isinstance(result, list) and result else {}
    price_info = ((asset or {}).get("token_info") or {}).get("price_info") or {}
    return _positive_float(price_info.get("price_per_token"))


def _extract_coingecko_price(payload: dict) -> Optional[float]:
    return _positive_float(((payload or {}).get("solana") or {}).get("usd"))


def _extract_sol_quote(payload: dict, mint: str) -> Optional[float]:
    """
    Price of `mint` in SOL from Dexscreener pairs. Prefer the most liquid pair
    quoted in wrapped SOL; a pair with SOL as base is inverted.
    """
    pairs = (payload or {}).get("pairs") or []
    best: Optional[Tuple[float, float]] = None
    for pair in pairs:
        if not isinstance(pair, dict):
            continue
        base = (pair.get("baseToken") or {}).get("address")
        quote = (pair.get("quoteToken") or {}).get("address")
        native = _positive_float(pair.get("priceNative"))
        if native is None:
            continue
        if base == mint and quote == WRAPPED_SOL_MINT:
            price = native
        elif base == WRAPPED_SOL_MINT and quote == mint:
            price = 1.0 / native
        else:
            continue
        liquidity = _positive_float((pair.get("liquidity") or {}).get("usd")) or 0.0
        if best is None or liquidity > best[0]:
            best = (liquidity, price)
    return best[1] if best else None


class PriceEngine:
    """
    SOL/USD and token->SOL quotes with a short TTL cache.

    SOL/USD never fails: on provider errors it serves the last good value,
    then the configured fallback. Token quotes return None when unpriced.
    """

    def __init__(
        self,
        helius_api_key: str = "",
        coingecko_url: str = COINGECKO_SIMPLE_PRICE_URL,
        dexscreener_url: str = DEXSCREENER_TOKENS_URL,
        ttl_seconds: float = 60,
        fallback_sol_usd: float = 130.0,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ):
        self.helius_api_key = helius_api_key
        self.coingecko_url = coingecko_url
        self.dexscreener_url = dexscreener_url.rstrip("/")
        self.ttl_seconds = ttl_seconds
        self.fallback_sol_usd = fallback_sol_usd
        self.timeout = timeout
        self.logger = logger or logging.getLogger("cryptocards.prices")
        self._lock = threading.Lock()
        self._sol_usd: Optional[float] = None
        self._sol_usd_at = 0.0
        self._token_quotes: Dict[str, Tuple[Optional[float], float]] = {}

    def _fetch_sol_usd(self) -> Optional[float]:
        if self.helius_api_key:
            try:
                resp = requests.post(
                    HELIUS_MAINNET_URL,
                    params={"api-key": self.helius_api_key},
                    json={
                        "jsonrpc": "2.0",
                        "id": "sol-price",
                        "method": "getAssetBatch",
                        "params": {"ids": [WRAPPED_SOL_MINT]},
                    },
                    timeout=self.timeout,
                )
                resp.raise_for_status()
                price = _extract_helius_price(resp.json())
                if price is not None:
                    return price
                self.logger.warning("sol_price_helius_missing_price")
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("sol_price_helius_failed error=%s", exc)
        try:
            resp = requests.get(
                self.coingecko_url,
                params={"ids": "solana", "vs_currencies": "usd"},
                timeout=self.timeout,
            )
            resp.raise_for_status()
            price = _extract_coingecko_price(resp.json())
            if price is None:
                self.logger.warning("sol_price_coingecko_missing_price")
            return price
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("sol_price_coingecko_failed error=%s", exc)
            return None

    def sol_usd(self) -> float:
        now = time.time()
        with self._lock:
            if self._sol_usd is not None and now - self._sol_usd_at < self.ttl_seconds:
                return self._sol_usd
        price = self._fetch_sol_usd()
        with self._lock:
            if price is None:
                price = self._sol_usd if self._sol_usd is not None else self.fallback_sol_usd
                self.logger.warning("sol_price_fallback price=%s", price)
            self._sol_usd = price
            self._sol_usd_at = now
            return price

    def token_price_sol(self, mint: str) -> Optional[float]:
        if mint == WRAPPED_SOL_MINT:
            return 1.0
        now = time.time()
        with self._lock:
            cached = self._token_quotes.get(mint)
            if cached and now - cached[1] < self.ttl_seconds:
                return cached[0]
        price: Optional[float] = None
        try:
            resp = requests.get(f"{self.dexscreener_url}/{mint}", timeout=self.timeout)
            resp.raise_for_status()
            price = _extract_sol_quote(resp.json(), mint)
        except Exception as exc:  # noqa: BLE001
            # unpriced is a valid answer; do not cache the failure
            self.logger.warning("token_price_failed mint=%s error=%s", mint, exc)
            return None
        with self._lock:
            self._token_quotes[mint] = (price, now)
        return price
