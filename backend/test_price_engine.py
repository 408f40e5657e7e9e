import pytest
import requests

import price_engine
from price_engine import WRAPPED_SOL_MINT, PriceEngine, _extract_helius_price, _extract_sol_quote

BONK = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"


class FakeResponse:
    def __init__(self, payload, status_code=200):
        self.payload = payload
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"status {self.status_code}")

    def json(self):
        return self.payload


class Recorder:
    def __init__(self, *responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        result = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(result, Exception):
            raise result
        return result


def test_helius_payload():
    payload = {"result": [{"token_info": {"price_info": {"price_per_token": 142.5}}}]}
    assert _extract_helius_price(payload) == 142.5
    assert _extract_helius_price({"result": []}) is None


def test_sol_quote_prefers_liquid_pair():
    payload = {
        "pairs": [
            {"baseToken": {"address": BONK}, "quoteToken": {"address": WRAPPED_SOL_MINT}, "priceNative": "0.0000001", "liquidity": {"usd": 1000}},
            {"baseToken": {"address": BONK}, "quoteToken": {"address": WRAPPED_SOL_MINT}, "priceNative": "0.0000002", "liquidity": {"usd": 90000}},
            {"baseToken": {"address": BONK}, "quoteToken": {"address": "USDC"}, "priceNative": "0.00003", "liquidity": {"usd": 500000}},
        ]
    }
    assert _extract_sol_quote(payload, BONK) == pytest.approx(0.0000002)


def test_sol_quote_inverts_sol_base():
    payload = {
        "pairs": [
            {"baseToken": {"address": WRAPPED_SOL_MINT}, "quoteToken": {"address": BONK}, "priceNative": "4000000", "liquidity": {"usd": 10}}
        ]
    }
    assert _extract_sol_quote(payload, BONK) == pytest.approx(0.00000025)
    assert _extract_sol_quote({"pairs": None}, BONK) is None


def test_sol_usd_coingecko_and_cache(monkeypatch):
    fake_get = Recorder(FakeResponse({"solana": {"usd": 155.0}}))
    monkeypatch.setattr(price_engine.requests, "get", fake_get)
    engine = PriceEngine(ttl_seconds=60)

    assert engine.sol_usd() == 155.0
    assert engine.sol_usd() == 155.0
    assert len(fake_get.calls) == 1
    assert fake_get.calls[0][1]["timeout"] == 10.0


def test_sol_usd_prefers_helius(monkeypatch):
    fake_post = Recorder(FakeResponse({"result": [{"token_info": {"price_info": {"price_per_token": 149.0}}}]}))
    fake_get = Recorder(FakeResponse({"solana": {"usd": 1.0}}))
    monkeypatch.setattr(price_engine.requests, "post", fake_post)
    monkeypatch.setattr(price_engine.requests, "get", fake_get)

    assert PriceEngine(helius_api_key="key").sol_usd() == 149.0
    assert fake_get.calls == []
    assert fake_post.calls[0][1]["params"] == {"api-key": "key"}


def test_sol_usd_falls_back(monkeypatch):
    fake_get = Recorder(FakeResponse({"solana": {"usd": 160.0}}), requests.ConnectionError("down"))
    monkeypatch.setattr(price_engine.requests, "get", fake_get)
    engine = PriceEngine(ttl_seconds=0, fallback_sol_usd=130.0)

    assert engine.sol_usd() == 160.0
    # provider down: keep serving the last good value
    assert engine.sol_usd() == 160.0

    cold = PriceEngine(ttl_seconds=0, fallback_sol_usd=130.0)
    assert cold.sol_usd() == 130.0


def test_token_price(monkeypatch):
    pairs = {"pairs": [{"baseToken": {"address": BONK}, "quoteToken": {"address": WRAPPED_SOL_MINT}, "priceNative": "0.0000003"}]}
    fake_get = Recorder(requests.Timeout("slow"), FakeResponse(pairs))
    monkeypatch.setattr(price_engine.requests, "get", fake_get)
    engine = PriceEngine()

    assert engine.token_price_sol(WRAPPED_SOL_MINT) == 1.0
    assert engine.token_price_sol(BONK) is None
    assert engine.token_price_sol(BONK) == pytest.approx(0.0000003)
    assert engine.token_price_sol(BONK) == pytest.approx(0.0000003)
    assert len(fake_get.calls) == 2
    assert fake_get.calls[0][0].endswith(f"/{BONK}")
