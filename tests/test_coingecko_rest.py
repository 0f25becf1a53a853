import pytest
import httpx
from pricefeed.connectors.coingecko_rest import CoinGeckoREST, symbol_to_id
from pricefeed.core.errors import NetworkError, RateLimitError

def make_client(handler, api_key=""):
    return CoinGeckoREST(base_url="https://cg.test", api_key=api_key, transport=httpx.MockTransport(handler))

def test_symbol_to_id():
    assert symbol_to_id("btc") == "bitcoin"
    assert symbol_to_id("AVAX") == "avalanche-2"
    assert symbol_to_id("PEPE") == "pepe"

@pytest.mark.asyncio
async def test_fetch_quotes_with_market_cap():
    def handler(request):
        assert request.url.params["ids"] == "bitcoin,ethereum"
        assert request.headers["x-cg-demo-api-key"] == "demo"
        return httpx.Response(200, json=[{
            "id": "bitcoin", "symbol": "btc", "current_price": 111000,
            "price_change_percentage_24h": None, "market_cap": 2.2e12,
            "total_volume": 3e10, "high_24h": None, "low_24h": 109000,
            "last_updated": "2025-01-01T00:00:00.000Z",
        }])

    quotes = await make_client(handler, api_key="demo").fetch_quotes(["BTC", "ETH"])
    assert list(quotes) == ["BTC"]
    btc = quotes["BTC"]
    assert btc.market_cap == 2.2e12
    assert btc.change_percent_24h == 0.0
    assert btc.high_24h == 111000.0
    assert btc.low_24h == 109000.0
    assert btc.last_updated.year == 2025

@pytest.mark.asyncio
async def test_fetch_candles_uses_day_range_and_limit():
    def handler(request):
        assert request.url.path == "/coins/ethereum/ohlc"
        # 48 hourly candles need two days, the next allowed range is 7
        assert request.url.params["days"] == "7"
        return httpx.Response(200, json=[
            [1700000000000 + i * 3600000, 10, 12, 9, 11] for i in range(60)
        ])

    candles = await make_client(handler).fetch_candles("ETH", "1h", 48)
    assert len(candles) == 48
    assert all(c.volume == 0.0 for c in candles)
    assert candles[0].open_time < candles[-1].open_time

@pytest.mark.asyncio
async def test_errors_share_taxonomy():
    with pytest.raises(RateLimitError):
        await make_client(lambda r: httpx.Response(429)).fetch_quotes(["BTC"])
    with pytest.raises(NetworkError):
        await make_client(lambda r: httpx.Response(503)).fetch_quotes(["BTC"])
