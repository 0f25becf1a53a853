import math
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional
import httpx
from pricefeed.config import settings
from pricefeed.connectors.binance_rest import decode_json, raise_for_status
from pricefeed.core.errors import DecodeError, NetworkError
from pricefeed.core.logger import logger
from pricefeed.core.models import CandleInterval, CandleRecord, QuoteRecord

# Mapping of common symbols to CoinGecko IDs
SYMBOL_TO_ID = {
    "BTC": "bitcoin",
    "ETH": "ethereum",
    "SOL": "solana",
    "XRP": "ripple",
    "ADA": "cardano",
    "DOT": "polkadot",
    "LINK": "chainlink",
    "LTC": "litecoin",
    "DOGE": "dogecoin",
    "BCH": "bitcoin-cash",
    "UNI": "uniswap",
    "MATIC": "polygon",
    "AVAX": "avalanche-2",
    "ATOM": "cosmos",
    "ICP": "internet-computer",
    "NEAR": "near",
    "ALGO": "algorand",
    "VET": "vechain",
    "FIL": "filecoin",
    "TRX": "tron",
    "ETC": "ethereum-classic",
}

# The OHLC endpoint only accepts these day ranges
OHLC_DAYS = (1, 7, 14, 30, 90, 180, 365)


def symbol_to_id(symbol: str) -> str:
    return SYMBOL_TO_ID.get(symbol.upper(), symbol.lower())


class CoinGeckoREST:
    """CoinGecko quotes (USD) with market cap. Same contract as BinanceREST."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.COINGECKO_REST_URL
        api_key = settings.COINGECKO_API_KEY if api_key is None else api_key
        headers = {"x-cg-demo-api-key": api_key} if api_key else {}
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.REQUEST_TIMEOUT,
            headers=headers,
            transport=transport,
        )

    async def _request(self, endpoint: str, params=None):
        try:
            response = await self.client.get(endpoint, params=params)
        except httpx.TransportError as e:
            logger.warning(f"CoinGecko request {endpoint} failed: {e}")
            raise NetworkError(f"CoinGecko unreachable: {e}") from e
        raise_for_status(response, "CoinGecko")
        return decode_json(response, "CoinGecko")

    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, QuoteRecord]:
        wanted = {symbol_to_id(s): s.upper() for s in symbols}
        data = await self._request("/coins/markets", {
            "vs_currency": "usd",
            "ids": ",".join(wanted),
            "price_change_percentage": "24h",
        })
        if not isinstance(data, list):
            raise DecodeError("Expected a list of coins from /coins/markets")

        result = {}
        for coin in data:
            key = wanted.get(coin.get("id")) if isinstance(coin, dict) else None
            if key is None:
                continue
            try:
                price = float(coin["current_price"])
                updated = coin.get("last_updated")
                result[key] = QuoteRecord(
                    symbol=key,
                    current_price=price,
                    change_percent_24h=float(coin.get("price_change_percentage_24h") or 0.0),
                    high_24h=float(coin.get("high_24h") or price),
                    low_24h=float(coin.get("low_24h") or price),
                    volume_24h=float(coin.get("total_volume") or 0.0),
                    market_cap=float(coin.get("market_cap") or 0.0),
                    last_updated=updated or datetime.now(timezone.utc),
                )
            except (KeyError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed coin entry {coin.get('id')}: {e}") from e

        for coin_id, key in wanted.items():
            if key not in result:
                logger.warning(f"Symbol {key} ({coin_id}) not found in CoinGecko markets")
        return result

    async def fetch_candles(self, symbol: str, interval="1h", limit: int = 100) -> List[CandleRecord]:
        """
        OHLC candles from CoinGecko. The provider picks the granularity from
        the requested day range, so `interval` only sizes that range. Volume
        is not available on this endpoint and is reported as 0.
        """
        interval = CandleInterval.parse(interval)
        wanted_days = math.ceil(interval.seconds * limit / 86400)
        days = next((d for d in OHLC_DAYS if d >= wanted_days), OHLC_DAYS[-1])
        data = await self._request(
            f"/coins/{symbol_to_id(symbol)}/ohlc",
            {"vs_currency": "usd", "days": days},
        )
        if not isinstance(data, list):
            raise DecodeError("Expected a list of OHLC rows")

        candles = {}
        for row in data:
            try:
                open_time = datetime.fromtimestamp(int(row[0]) / 1000, tz=timezone.utc)
                candles[open_time] = CandleRecord(
                    open_time=open_time,
                    open=float(row[1]),
                    high=float(row[2]),
                    low=float(row[3]),
                    close=float(row[4]),
                    volume=0.0,
                )
            except (IndexError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed OHLC row for {symbol}: {e}") from e
        ordered = [candles[t] for t in sorted(candles)]
        return ordered[-limit:] if limit > 0 else []

    async def close(self):
        await self.client.aclose()
