from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
import httpx
from pricefeed.config import settings
from pricefeed.core.errors import AuthError, DecodeError, NetworkError, RateLimitError
from pricefeed.core.logger import logger
from pricefeed.core.models import CandleInterval, CandleRecord, QuoteRecord


def raise_for_status(response: httpx.Response, provider: str):
    """Map an HTTP error response onto the quote source error taxonomy"""
    status = response.status_code
    if status < 400:
        return
    logger.error(f"{provider} API Error {status}: {response.text[:200]}")
    if status in (418, 429):
        retry_after = response.headers.get("Retry-After")
        try:
            retry_after = float(retry_after) if retry_after is not None else None
        except ValueError:
            retry_after = None
        raise RateLimitError(f"{provider} rate limit ({status})", retry_after=retry_after)
    if status in (401, 403):
        raise AuthError(f"{provider} rejected credentials ({status})")
    raise NetworkError(f"{provider} API Error {status}", status_code=status)


def decode_json(response: httpx.Response, provider: str):
    try:
        return response.json()
    except ValueError as e:
        raise DecodeError(f"{provider} returned invalid JSON: {e}") from e


class BinanceREST:
    """
    Public Binance spot market-data endpoints.

    Every call is a single request: failures surface immediately as a
    QuoteSourceError subclass and retry policy belongs to the caller.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        quote_asset: Optional[str] = None,
        timeout: Optional[float] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = base_url or settings.BINANCE_REST_URL
        self.quote_asset = (quote_asset or settings.QUOTE_ASSET).upper()
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout or settings.REQUEST_TIMEOUT,
            transport=transport,
        )

    def pair(self, symbol: str) -> str:
        return f"{symbol.upper()}{self.quote_asset}"

    async def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None):
        try:
            response = await self.client.get(endpoint, params=params)
        except httpx.TransportError as e:
            logger.warning(f"Binance request {endpoint} failed: {e}")
            raise NetworkError(f"Binance unreachable: {e}") from e
        raise_for_status(response, "Binance")
        return decode_json(response, "Binance")

    async def fetch_quotes(self, symbols: Iterable[str]) -> Dict[str, QuoteRecord]:
        """24h ticker stats for the given base assets, keyed by base asset"""
        wanted = {self.pair(s): s.upper() for s in symbols}
        data = await self._request("/api/v3/ticker/24hr")
        if not isinstance(data, list):
            raise DecodeError("Expected a list of tickers from /api/v3/ticker/24hr")

        now = datetime.now(timezone.utc)
        result = {}
        for ticker in data:
            if not isinstance(ticker, dict):
                continue
            key = wanted.get(ticker.get("symbol"))
            if key is None:
                continue
            try:
                result[key] = QuoteRecord(
                    symbol=key,
                    current_price=float(ticker["lastPrice"]),
                    change_percent_24h=float(ticker["priceChangePercent"]),
                    high_24h=float(ticker["highPrice"]),
                    low_24h=float(ticker["lowPrice"]),
                    volume_24h=float(ticker["volume"]),
                    market_cap=0.0,
                    last_updated=now,
                )
            except (KeyError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed ticker for {ticker.get('symbol')}: {e}") from e

        for pair, key in wanted.items():
            if key not in result:
                logger.warning(f"Symbol {pair} not found in Binance tickers")
        logger.info(f"Fetched Binance quotes for {sorted(result)}")
        return result

    async def fetch_candles(self, symbol: str, interval="1h", limit: int = 500) -> List[CandleRecord]:
        interval = CandleInterval.parse(interval)
        data = await self._request(
            "/api/v3/klines",
            {"symbol": self.pair(symbol), "interval": interval.value, "limit": limit},
        )
        if not isinstance(data, list):
            raise DecodeError("Expected a list of klines")

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
                    volume=float(row[5]),
                )
            except (IndexError, TypeError, ValueError) as e:
                raise DecodeError(f"Malformed kline for {symbol}: {e}") from e
        # Ascending, one candle per open time
        return [candles[t] for t in sorted(candles)]

    async def fetch_server_time(self) -> datetime:
        data = await self._request("/api/v3/time")
        try:
            return datetime.fromtimestamp(int(data["serverTime"]) / 1000, tz=timezone.utc)
        except (KeyError, TypeError, ValueError) as e:
            raise DecodeError(f"Malformed server time: {e}") from e

    async def fetch_trading_symbols(self) -> List[str]:
        """Base assets currently trading against the quote asset"""
        data = await self._request("/api/v3/exchangeInfo")
        try:
            return sorted(
                s["baseAsset"] for s in data["symbols"]
                if s.get("quoteAsset") == self.quote_asset and s.get("status") == "TRADING"
            )
        except (KeyError, TypeError) as e:
            raise DecodeError(f"Malformed exchange info: {e}") from e

    async def close(self):
        await self.client.aclose()
