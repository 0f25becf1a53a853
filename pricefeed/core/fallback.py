from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, List, Optional
import numpy as np
from pricefeed.core.models import CandleInterval, CandleRecord, QuoteRecord
from pricefeed.core.logger import logger

# Reference levels for demo data. Not meant to track the live market.
BASE_PRICES = {
    "BTC": 43500.00,
    "ETH": 2650.00,
    "XRP": 0.62,
    "ADA": 0.48,
    "SOL": 105.50,
    "DOT": 7.25,
    "LINK": 15.80,
    "LTC": 75.20,
    "DOGE": 0.085,
}
DEFAULT_BASE_PRICE = 100.0


class FallbackDataGenerator:
    """
    Synthetic quotes and candles used when every network path has failed.

    Pass a seed for reproducible output; each call draws from the same
    generator so consecutive calls differ but a fresh instance with the same
    seed replays the same sequence.
    """

    def __init__(self, seed: Optional[int] = None, volatility: float = 0.02):
        self.seed = seed
        self.volatility = volatility
        self._rng = np.random.default_rng(seed)

    def base_price(self, symbol: str) -> float:
        return BASE_PRICES.get(symbol.upper(), DEFAULT_BASE_PRICE)

    def synthetic_quotes(self, symbols: Iterable[str]) -> Dict[str, QuoteRecord]:
        now = datetime.now(timezone.utc)
        result = {}
        for symbol in symbols:
            key = symbol.upper()
            base = self.base_price(key)
            price = base * (1 + self._rng.uniform(-0.01, 0.01))
            change = float(self._rng.uniform(-5.0, 5.0))
            result[key] = QuoteRecord(
                symbol=key,
                current_price=price,
                change_percent_24h=change,
                high_24h=price * (1 + self._rng.uniform(0.0, 0.03)),
                low_24h=price * (1 - self._rng.uniform(0.0, 0.03)),
                volume_24h=float(base * self._rng.uniform(5e5, 1e6)),
                market_cap=0.0,
                last_updated=now,
            )
        logger.info(f"Generated synthetic quotes for {sorted(result)}")
        return result

    def synthetic_candles(
        self,
        symbol: str,
        count: int,
        interval: CandleInterval = CandleInterval.H1,
        end: Optional[datetime] = None,
    ) -> List[CandleRecord]:
        """Random walk of `count` candles ending at the interval boundary before `end`"""
        if count <= 0:
            return []
        interval = CandleInterval.parse(interval)
        step = interval.seconds
        if end is None:
            end = datetime.now(timezone.utc)
        last_open = int(end.timestamp()) // step * step
        first_open = last_open - (count - 1) * step

        # Draw everything up front: body moves, wick extensions, volumes
        moves = self._rng.uniform(-0.5, 0.5, count) * self.volatility
        wicks_up = self._rng.uniform(0.0, 0.01, count)
        wicks_down = self._rng.uniform(0.0, 0.01, count)
        volumes = self._rng.uniform(5e5, 1.5e6, count)

        candles = []
        price = self.base_price(symbol)
        for i in range(count):
            open_ = price
            close = open_ * (1 + moves[i])
            high = max(open_, close) * (1 + wicks_up[i])
            low = min(open_, close) * (1 - wicks_down[i])
            candles.append(CandleRecord(
                open_time=datetime.fromtimestamp(first_open + i * step, tz=timezone.utc),
                open=float(open_),
                high=float(high),
                low=float(low),
                close=float(close),
                volume=float(volumes[i]),
            ))
            price = close
        return candles
