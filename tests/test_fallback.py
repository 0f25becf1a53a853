import pytest
from datetime import datetime, timedelta, timezone
from pricefeed.core.fallback import FallbackDataGenerator
from pricefeed.core.models import CandleInterval

@pytest.mark.parametrize("symbol", ["BTC", "ETH", "XRP", "DOGE", "UNKNOWN"])
@pytest.mark.parametrize("count", [1, 50, 500])
def test_candles_respect_ohlc_invariant(symbol, count):
    candles = FallbackDataGenerator(seed=7).synthetic_candles(symbol, count)
    assert len(candles) == count
    for c in candles:
        assert c.low <= min(c.open, c.close)
        assert c.high >= max(c.open, c.close)
        assert c.low > 0
        assert c.volume >= 0

def test_candles_ascending_and_unique():
    end = datetime(2025, 3, 1, 12, 30, tzinfo=timezone.utc)
    candles = FallbackDataGenerator(seed=1).synthetic_candles("ETH", 24, CandleInterval.H1, end=end)
    times = [c.open_time for c in candles]
    assert times == sorted(times)
    assert len(set(times)) == len(times)
    assert times[-1] == datetime(2025, 3, 1, 12, 0, tzinfo=timezone.utc)
    assert times[1] - times[0] == timedelta(hours=1)

def test_candles_continue_from_previous_close():
    candles = FallbackDataGenerator(seed=3).synthetic_candles("BTC", 10)
    for prev, cur in zip(candles, candles[1:]):
        assert cur.open == pytest.approx(prev.close)

def test_same_seed_same_output():
    end = datetime(2025, 1, 1, tzinfo=timezone.utc)
    a = FallbackDataGenerator(seed=42).synthetic_candles("SOL", 20, end=end)
    b = FallbackDataGenerator(seed=42).synthetic_candles("SOL", 20, end=end)
    assert [c.model_dump() for c in a] == [c.model_dump() for c in b]

    qa = FallbackDataGenerator(seed=42).synthetic_quotes(["BTC"])["BTC"]
    qb = FallbackDataGenerator(seed=42).synthetic_quotes(["BTC"])["BTC"]
    assert qa.current_price == qb.current_price
    assert qa.change_percent_24h == qb.change_percent_24h

def test_zero_count():
    assert FallbackDataGenerator(seed=1).synthetic_candles("BTC", 0) == []

def test_synthetic_quotes_cover_every_symbol():
    quotes = FallbackDataGenerator(seed=5).synthetic_quotes(["btc", "eth", "NEWCOIN"])
    assert set(quotes) == {"BTC", "ETH", "NEWCOIN"}
    for q in quotes.values():
        assert q.current_price > 0
        assert q.low_24h <= q.current_price <= q.high_24h
        assert q.volume_24h >= 0
        assert q.market_cap == 0.0

def test_quotes_near_reference_levels():
    quotes = FallbackDataGenerator(seed=9).synthetic_quotes(["BTC", "NEWCOIN"])
    assert quotes["BTC"].current_price == pytest.approx(43500.0, rel=0.02)
    assert quotes["NEWCOIN"].current_price == pytest.approx(100.0, rel=0.02)
