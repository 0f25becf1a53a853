import pytest
from datetime import datetime, timedelta, timezone
from pricefeed.core.indicators import simple_moving_average
from pricefeed.core.models import CandleRecord

def make_candles(closes):
    t0 = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return [
        CandleRecord(open_time=t0 + timedelta(minutes=i), open=c, high=c, low=c, close=c, volume=1.0)
        for i, c in enumerate(closes)
    ]

def test_sma_values():
    result = simple_moving_average(make_candles([1, 2, 3, 4, 5]), period=3)
    assert result[:2] == [None, None]
    assert result[2:] == pytest.approx([2.0, 3.0, 4.0])

def test_sma_window_longer_than_series():
    assert simple_moving_average(make_candles([1, 2]), period=10) == [None, None]

def test_sma_empty_and_invalid_period():
    assert simple_moving_average([], period=5) == []
    with pytest.raises(ValueError):
        simple_moving_average(make_candles([1]), period=0)
