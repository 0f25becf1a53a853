from typing import List, Optional, Sequence
import pandas as pd
from pricefeed.core.models import CandleRecord


def closes(candles: Sequence[CandleRecord]) -> pd.Series:
    return pd.Series(
        [c.close for c in candles],
        index=[c.open_time for c in candles],
        dtype="float64",
    )


def simple_moving_average(candles: Sequence[CandleRecord], period: int = 20) -> List[Optional[float]]:
    """Close-price SMA aligned with `candles`; None until the window fills"""
    if period <= 0:
        raise ValueError("period must be positive")
    if not candles:
        return []
    sma = closes(candles).rolling(window=period).mean()
    return [None if pd.isna(v) else float(v) for v in sma]
