from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, model_validator
from datetime import datetime, timezone
from typing import Dict, List, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ConnectionState(str, Enum):
    IDLE = "IDLE"
    CONNECTING = "CONNECTING"
    OPEN = "OPEN"
    CLOSING = "CLOSING"
    RECONNECT_SCHEDULED = "RECONNECT_SCHEDULED"
    FALLBACK = "FALLBACK"


class CandleInterval(str, Enum):
    M1 = "1m"
    M5 = "5m"
    M15 = "15m"
    M30 = "30m"
    H1 = "1h"
    H4 = "4h"
    D1 = "1d"
    W1 = "1w"

    @property
    def seconds(self) -> int:
        return _INTERVAL_SECONDS[self]

    @classmethod
    def parse(cls, key) -> "CandleInterval":
        if isinstance(key, cls):
            return key
        try:
            return cls(key)
        except ValueError:
            allowed = ",".join(i.value for i in cls)
            raise ValueError(f"Unsupported interval '{key}'. Expected one of: {allowed}")


_INTERVAL_SECONDS = {
    CandleInterval.M1: 60,
    CandleInterval.M5: 300,
    CandleInterval.M15: 900,
    CandleInterval.M30: 1800,
    CandleInterval.H1: 3600,
    CandleInterval.H4: 14400,
    CandleInterval.D1: 86400,
    CandleInterval.W1: 604800,
}


class PriceUpdate(BaseModel):
    """A single normalized streaming ticker event"""
    model_config = ConfigDict(frozen=True)

    symbol: str  # Uppercase base asset, e.g. "BTC"
    price: float
    change_24h_percent: float


class QuoteRecord(BaseModel):
    """Latest known quote for one tracked symbol"""
    symbol: str
    current_price: float
    change_percent_24h: float
    high_24h: float
    low_24h: float
    volume_24h: float
    market_cap: float = 0.0
    last_updated: datetime = Field(default_factory=utcnow)

    def apply(self, update: PriceUpdate):
        # Streaming events only carry price and change; range fields stay from bootstrap
        self.current_price = update.price
        self.change_percent_24h = update.change_24h_percent
        self.last_updated = utcnow()


class CandleRecord(BaseModel):
    """Represents a standardized Candle"""
    open_time: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float

    @model_validator(mode="after")
    def check_ohlc(self):
        if self.low > min(self.open, self.close):
            raise ValueError(f"low {self.low} above body of candle at {self.open_time}")
        if self.high < max(self.open, self.close):
            raise ValueError(f"high {self.high} below body of candle at {self.open_time}")
        if self.volume < 0:
            raise ValueError("volume must not be negative")
        return self


class FeedSnapshot(BaseModel):
    """Read-only view handed to the dashboard"""
    records: Dict[str, QuoteRecord]
    connected: bool
    last_update_time: Optional[datetime] = None
    error: Optional[str] = None
    is_loading: bool = False
    using_fallback: bool = False
    stream_state: ConnectionState = ConnectionState.IDLE
    favorites: List[str] = Field(default_factory=list)
