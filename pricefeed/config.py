import json
from typing import Annotated, List, Optional
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict
from pydantic import Field, field_validator

class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    # Application
    APP_NAME: str = "PriceFeed"
    APP_VERSION: str = "0.1.0"
    LOG_LEVEL: str = "INFO"
    RUN_MODE: str = Field(default="API", description="Execution Mode: API, HEADLESS")
    API_HOST: str = "127.0.0.1"
    API_PORT: int = 8000

    # Market Data
    QUOTE_PROVIDER: str = Field(default="binance", description="REST quote source: binance, coingecko")
    QUOTE_ASSET: str = "USDT"
    SYMBOLS: Annotated[List[str], NoDecode] = Field(default=[
        "BTC", "ETH", "XRP", "ADA", "SOL", "DOT", "LINK", "LTC", "DOGE"
    ], description="Base assets to track")
    DEFAULT_FAVORITES: Annotated[List[str], NoDecode] = Field(default=["ETH"])

    # Endpoints
    BINANCE_REST_URL: str = "https://api.binance.com"
    BINANCE_WS_URL: str = "wss://stream.binance.com:9443"
    COINGECKO_REST_URL: str = "https://api.coingecko.com/api/v3"
    COINGECKO_API_KEY: str = Field(default="", description="Optional CoinGecko demo API key")
    REQUEST_TIMEOUT: float = 10.0

    # Streaming
    RECONNECT_BASE_DELAY: float = 1.0
    RECONNECT_MAX_DELAY: float = 30.0
    MAX_RECONNECT_ATTEMPTS: int = 5
    STREAM_HEARTBEAT_TIMEOUT: float = 60.0
    STREAM_CONNECT_DELAY: float = 1.0

    # Coordinator
    HEALTH_CHECK_INTERVAL: float = 5.0
    RATE_LIMIT_RETRY_DELAY: float = 30.0
    RATE_LIMIT_MAX_DELAY: float = 300.0
    MAX_RATE_LIMIT_RETRIES: int = 3
    DEGRADED_POLL_INTERVAL: float = 30.0
    FALLBACK_SEED: Optional[int] = Field(default=None, description="Fixed seed for synthetic data")

    @field_validator("SYMBOLS", "DEFAULT_FAVORITES", mode="before")
    @classmethod
    def parse_symbols(cls, v):
        if isinstance(v, str):
            if v.strip().startswith("["):
                v = json.loads(v)
            else:
                # Handle comma-separated string: "BTC,ETH"
                v = [x.strip() for x in v.split(",") if x.strip()]
        if isinstance(v, list):
            return [str(x).upper() for x in v]
        return v

settings = Settings()
