from pricefeed.config import Settings, settings as default_settings
from pricefeed.connectors.binance_rest import BinanceREST
from pricefeed.connectors.binance_ws import BinanceStream
from pricefeed.connectors.coingecko_rest import CoinGeckoREST
from pricefeed.core.coordinator import FeedCoordinator
from pricefeed.core.fallback import FallbackDataGenerator
from pricefeed.core.hub import UpdateHub


class FeedContext:
    """The one-per-process set of feed services, built at startup and passed around"""

    def __init__(self, hub, source, stream, fallback, coordinator):
        self.hub = hub
        self.source = source
        self.stream = stream
        self.fallback = fallback
        self.coordinator = coordinator

    async def close(self):
        await self.coordinator.stop()
        await self.source.close()


def create_source(config: Settings):
    provider = config.QUOTE_PROVIDER.lower()
    if provider == "binance":
        return BinanceREST(
            base_url=config.BINANCE_REST_URL,
            quote_asset=config.QUOTE_ASSET,
            timeout=config.REQUEST_TIMEOUT,
        )
    if provider == "coingecko":
        return CoinGeckoREST(
            base_url=config.COINGECKO_REST_URL,
            api_key=config.COINGECKO_API_KEY,
            timeout=config.REQUEST_TIMEOUT,
        )
    raise ValueError(f"Unknown QUOTE_PROVIDER '{config.QUOTE_PROVIDER}'")


def create_context(config: Settings = default_settings) -> FeedContext:
    hub = UpdateHub()
    source = create_source(config)
    stream = BinanceStream(
        hub,
        symbols=config.SYMBOLS,
        ws_url=config.BINANCE_WS_URL,
        quote_asset=config.QUOTE_ASSET,
        base_delay=config.RECONNECT_BASE_DELAY,
        max_delay=config.RECONNECT_MAX_DELAY,
        max_reconnect_attempts=config.MAX_RECONNECT_ATTEMPTS,
        heartbeat_timeout=config.STREAM_HEARTBEAT_TIMEOUT,
    )
    fallback = FallbackDataGenerator(seed=config.FALLBACK_SEED)
    coordinator = FeedCoordinator(
        source,
        stream,
        hub,
        fallback,
        symbols=config.SYMBOLS,
        favorites=config.DEFAULT_FAVORITES,
        connect_delay=config.STREAM_CONNECT_DELAY,
        health_check_interval=config.HEALTH_CHECK_INTERVAL,
        rate_limit_retry_delay=config.RATE_LIMIT_RETRY_DELAY,
        rate_limit_max_delay=config.RATE_LIMIT_MAX_DELAY,
        max_rate_limit_retries=config.MAX_RATE_LIMIT_RETRIES,
        degraded_poll_interval=config.DEGRADED_POLL_INTERVAL,
    )
    return FeedContext(hub, source, stream, fallback, coordinator)
