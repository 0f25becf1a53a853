import asyncio
from datetime import datetime
from typing import Dict, Iterable, List, Optional
from pricefeed.config import settings
from pricefeed.core.errors import DecodeError, QuoteSourceError, RateLimitError
from pricefeed.core.fallback import FallbackDataGenerator
from pricefeed.core.hub import UpdateHub
from pricefeed.core.logger import logger
from pricefeed.core.models import (
    CandleInterval, CandleRecord, ConnectionState, FeedSnapshot, PriceUpdate, QuoteRecord, utcnow,
)

STREAM_DEGRADED_BANNER = "Live updates unavailable. Running in degraded mode with periodic refresh."


class FeedCoordinator:
    """
    Single view over bootstrap REST quotes, the live stream and fallback data.

    Overlapping bootstraps (start, refetch, rate-limit retry, degraded polling)
    are resolved last-fetch-wins: only the most recently started call may
    write records; older results are discarded when they arrive.
    """

    def __init__(
        self,
        source,
        stream,
        hub: UpdateHub,
        fallback: FallbackDataGenerator,
        symbols: Optional[Iterable[str]] = None,
        favorites: Optional[Iterable[str]] = None,
        connect_delay: Optional[float] = None,
        health_check_interval: Optional[float] = None,
        rate_limit_retry_delay: Optional[float] = None,
        rate_limit_max_delay: Optional[float] = None,
        max_rate_limit_retries: Optional[int] = None,
        degraded_poll_interval: Optional[float] = None,
    ):
        self.source = source
        self.stream = stream
        self.hub = hub
        self.fallback = fallback
        self.symbols: List[str] = [s.upper() for s in (symbols or settings.SYMBOLS)]
        self.favorites = set(s.upper() for s in (settings.DEFAULT_FAVORITES if favorites is None else favorites))

        self.connect_delay = settings.STREAM_CONNECT_DELAY if connect_delay is None else connect_delay
        self.health_check_interval = (
            settings.HEALTH_CHECK_INTERVAL if health_check_interval is None else health_check_interval
        )
        self.rate_limit_retry_delay = (
            settings.RATE_LIMIT_RETRY_DELAY if rate_limit_retry_delay is None else rate_limit_retry_delay
        )
        self.rate_limit_max_delay = (
            settings.RATE_LIMIT_MAX_DELAY if rate_limit_max_delay is None else rate_limit_max_delay
        )
        self.max_rate_limit_retries = (
            settings.MAX_RATE_LIMIT_RETRIES if max_rate_limit_retries is None else max_rate_limit_retries
        )
        self.degraded_poll_interval = (
            settings.DEGRADED_POLL_INTERVAL if degraded_poll_interval is None else degraded_poll_interval
        )

        self.records: Dict[str, QuoteRecord] = {}
        self.connected = False
        self.last_update_time: Optional[datetime] = None
        self.error: Optional[str] = None
        self.is_loading = False
        self.using_fallback = False   # synthetic data installed after a failed bootstrap
        self.stream_degraded = False  # stream exhausted its reconnects

        self._running = False
        self._subscription: Optional[int] = None
        self._tasks: Dict[str, asyncio.Task] = {}
        self._fetch_seq = 0
        self._rate_limit_retries = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def sticky_fallback(self) -> bool:
        return self.using_fallback or self.stream_degraded

    # --- Lifecycle ---

    async def start(self, symbols: Optional[Iterable[str]] = None):
        if self._running:
            logger.warning("Feed coordinator already running")
            return
        if symbols is not None:
            self.symbols = [s.upper() for s in symbols]

        logger.info(f"Starting feed for {self.symbols}")
        self._running = True
        # Degraded mode from a previous run does not carry over
        self.stream_degraded = False
        self.using_fallback = False
        self.error = None
        self._rate_limit_retries = 0
        self._subscription = self.hub.subscribe(self._on_price_update)
        self.stream.add_state_listener(self._on_stream_state)
        try:
            if await self._bootstrap():
                self._ensure_streaming()
        except (Exception, asyncio.CancelledError):
            # Release everything acquired above before propagating
            await self.stop()
            raise

    async def stop(self):
        self._running = False
        # Any bootstrap still in flight becomes stale
        self._fetch_seq += 1

        if self._subscription is not None:
            self.hub.unsubscribe(self._subscription)
            self._subscription = None
        self.stream.remove_state_listener(self._on_stream_state)

        tasks = list(self._tasks.values())
        self._tasks.clear()
        current = asyncio.current_task()
        for task in tasks:
            if task is not current:
                task.cancel()
        for task in tasks:
            if task is current:
                continue
            try:
                await task
            except asyncio.CancelledError:
                pass

        await self.stream.disconnect()
        self.connected = False
        self.is_loading = False
        logger.info("Feed coordinator stopped")

    async def refetch(self) -> bool:
        """Manual refresh. Leaves a healthy stream alone; leaves degraded mode on success."""
        was_sticky = self.sticky_fallback
        live = await self._bootstrap()
        if live and was_sticky and self._running:
            logger.info("Live data restored, leaving degraded mode")
            self.stream_degraded = False
            self.error = None
            self._cancel("poll")
            if self.stream.state is ConnectionState.FALLBACK:
                await self.stream.disconnect()
            self._cancel("health")
            self._cancel("connect")
        if live:
            self._ensure_streaming()
        return live

    def toggle_favorite(self, symbol: str) -> bool:
        key = symbol.upper()
        if key in self.favorites:
            self.favorites.discard(key)
            return False
        self.favorites.add(key)
        return True

    def snapshot(self) -> FeedSnapshot:
        return FeedSnapshot(
            records={k: v.model_copy() for k, v in self.records.items()},
            connected=self.connected,
            last_update_time=self.last_update_time,
            error=self.error,
            is_loading=self.is_loading,
            using_fallback=self.using_fallback,
            stream_state=self.stream.state,
            favorites=sorted(self.favorites),
        )

    async def get_candles(self, symbol: str, interval="1h", limit: int = 100) -> List[CandleRecord]:
        """One-shot candle fetch; synthetic candles if the source fails"""
        interval = CandleInterval.parse(interval)
        try:
            return await self.source.fetch_candles(symbol, interval, limit)
        except QuoteSourceError as e:
            logger.warning(f"Candle fetch for {symbol} failed ({e}). Using synthetic candles")
            return self.fallback.synthetic_candles(symbol, limit, interval)

    # --- Bootstrap ---

    async def _bootstrap(self) -> bool:
        """Fetch quotes once. True when live records were installed."""
        self._fetch_seq += 1
        seq = self._fetch_seq
        self.is_loading = True
        try:
            quotes = await self.source.fetch_quotes(self.symbols)
            if not quotes:
                raise DecodeError("No data received from quote source")
        except RateLimitError as e:
            if seq != self._fetch_seq:
                return False
            self.is_loading = False
            self._handle_rate_limit(e)
            return False
        except QuoteSourceError as e:
            if seq != self._fetch_seq:
                return False
            self.is_loading = False
            self._handle_bootstrap_failure(e)
            return False

        if seq != self._fetch_seq:
            logger.info("Discarding stale bootstrap result")
            return False

        self.is_loading = False
        self.records = quotes
        self.connected = True
        self.using_fallback = False
        self._rate_limit_retries = 0
        self._cancel("retry")
        self.last_update_time = utcnow()
        self.error = STREAM_DEGRADED_BANNER if self.stream_degraded else None
        logger.info(f"Bootstrap loaded {len(quotes)} quotes")
        return True

    def _handle_bootstrap_failure(self, exc: QuoteSourceError):
        self.error = exc.banner
        if self.stream.is_connected and self.records:
            # Live stream still feeding us; keep its records rather than overwrite with demo data
            logger.warning(f"Refresh failed ({type(exc).__name__}: {exc}); keeping streamed records")
            return
        logger.error(f"Bootstrap failed ({type(exc).__name__}: {exc}). Using synthetic data")
        # Pure and non-failing: degraded mode can always be entered
        self.records = self.fallback.synthetic_quotes(self.symbols)
        self.using_fallback = True
        self.connected = False
        self.last_update_time = utcnow()

    def _handle_rate_limit(self, exc: RateLimitError):
        self._rate_limit_retries += 1
        if self._rate_limit_retries > self.max_rate_limit_retries:
            logger.error(f"Rate limited {self._rate_limit_retries - 1} times in a row, giving up")
            self._rate_limit_retries = 0
            self._handle_bootstrap_failure(exc)
            return

        delay = exc.retry_after
        if delay is None:
            delay = self.rate_limit_retry_delay * (2 ** (self._rate_limit_retries - 1))
        delay = min(delay, self.rate_limit_max_delay)
        self.error = exc.banner
        logger.warning(f"Rate limited. Retrying bootstrap in {delay}s (retry {self._rate_limit_retries})")
        if self._running:
            self._spawn("retry", self._retry_bootstrap(delay))

    async def _retry_bootstrap(self, delay: float):
        await asyncio.sleep(delay)
        if await self._bootstrap():
            self._ensure_streaming()

    # --- Streaming ---

    def _ensure_streaming(self):
        """Bring the stream up after a live bootstrap unless it is already managed"""
        if not self._running or self.sticky_fallback or "health" in self._tasks:
            return
        self._start_streaming()

    def _start_streaming(self):
        self._spawn("connect", self._connect_after(self.connect_delay))
        self._spawn("health", self._health_loop())

    async def _connect_after(self, delay: float):
        # Short pause so the stream does not open in the same instant as the bootstrap
        await asyncio.sleep(delay)
        self.stream.connect(self.symbols)

    async def _health_loop(self):
        while True:
            await asyncio.sleep(self.health_check_interval)
            self.check_health()

    def check_health(self):
        state = self.stream.state
        if state is ConnectionState.FALLBACK:
            self._enter_stream_fallback()
            return
        if self.sticky_fallback:
            return
        self.connected = state is ConnectionState.OPEN
        if state is not ConnectionState.OPEN:
            logger.info(f"Stream is {state.value}, requesting reconnect")
            self.stream.connect(self.symbols)

    def _on_stream_state(self, old_state: ConnectionState, new_state: ConnectionState):
        if new_state is ConnectionState.FALLBACK:
            self._enter_stream_fallback()

    def _enter_stream_fallback(self):
        if self.stream_degraded:
            return
        self.stream_degraded = True
        self.connected = False
        self.error = STREAM_DEGRADED_BANNER
        logger.error("Streaming exhausted its reconnects. Switching to REST polling")
        if self._running:
            self._spawn("poll", self._poll_loop())

    async def _poll_loop(self):
        while True:
            await asyncio.sleep(self.degraded_poll_interval)
            await self._bootstrap()

    def _on_price_update(self, update: PriceUpdate):
        record = self.records.get(update.symbol)
        if record is None:
            logger.debug(f"Ignoring update for untracked symbol {update.symbol}")
            return
        record.apply(update)
        self.last_update_time = utcnow()
        self.connected = True

    # --- Task bookkeeping ---

    def _spawn(self, name: str, coro):
        self._cancel(name)
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks[name] = task
        task.add_done_callback(lambda t, name=name: self._on_task_done(name, t))

    def _on_task_done(self, name: str, task: asyncio.Task):
        if self._tasks.get(name) is task:
            del self._tasks[name]
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Feed task '{name}' failed: {task.exception()}", exc_info=task.exception())

    def _cancel(self, name: str):
        task = self._tasks.pop(name, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
