import asyncio
import json
import math
from typing import Callable, Iterable, List, Optional
import websockets
from websockets.exceptions import ConnectionClosed
from pricefeed.config import settings
from pricefeed.core.errors import ParseError
from pricefeed.core.hub import UpdateHub
from pricefeed.core.logger import logger
from pricefeed.core.models import ConnectionState, PriceUpdate

CLOSE_NORMAL = 1000
CLOSE_ABNORMAL = 1006

# Ticker field aliases: compact stream keys first, REST-style names after
_SYMBOL_KEYS = ("s", "symbol")
_PRICE_KEYS = ("c", "lastPrice")
_CHANGE_KEYS = ("P", "priceChangePercent", "changePercent")


def backoff_delay(attempt: int, base: float = 1.0, cap: float = 30.0) -> float:
    """Delay before reconnect number `attempt` (0-based): base * 2^attempt, capped"""
    return min(base * (2 ** attempt), cap)


def _first(data: dict, keys):
    for key in keys:
        if data.get(key) is not None:
            return data[key]
    return None


def parse_ticker_frame(raw, quote_asset: str = "USDT") -> PriceUpdate:
    """Turn one inbound frame into a PriceUpdate or raise ParseError"""
    try:
        data = json.loads(raw)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Frame is not JSON: {e}") from e

    # Combined streams wrap the payload: {"stream": "...", "data": {...}}
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        data = data["data"]
    if not isinstance(data, dict):
        raise ParseError("Frame is not a ticker object")
    if data.get("e") not in (None, "24hrTicker"):
        raise ParseError(f"Unexpected event type {data.get('e')}")

    pair = _first(data, _SYMBOL_KEYS)
    last = _first(data, _PRICE_KEYS)
    change = _first(data, _CHANGE_KEYS)
    if not pair or last is None or change is None:
        raise ParseError("Ticker frame missing symbol, price or change")

    try:
        price = float(last)
        change_pct = float(change)
    except (TypeError, ValueError) as e:
        raise ParseError(f"Non-numeric ticker values: {e}") from e
    if not (math.isfinite(price) and math.isfinite(change_pct)):
        raise ParseError("Non-finite ticker values")

    pair = str(pair).upper()
    quote = quote_asset.upper()
    symbol = pair[:-len(quote)] if pair.endswith(quote) and len(pair) > len(quote) else pair
    return PriceUpdate(symbol=symbol, price=price, change_24h_percent=change_pct)


class BinanceStream:
    """
    Owns the single live Binance ticker stream.

    State machine: IDLE -> CONNECTING -> OPEN -> (CLOSING | RECONNECT_SCHEDULED)
    -> CONNECTING ... Abnormal closes schedule a reconnect with capped
    exponential backoff; once `max_reconnect_attempts` reconnects have been
    spent without a successful open the manager parks in FALLBACK and stops
    trying. Only disconnect() leaves FALLBACK.
    """

    def __init__(
        self,
        hub: UpdateHub,
        symbols: Optional[Iterable[str]] = None,
        ws_url: Optional[str] = None,
        quote_asset: Optional[str] = None,
        base_delay: Optional[float] = None,
        max_delay: Optional[float] = None,
        max_reconnect_attempts: Optional[int] = None,
        heartbeat_timeout: Optional[float] = None,
        connector: Optional[Callable] = None,
    ):
        self.hub = hub
        self.symbols: List[str] = [s.upper() for s in (symbols or settings.SYMBOLS)]
        self.ws_url = (ws_url or settings.BINANCE_WS_URL).rstrip("/")
        self.quote_asset = (quote_asset or settings.QUOTE_ASSET).upper()
        self.base_delay = settings.RECONNECT_BASE_DELAY if base_delay is None else base_delay
        self.max_delay = settings.RECONNECT_MAX_DELAY if max_delay is None else max_delay
        self.max_reconnect_attempts = (
            settings.MAX_RECONNECT_ATTEMPTS if max_reconnect_attempts is None else max_reconnect_attempts
        )
        self.heartbeat_timeout = (
            settings.STREAM_HEARTBEAT_TIMEOUT if heartbeat_timeout is None else heartbeat_timeout
        )
        self._connector = connector or websockets.connect

        self.state = ConnectionState.IDLE
        self.reconnect_attempts = 0
        self.frames_dropped = 0
        self._ws = None
        self._task: Optional[asyncio.Task] = None
        self._reconnect_timer = None
        # Bumped on every open and on disconnect; stale tasks compare and bail
        self._generation = 0
        self._state_listeners: List[Callable] = []

    @property
    def is_connected(self) -> bool:
        return self.state is ConnectionState.OPEN

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_timer is not None

    def add_state_listener(self, callback: Callable):
        """Register callback(old_state, new_state) for state transitions"""
        self._state_listeners.append(callback)

    def remove_state_listener(self, callback: Callable):
        if callback in self._state_listeners:
            self._state_listeners.remove(callback)

    def stream_url(self, symbols: Iterable[str]) -> str:
        streams = "/".join(f"{s.lower()}{self.quote_asset.lower()}@ticker" for s in symbols)
        return f"{self.ws_url}/stream?streams={streams}"

    def connect(self, symbols: Optional[Iterable[str]] = None):
        """
        Open the stream for `symbols` (or the last used set).

        No-op while CONNECTING or OPEN, while a reconnect is already pending,
        and in FALLBACK.
        """
        if self.state in (
            ConnectionState.CONNECTING,
            ConnectionState.OPEN,
            ConnectionState.RECONNECT_SCHEDULED,
            ConnectionState.FALLBACK,
        ):
            logger.debug(f"Binance WS connect ignored in state {self.state.value}")
            return
        if symbols is not None:
            self.symbols = [s.upper() for s in symbols]
        if not self.symbols:
            logger.warning("Binance WS connect called with no symbols")
            return
        self._open_connection()

    async def disconnect(self):
        """Normal closure: cancel any pending reconnect and return to IDLE"""
        self._generation += 1
        self._cancel_reconnect_timer()
        ws, task = self._ws, self._task
        self._ws = None
        self._task = None

        if ws is not None:
            self._set_state(ConnectionState.CLOSING)
            try:
                await ws.close(code=CLOSE_NORMAL, reason="Normal closure")
            except Exception as e:
                logger.warning(f"Error closing Binance WS: {e}")

        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        self.reconnect_attempts = 0
        self._set_state(ConnectionState.IDLE)
        logger.info("Binance WS disconnected")

    # --- State machine ---

    def _set_state(self, new_state: ConnectionState):
        old_state = self.state
        if old_state is new_state:
            return
        self.state = new_state
        logger.debug(f"Binance WS state {old_state.value} -> {new_state.value}")
        for listener in list(self._state_listeners):
            try:
                listener(old_state, new_state)
            except Exception as e:
                logger.error(f"State listener error: {e}", exc_info=True)

    def _open_connection(self):
        self._generation += 1
        generation = self._generation
        self._set_state(ConnectionState.CONNECTING)
        url = self.stream_url(self.symbols)
        logger.info(f"Connecting to {url}...")
        self._task = asyncio.get_running_loop().create_task(self._run(url, generation))

    async def _run(self, url: str, generation: int):
        code = CLOSE_ABNORMAL
        try:
            async with self._connector(url) as ws:
                if generation != self._generation:
                    return
                self._ws = ws
                self._handle_open()
                await self._read_loop(ws, generation)
        except ConnectionClosed as e:
            code = e.rcvd.code if e.rcvd is not None else CLOSE_ABNORMAL
            if generation == self._generation:
                logger.warning(f"Binance WS closed: {code} {e.rcvd.reason if e.rcvd else ''}")
        except asyncio.TimeoutError:
            if generation == self._generation:
                logger.warning("Binance WS timed out (no frames within heartbeat window). Reconnecting...")
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if generation == self._generation:
                logger.warning(f"Binance WS connection lost: {e}")

        if generation != self._generation:
            return
        self._ws = None
        self._task = None
        self._handle_close(code)

    async def _read_loop(self, ws, generation: int):
        """Read frames until the connection drops or we are superseded"""
        while generation == self._generation:
            raw = await asyncio.wait_for(ws.recv(), timeout=self.heartbeat_timeout)
            self._handle_frame(raw)

    def _handle_open(self):
        logger.info(f"Connected to Binance WS for {self.symbols}")
        self.reconnect_attempts = 0
        self._set_state(ConnectionState.OPEN)

    def _handle_frame(self, raw):
        try:
            update = parse_ticker_frame(raw, self.quote_asset)
        except ParseError as e:
            self.frames_dropped += 1
            logger.debug(f"Dropped Binance WS frame: {e}")
            return
        self.hub.publish(update)

    def _handle_close(self, code: int):
        if code == CLOSE_NORMAL:
            logger.info("Binance WS closed normally")
            self.reconnect_attempts = 0
            self._set_state(ConnectionState.IDLE)
            return
        self._schedule_reconnect()

    def _schedule_reconnect(self):
        if self.state in (ConnectionState.RECONNECT_SCHEDULED, ConnectionState.FALLBACK):
            return
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            logger.error(
                f"Max reconnection attempts ({self.max_reconnect_attempts}) reached. Binance WS in fallback"
            )
            self._set_state(ConnectionState.FALLBACK)
            return

        delay = backoff_delay(self.reconnect_attempts, self.base_delay, self.max_delay)
        self.reconnect_attempts += 1
        self._set_state(ConnectionState.RECONNECT_SCHEDULED)
        logger.warning(f"Scheduling reconnection attempt {self.reconnect_attempts} in {delay}s")
        self._reconnect_timer = self._start_timer(delay, self._fire_reconnect)

    def _start_timer(self, delay: float, callback: Callable):
        return asyncio.get_running_loop().call_later(delay, callback)

    def _fire_reconnect(self):
        self._reconnect_timer = None
        # A disconnect (or a fresh connect) since scheduling wins over this timer
        if self.state is not ConnectionState.RECONNECT_SCHEDULED:
            return
        logger.info(f"Reconnection attempt {self.reconnect_attempts}")
        self._open_connection()

    def _cancel_reconnect_timer(self):
        if self._reconnect_timer is not None:
            self._reconnect_timer.cancel()
            self._reconnect_timer = None
