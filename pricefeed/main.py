import asyncio
import signal
from contextlib import asynccontextmanager
from typing import List, Optional
from fastapi import FastAPI, HTTPException, Query, Request
import uvicorn
from pricefeed.config import settings
from pricefeed.core.context import create_context
from pricefeed.core.indicators import simple_moving_average
from pricefeed.core.logger import logger
from pricefeed.core.models import PriceUpdate


def log_update(update: PriceUpdate):
    logger.debug(f"Tick received: {update.symbol} ${update.price}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup
    logger.info(f"{settings.APP_NAME} starting", extra={"version": settings.APP_VERSION, "mode": settings.RUN_MODE})
    context = create_context(settings)
    app.state.feed = context
    handle = context.hub.subscribe(log_update)

    await context.coordinator.start(settings.SYMBOLS)

    yield

    # Shutdown
    logger.info("Shutdown Initiated...")
    context.hub.unsubscribe(handle)
    await context.close()
    logger.info(f"{settings.APP_NAME} Shutdown Complete")


app = FastAPI(title=settings.APP_NAME, version=settings.APP_VERSION, lifespan=lifespan)


def _coordinator(request: Request):
    return request.app.state.feed.coordinator


@app.get("/status")
async def status(request: Request):
    snap = _coordinator(request).snapshot()
    return {
        "connected": snap.connected,
        "stream_state": snap.stream_state,
        "using_fallback": snap.using_fallback,
        "is_loading": snap.is_loading,
        "error": snap.error,
        "last_update_time": snap.last_update_time,
    }


@app.get("/quotes")
async def quotes(request: Request):
    return _coordinator(request).snapshot()


@app.get("/candles/{symbol}")
async def candles(
    request: Request,
    symbol: str,
    interval: str = "1h",
    limit: int = Query(default=100, ge=1, le=1000),
    sma: Optional[List[int]] = Query(default=None),
):
    try:
        series = await _coordinator(request).get_candles(symbol.upper(), interval, limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    body = {"symbol": symbol.upper(), "interval": interval, "candles": series}
    if sma:
        body["sma"] = {str(p): simple_moving_average(series, p) for p in sma if p > 0}
    return body


@app.post("/refetch")
async def refetch(request: Request):
    coordinator = _coordinator(request)
    live = await coordinator.refetch()
    return {"live": live, "error": coordinator.error}


@app.post("/favorites/{symbol}")
async def toggle_favorite(request: Request, symbol: str):
    coordinator = _coordinator(request)
    is_favorite = coordinator.toggle_favorite(symbol)
    return {"symbol": symbol.upper(), "favorite": is_favorite, "favorites": sorted(coordinator.favorites)}


async def run_headless():
    stop_event = asyncio.Event()

    def handle_signal():
        stop_event.set()

    loop = asyncio.get_running_loop()
    loop.add_signal_handler(signal.SIGINT, handle_signal)
    loop.add_signal_handler(signal.SIGTERM, handle_signal)

    # Run feed lifecycle without the HTTP server
    async with lifespan(app):
        logger.info("Feed Core Loop Running")
        await stop_event.wait()
        logger.info("Shutdown signal received")


def main():
    logger.info(f"Starting {settings.APP_NAME} v{settings.APP_VERSION} in {settings.RUN_MODE} mode")
    if settings.RUN_MODE.upper() == "HEADLESS":
        try:
            asyncio.run(run_headless())
        except KeyboardInterrupt:
            pass
    else:
        uvicorn.run(app, host=settings.API_HOST, port=settings.API_PORT, log_level=settings.LOG_LEVEL.lower())


if __name__ == "__main__":
    main()
