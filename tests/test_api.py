import pytest
from datetime import datetime, timezone
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from pricefeed.connectors.binance_ws import BinanceStream
from pricefeed.core.context import FeedContext
from pricefeed.core.coordinator import FeedCoordinator
from pricefeed.core.errors import NetworkError
from pricefeed.core.fallback import FallbackDataGenerator
from pricefeed.core.hub import UpdateHub
from pricefeed.core.models import ConnectionState, QuoteRecord
from pricefeed.main import app


def make_context():
    hub = UpdateHub()
    source = MagicMock()
    source.fetch_quotes = AsyncMock(return_value={
        "BTC": QuoteRecord(
            symbol="BTC", current_price=43500.0, change_percent_24h=2.5,
            high_24h=44200.0, low_24h=42800.0, volume_24h=1000.0,
            last_updated=datetime(2025, 1, 1, tzinfo=timezone.utc),
        ),
    })
    source.fetch_candles = AsyncMock(side_effect=NetworkError("down"))
    source.close = AsyncMock()
    stream = MagicMock(spec=BinanceStream)
    stream.state = ConnectionState.IDLE
    stream.is_connected = False
    fallback = FallbackDataGenerator(seed=1)
    coordinator = FeedCoordinator(
        source, stream, hub, fallback,
        symbols=["BTC", "ETH"], favorites=["ETH"],
        connect_delay=100.0, health_check_interval=100.0,
    )
    return FeedContext(hub, source, stream, fallback, coordinator)


@pytest.fixture
def context():
    return make_context()


@pytest.fixture
def client(context):
    with patch("pricefeed.main.create_context", return_value=context):
        with TestClient(app) as test_client:
            yield test_client


def test_status(client):
    response = client.get("/status")
    assert response.status_code == 200
    body = response.json()
    assert body["connected"] is True
    assert body["stream_state"] == "IDLE"
    assert body["using_fallback"] is False
    assert body["error"] is None


def test_quotes(client):
    body = client.get("/quotes").json()
    assert list(body["records"]) == ["BTC"]
    assert body["records"]["BTC"]["current_price"] == 43500.0
    assert body["favorites"] == ["ETH"]


def test_candles_fall_back_with_sma(client):
    response = client.get("/candles/btc", params={"interval": "15m", "limit": 30, "sma": [10, 20]})
    assert response.status_code == 200
    body = response.json()
    assert body["symbol"] == "BTC"
    assert len(body["candles"]) == 30
    assert len(body["sma"]["10"]) == 30
    assert body["sma"]["10"][8] is None
    assert body["sma"]["10"][9] is not None
    assert body["sma"]["20"][19] is not None


def test_candles_bad_interval(client):
    response = client.get("/candles/BTC", params={"interval": "2h"})
    assert response.status_code == 400
    assert "Unsupported interval" in response.json()["detail"]


def test_refetch(client, context):
    response = client.post("/refetch")
    assert response.status_code == 200
    assert response.json()["live"] is True
    assert context.source.fetch_quotes.await_count == 2


def test_toggle_favorite(client):
    body = client.post("/favorites/btc").json()
    assert body == {"symbol": "BTC", "favorite": True, "favorites": ["BTC", "ETH"]}
    body = client.post("/favorites/ETH").json()
    assert body["favorite"] is False


def test_shutdown_releases_context(context):
    with patch("pricefeed.main.create_context", return_value=context):
        with TestClient(app):
            assert context.hub.subscriber_count == 2
    assert context.hub.subscriber_count == 0
    context.stream.disconnect.assert_awaited()
    context.source.close.assert_awaited_once()
