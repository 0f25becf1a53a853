import pytest
from pricefeed.config import Settings, settings
import json
from datetime import datetime

def test_settings_load():
    """Verify settings are loaded from .env (or defaults)"""
    assert settings.APP_NAME == "PriceFeed"
    assert settings.MAX_RECONNECT_ATTEMPTS == 5
    assert settings.RECONNECT_BASE_DELAY == 1.0
    assert settings.RECONNECT_MAX_DELAY == 30.0
    assert settings.HEALTH_CHECK_INTERVAL == 5.0

def test_symbols_comma_separated(monkeypatch):
    monkeypatch.setenv("SYMBOLS", "btc, eth,sol")
    assert Settings().SYMBOLS == ["BTC", "ETH", "SOL"]

def test_symbols_json_list(monkeypatch):
    monkeypatch.setenv("SYMBOLS", '["doge", "ltc"]')
    assert Settings().SYMBOLS == ["DOGE", "LTC"]

def test_imports():
    """Verify critical dependencies are installed"""
    import fastapi
    import pydantic
    import httpx
    import websockets
    import pandas
    assert fastapi.__version__
    assert pydantic.__version__
    assert httpx.__version__

def test_logger_json_format(capsys):
    """Verify logger outputs JSON"""
    # Re-setup logger to ensure it captures the current stdout (monkeypatched by pytest)
    from pricefeed.core.logger import setup_logger
    test_logger = setup_logger("test_json")
    test_logger.info("Test Log Message")

    captured = capsys.readouterr()
    lines = [l for l in captured.out.strip().split('\n') if l]
    assert lines

    data = json.loads(lines[-1])
    assert data["message"] == "Test Log Message"
    assert data["level"] == "INFO"
    assert data["logger"] == "test_json"
    assert "timestamp" in data

def test_logger_includes_exception(capsys):
    from pricefeed.core.logger import setup_logger
    test_logger = setup_logger("test_json_exc")
    try:
        raise RuntimeError("boom")
    except RuntimeError:
        test_logger.error("Failure", exc_info=True)

    lines = [l for l in capsys.readouterr().out.strip().split('\n') if l]
    data = json.loads(lines[-1])
    assert "RuntimeError: boom" in data["exception"]

def test_logger_includes_extra_fields(capsys):
    from pricefeed.core.logger import setup_logger
    test_logger = setup_logger("test_json_extra")
    test_logger.info("PriceFeed starting", extra={"version": "0.1.0", "mode": "API", "since": datetime(2025, 1, 1)})

    lines = [l for l in capsys.readouterr().out.strip().split('\n') if l]
    data = json.loads(lines[-1])
    assert data["message"] == "PriceFeed starting"
    assert data["version"] == "0.1.0"
    assert data["mode"] == "API"
    assert data["since"] == "2025-01-01 00:00:00"
    assert "args" not in data
