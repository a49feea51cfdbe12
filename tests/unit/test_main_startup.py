"""Unit tests covering the FastAPI startup sequence."""

from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from fastapi import FastAPI
from kafka.errors import NoBrokersAvailable

import main
from geocoding_feedback.lib.exceptions import ConfigurationError


@pytest.fixture
def subsystems(monkeypatch):
    """Mock Redis, Kafka and the listener for lifespan tests."""
    monkeypatch.setenv("REDIS_GEOCODING_DB", "0")
    monkeypatch.setenv("REDIS_TTL_DB", "1")
    monkeypatch.delenv("REDIS_MARKER_PREFIX", raising=False)

    listener = MagicMock()
    listener.start = AsyncMock()
    listener.stop = AsyncMock()
    producer = MagicMock()

    with patch("main.get_geocoding_redis", return_value=MagicMock()) as geocoding_redis, \
         patch("main.get_ttl_redis", return_value=MagicMock()) as ttl_redis, \
         patch("main.build_kafka_producer", return_value=producer) as build_producer, \
         patch("main.close_redis", new=AsyncMock()) as close_redis, \
         patch("main.NotificationListener", return_value=listener) as listener_cls:
        yield {
            "geocoding_redis": geocoding_redis,
            "ttl_redis": ttl_redis,
            "build_producer": build_producer,
            "producer": producer,
            "close_redis": close_redis,
            "listener": listener,
            "listener_cls": listener_cls,
        }


class TestLifespan:
    @pytest.mark.asyncio
    async def test_startup_wires_state_and_shutdown_closes(self, subsystems):
        app = FastAPI()

        async with main.lifespan(app):
            subsystems["listener"].start.assert_awaited_once()
            assert app.state.listener is subsystems["listener"]
            assert app.state.correlator.publisher.producer is subsystems["producer"]
            assert app.state.geocoding_redis is subsystems["geocoding_redis"].return_value

        subsystems["listener"].stop.assert_awaited_once()
        subsystems["producer"].flush.assert_called_once()
        subsystems["producer"].close.assert_called_once()
        subsystems["close_redis"].assert_awaited_once()

    @pytest.mark.asyncio
    async def test_listener_receives_database_layout(self, subsystems):
        async with main.lifespan(FastAPI()):
            pass

        kwargs = subsystems["listener_cls"].call_args.kwargs
        assert kwargs["geocoding_db"] == 0
        assert kwargs["ttl_db"] == 1

    @pytest.mark.asyncio
    async def test_shared_database_without_marker_prefix_is_rejected(self, subsystems, monkeypatch):
        monkeypatch.setenv("REDIS_TTL_DB", "0")
        monkeypatch.setenv("REDIS_MARKER_PREFIX", "")

        with pytest.raises(ConfigurationError):
            async with main.lifespan(FastAPI()):
                pass

        subsystems["build_producer"].assert_not_called()

    @pytest.mark.asyncio
    async def test_kafka_failure_is_fatal(self, subsystems):
        subsystems["build_producer"].side_effect = NoBrokersAvailable()

        with pytest.raises(NoBrokersAvailable):
            async with main.lifespan(FastAPI()):
                pass

        subsystems["close_redis"].assert_awaited_once()
        subsystems["listener"].start.assert_not_called()

    @pytest.mark.asyncio
    async def test_subscription_failure_is_fatal(self, subsystems):
        subsystems["listener"].start.side_effect = ConnectionError("Connection refused")

        with pytest.raises(ConnectionError):
            async with main.lifespan(FastAPI()):
                pass

        subsystems["producer"].close.assert_called_once()
        subsystems["close_redis"].assert_awaited_once()
