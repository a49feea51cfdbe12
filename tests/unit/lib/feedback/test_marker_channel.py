"""Tests for expiry marker creation and key mapping."""

from unittest.mock import AsyncMock, MagicMock

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from geocoding_feedback.lib.exceptions import OperationTimeoutError, StoreUnavailableError
from geocoding_feedback.lib.feedback.marker_channel import ExpiryMarkerChannel


def make_channel(prefix="ttl_"):
    client = MagicMock()
    client.set = AsyncMock(return_value=True)
    return ExpiryMarkerChannel(client, prefix=prefix, timeout=1.0), client


class TestMarkerKeys:
    def test_marker_key_uses_prefix(self):
        channel, _ = make_channel()
        assert channel.key_for("r1") == "ttl_r1"
        assert channel.is_marker_key("ttl_r1")
        assert not channel.is_marker_key("r1")

    def test_request_id_from_key(self):
        channel, _ = make_channel()
        assert channel.request_id_from_key("ttl_r1") == "r1"
        assert channel.request_id_from_key("r1") is None

    def test_empty_prefix_maps_every_key(self):
        channel, _ = make_channel(prefix="")
        assert channel.request_id_from_key("r1") == "r1"
        assert not channel.is_marker_key("r1")


class TestArm:
    @pytest.mark.asyncio
    async def test_arm_sets_empty_marker_with_window(self):
        channel, client = make_channel()

        assert await channel.arm("r1", 120) is True

        client.set.assert_awaited_once_with("ttl_r1", "", ex=120, nx=True)

    @pytest.mark.asyncio
    async def test_existing_marker_is_not_rewritten(self):
        channel, client = make_channel()
        client.set.return_value = None

        assert await channel.arm("r1", 120) is False

    @pytest.mark.asyncio
    async def test_connection_error_raises_store_unavailable(self):
        channel, client = make_channel()
        client.set.side_effect = RedisConnectionError("Connection refused")

        with pytest.raises(StoreUnavailableError):
            await channel.arm("r1", 120)

    @pytest.mark.asyncio
    async def test_redis_timeout_raises_operation_timeout(self):
        channel, client = make_channel()
        client.set.side_effect = RedisTimeoutError("Timeout reading from socket")

        with pytest.raises(OperationTimeoutError):
            await channel.arm("r1", 120)
