"""Expiry markers: short-lived sentinel keys whose expiry triggers implicit feedback.

A marker is written once per geocoding response, in its own database and
under its own prefix, with the feedback window as TTL. The record itself may
live longer (the geocoding service decides its retention); only the marker's
``expired`` keyevent starts implicit resolution.
"""

import asyncio
import logging
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from geocoding_feedback.config import DEFAULT_MARKER_PREFIX
from geocoding_feedback.lib.exceptions import OperationTimeoutError, StoreUnavailableError

logger = logging.getLogger(__name__)


class ExpiryMarkerChannel:
    """Creates markers and maps marker keys back to request ids."""

    def __init__(
        self,
        client: redis.Redis,
        prefix: str = DEFAULT_MARKER_PREFIX,
        timeout: float = 5.0,
    ):
        self.client = client
        self.prefix = prefix
        self.timeout = timeout

    def key_for(self, request_id: str) -> str:
        return f"{self.prefix}{request_id}"

    def is_marker_key(self, key: str) -> bool:
        return bool(self.prefix) and key.startswith(self.prefix)

    def request_id_from_key(self, key: str) -> Optional[str]:
        """Return the request id of a marker key, or None for any other key."""
        if not self.prefix:
            return key
        if key.startswith(self.prefix):
            return key[len(self.prefix):]
        return None

    async def arm(self, request_id: str, window: int) -> bool:
        """Create the marker for ``request_id`` expiring after ``window`` seconds.

        The write is NX: a marker that already exists keeps its original TTL,
        so later writes to the record (such as an explicit claim) cannot
        extend the window.

        Raises:
            StoreUnavailableError: Redis could not be reached
            OperationTimeoutError: the write exceeded the configured timeout
        """
        key = self.key_for(request_id)
        try:
            created = await asyncio.wait_for(self.client.set(key, "", ex=window, nx=True), timeout=self.timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise OperationTimeoutError(
                f"Arming marker {key} timed out after {self.timeout}s",
                details={"request_id": request_id},
            ) from e
        except RedisConnectionError as e:
            raise StoreUnavailableError(
                f"Redis unavailable while arming marker {key}: {e}",
                details={"request_id": request_id},
            ) from e

        if created:
            logger.info('Armed expiry marker for %s (window %ss)', request_id, window)
        else:
            logger.debug('Expiry marker for %s already armed', request_id)
        return bool(created)
