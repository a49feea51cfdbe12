"""Redis-backed storage for geocoding responses awaiting feedback.

The geocoding service owns record creation; this module reads records,
claims them for explicit feedback and removes them after implicit feedback.
Claims use optimistic transactions (WATCH/MULTI/EXEC): a concurrent write or
an expiry of the watched key aborts the transaction, and the retry then sees
the new state. Readers therefore only ever observe the prior value or the
fully updated one.
"""

import asyncio
import functools
import logging
from typing import Awaitable, Optional, TypeVar

import redis.asyncio as redis
from pydantic import ValidationError as PydanticValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.exceptions import WatchError

from geocoding_feedback.lib.exceptions import (
    NotFoundError,
    OperationTimeoutError,
    StoreUnavailableError,
)
from geocoding_feedback.lib.feedback.models import GeocodingResponseRecord

logger = logging.getLogger(__name__)

T = TypeVar("T")

MAX_TRANSACTION_ATTEMPTS = 5


class ResponseStore:
    """Access to geocoding response records keyed by request id."""

    def __init__(
        self,
        client: redis.Redis,
        key_prefix: Optional[str] = None,
        timeout: float = 5.0,
        atomic: bool = True,
    ):
        """Initialize the store.

        Args:
            client: Redis client bound to the geocoding database
            key_prefix: Optional namespace; keys become ``prefix:request_id``
            timeout: Upper bound for each store call, in seconds
            atomic: Use WATCH/MULTI transactions; disable behind proxies that
                do not support them (callers must then serialize per id)
        """
        self.client = client
        self.key_prefix = key_prefix
        self.timeout = timeout
        self.atomic = atomic

    def key_for(self, request_id: str) -> str:
        if self.key_prefix:
            return f"{self.key_prefix}:{request_id}"
        return request_id

    def request_id_from_key(self, key: str) -> Optional[str]:
        """Map a Redis key back to its request id, or None if it is not ours."""
        if not self.key_prefix:
            return key
        prefix = f"{self.key_prefix}:"
        if key.startswith(prefix):
            return key[len(prefix):]
        return None

    async def _call(self, awaitable: Awaitable[T], request_id: str, operation: str) -> T:
        try:
            return await asyncio.wait_for(awaitable, timeout=self.timeout)
        except (asyncio.TimeoutError, RedisTimeoutError) as e:
            raise OperationTimeoutError(
                f"Redis {operation} timed out after {self.timeout}s",
                details={"request_id": request_id},
            ) from e
        except RedisConnectionError as e:
            raise StoreUnavailableError(
                f"Redis unavailable during {operation}: {e}",
                details={"request_id": request_id},
            ) from e

    async def _run_transaction(
        self,
        coro: Awaitable[Optional[GeocodingResponseRecord]],
        request_id: str,
        operation: str,
    ) -> Optional[GeocodingResponseRecord]:
        """Run a conditional transition that is never cancelled once requested.

        The caller stops waiting after the timeout, but the transaction keeps
        running (bounded by the client's socket timeout). A transition that
        commits after the caller gave up is logged at ERROR with the record.
        """
        task = asyncio.ensure_future(coro)
        try:
            return await self._call(asyncio.shield(task), request_id, operation)
        except (OperationTimeoutError, asyncio.CancelledError):
            task.add_done_callback(
                functools.partial(self._log_abandoned_transaction, request_id, operation)
            )
            raise

    @staticmethod
    def _log_abandoned_transaction(request_id: str, operation: str, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if isinstance(exc, NotFoundError):
            logger.info('Late %s for %s found nothing to update', operation, request_id)
        elif exc is not None:
            logger.error('Late %s for %s failed: %s', operation, request_id, exc)
        elif task.result() is not None:
            logger.error(
                '%s for %s committed after the caller timed out; no feedback was published',
                operation,
                request_id,
                extra={
                    "feedback_request_id": request_id,
                    "record": task.result().model_dump(mode="json", by_alias=True),
                },
            )

    @staticmethod
    def _parse(request_id: str, raw: Optional[str]) -> Optional[GeocodingResponseRecord]:
        if raw is None:
            return None
        try:
            return GeocodingResponseRecord.model_validate_json(raw)
        except PydanticValidationError as e:
            logger.error('Stored record for %s is not a valid geocoding response: %s', request_id, e)
            raise

    async def put(
        self,
        request_id: str,
        record: GeocodingResponseRecord,
        ttl: Optional[int] = None,
    ) -> None:
        """Store a record, optionally with a TTL in seconds."""
        await self._call(
            self.client.set(self.key_for(request_id), record.to_json(), ex=ttl),
            request_id,
            "set",
        )

    async def get(self, request_id: str) -> Optional[GeocodingResponseRecord]:
        """Return the current record, or None when it expired or never existed."""
        raw = await self._call(self.client.get(self.key_for(request_id)), request_id, "get")
        return self._parse(request_id, raw)

    async def mark_consumed(
        self,
        request_id: str,
        user_id: str,
        api_key: Optional[str],
        ttl: int,
    ) -> GeocodingResponseRecord:
        """Atomically flag a record as used and refresh its TTL.

        Raises:
            NotFoundError: the record vanished or was already consumed
        """
        if self.atomic:
            return await self._run_transaction(
                self._mark_consumed_transaction(request_id, user_id, api_key, ttl),
                request_id,
                "mark_consumed",
            )

        record = await self.get(request_id)
        if record is None or record.was_used:
            raise NotFoundError(f"The current request was not found {request_id}")
        updated = self._consumed_copy(record, user_id, api_key)
        await self.put(request_id, updated, ttl=ttl)
        return updated

    @staticmethod
    def _consumed_copy(
        record: GeocodingResponseRecord,
        user_id: str,
        api_key: Optional[str],
    ) -> GeocodingResponseRecord:
        update = {"user_id": user_id, "was_used": True}
        if api_key is not None:
            update["api_key"] = api_key
        return record.model_copy(update=update)

    async def _mark_consumed_transaction(
        self,
        request_id: str,
        user_id: str,
        api_key: Optional[str],
        ttl: int,
    ) -> GeocodingResponseRecord:
        key = self.key_for(request_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
                try:
                    await pipe.watch(key)
                    record = self._parse(request_id, await pipe.get(key))
                    if record is None or record.was_used:
                        await pipe.unwatch()
                        raise NotFoundError(f"The current request was not found {request_id}")

                    updated = self._consumed_copy(record, user_id, api_key)
                    pipe.multi()
                    pipe.set(key, updated.to_json(), ex=ttl)
                    await pipe.execute()
                    return updated
                except WatchError:
                    logger.debug('Record %s changed during claim, retrying (attempt %s)', request_id, attempt)
                    continue

        raise StoreUnavailableError(
            f"Could not claim {request_id} after {MAX_TRANSACTION_ATTEMPTS} attempts",
            details={"request_id": request_id},
        )

    async def take_unconsumed(self, request_id: str) -> Optional[GeocodingResponseRecord]:
        """Atomically delete a record that was never used and return its snapshot.

        Returns None when the record is gone or was claimed explicitly; in both
        cases there is nothing left to resolve.
        """
        if not self.atomic:
            record = await self.get(request_id)
            if record is None or record.was_used:
                return None
            if not await self.delete(request_id):
                logger.error('Abandoning implicit feedback for %s: record could not be removed', request_id)
                return None
            return record

        return await self._run_transaction(
            self._take_unconsumed_transaction(request_id),
            request_id,
            "take_unconsumed",
        )

    async def _take_unconsumed_transaction(self, request_id: str) -> Optional[GeocodingResponseRecord]:
        key = self.key_for(request_id)
        async with self.client.pipeline(transaction=True) as pipe:
            for attempt in range(1, MAX_TRANSACTION_ATTEMPTS + 1):
                try:
                    await pipe.watch(key)
                    record = self._parse(request_id, await pipe.get(key))
                    if record is None or record.was_used:
                        await pipe.unwatch()
                        return None

                    pipe.multi()
                    pipe.delete(key)
                    await pipe.execute()
                    return record
                except WatchError:
                    logger.debug('Record %s changed during resolution, retrying (attempt %s)', request_id, attempt)
                    continue

        raise StoreUnavailableError(
            f"Could not resolve {request_id} after {MAX_TRANSACTION_ATTEMPTS} attempts",
            details={"request_id": request_id},
        )

    async def delete(self, request_id: str) -> bool:
        """Best-effort delete; failures are logged and reported as False."""
        try:
            await self._call(self.client.delete(self.key_for(request_id)), request_id, "delete")
            return True
        except (StoreUnavailableError, OperationTimeoutError) as e:
            logger.warning('Failed to delete record %s: %s', request_id, e)
            return False
