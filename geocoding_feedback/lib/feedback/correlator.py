"""Correlator: decides which feedback event is emitted for a request id.

Two paths race for every request id:

- explicit: a user picked a result through the HTTP API (``claim_explicit``)
- implicit: the expiry marker elapsed without a pick (``resolve_implicit``)

Whichever path commits its own store mutation first is the one that emits.
The explicit path commits by flagging the record as used, the implicit path
by deleting a record that is still unused. Both mutations are conditional on
``was_used`` being false, so the loser sees either no record or a used one
and does nothing. Nothing is published before the mutation commits.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, List, Optional

from geocoding_feedback.lib.exceptions import NotFoundError, ValidationError
from geocoding_feedback.lib.feedback.models import FeedbackRecord
from geocoding_feedback.lib.feedback.publisher import FeedbackPublisher
from geocoding_feedback.lib.feedback.response_store import ResponseStore
from geocoding_feedback.lib.logging_config import feedback_request_id_var

logger = logging.getLogger(__name__)


class KeyedLock:
    """Per-key asyncio locks that are dropped as soon as nobody holds or awaits them."""

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    def __len__(self) -> int:
        return len(self._locks)

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._users[key] = self._users.get(key, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[key] -= 1
            if self._users[key] == 0:
                del self._users[key]
                del self._locks[key]


class Correlator:
    """Claims request ids for explicit or implicit feedback and publishes the result."""

    def __init__(
        self,
        store: ResponseStore,
        publisher: FeedbackPublisher,
        feedback_window: int,
        user_suffixes: List[str],
    ):
        """Initialize the correlator.

        Args:
            store: Store holding the geocoding responses
            publisher: Publisher for the outbound feedback topic
            feedback_window: TTL in seconds applied to a record once claimed
            user_suffixes: Accepted user id suffixes, first match wins
        """
        self.store = store
        self.publisher = publisher
        self.feedback_window = feedback_window
        self.user_suffixes = list(user_suffixes)
        # Only needed when the store cannot make conditional updates itself.
        self.locks: Optional[KeyedLock] = None if store.atomic else KeyedLock()

    @asynccontextmanager
    async def _serialized(self, request_id: str) -> AsyncIterator[None]:
        if self.locks is None:
            yield
            return
        async with self.locks.hold(request_id):
            yield

    def validate_user_id(self, user_id: str) -> str:
        """Return the first configured suffix ``user_id`` ends with.

        Raises:
            ValidationError: no suffix matches
        """
        for suffix in self.user_suffixes:
            if user_id.endswith(suffix):
                return suffix
        raise ValidationError(
            "user_id not valid. valid user_id ends with: "
            + ", ".join(f'"{suffix}"' for suffix in self.user_suffixes),
            details={"field": "user_id"},
        )

    async def claim_explicit(
        self,
        request_id: str,
        user_id: str,
        api_key: Optional[str],
        chosen_result_id: int,
    ) -> FeedbackRecord:
        """Record a user's choice for ``request_id`` and publish it.

        Raises:
            ValidationError: ``user_id`` matches no accepted suffix
            NotFoundError: the request id is unknown, expired or already claimed
            StoreUnavailableError, OperationTimeoutError: the store failed
            PublishError: the claim committed but the broker send failed
        """
        feedback_request_id_var.set(request_id)
        self.validate_user_id(user_id)

        async with self._serialized(request_id):
            record = await self.store.get(request_id)
            if record is None:
                logger.info('Feedback for unknown or expired request %s', request_id)
                raise NotFoundError(f"The current request was not found {request_id}")

            record = await self.store.mark_consumed(
                request_id, user_id, api_key, self.feedback_window
            )

        feedback = FeedbackRecord(
            request_id=request_id,
            chosen_result_id=chosen_result_id,
            user_id=user_id,
            geocoding_response=record,
        )
        logger.info('creating feedback', extra={"chosen_result_id": chosen_result_id})
        await self.publisher.publish(feedback)
        return feedback

    async def resolve_implicit(self, request_id: str) -> Optional[FeedbackRecord]:
        """Publish a "no selection" record unless explicit feedback already won.

        Returns the published record, or None when there was nothing to resolve.
        Calling it again for an already resolved id is a no-op.
        """
        feedback_request_id_var.set(request_id)

        async with self._serialized(request_id):
            record = await self.store.take_unconsumed(request_id)
            if record is None:
                # Claimed explicitly (or already gone); the window is over either way.
                await self.store.delete(request_id)

        if record is None:
            logger.debug('No pending response for %s; feedback already sent or never stored', request_id)
            return None

        feedback = FeedbackRecord(
            request_id=request_id,
            chosen_result_id=None,
            user_id="",
            geocoding_response=record,
        )
        logger.info('No result chosen for %s, sending implicit feedback', request_id)
        await self.publisher.publish(feedback)
        return feedback
