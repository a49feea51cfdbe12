"""Keyspace notification listener.

One long-lived pub/sub connection receives Redis keyevent notifications for
every in-flight request id:

- ``set`` in the geocoding database: a new response was stored; arm its marker
- ``set`` in the marker database: a marker was armed (informational)
- ``expired`` in the marker database: the feedback window elapsed; resolve
  the request implicitly

Each notification is parsed into a :class:`KeyEvent` and handled in its own
task, so a slow store or broker call for one request id never holds up the
others. Notifications published while the connection is down are lost; Redis
keeps no backlog for pub/sub.
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional, Set

import redis.asyncio as redis
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError

from geocoding_feedback.lib.exceptions import (
    FeedbackServiceError,
    OperationTimeoutError,
    PublishError,
    StoreUnavailableError,
)
from geocoding_feedback.lib.feedback.correlator import Correlator
from geocoding_feedback.lib.feedback.marker_channel import ExpiryMarkerChannel
from geocoding_feedback.lib.feedback.response_store import ResponseStore

logger = logging.getLogger(__name__)

# Keyevent notifications for string SET commands (`$`) and expirations (`x`)
NOTIFY_KEYSPACE_EVENTS = "E$x"


class KeyEventKind(str, Enum):
    RESPONSE_STORED = "response_stored"
    MARKER_ARMED = "marker_armed"
    MARKER_EXPIRED = "marker_expired"


@dataclass(frozen=True)
class KeyEvent:
    kind: KeyEventKind
    request_id: str


class NotificationListener:
    """Subscribes to keyevent channels and dispatches typed events."""

    def __init__(
        self,
        subscriber_factory: Callable[[], redis.Redis],
        store: ResponseStore,
        markers: ExpiryMarkerChannel,
        correlator: Correlator,
        geocoding_db: int,
        ttl_db: int,
        feedback_window: int,
        configure_notifications: bool = False,
        reconnect_delay: float = 1.0,
        max_reconnect_delay: float = 30.0,
    ):
        """Initialize the listener.

        Args:
            subscriber_factory: Creates the client used for pub/sub
            store: Store whose key layout identifies geocoding responses
            markers: Marker channel used for arming and key mapping
            correlator: Receives marker expirations
            geocoding_db: Database index of the geocoding responses
            ttl_db: Database index of the expiry markers
            feedback_window: Marker TTL in seconds
            configure_notifications: Enable keyevent notifications with CONFIG SET
            reconnect_delay: First delay before resubscribing after a drop
            max_reconnect_delay: Upper bound of the exponential backoff
        """
        self.subscriber_factory = subscriber_factory
        self.store = store
        self.markers = markers
        self.correlator = correlator
        self.geocoding_db = geocoding_db
        self.ttl_db = ttl_db
        self.feedback_window = feedback_window
        self.configure_notifications = configure_notifications
        self.reconnect_delay = reconnect_delay
        self.max_reconnect_delay = max_reconnect_delay

        self._subscriber: Optional[redis.Redis] = None
        self._pubsub = None
        self._run_task: Optional[asyncio.Task] = None
        self._handlers: Set[asyncio.Task] = set()

    @property
    def response_set_channel(self) -> str:
        return f"__keyevent@{self.geocoding_db}__:set"

    @property
    def marker_set_channel(self) -> str:
        return f"__keyevent@{self.ttl_db}__:set"

    @property
    def marker_expired_channel(self) -> str:
        return f"__keyevent@{self.ttl_db}__:expired"

    @property
    def channels(self) -> List[str]:
        channels = [self.response_set_channel]
        if self.marker_set_channel != self.response_set_channel:
            channels.append(self.marker_set_channel)
        channels.append(self.marker_expired_channel)
        return channels

    @property
    def is_running(self) -> bool:
        return self._run_task is not None and not self._run_task.done()

    def parse(self, channel: str, key: str) -> Optional[KeyEvent]:
        """Turn a keyevent notification into a KeyEvent, or None if it is not ours."""
        if channel == self.marker_expired_channel:
            request_id = self.markers.request_id_from_key(key)
            if request_id is not None:
                return KeyEvent(KeyEventKind.MARKER_EXPIRED, request_id)
            return None

        if channel in (self.response_set_channel, self.marker_set_channel):
            # Both sets arrive on one channel when the databases are shared.
            if channel == self.marker_set_channel and self.markers.is_marker_key(key):
                return KeyEvent(KeyEventKind.MARKER_ARMED, self.markers.request_id_from_key(key))
            if channel == self.response_set_channel:
                request_id = self.store.request_id_from_key(key)
                if request_id is not None:
                    return KeyEvent(KeyEventKind.RESPONSE_STORED, request_id)

        return None

    async def _subscribe(self):
        self._subscriber = self.subscriber_factory()
        if self.configure_notifications:
            await self._subscriber.config_set("notify-keyspace-events", NOTIFY_KEYSPACE_EVENTS)
        pubsub = self._subscriber.pubsub(ignore_subscribe_messages=True)
        await pubsub.subscribe(*self.channels)
        logger.info('Subscribed to Redis notifications: %s', ", ".join(self.channels))
        return pubsub

    async def _close_connection(self) -> None:
        if self._pubsub is not None:
            try:
                await self._pubsub.aclose()
            except Exception as e:
                logger.debug('Error closing pubsub: %s', e)
            self._pubsub = None
        if self._subscriber is not None:
            try:
                await self._subscriber.aclose()
            except Exception as e:
                logger.debug('Error closing subscriber connection: %s', e)
            self._subscriber = None

    async def start(self) -> None:
        """Subscribe and start the dispatch loop.

        A failure here is fatal: the service cannot produce implicit feedback
        without its subscription, so the exception propagates to startup.
        """
        logger.debug('Redis subscriber init')
        self._pubsub = await self._subscribe()
        self._run_task = asyncio.create_task(self._run(), name="notification-listener")
        self._run_task.add_done_callback(self._on_run_done)

    async def _run(self) -> None:
        delay = self.reconnect_delay
        while True:
            try:
                if self._pubsub is None:
                    self._pubsub = await self._subscribe()
                    delay = self.reconnect_delay
                async for message in self._pubsub.listen():
                    if message.get("type") != "message":
                        continue
                    event = self.parse(message["channel"], message["data"])
                    if event is not None:
                        self._dispatch(event)
                raise RedisConnectionError("subscription ended")
            except (RedisError, OSError) as e:
                logger.warning(
                    'Redis subscriber connection lost (%s); resubscribing in %.1fs. '
                    'Notifications published meanwhile are lost.',
                    e,
                    delay,
                )
                await self._close_connection()
                await asyncio.sleep(delay)
                delay = min(delay * 2, self.max_reconnect_delay)

    def _on_run_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.critical(
                'Redis subscriber stopped unexpectedly; no implicit feedback will be sent: %s',
                exc,
                exc_info=exc,
            )

    def _dispatch(self, event: KeyEvent) -> None:
        task = asyncio.create_task(self.handle(event))
        self._handlers.add(task)
        task.add_done_callback(self._on_handler_done)

    def _on_handler_done(self, task: asyncio.Task) -> None:
        self._handlers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error('Unhandled error in notification handler: %s', exc, exc_info=exc)

    async def handle(self, event: KeyEvent) -> None:
        """Act on one notification. Expected failures are logged, never raised."""
        if event.kind is KeyEventKind.RESPONSE_STORED:
            logger.info('Redis: Got new request %s', event.request_id)
            try:
                await self.markers.arm(event.request_id, self.feedback_window)
            except (StoreUnavailableError, OperationTimeoutError) as e:
                logger.error(
                    'Failed to arm expiry marker for %s; no implicit feedback will be sent: %s',
                    event.request_id,
                    e,
                )

        elif event.kind is KeyEventKind.MARKER_ARMED:
            logger.debug('Expiry marker armed for %s', event.request_id)

        elif event.kind is KeyEventKind.MARKER_EXPIRED:
            try:
                await self.correlator.resolve_implicit(event.request_id)
            except PublishError:
                # Already logged with the record snapshot by the publisher.
                logger.error('Implicit feedback for %s was resolved but not delivered', event.request_id)
            except FeedbackServiceError as e:
                logger.error('Abandoning implicit feedback for %s: %s', event.request_id, e)

    async def stop(self) -> None:
        """Stop listening and let in-flight handlers finish."""
        if self._run_task is not None:
            self._run_task.cancel()
            try:
                await self._run_task
            except asyncio.CancelledError:
                pass
            except Exception as e:
                logger.debug('Subscriber loop had already failed: %s', e)
            self._run_task = None

        if self._handlers:
            logger.info('Waiting for %s in-flight notification handlers', len(self._handlers))
            await asyncio.gather(*self._handlers, return_exceptions=True)

        await self._close_connection()
        logger.info("Redis subscriber stopped")
