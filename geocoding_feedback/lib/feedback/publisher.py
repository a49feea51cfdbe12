"""Kafka publisher for feedback records."""

import asyncio
import json
import logging
import time
from typing import List, Optional

from kafka import KafkaProducer
from kafka.errors import KafkaError

from geocoding_feedback import config
from geocoding_feedback.lib.exceptions import PublishError
from geocoding_feedback.lib.feedback.models import FeedbackRecord

logger = logging.getLogger(__name__)


def build_kafka_producer(
    brokers: Optional[List[str]] = None,
    timeout: Optional[float] = None,
) -> KafkaProducer:
    """Create a producer from the environment configuration.

    Args:
        brokers: Bootstrap servers; defaults to KAFKA_BROKERS
        timeout: Request timeout in seconds; defaults to CONNECTION_TIMEOUT_SECONDS
    """
    brokers = brokers or config.get_kafka_brokers()
    timeout = timeout or config.get_connection_timeout_seconds()
    security_protocol = config.get_kafka_security_protocol()

    timeout_ms = int(timeout * 1000)
    # send() blocks for metadata up to max_block_ms; without retries a record
    # that failed to publish is never delivered later in the background.
    kwargs = {
        "bootstrap_servers": brokers,
        "client_id": config.get_kafka_client_id(),
        "security_protocol": security_protocol,
        "request_timeout_ms": timeout_ms,
        "max_block_ms": timeout_ms,
        "delivery_timeout_ms": timeout_ms,
        "retries": 0,
        "linger_ms": 0,
        "value_serializer": lambda v: json.dumps(v).encode("utf-8"),
    }
    if security_protocol in ("SSL", "SASL_SSL"):
        paths = config.get_kafka_ssl_paths()
        kwargs["ssl_cafile"] = paths["ca"] or None
        kwargs["ssl_certfile"] = paths["cert"] or None
        kwargs["ssl_keyfile"] = paths["key"] or None

    logger.info('Connecting Kafka producer to %s', ",".join(brokers))
    return KafkaProducer(**kwargs)


class FeedbackPublisher:
    """Sends feedback records to the output topic.

    A failed send is never retried here: the store mutation that licensed the
    emission has already committed, and a retry after an ambiguous failure
    could publish the same feedback twice.
    """

    def __init__(self, producer: KafkaProducer, topic: str, timeout: float = 5.0):
        self.producer = producer
        self.topic = topic
        self.timeout = timeout

    def _send(self, message: dict) -> None:
        started = time.monotonic()
        future = self.producer.send(self.topic, value=message)
        # The metadata wait inside send() counts against the same budget.
        remaining = max(self.timeout - (time.monotonic() - started), 0.0)
        future.get(timeout=remaining)

    async def publish(self, record: FeedbackRecord) -> None:
        """Publish one record and wait for the broker acknowledgement.

        Raises:
            PublishError: the broker rejected the record or did not ack in time
        """
        message = record.to_message()
        logger.info('Kafka send message. Topic: %s', self.topic, extra={"topic": self.topic})

        try:
            await asyncio.to_thread(self._send, message)
        except KafkaError as e:
            logger.error(
                'Error uploading feedback for %s to Kafka: %s',
                record.request_id,
                e,
                exc_info=True,
                extra={"topic": self.topic, "record": message},
            )
            raise PublishError(
                f"Failed to publish feedback for {record.request_id}: {e}",
                request_id=record.request_id,
                record=message,
            ) from e

        logger.info(
            'Kafka message sent. Topic: %s',
            self.topic,
            extra={
                "topic": self.topic,
                "kind": "implicit" if record.is_implicit else "chosen",
            },
        )

    def close(self) -> None:
        """Flush pending sends and close the producer."""
        try:
            self.producer.flush(timeout=self.timeout)
        finally:
            self.producer.close(timeout=self.timeout)
        logger.info("Kafka producer closed")
