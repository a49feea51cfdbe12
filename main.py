"""Main FastAPI application for the Geocoding Feedback API."""

import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse

from geocoding_feedback import __version__, config
from geocoding_feedback.api import feedback, health
from geocoding_feedback.lib.exceptions import ConfigurationError
from geocoding_feedback.lib.feedback.correlator import Correlator
from geocoding_feedback.lib.feedback.listener import NotificationListener
from geocoding_feedback.lib.feedback.marker_channel import ExpiryMarkerChannel
from geocoding_feedback.lib.feedback.publisher import FeedbackPublisher, build_kafka_producer
from geocoding_feedback.lib.feedback.response_store import ResponseStore
from geocoding_feedback.lib.logging_config import configure_logging, create_request_context_middleware
from geocoding_feedback.lib.redis_client import (
    close_redis,
    create_subscriber,
    get_geocoding_redis,
    get_ttl_redis,
)

configure_logging()

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Handle application startup and shutdown events."""
    logger.info("Starting up Geocoding Feedback API...")

    timeout = config.get_connection_timeout_seconds()
    feedback_window = config.get_feedback_ttl_seconds()
    geocoding_db = config.get_geocoding_db()
    ttl_db = config.get_ttl_db()
    marker_prefix = config.get_marker_prefix()

    if geocoding_db == ttl_db and not marker_prefix:
        raise ConfigurationError(
            "REDIS_MARKER_PREFIX must be set when REDIS_GEOCODING_DB and REDIS_TTL_DB are the same"
        )

    geocoding_redis = get_geocoding_redis()
    ttl_redis = get_ttl_redis()

    try:
        producer = await asyncio.to_thread(build_kafka_producer)
    except Exception as e:
        logger.error(f"❌ CRITICAL: Failed to connect to Kafka: {e}")
        await close_redis()
        raise

    publisher = FeedbackPublisher(producer, config.get_kafka_output_topic(), timeout=timeout)
    store = ResponseStore(
        geocoding_redis,
        key_prefix=config.get_key_prefix(),
        timeout=timeout,
        atomic=config.is_atomic_updates_enabled(),
    )
    markers = ExpiryMarkerChannel(ttl_redis, prefix=marker_prefix, timeout=timeout)
    correlator = Correlator(
        store,
        publisher,
        feedback_window=feedback_window,
        user_suffixes=config.get_user_validation_suffixes(),
    )
    listener = NotificationListener(
        create_subscriber,
        store,
        markers,
        correlator,
        geocoding_db=geocoding_db,
        ttl_db=ttl_db,
        feedback_window=feedback_window,
        configure_notifications=config.should_configure_notifications(),
    )

    try:
        await listener.start()
        logger.info("✅ Subscribed to Redis keyspace notifications")
    except Exception as e:
        logger.error(f"❌ CRITICAL: Failed to subscribe to Redis notifications: {e}")
        await asyncio.to_thread(publisher.close)
        await close_redis()
        raise

    app.state.geocoding_redis = geocoding_redis
    app.state.ttl_redis = ttl_redis
    app.state.connection_timeout = timeout
    app.state.correlator = correlator
    app.state.listener = listener

    yield

    logger.info("Shutting down Geocoding Feedback API...")
    try:
        await listener.stop()
        await asyncio.to_thread(publisher.close)
    except Exception as e:
        logger.error(f"Error during shutdown: {e}")
    finally:
        await close_redis()


app = FastAPI(
    title="Geocoding Feedback API",
    description="Collects user feedback on geocoding results and forwards it to Kafka",
    version=__version__,
    lifespan=lifespan
)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Convert Pydantic 422 validation errors to 400 with ErrorResponse shape."""
    details = []
    for error in exc.errors():
        field = ".".join(str(loc) for loc in error["loc"] if loc != "body")
        details.append({"field": field, "message": error["msg"]})

    return JSONResponse(
        status_code=400,
        content={
            "status": "error",
            "error": "Validation error",
            "details": details,
        },
    )


create_request_context_middleware(app)

app.include_router(feedback.router, tags=["Feedback"])
app.include_router(health.router, tags=["Health"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=config.get_server_port())
