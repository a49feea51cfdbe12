"""Configuration management for the geocoding feedback service.

Every setting is read from the environment through a small accessor function,
so tests can patch ``os.environ`` and call the accessor again. A ``.env`` file
in the working directory is loaded once at import time.
"""

import logging
import os
from typing import List, Optional

from dotenv import load_dotenv

from geocoding_feedback.lib.exceptions import ConfigurationError

load_dotenv()

logger = logging.getLogger(__name__)

DEFAULT_SERVER_PORT = 8080
DEFAULT_MARKER_PREFIX = "ttl_"


def _get_int(name: str, default: int, minimum: Optional[int] = None) -> int:
    raw = os.getenv(name, str(default))
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got: {raw}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be at least {minimum}, got: {value}")
    return value


def _get_bool(name: str, default: bool) -> bool:
    return os.getenv(name, str(default)).lower() == "true"


def _get_list(name: str, default: str) -> List[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_log_level() -> str:
    """Get log level from environment, default to INFO."""
    level = os.getenv('LOG_LEVEL', 'INFO').upper()
    valid_levels = ['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL']

    if level not in valid_levels:
        logger.warning(f"Invalid log level '{level}', defaulting to INFO")
        return 'INFO'

    return level


def get_server_port() -> int:
    return _get_int('SERVER_PORT', DEFAULT_SERVER_PORT, minimum=1)


# Redis

def get_redis_host() -> str:
    return os.getenv('REDIS_HOST', 'localhost')


def get_redis_port() -> int:
    return _get_int('REDIS_PORT', 6379, minimum=1)


def get_redis_username() -> Optional[str]:
    return os.getenv('REDIS_USERNAME') or None


def get_redis_password() -> Optional[str]:
    return os.getenv('REDIS_PASSWORD') or None


def get_geocoding_db() -> int:
    """Database index holding geocoding responses written by the geocoding service."""
    return _get_int('REDIS_GEOCODING_DB', 0, minimum=0)


def get_ttl_db() -> int:
    """Database index holding expiry markers."""
    return _get_int('REDIS_TTL_DB', 1, minimum=0)


def get_key_prefix() -> Optional[str]:
    """Optional namespace prefix of geocoding response keys (``prefix:request_id``)."""
    return os.getenv('REDIS_KEY_PREFIX') or None


def get_marker_prefix() -> str:
    return os.getenv('REDIS_MARKER_PREFIX', DEFAULT_MARKER_PREFIX)


def is_redis_tls_enabled() -> bool:
    return _get_bool('REDIS_TLS_ENABLED', False)


def get_redis_tls_paths() -> dict:
    """Return CA/cert/key paths for Redis TLS; empty values mean "not set"."""
    return {
        "ca": os.getenv('REDIS_TLS_CA', ''),
        "cert": os.getenv('REDIS_TLS_CERT', ''),
        "key": os.getenv('REDIS_TLS_KEY', ''),
    }


def is_atomic_updates_enabled() -> bool:
    """Whether the store supports WATCH/MULTI (false behind most Redis proxies)."""
    return _get_bool('REDIS_ATOMIC_UPDATES', True)


def should_configure_notifications() -> bool:
    """Whether to enable keyspace notifications with CONFIG SET on startup."""
    return _get_bool('REDIS_CONFIGURE_NOTIFICATIONS', False)


# Feedback

def get_feedback_ttl_seconds() -> int:
    """Feedback window: seconds after which an unclaimed request counts as "no selection"."""
    return _get_int('FEEDBACK_TTL_SECONDS', 300, minimum=1)


def get_user_validation_suffixes() -> List[str]:
    """Accepted user id suffixes, in priority order."""
    suffixes = _get_list('USER_VALIDATION_SUFFIXES', '@mycompany.net')
    if not suffixes:
        raise ConfigurationError("USER_VALIDATION_SUFFIXES must list at least one suffix")
    return suffixes


# Kafka

def get_kafka_brokers() -> List[str]:
    brokers = _get_list('KAFKA_BROKERS', 'localhost:9092')
    if not brokers:
        raise ConfigurationError("KAFKA_BROKERS must list at least one broker")
    return brokers


def get_kafka_output_topic() -> str:
    topic = os.getenv('KAFKA_OUTPUT_TOPIC', 'geocoding-feedback')
    if not topic:
        raise ConfigurationError("KAFKA_OUTPUT_TOPIC must not be empty")
    return topic


def get_kafka_client_id() -> str:
    return os.getenv('KAFKA_CLIENT_ID', 'geocoding-feedback-api')


def get_kafka_security_protocol() -> str:
    protocol = os.getenv('KAFKA_SECURITY_PROTOCOL', 'PLAINTEXT').upper()
    valid_protocols = ['PLAINTEXT', 'SSL', 'SASL_PLAINTEXT', 'SASL_SSL']

    if protocol not in valid_protocols:
        raise ConfigurationError(
            f"Invalid KAFKA_SECURITY_PROTOCOL '{protocol}'. Valid options: {valid_protocols}"
        )

    return protocol


def get_kafka_ssl_paths() -> dict:
    return {
        "ca": os.getenv('KAFKA_SSL_CA', ''),
        "cert": os.getenv('KAFKA_SSL_CERT', ''),
        "key": os.getenv('KAFKA_SSL_KEY', ''),
    }


def get_connection_timeout_seconds() -> float:
    """Timeout applied to every individual store and broker call."""
    raw = os.getenv('CONNECTION_TIMEOUT_SECONDS', '5')
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"CONNECTION_TIMEOUT_SECONDS must be a number, got: {raw}")
    if value <= 0:
        raise ConfigurationError("CONNECTION_TIMEOUT_SECONDS must be positive")
    return value
