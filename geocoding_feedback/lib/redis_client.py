"""Redis clients for the geocoding and marker databases.

Two logical connections are kept: one to the database where the geocoding
service writes its responses, one to the database holding expiry markers.
Keyspace notifications are consumed through a separate pub/sub connection
created by :func:`create_subscriber`.
"""

import logging
from typing import Optional

import redis.asyncio as redis

from geocoding_feedback import config

logger = logging.getLogger(__name__)

_geocoding_client: Optional[redis.Redis] = None
_ttl_client: Optional[redis.Redis] = None


def _connection_kwargs(db: int) -> dict:
    """Build keyword arguments shared by every Redis connection."""
    timeout = config.get_connection_timeout_seconds()
    kwargs = {
        "host": config.get_redis_host(),
        "port": config.get_redis_port(),
        "db": db,
        "username": config.get_redis_username(),
        "password": config.get_redis_password(),
        "socket_connect_timeout": timeout,
        "socket_timeout": timeout,
        "encoding": "utf-8",
        "decode_responses": True,
    }

    if config.is_redis_tls_enabled():
        paths = config.get_redis_tls_paths()
        kwargs["ssl"] = True
        kwargs["ssl_ca_certs"] = paths["ca"] or None
        kwargs["ssl_certfile"] = paths["cert"] or None
        kwargs["ssl_keyfile"] = paths["key"] or None

    return kwargs


def create_client(db: int) -> redis.Redis:
    """Create a Redis client bound to the given database index."""
    kwargs = _connection_kwargs(db)
    logger.info('Connecting to Redis at %s:%s/%s', kwargs["host"], kwargs["port"], db)
    return redis.Redis(**kwargs)


def create_subscriber() -> redis.Redis:
    """Create a client for the pub/sub connection.

    Keyevent channels carry the database index in their name, so the database
    the subscriber itself is bound to does not matter. Reads block until a
    notification arrives, so no socket timeout is applied.
    """
    kwargs = _connection_kwargs(config.get_geocoding_db())
    kwargs["socket_timeout"] = None
    return redis.Redis(**kwargs)


def get_geocoding_redis() -> redis.Redis:
    """Get or create the client for the geocoding responses database."""
    global _geocoding_client

    if _geocoding_client is None:
        _geocoding_client = create_client(config.get_geocoding_db())

    return _geocoding_client


def get_ttl_redis() -> redis.Redis:
    """Get or create the client for the expiry marker database."""
    global _ttl_client

    if _ttl_client is None:
        _ttl_client = create_client(config.get_ttl_db())

    return _ttl_client


async def close_redis() -> None:
    """Close both Redis connections."""
    global _geocoding_client, _ttl_client

    for name, client in (("geocoding", _geocoding_client), ("ttl", _ttl_client)):
        if client is None:
            continue
        try:
            await client.aclose()
            logger.info('Redis %s connection closed', name)
        except Exception as e:
            logger.error('Failed to close Redis %s connection: %s', name, e)

    _geocoding_client = None
    _ttl_client = None
