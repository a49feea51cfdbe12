"""Feedback correlation library.

This package contains the core logic for turning cached geocoding responses
into exactly one feedback record each.

Components:
    - models: Pydantic models for stored responses and outbound records
    - response_store: Redis storage of geocoding responses
    - marker_channel: Expiry markers that time the feedback window
    - listener: Keyspace notification subscriber
    - correlator: Explicit/implicit claim logic
    - publisher: Kafka producer wrapper
"""

__all__ = []
