"""
Pytest configuration and fixtures for geocoding feedback tests.
"""
from datetime import datetime, timezone

import pytest

from geocoding_feedback.lib.feedback.models import GeocodingResponseRecord
from tests.fakes import InMemoryResponseStore, RecordingPublisher


@pytest.fixture
def geocoding_record():
    """A geocoding response as written by the geocoding service."""
    return GeocodingResponseRecord(
        api_key="token",
        site="site1",
        response={"type": "FeatureCollection", "features": [{"id": 0}, {"id": 3}]},
        responded_at=datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc),
    )


@pytest.fixture
def memory_store():
    return InMemoryResponseStore()


@pytest.fixture
def publisher():
    return RecordingPublisher()
