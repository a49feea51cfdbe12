"""ResponseStore transactions against an in-process Redis server."""

import asyncio
import json

import fakeredis
import pytest
import pytest_asyncio

from geocoding_feedback.lib.exceptions import NotFoundError
from geocoding_feedback.lib.feedback.correlator import Correlator
from geocoding_feedback.lib.feedback.response_store import ResponseStore
from tests.fakes import RecordingPublisher

WINDOW = 120


@pytest_asyncio.fixture
async def redis_client():
    client = fakeredis.FakeAsyncRedis(decode_responses=True)
    yield client
    await client.flushall()
    await client.aclose()


@pytest.fixture
def store(redis_client):
    return ResponseStore(redis_client, key_prefix="geo", timeout=1.0)


class TestTransitions:
    @pytest.mark.asyncio
    async def test_claim_sets_flag_and_window_ttl(self, store, redis_client, geocoding_record):
        await store.put("r1", geocoding_record, ttl=3600)

        record = await store.mark_consumed("r1", "a@corp.example", "key-1", ttl=WINDOW)

        assert record.was_used is True
        stored = json.loads(await redis_client.get("geo:r1"))
        assert stored["wasUsed"] is True
        assert stored["userId"] == "a@corp.example"
        assert stored["apiKey"] == "key-1"
        assert 0 < await redis_client.ttl("geo:r1") <= WINDOW

    @pytest.mark.asyncio
    async def test_second_claim_is_rejected(self, store, geocoding_record):
        await store.put("r1", geocoding_record)
        await store.mark_consumed("r1", "a@corp.example", "key", ttl=WINDOW)

        with pytest.raises(NotFoundError):
            await store.mark_consumed("r1", "b@corp.example", "key", ttl=WINDOW)

    @pytest.mark.asyncio
    async def test_resolution_deletes_unused_record(self, store, redis_client, geocoding_record):
        await store.put("r1", geocoding_record)

        record = await store.take_unconsumed("r1")

        assert record.site == "site1"
        assert await redis_client.exists("geo:r1") == 0
        assert await store.take_unconsumed("r1") is None

    @pytest.mark.asyncio
    async def test_resolution_leaves_claimed_record(self, store, redis_client, geocoding_record):
        await store.put("r1", geocoding_record)
        await store.mark_consumed("r1", "a@corp.example", "key", ttl=WINDOW)

        assert await store.take_unconsumed("r1") is None
        assert await redis_client.exists("geo:r1") == 1


class TestRacingPaths:
    @pytest.mark.asyncio
    async def test_claim_and_resolution_emit_once_per_id(self, store, redis_client, geocoding_record):
        publisher = RecordingPublisher()
        correlator = Correlator(store, publisher, feedback_window=WINDOW, user_suffixes=["@corp.example"])
        request_ids = [f"r{i}" for i in range(30)]
        for request_id in request_ids:
            await store.put(request_id, geocoding_record)

        async def explicit(request_id):
            try:
                await correlator.claim_explicit(request_id, "a@corp.example", "key", 1)
            except NotFoundError:
                pass

        tasks = []
        for i, request_id in enumerate(request_ids):
            pair = [explicit(request_id), correlator.resolve_implicit(request_id)]
            if i % 2:
                pair.reverse()
            tasks.extend(pair)
        await asyncio.gather(*tasks)

        published = sorted(record.request_id for record in publisher.published)
        assert published == sorted(request_ids)

        # Resolution removes the record whichever path won.
        for request_id in request_ids:
            assert await redis_client.exists(store.key_for(request_id)) == 0

    @pytest.mark.asyncio
    async def test_store_transitions_are_exclusive(self, store, redis_client, geocoding_record):
        request_ids = [f"r{i}" for i in range(30)]
        for request_id in request_ids:
            await store.put(request_id, geocoding_record, ttl=3600)

        claims = [store.mark_consumed(request_id, "a@corp.example", "key", ttl=WINDOW) for request_id in request_ids]
        takes = [store.take_unconsumed(request_id) for request_id in request_ids]
        results = await asyncio.gather(*claims, *takes, return_exceptions=True)
        claim_results = results[:len(request_ids)]
        take_results = results[len(request_ids):]

        for request_id, claimed, taken in zip(request_ids, claim_results, take_results):
            key = store.key_for(request_id)
            if isinstance(claimed, NotFoundError):
                assert taken is not None
                assert await redis_client.exists(key) == 0
            else:
                assert claimed.was_used is True
                assert taken is None
                assert 0 < await redis_client.ttl(key) <= WINDOW
