"""
Tests for the lazy update outbox, the healing queue and the tick processor.
"""

from dataclasses import asdict

import pytest

from dual_gravity.exceptions import CatalogError
from dual_gravity.models.game_models import ArtistProfile, ArtistRef
from dual_gravity.services.lazy_update_queue import (
    HealingAction,
    HealingType,
    LazyUpdate,
    LazyUpdateProcessor,
    LazyUpdateQueue,
    LazyUpdateType,
    UpdateStatus,
)
from tests.factories import FakeCatalog, artist_id, make_track


def profile_update(n, **payload):
    return LazyUpdate(type=LazyUpdateType.ARTIST_PROFILE, spotify_id=artist_id(n), payload=payload)


class TestLazyUpdateQueue:
    """Enqueue/drain contract."""

    def test_enqueue_and_drain(self):
        queue = LazyUpdateQueue()
        queue.enqueue(profile_update(1, name="A"))
        queue.enqueue(profile_update(2, name="B"))

        batch = queue.drain(1)

        assert len(batch) == 1
        assert batch[0].status is UpdateStatus.PROCESSING
        assert len(queue) == 1

    def test_duplicate_merges_payload(self):
        queue = LazyUpdateQueue()
        first = queue.enqueue(profile_update(1, name="A"))
        second = queue.enqueue(profile_update(1, genres=["rock"]))

        assert first == second
        record = queue.fetch_pending(10)[0]
        assert record.update.payload == {"name": "A", "genres": ["rock"]}

    def test_requeue_resets_failed_item(self):
        queue = LazyUpdateQueue()
        record_id = queue.enqueue(profile_update(1))
        queue.drain(1)
        queue.mark_result(record_id, UpdateStatus.FAILED, 1, "boom")

        queue.enqueue(profile_update(1, name="again"))

        record = queue.fetch_pending(1)[0]
        assert record.attempts == 0
        assert record.error_message is None

    def test_completed_items_leave_queue(self):
        queue = LazyUpdateQueue()
        record_id = queue.enqueue(profile_update(1))

        queue.mark_result(record_id, UpdateStatus.COMPLETED, 1)

        assert queue.get_status() == {"pending": 0, "processing": 0, "failed": 0}

    def test_update_without_id_dropped(self):
        queue = LazyUpdateQueue()

        assert queue.enqueue(LazyUpdate(type=LazyUpdateType.TRACK_DETAILS, spotify_id="")) is None
        assert len(queue) == 0

    def test_full_queue_drops_new_keys(self):
        queue = LazyUpdateQueue(max_size=1)
        queue.enqueue(profile_update(1))

        assert queue.enqueue(profile_update(2)) is None
        assert queue.enqueue(profile_update(1, name="merge")) is not None


class TestHealingQueue:
    """Best-effort healing."""

    def test_duplicates_ignored(self, healing):
        action = HealingAction(HealingType.RELATED_ARTISTS, artist_id(1), "timeout")

        assert healing.enqueue_healing(action)
        assert not healing.enqueue_healing(HealingAction(HealingType.RELATED_ARTISTS, artist_id(1), "again"))
        assert len(healing) == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, healing, catalog):
        result = await healing.process_healing_queue(catalog)

        assert result["processed"] == 0

    @pytest.mark.asyncio
    async def test_batch_limit(self, healing, catalog):
        for n in range(5):
            healing.enqueue_healing(HealingAction(HealingType.RELATED_ARTISTS, artist_id(n), "timeout"))

        result = await healing.process_healing_queue(catalog, limit=2)

        assert result["processed"] == 2
        assert len(healing) == 3

    @pytest.mark.asyncio
    async def test_profile_healing_writes_store(self, healing, catalog, store):
        catalog.add_artist(ArtistProfile(id=artist_id(1), name="Healed", genres=["jazz"]))
        healing.enqueue_healing(HealingAction(HealingType.ARTIST_PROFILE, artist_id(1), "missing_profile"))

        result = await healing.process_healing_queue(catalog)

        assert result["succeeded"] == 1
        assert (await store.get_artist_profile(artist_id(1))).genres == ["jazz"]

    @pytest.mark.asyncio
    async def test_unknown_artist_is_failure(self, healing, catalog):
        healing.enqueue_healing(HealingAction(HealingType.ARTIST_PROFILE, artist_id(1), "missing_profile"))

        result = await healing.process_healing_queue(catalog)

        assert result["failed"] == 1

    @pytest.mark.asyncio
    async def test_target_healed_by_name(self, healing, catalog, store):
        catalog.add_artist(ArtistProfile(id=artist_id(9), name="Named Target", genres=["soul"]))
        healing.enqueue_healing(HealingAction(
            HealingType.TARGET_ARTIST, "0f6c-not-a-catalog-id", "lookup_failed", entity_name="Named Target"
        ))

        result = await healing.process_healing_queue(catalog)

        assert result["succeeded"] == 1
        assert await store.get_artist_profile(artist_id(9)) is not None

    @pytest.mark.asyncio
    async def test_catalog_errors_are_contained(self, healing, catalog):
        catalog.failing_related.add(artist_id(1))
        healing.enqueue_healing(HealingAction(HealingType.RELATED_ARTISTS, artist_id(1), "timeout"))

        result = await healing.process_healing_queue(catalog)

        assert result["failed"] == 1
        assert len(healing) == 0

    @pytest.mark.asyncio
    async def test_unplayable_track_goes_to_outbox(self, healing, lazy_queue):
        healing.enqueue_healing(HealingAction(HealingType.TRACK_DETAILS, "track-1", "not_playable"))

        await healing.process_healing_queue(FakeCatalog())

        record = lazy_queue.fetch_pending(1)[0]
        assert record.update.type is LazyUpdateType.TRACK_UNAVAILABLE
        assert record.update.payload["is_playable"] is False


class TestLazyUpdateProcessor:
    """Maintenance ticks."""

    @pytest.fixture
    def processor(self, lazy_queue, healing, store, engine_config):
        return LazyUpdateProcessor(lazy_queue, healing, store, engine_config)

    @pytest.mark.asyncio
    async def test_tick_applies_batch(self, processor, lazy_queue, store, engine_config):
        for n in range(5):
            lazy_queue.enqueue(profile_update(n, name=f"Artist {n}", genres=["rock"]))

        result = await processor.tick()

        assert result["processed"] == engine_config.lazy_update_batch_size
        assert result["remaining"] == 5 - engine_config.lazy_update_batch_size
        assert (await store.get_artist_profile(artist_id(0))).name == "Artist 0"

    @pytest.mark.asyncio
    async def test_replay_is_idempotent(self, processor, lazy_queue, store):
        artist = ArtistRef(artist_id(1), "A")
        tracks = [make_track(1, artist), make_track(2, artist)]
        payload = {"tracks": [asdict(t) for t in tracks]}

        for _ in range(2):
            lazy_queue.enqueue(LazyUpdate(LazyUpdateType.ARTIST_TOP_TRACKS, artist.id, payload))
            await processor.tick()

        assert [t.id for t in await store.get_top_tracks(artist.id)] == [t.id for t in tracks]

    @pytest.mark.asyncio
    async def test_missing_genres_schedule_healing(self, processor, lazy_queue, healing):
        lazy_queue.enqueue(profile_update(1, name="No Genres", reason="missing_genres"))

        await processor.tick()

        assert len(healing) == 1

    @pytest.mark.asyncio
    async def test_healing_runs_with_catalog(self, processor, healing, catalog):
        catalog.add_artist(ArtistProfile(id=artist_id(1), name="A", genres=["rock"]))
        healing.enqueue_healing(HealingAction(HealingType.ARTIST_PROFILE, artist_id(1), "missing_profile"))

        result = await processor.tick(catalog)

        assert result["healing"] == {"processed": 1, "succeeded": 1, "failed": 0}

    @pytest.mark.asyncio
    async def test_failed_item_marked_failed(self, processor, lazy_queue, store, monkeypatch):
        async def explode(profile):
            raise CatalogError("store down")

        monkeypatch.setattr(store, "upsert_artist_profile", explode)
        lazy_queue.enqueue(profile_update(1, name="A"))

        result = await processor.tick()

        assert result["failed"] == 1
        assert lazy_queue.get_status()["failed"] == 1

    @pytest.mark.asyncio
    async def test_invalid_track_payload_is_skipped(self, processor, lazy_queue, store):
        lazy_queue.enqueue(LazyUpdate(LazyUpdateType.TRACK_DETAILS, "track-x", {"tracks": [{"name": "no id"}]}))

        result = await processor.tick()

        assert result["processed"] == 1
        assert store.get_track("track-x") is None
