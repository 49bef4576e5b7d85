"""
Shared fixtures for the Dual Gravity test suite.
"""

import pytest

from dual_gravity.models.config_models import EngineConfig
from dual_gravity.models.game_models import ArtistProfile
from dual_gravity.services.lazy_update_queue import HealingQueue, LazyUpdateQueue
from dual_gravity.services.persistence import InMemoryMusicStore
from dual_gravity.services.profile_repository import ProfileRepository
from dual_gravity.services.statistics_tracker import ApiStatisticsTracker
from tests.factories import FakeCatalog, artist_id


@pytest.fixture
def engine_config():
    return EngineConfig()


@pytest.fixture
def catalog():
    return FakeCatalog()


@pytest.fixture
def store():
    return InMemoryMusicStore(seed=7)


@pytest.fixture
async def populated_store(store):
    """Store holding 150 artists without genre or follower data."""
    for n in range(1000, 1150):
        await store.upsert_artist_profile(ArtistProfile(id=artist_id(n), name=f"Backfill {n}"))
    return store


@pytest.fixture
def lazy_queue():
    return LazyUpdateQueue()


@pytest.fixture
def healing(store, lazy_queue):
    return HealingQueue(store, lazy_queue)


@pytest.fixture
def repository(catalog, store, lazy_queue, engine_config):
    return ProfileRepository(
        catalog=catalog,
        store=store,
        lazy_queue=lazy_queue,
        config=engine_config,
        stats=ApiStatisticsTracker(),
    )


@pytest.fixture
def rock_profiles():
    """A small rock/indie neighbourhood plus an unrelated electronic artist."""
    return {
        "current": ArtistProfile(id=artist_id(1), name="Current Band", genres=["indie rock", "alternative rock"],
                                 popularity=60, followers=500000),
        "target": ArtistProfile(id=artist_id(2), name="Target Band", genres=["indie rock"],
                                popularity=65, followers=800000),
        "near": ArtistProfile(id=artist_id(3), name="Near Band", genres=["indie rock", "indie pop"],
                              popularity=62, followers=700000),
        "far": ArtistProfile(id=artist_id(4), name="Far DJ", genres=["techno"],
                             popularity=20, followers=1000),
    }
