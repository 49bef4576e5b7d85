"""
Tests for candidate acquisition: stage 1, artist scoring and stage 2.
"""

import asyncio

import pytest

from dual_gravity.exceptions import PersistenceError, StageInputError
from dual_gravity.models.game_models import (
    ArtistProfile,
    ArtistRef,
    GravityZone,
    PlayerId,
    SelectedArtist,
    SelectionCategory,
    TargetArtist,
    TrackDetails,
)
from dual_gravity.models.pipeline_models import (
    PlaybackState,
    Stage1Request,
    Stage2FetchTracksRequest,
    Stage2ScoreArtistsRequest,
)
from dual_gravity.services.candidate_pipeline import CandidatePipeline, TurnBudget
from tests.factories import FakeCatalog, artist_id, make_target, make_track, track_id


@pytest.fixture
def pipeline(repository, store, healing, engine_config):
    return CandidatePipeline(repository, store, healing, engine_config)


@pytest.fixture
def scene(catalog, rock_profiles):
    """Catalog holding the rock neighbourhood and its relationships."""
    for profile in rock_profiles.values():
        catalog.add_artist(profile)
    current = rock_profiles["current"]
    target = rock_profiles["target"]
    catalog.related[current.id] = [ArtistRef(artist_id(100 + i), f"Current Related {i}") for i in range(10)]
    catalog.related[target.id] = [ArtistRef(artist_id(200 + i), f"Target Related {i}") for i in range(5)]
    current_track = make_track(1, ArtistRef(current.id, current.name))
    catalog.tracks[current_track.id] = current_track
    return {"current_track": current_track, "current": current, "target": target}


def stage1_request(track, gravity=0.3, round_number=1, target=None, **kwargs):
    return Stage1Request(
        round_number=round_number,
        player_targets={PlayerId.PLAYER1: target, PlayerId.PLAYER2: None},
        playback_state=PlaybackState(item=track, is_playing=True),
        current_player_id=PlayerId.PLAYER1,
        player_gravities={PlayerId.PLAYER1: gravity, PlayerId.PLAYER2: 0.3},
        **kwargs
    )


def target_artist(profile):
    return TargetArtist(name=profile.name, id=profile.id)


class TestTurnBudget:

    def test_remaining_never_negative(self):
        budget = TurnBudget(0.0)

        assert budget.remaining() == 0.0
        assert budget.elapsed_ms() >= 0


class TestFetchArtists:
    """Stage 1 candidate pool."""

    @pytest.mark.asyncio
    async def test_null_targets_round_one(self, pipeline, scene, populated_store):
        response = await pipeline.fetch_artists(
            stage1_request(scene["current_track"]), {PlayerId.PLAYER1: 0.3, PlayerId.PLAYER2: 0.3}
        )

        assert len(set(response.artist_ids)) >= 100
        assert len(response.related_to_current) == 10
        for branch in response.related_to_target.values():
            assert branch.artists == []
            assert branch.skipped_reason == "no_target"
        assert response.target_profiles == {PlayerId.PLAYER1: None, PlayerId.PLAYER2: None}
        assert response.seed_artist_id == scene["current"].id
        assert response.debug["candidate_pool"]["random_needed"] == 90

    @pytest.mark.asyncio
    async def test_random_backfill_failure_keeps_related_pool(self, pipeline, scene, store, monkeypatch):
        async def unavailable(count, exclude_ids=None):
            raise PersistenceError("store offline")

        monkeypatch.setattr(store, "fetch_random_artists", unavailable)

        response = await pipeline.fetch_artists(
            stage1_request(scene["current_track"]), {PlayerId.PLAYER1: 0.3, PlayerId.PLAYER2: 0.3}
        )

        assert response.random_artists == []
        assert set(response.artist_ids) >= {artist_id(100 + i) for i in range(10)}
        assert response.debug["candidate_pool"]["random_backfill"] == 0

    @pytest.mark.asyncio
    async def test_dead_zone_skips_target_fetch(self, pipeline, scene, catalog):
        request = stage1_request(scene["current_track"], gravity=0.35, target=target_artist(scene["target"]))

        response = await pipeline.fetch_artists(request, request.player_gravities)

        branch = response.related_to_target[PlayerId.PLAYER1]
        assert branch.zone == GravityZone.DEAD_ZONE
        assert branch.artists == []
        assert branch.skipped_reason == "dead_zone"
        assert catalog.calls["get_related_artists"] == 1
        assert response.target_profiles[PlayerId.PLAYER1].spotify_id == scene["target"].id

    @pytest.mark.asyncio
    async def test_good_influence_injects_target(self, pipeline, scene):
        request = stage1_request(scene["current_track"], gravity=0.65, target=target_artist(scene["target"]))

        response = await pipeline.fetch_artists(request, request.player_gravities)

        branch = response.related_to_target[PlayerId.PLAYER1]
        assert branch.zone == GravityZone.GOOD_INFLUENCE
        assert branch.target_injected
        assert scene["target"].id in branch.artist_ids
        assert len(branch.artists) == 6
        assert scene["target"].id in response.artist_ids

    @pytest.mark.asyncio
    async def test_dead_zone_suppresses_injection_at_round_ten(self, pipeline, scene, catalog):
        request = stage1_request(
            scene["current_track"], gravity=0.35, round_number=10, target=target_artist(scene["target"])
        )

        response = await pipeline.fetch_artists(request, request.player_gravities)

        branch = response.related_to_target[PlayerId.PLAYER1]
        assert branch.artist_ids == []
        assert not branch.target_injected
        assert branch.skipped_reason == "dead_zone"
        assert scene["target"].id not in response.artist_ids
        assert catalog.calls["get_related_artists"] == 1
        assert response.hard_convergence_active

    @pytest.mark.asyncio
    async def test_round_ten_injects_outside_dead_zone(self, pipeline, scene):
        request = stage1_request(
            scene["current_track"], gravity=0.5, round_number=10, target=target_artist(scene["target"])
        )

        response = await pipeline.fetch_artists(request, request.player_gravities)

        branch = response.related_to_target[PlayerId.PLAYER1]
        assert branch.target_injected
        assert scene["target"].id in branch.artist_ids

    @pytest.mark.asyncio
    async def test_desperation_fetches_without_injection(self, pipeline, scene):
        request = stage1_request(scene["current_track"], gravity=0.1, target=target_artist(scene["target"]))

        response = await pipeline.fetch_artists(request, request.player_gravities)

        branch = response.related_to_target[PlayerId.PLAYER1]
        assert branch.zone == GravityZone.DESPERATION
        assert len(branch.artists) == 5
        assert not branch.target_injected

    @pytest.mark.asyncio
    async def test_related_failure_schedules_healing(self, pipeline, scene, catalog, healing):
        catalog.failing_related.add(scene["current"].id)

        response = await pipeline.fetch_artists(
            stage1_request(scene["current_track"]), {PlayerId.PLAYER1: 0.3, PlayerId.PLAYER2: 0.3}
        )

        assert response.related_to_current == []
        assert len(healing) == 1
        assert healing.get_status()["actions"][0]["type"] == "related_artists"

    @pytest.mark.asyncio
    async def test_database_id_seed_rejected(self, pipeline):
        track = TrackDetails(
            id="local-track",
            artists=[ArtistRef("123e4567-e89b-12d3-a456-426614174000", "Artist-X")],
        )

        with pytest.raises(StageInputError) as exc_info:
            await pipeline.fetch_artists(stage1_request(track), {})

        assert exc_info.value.code == "invalid_artist_id"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_missing_track(self, pipeline):
        request = Stage1Request(playback_state=None)

        with pytest.raises(StageInputError) as exc_info:
            await pipeline.fetch_artists(request, {})

        assert exc_info.value.code == "missing_current_track"

    @pytest.mark.asyncio
    async def test_missing_primary_artist(self, pipeline):
        with pytest.raises(StageInputError) as exc_info:
            await pipeline.fetch_artists(stage1_request(TrackDetails(id="no-artists")), {})

        assert exc_info.value.code == "missing_primary_artist"

    @pytest.mark.asyncio
    async def test_catalog_track_preferred_over_playback_item(self, pipeline, scene):
        stale = TrackDetails(id=scene["current_track"].id, artists=[ArtistRef(artist_id(3), "Old Artist")])

        response = await pipeline.fetch_artists(stage1_request(stale), {})

        assert response.seed_artist_id == scene["current"].id

    @pytest.mark.asyncio
    async def test_slow_branch_times_out(self, repository, store, healing, engine_config, scene):
        class SlowCatalog(FakeCatalog):
            async def get_related_artists(self, artist_id):
                await asyncio.sleep(1)
                return []

        repository.catalog = SlowCatalog()
        pipeline = CandidatePipeline(repository, store, healing, engine_config)

        response = await pipeline.fetch_artists(
            stage1_request(scene["current_track"]), {}, budget=TurnBudget(0.05)
        )

        assert response.related_to_current == []


class TestScoreArtists:
    """Artist scoring stage."""

    @pytest.fixture
    def request_for(self, scene, rock_profiles):
        def build(round_number=1, gravity=0.3, current_key="far", extra_ids=()):
            current = rock_profiles[current_key]
            ids = [p.id for key, p in rock_profiles.items() if key != current_key] + list(extra_ids)
            return Stage2ScoreArtistsRequest(
                artist_ids=ids,
                target_profiles={PlayerId.PLAYER1: make_target(rock_profiles["target"]), PlayerId.PLAYER2: None},
                player_gravities={PlayerId.PLAYER1: gravity, PlayerId.PLAYER2: 0.3},
                current_track=make_track(2, ArtistRef(current.id, current.name)),
                round_number=round_number,
                current_player_id=PlayerId.PLAYER1,
            )
        return build

    @pytest.mark.asyncio
    async def test_dissimilar_target_filtered_early(self, pipeline, request_for, rock_profiles):
        response = await pipeline.score_artists(request_for())

        picked = {a.artist_id for a in response.selected_artists + response.backup_artists}
        assert rock_profiles["target"].id not in picked
        assert response.debug["filtered_target_artists"] == ["Target Band"]

    @pytest.mark.asyncio
    async def test_target_kept_in_late_round(self, pipeline, request_for, rock_profiles):
        response = await pipeline.score_artists(request_for(round_number=10))

        selected = {a.artist_id: a for a in response.selected_artists}
        assert selected[rock_profiles["target"].id].is_target_artist
        assert selected[rock_profiles["target"].id].category == SelectionCategory.CLOSER

    @pytest.mark.asyncio
    async def test_current_artist_excluded(self, pipeline, request_for, rock_profiles):
        request = request_for(extra_ids=[rock_profiles["far"].id])

        response = await pipeline.score_artists(request)

        picked = {a.artist_id for a in response.selected_artists + response.backup_artists}
        assert rock_profiles["far"].id not in picked

    @pytest.mark.asyncio
    async def test_missing_profile_schedules_healing(self, pipeline, request_for, healing):
        response = await pipeline.score_artists(request_for(extra_ids=[artist_id(99)]))

        assert response.debug["scoring"]["profiles_missing"] == 1
        assert healing.get_status()["actions"][0]["type"] == "artist_profile"

    @pytest.mark.asyncio
    async def test_selection_is_unique_and_bounded(self, pipeline, catalog, request_for):
        extra = []
        for n in range(300, 320):
            catalog.add_artist(ArtistProfile(id=artist_id(n), name=f"Filler {n}", genres=["indie rock"],
                                             popularity=40 + n % 20, followers=10000 * (n - 299)))
            extra.append(artist_id(n))

        response = await pipeline.score_artists(request_for(round_number=4, extra_ids=extra))

        ids = [a.artist_id for a in response.selected_artists]
        assert len(ids) == 9
        assert len(set(ids)) == 9
        assert not set(ids) & {a.artist_id for a in response.backup_artists}


def selected(n, category=SelectionCategory.NEUTRAL):
    return SelectedArtist(artist_id=artist_id(n), artist_name=f"Artist {n}", category=category)


def add_artist_with_tracks(catalog, n, count=2, playable=True):
    artist = ArtistRef(artist_id(n), f"Artist {n}")
    tracks = [make_track(n * 10 + j, artist, is_playable=playable) for j in range(count)]
    catalog.add_artist(ArtistProfile(id=artist.id, name=artist.name, genres=["rock"]), top_tracks=tracks)
    return tracks


class TestFetchTracks:
    """Stage 2 track fetch with bounded retries."""

    @pytest.mark.asyncio
    async def test_one_track_per_artist(self, pipeline, catalog):
        artists = []
        for n, category in zip(range(10, 19), [c for c in SelectionCategory for _ in range(3)]):
            add_artist_with_tracks(catalog, n)
            artists.append(selected(n, category))

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(selected_artists=artists))

        assert len(response.options) == 9
        assert len({o.track.id for o in response.options}) == 9
        assert response.debug["retry_attempts"] == 0
        assert response.debug["category_counts"] == {"closer": 3, "neutral": 3, "further": 3}

    @pytest.mark.asyncio
    async def test_played_tracks_are_skipped(self, pipeline, catalog):
        tracks = add_artist_with_tracks(catalog, 10)

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(
            selected_artists=[selected(10)],
            played_track_ids=[tracks[0].id],
        ))

        assert [o.track.id for o in response.options] == [tracks[1].id]

    @pytest.mark.asyncio
    async def test_unplayable_track_queues_healing(self, pipeline, catalog, healing):
        tracks = add_artist_with_tracks(catalog, 10)
        tracks[0].is_playable = False

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(selected_artists=[selected(10)]))

        assert [o.track.id for o in response.options] == [tracks[1].id]
        assert healing.get_status()["actions"][0]["type"] == "track_details"

    @pytest.mark.asyncio
    async def test_backups_fill_missing_artists(self, pipeline, catalog):
        artists = []
        for n in range(10, 19):
            if n < 16:
                add_artist_with_tracks(catalog, n)
            artists.append(selected(n))
        backups = []
        for n in range(40, 45):
            add_artist_with_tracks(catalog, n)
            backups.append(selected(n, SelectionCategory.FURTHER))

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(
            selected_artists=artists,
            backup_artists=backups,
        ))

        assert len(response.options) == 9
        assert response.debug["retry_attempts"] == 1
        assert len(response.debug["backups_used"]) == 3
        assert len(response.debug["artists_without_tracks"]) == 3

    @pytest.mark.asyncio
    async def test_partial_result_when_backups_exhausted(self, pipeline, catalog):
        add_artist_with_tracks(catalog, 10)
        catalog.failing_top_tracks.add(artist_id(11))

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(
            selected_artists=[selected(10), selected(11)],
            backup_artists=[selected(12)],
        ))

        assert len(response.options) == 1
        assert response.options[0].track.id == track_id(100)

    @pytest.mark.asyncio
    async def test_current_track_never_offered(self, pipeline, catalog):
        tracks = add_artist_with_tracks(catalog, 10, count=1)

        response = await pipeline.fetch_tracks(Stage2FetchTracksRequest(
            selected_artists=[selected(10)],
            current_track=tracks[0],
        ))

        assert response.options == []
