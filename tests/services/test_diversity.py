"""
Tests for diversity selection and target diversity injection.
"""

import pytest

from dual_gravity.models.game_models import (
    ArtistProfile,
    ArtistRef,
    CandidateSeed,
    CandidateSource,
    CandidateTrackMetrics,
    PlayerId,
    SelectionCategory,
    TargetArtist,
    TargetProfile,
)
from dual_gravity.services.diversity import DiversitySelector, TargetDiversityInjector
from tests.factories import artist_id, make_target, make_track

ATTRACTION = {
    SelectionCategory.CLOSER: 0.9,
    SelectionCategory.NEUTRAL: 0.5,
    SelectionCategory.FURTHER: 0.1,
}


def metric(n, category=SelectionCategory.NEUTRAL, final_score=0.5, artist_n=None, sim_score=0.3,
           name=None):
    """Metric whose delta against a 0.5 baseline lands in ``category``."""
    artist_n = n if artist_n is None else artist_n
    artist = ArtistRef(artist_id(artist_n), name or f"Artist {artist_n}")
    return CandidateTrackMetrics(
        track=make_track(n, artist),
        source=CandidateSource.RELATED_TOP_TRACKS,
        artist_id=artist.id,
        artist_name=artist.name,
        sim_score=sim_score,
        a_attraction=ATTRACTION[category],
        current_song_attraction=0.5,
        final_score=final_score,
    )


@pytest.fixture
def selector(engine_config):
    return DiversitySelector(engine_config)


def select(selector, metrics, **kwargs):
    params = {
        "round_number": 3,
        "target_profiles": {},
        "player_gravities": {PlayerId.PLAYER1: 0.3, PlayerId.PLAYER2: 0.3},
        "current_player_id": PlayerId.PLAYER1,
    }
    params.update(kwargs)
    return selector.apply_diversity_constraints(metrics, **params)


class TestDiversitySelector:
    """Balanced option selection."""

    def test_three_per_category(self, selector):
        metrics = []
        for offset, category in enumerate(SelectionCategory):
            metrics.extend(
                metric(offset * 10 + i, category, final_score=0.9 - i * 0.1) for i in range(4)
            )

        result = select(selector, metrics)

        assert len(result.selected) == 9
        assert result.category_counts() == {"closer": 3, "neutral": 3, "further": 3}
        assert len(result.remaining) == 3

    def test_best_scores_win_within_category(self, selector):
        metrics = [metric(i, SelectionCategory.CLOSER, final_score=i / 10) for i in range(1, 6)]

        result = select(selector, metrics, target_count=3)

        assert [m.final_score for m in result.selected] == [0.5, 0.4, 0.3]

    def test_shortfall_filled_from_other_categories(self, selector):
        metrics = [metric(i, SelectionCategory.CLOSER, final_score=0.9 - i * 0.05) for i in range(9)]
        metrics.append(metric(50, SelectionCategory.NEUTRAL, final_score=0.2))

        result = select(selector, metrics)

        assert len(result.selected) == 9
        assert len({m.track.id for m in result.selected}) == 9

    def test_labels_follow_bucket(self, selector):
        metrics = [metric(i, SelectionCategory.FURTHER, final_score=0.9 - i * 0.05) for i in range(12)]

        result = select(selector, metrics)

        assert len(result.selected) == 9
        assert result.category_counts() == {"closer": 3, "neutral": 3, "further": 3}
        closer = [m for m in result.selected if m.selection_category == SelectionCategory.CLOSER]
        assert [m.track.id for m in closer] == [m.track.id for m in metrics[:3]]

    def test_neutral_borrows_smallest_diffs(self, selector):
        metrics = [metric(i, SelectionCategory.CLOSER, final_score=0.9 - i * 0.05) for i in range(3)]
        mild = []
        for i in range(3):
            m = metric(10 + i, SelectionCategory.CLOSER, final_score=0.7 - i * 0.05)
            m.a_attraction = 0.56
            mild.append(m)
        metrics.extend(mild)
        metrics.extend(metric(20 + i, SelectionCategory.FURTHER, final_score=0.75 - i * 0.01) for i in range(3))

        result = select(selector, metrics)

        neutral = {m.track.id for m in result.selected if m.selection_category == SelectionCategory.NEUTRAL}
        assert neutral == {m.track.id for m in mild}
        assert result.category_counts() == {"closer": 3, "neutral": 3, "further": 3}

    def test_one_track_per_artist(self, selector):
        metrics = [
            metric(1, SelectionCategory.CLOSER, final_score=0.9, artist_n=7),
            metric(2, SelectionCategory.CLOSER, final_score=0.8, artist_n=7),
            metric(3, SelectionCategory.CLOSER, final_score=0.7),
        ]

        result = select(selector, metrics)

        artist_ids = [m.artist_id for m in result.selected]
        assert len(artist_ids) == len(set(artist_ids)) == 2

    def test_same_artist_name_counts_as_duplicate(self, selector):
        metrics = [
            metric(1, final_score=0.9, name="Twin"),
            metric(2, final_score=0.8, name=" twin "),
        ]

        result = select(selector, metrics)

        assert len(result.selected) == 1

    def test_small_pool_returns_what_exists(self, selector):
        result = select(selector, [metric(1), metric(2, SelectionCategory.FURTHER)])

        assert len(result.selected) == 2

    def test_empty_pool(self, selector):
        result = select(selector, [])

        assert result.selected == []
        assert result.remaining == []


class TestTargetFiltering:
    """Target artists are held back early in the round."""

    @pytest.fixture
    def targets(self):
        target = TargetProfile(artist=TargetArtist(name="Artist 5", id=artist_id(5)), spotify_id=artist_id(5))
        return {PlayerId.PLAYER1: target, PlayerId.PLAYER2: None}

    def test_filtered_early(self, selector, targets):
        metrics = [metric(5, SelectionCategory.CLOSER, final_score=0.99, sim_score=0.2), metric(6)]

        result = select(selector, metrics, round_number=2, target_profiles=targets)

        assert [m.artist_id for m in result.selected] == [artist_id(6)]
        assert result.filtered_artist_names == ["Artist 5"]

    @pytest.mark.parametrize("overrides", [
        {"round_number": 8},
        {"hard_convergence_active": True},
        {"player_gravities": {PlayerId.PLAYER1: 0.8, PlayerId.PLAYER2: 0.3}},
    ])
    def test_kept_when_allowed(self, selector, targets, overrides):
        metrics = [metric(5, SelectionCategory.CLOSER, final_score=0.99, sim_score=0.2), metric(6)]

        result = select(selector, metrics, target_profiles=targets, **overrides)

        assert result.selected[0].artist_id == artist_id(5)
        assert result.selected[0].is_target_artist

    def test_similar_target_kept_early(self, selector, targets):
        metrics = [metric(5, SelectionCategory.CLOSER, final_score=0.99, sim_score=0.6)]

        result = select(selector, metrics, round_number=1, target_profiles=targets)

        assert len(result.selected) == 1
        assert result.filtered_artist_names == []


class TestTargetDiversityInjector:
    """Pool top-up for short categories."""

    @pytest.fixture
    def injector(self, repository, store, engine_config):
        return TargetDiversityInjector(repository, store, engine_config)

    @pytest.mark.asyncio
    async def test_no_acting_target_skips(self, injector, rock_profiles, catalog):
        current = rock_profiles["current"]

        injected = await injector.ensure_target_diversity(
            seeds=[],
            profiles={},
            target_profiles={PlayerId.PLAYER1: None, PlayerId.PLAYER2: make_target(rock_profiles["target"])},
            current_player_id=PlayerId.PLAYER1,
            current_track=make_track(1, ArtistRef(current.id, current.name)),
            current_profile=current,
            excluded_track_ids=set(),
        )

        assert injected == []
        assert sum(catalog.calls.values()) == 0

    @pytest.mark.asyncio
    async def test_closer_injection_from_target_neighbourhood(self, injector, rock_profiles, catalog):
        current, target = rock_profiles["current"], rock_profiles["target"]
        neighbour = ArtistRef(artist_id(30), "Neighbour")
        catalog.related[target.id] = [neighbour]
        catalog.top_tracks[neighbour.id] = [make_track(300, neighbour), make_track(301, neighbour)]
        catalog.top_tracks[target.id] = [make_track(200, ArtistRef(target.id, target.name))]

        injected = await injector.ensure_target_diversity(
            seeds=[],
            profiles={},
            target_profiles={PlayerId.PLAYER1: make_target(target)},
            current_player_id=PlayerId.PLAYER1,
            current_track=make_track(1, ArtistRef(current.id, current.name)),
            current_profile=current,
            excluded_track_ids={make_track(301, neighbour).id},
        )

        sources = {seed.track.id: seed.source for seed in injected}
        assert sources[make_track(300, neighbour).id] == CandidateSource.RELATED_ARTIST_INSERTION
        assert sources[make_track(200, neighbour).id] == CandidateSource.TARGET_BOOST
        assert make_track(301, neighbour).id not in sources

    @pytest.mark.asyncio
    async def test_injection_capped_per_category(self, injector, rock_profiles, catalog, engine_config):
        current, target = rock_profiles["current"], rock_profiles["target"]
        related = [ArtistRef(artist_id(40 + i), f"Related {i}") for i in range(3)]
        catalog.related[target.id] = related
        for i, artist in enumerate(related):
            catalog.top_tracks[artist.id] = [make_track(400 + i * 10 + j, artist) for j in range(4)]

        injected = await injector.ensure_target_diversity(
            seeds=[],
            profiles={},
            target_profiles={PlayerId.PLAYER1: make_target(target)},
            current_player_id=PlayerId.PLAYER1,
            current_track=None,
            current_profile=None,
            excluded_track_ids=set(),
        )

        closer = [s for s in injected if s.source == CandidateSource.RELATED_ARTIST_INSERTION]
        assert len(closer) == engine_config.diversity_injection_per_category

    @pytest.mark.asyncio
    async def test_full_pool_needs_no_injection(self, injector, rock_profiles, catalog):
        target = rock_profiles["target"]
        current = ArtistProfile(id=artist_id(9), name="Plain Rock", genres=["rock"], popularity=40, followers=80000)
        seeds = []
        for profile in (target, current, rock_profiles["far"]):
            for _ in range(3):
                seeds.append(CandidateSeed(make_track(500 + len(seeds), ArtistRef(profile.id, profile.name))))

        injected = await injector.ensure_target_diversity(
            seeds=seeds,
            profiles={p.id: p for p in (target, current, rock_profiles["far"])},
            target_profiles={PlayerId.PLAYER1: make_target(target)},
            current_player_id=PlayerId.PLAYER1,
            current_track=None,
            current_profile=current,
            excluded_track_ids=set(),
        )

        assert injected == []
        assert sum(catalog.calls.values()) == 0
