"""
Tests for the Spotify catalog client.

HTTP is mocked at ``_make_request`` so only response parsing, id
validation and error mapping are exercised.
"""

from unittest.mock import AsyncMock, patch

import pytest

from dual_gravity.api.catalog_client import SpotifyCatalogClient
from dual_gravity.exceptions import CatalogError
from tests.factories import artist_id, track_id


@pytest.fixture
def client():
    return SpotifyCatalogClient(access_token="player-token")


def raw_artist(n, **extra):
    data = {"id": artist_id(n), "name": f"Artist {n}", "genres": ["rock"], "popularity": 40,
            "followers": {"total": 1200}}
    data.update(extra)
    return data


class TestSpotifyCatalogClient:

    def test_bearer_header(self, client):
        assert client._default_headers()["Authorization"] == "Bearer player-token"

    def test_api_error_extraction(self, client):
        assert client._extract_api_error({"error": {"status": 401, "message": "expired"}}) == "expired"
        assert client._extract_api_error({"artists": []}) is None

    @pytest.mark.asyncio
    async def test_artists_batched(self, client):
        ids = [artist_id(n) for n in range(60)]
        mock = AsyncMock(side_effect=[
            {"artists": [raw_artist(n) for n in range(50)]},
            {"artists": [raw_artist(n) for n in range(50, 60)] + [None]},
        ])

        with patch.object(client, "_make_request", mock):
            profiles = await client.get_artists(ids + ["bad id"])

        assert len(profiles) == 60
        assert mock.await_count == 2
        assert profiles[0].followers == 1200

    @pytest.mark.asyncio
    async def test_invalid_id_skips_request(self, client):
        mock = AsyncMock()

        with patch.object(client, "_make_request", mock):
            assert await client.get_artist("not-an-id") is None
            assert await client.get_related_artists("") == []

        mock.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_missing_track_is_none(self, client):
        mock = AsyncMock(side_effect=CatalogError("not found", status=404))

        with patch.object(client, "_make_request", mock):
            assert await client.get_track(track_id(1)) is None

    @pytest.mark.asyncio
    async def test_server_error_propagates(self, client):
        mock = AsyncMock(side_effect=CatalogError("unavailable", status=503))

        with patch.object(client, "_make_request", mock):
            with pytest.raises(CatalogError):
                await client.get_track(track_id(1))

    @pytest.mark.asyncio
    async def test_top_tracks_parsed(self, client):
        mock = AsyncMock(return_value={"tracks": [{
            "id": track_id(1),
            "name": "Song",
            "artists": [{"id": artist_id(1), "name": "Artist 1"}],
            "album": {"release_date": "2019-05-01"},
            "is_playable": False,
        }]})

        with patch.object(client, "_make_request", mock):
            tracks = await client.get_artist_top_tracks(artist_id(1))

        assert tracks[0].release_date == "2019-05-01"
        assert tracks[0].is_playable is False
        assert tracks[0].primary_artist.id == artist_id(1)

    @pytest.mark.asyncio
    async def test_search_prefers_exact_name(self, client):
        mock = AsyncMock(return_value={"artists": {"items": [
            raw_artist(1, name="The Band Tribute"),
            raw_artist(2, name="The Band"),
        ]}})

        with patch.object(client, "_make_request", mock):
            profile = await client.search_artist("the band")

        assert profile.id == artist_id(2)

    @pytest.mark.asyncio
    async def test_blank_search(self, client):
        assert await client.search_artist("  ") is None

    @pytest.mark.asyncio
    async def test_top_tracks_for_artists_omits_failures(self, client):
        async def top_tracks(artist):
            if artist == artist_id(2):
                raise CatalogError("boom", status=500)
            return []

        with patch.object(client, "get_artist_top_tracks", side_effect=top_tracks):
            result = await client.get_top_tracks_for_artists([artist_id(1), artist_id(2), artist_id(1)])

        assert result == {artist_id(1): []}

    @pytest.mark.asyncio
    async def test_request_without_session(self, client):
        with pytest.raises(CatalogError):
            await client._make_request("artists")
