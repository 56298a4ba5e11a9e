"""Tests for playlist enrichment."""

import asyncio

import httpx

from kaleidoplan.api.spotify import SpotifyClient
from kaleidoplan.core.enhancer import PlaylistEnhancer
from kaleidoplan.core.models import Playlist, TrackDescriptor

from .fakes import FakeTokenManager, no_sleep, track_payload


def make_enhancer(http_client, token="app-token", concurrency=3) -> PlaylistEnhancer:
    client = SpotifyClient(http_client, max_attempts=1, sleep=no_sleep)
    return PlaylistEnhancer(FakeTokenManager(token=token, user=False), client, concurrency=concurrency)


def stub_playlist(*ids: str) -> Playlist:
    return Playlist(
        playlist_id="pl-1",
        name="Sunrise",
        tracks=tuple(TrackDescriptor(service_track_id=track_id, name=f"Stored {track_id}") for track_id in ids),
    )


async def test_enriches_tracks_in_order(spotify, http_client):
    for track_id in ("aaa", "bbb", "ccc"):
        spotify.on("GET", f"/v1/tracks/{track_id}", (200, track_payload(track_id, f"https://p.scdn.co/mp3-preview/{track_id}")))

    result = await make_enhancer(http_client).enhance(stub_playlist("aaa", "bbb", "ccc"))

    assert [track.service_track_id for track in result.tracks] == ["aaa", "bbb", "ccc"]
    assert all(track.resolved for track in result.tracks)
    first = result.tracks[0]
    assert first.name == "Stored aaa"
    assert first.artist_name == "Artist"
    assert first.album_art_url == "https://i.scdn.co/image/aaa"
    assert first.preview_url == "https://p.scdn.co/mp3-preview/aaa"
    assert first.duration_ms == 200_000


async def test_failed_lookup_keeps_stub(spotify, http_client):
    spotify.on("GET", "/v1/tracks/aaa", (200, track_payload("aaa")))
    spotify.on("GET", "/v1/tracks/bbb", (404, {"error": {"status": 404, "message": "Non existing id"}}))
    spotify.on("GET", "/v1/tracks/ccc", (200, track_payload("ccc")))
    playlist = stub_playlist("aaa", "bbb", "ccc")

    result = await make_enhancer(http_client).enhance(playlist)

    assert result is not playlist
    assert result.tracks[0].resolved and result.tracks[2].resolved
    assert result.tracks[1] is playlist.tracks[1]
    # the input playlist is never modified
    assert not any(track.resolved for track in playlist.tracks)


async def test_resolved_playlist_is_returned_as_is(spotify, http_client):
    playlist = Playlist(playlist_id="pl-1", tracks=(TrackDescriptor(service_track_id="aaa", resolved=True),))

    assert await make_enhancer(http_client).enhance(playlist) is playlist
    assert spotify.calls == []


async def test_without_token_nothing_is_fetched(spotify, http_client):
    playlist = stub_playlist("aaa")

    assert await make_enhancer(http_client, token=None).enhance(playlist) is playlist
    assert spotify.calls == []


async def test_malformed_id_is_left_alone(spotify, http_client):
    spotify.on("GET", "/v1/tracks/aaa", (200, track_payload("aaa")))

    result = await make_enhancer(http_client).enhance(stub_playlist("aaa", "not valid!"))

    assert result.tracks[1].resolved is False
    assert spotify.count("GET", "/v1/tracks/aaa") == 1
    assert len(spotify.calls) == 1


async def test_concurrency_is_bounded(spotify, http_client):
    active = 0
    peak = 0

    async def slow_track(request: httpx.Request) -> httpx.Response:
        nonlocal active, peak
        active += 1
        peak = max(peak, active)
        await asyncio.sleep(0.01)
        active -= 1
        return httpx.Response(200, json=track_payload(request.url.path.rsplit("/", 1)[-1]))

    ids = [f"t{i}" for i in range(6)]
    for track_id in ids:
        spotify.on("GET", f"/v1/tracks/{track_id}", slow_track)

    result = await make_enhancer(http_client, concurrency=2).enhance(stub_playlist(*ids))

    assert peak <= 2
    assert all(track.resolved for track in result.tracks)


async def test_unexpected_lookup_error_keeps_stub(spotify, http_client):
    spotify.on("GET", "/v1/tracks/aaa", (200, track_payload("aaa")))
    spotify.on("GET", "/v1/tracks/ccc", (200, track_payload("ccc")))
    enhancer = make_enhancer(http_client)
    get_track = enhancer._client.get_track

    async def flaky_get_track(track_id, token, market=None):
        if track_id == "bbb":
            raise RuntimeError("boom")
        return await get_track(track_id, token, market=market)

    enhancer._client.get_track = flaky_get_track
    playlist = stub_playlist("aaa", "bbb", "ccc")

    result = await enhancer.enhance(playlist)

    assert [track.resolved for track in result.tracks] == [True, False, True]
    assert result.tracks[1] is playlist.tracks[1]


async def test_non_object_payload_keeps_stub(spotify, http_client):
    spotify.on("GET", "/v1/tracks/aaa", (200, track_payload("aaa")))
    spotify.on("GET", "/v1/tracks/bbb", (200, ["not", "an", "object"]))
    spotify.on("GET", "/v1/tracks/ccc", (200, {**track_payload("ccc"), "album": "flat string"}))
    playlist = stub_playlist("aaa", "bbb", "ccc")

    result = await make_enhancer(http_client).enhance(playlist)

    assert result.tracks[0].resolved is True
    assert result.tracks[1] is playlist.tracks[1]
    assert result.tracks[2] is playlist.tracks[2]
