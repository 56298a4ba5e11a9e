"""Tests for the playback data model."""

import json

import pytest

from kaleidoplan.constants import (KEY_ACCESS_TOKEN, KEY_EXPIRES_AT,
                                   KEY_REFRESH_TOKEN, KEY_USER_AUTHENTICATED)
from kaleidoplan.core.models import (Playlist, TokenBundle, TrackDescriptor,
                                     normalize_track_id)


class TestTrackIds:
    @pytest.mark.parametrize("raw,expected", [
        ("4uLU6hMCjMI75M1A2tKUQC", "4uLU6hMCjMI75M1A2tKUQC"),
        ("spotify:track:4uLU6hMCjMI75M1A2tKUQC", "4uLU6hMCjMI75M1A2tKUQC"),
        ("https://open.spotify.com/track/4uLU6hMCjMI75M1A2tKUQC?si=abc", "4uLU6hMCjMI75M1A2tKUQC"),
        ("https://open.spotify.com/intl-de/track/4uLU6hMCjMI75M1A2tKUQC", "4uLU6hMCjMI75M1A2tKUQC"),
        ("  abc123  ", "abc123"),
        ("", None),
        ("abc-123", None),
        (None, None),
        (123, None),
    ])
    def test_normalize(self, raw, expected):
        assert normalize_track_id(raw) == expected

    def test_descriptor_uri(self):
        assert TrackDescriptor(service_track_id="spotify:track:abc").uri == "spotify:track:abc"
        assert TrackDescriptor(service_track_id="bad id").uri is None


class TestPlaylistDocuments:
    def test_list_of_track_objects(self):
        playlist = Playlist.from_document({
            "playlistId": "pl-1",
            "name": "Sunrise",
            "tracks": [{"spotifyId": "aaa", "name": "One", "artist": "A", "albumArt": "https://img/1"}],
        })

        track = playlist.tracks[0]
        assert playlist.playlist_id == "pl-1"
        assert (track.service_track_id, track.name, track.artist_name, track.album_art_url) == ("aaa", "One", "A", "https://img/1")
        assert track.resolved is False

    def test_mapping_of_tracks(self):
        playlist = Playlist.from_document({"_id": "pl-2", "tracks": {"0": {"spotifyId": "aaa"}, "1": {"spotifyId": "bbb"}}})

        assert playlist.playlist_id == "pl-2"
        assert [t.service_track_id for t in playlist.tracks] == ["aaa", "bbb"]

    def test_json_string_and_bare_ids(self):
        playlist = Playlist.from_document({"id": "pl-3", "tracks": json.dumps(["aaa", {"spotifyId": "bbb"}])})

        assert [t.service_track_id for t in playlist.tracks] == ["aaa", "bbb"]

    def test_comma_separated_ids(self):
        playlist = Playlist.from_document({"id": "pl-4", "tracks": "aaa, bbb,,ccc"})

        assert [t.service_track_id for t in playlist.tracks] == ["aaa", "bbb", "ccc"]

    @pytest.mark.parametrize("tracks", [None, "", 42])
    def test_missing_tracks(self, tracks):
        assert Playlist.from_document({"id": "pl-5", "tracks": tracks}).tracks == ()

    def test_document_round_trip_keeps_fields(self):
        doc = {"playlistId": "pl-1", "name": "Sunrise", "description": "", "tracks": [{"spotifyId": "aaa", "name": "One", "artist": "A"}]}

        out = Playlist.from_document(doc).to_document()

        assert out["tracks"][0]["spotifyId"] == "aaa"
        assert out["tracks"][0]["uri"] == "spotify:track:aaa"
        assert "previewUrl" not in out["tracks"][0]


class TestTrackMerge:
    def test_stored_names_win(self):
        stub = TrackDescriptor(service_track_id="aaa", name="Stored", preview_url="https://old/clip")

        merged = stub.merged_with({
            "name": "Catalog",
            "artists": [{"name": "First"}, {"name": "Second"}],
            "album": {"name": "Album", "images": []},
            "preview_url": None,
            "duration_ms": 1000,
        })

        assert merged.name == "Stored"
        assert merged.artist_name == "First"
        assert merged.preview_url == "https://old/clip"
        assert merged.album_art_url is None
        assert merged.resolved is True
        assert stub.resolved is False


class TestTokenBundle:
    def test_validity_respects_margin(self):
        bundle = TokenBundle(access_token="a", expires_at_epoch_ms=100_000)

        assert bundle.is_valid(now_ms=30_000, margin_ms=60_000)
        assert not bundle.is_valid(now_ms=40_000, margin_ms=60_000)
        assert not TokenBundle.empty().is_valid(now_ms=0)

    def test_user_bundle_needs_refresh_token(self):
        assert not TokenBundle(access_token="a", user_authenticated=True).is_consistent
        assert TokenBundle(access_token="a", refresh_token="r", user_authenticated=True).is_consistent
        assert TokenBundle(access_token="a").is_consistent

    def test_storage_round_trip(self):
        bundle = TokenBundle(access_token="a", refresh_token="r", expires_at_epoch_ms=123, user_authenticated=True)

        stored = bundle.to_storage()

        assert stored[KEY_EXPIRES_AT] == 123
        assert TokenBundle.from_storage(stored) == bundle

    def test_from_storage_tolerates_strings(self):
        bundle = TokenBundle.from_storage({
            KEY_ACCESS_TOKEN: "a",
            KEY_REFRESH_TOKEN: "",
            KEY_EXPIRES_AT: "1700000000000",
            KEY_USER_AUTHENTICATED: "false",
        })

        assert bundle.refresh_token is None
        assert bundle.expires_at_epoch_ms == 1_700_000_000_000
        assert bundle.user_authenticated is False
