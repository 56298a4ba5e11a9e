"""
Data model of the playback layer: token bundle, track descriptors, playlists
and the play queue state.
"""

import json
import re
from dataclasses import dataclass, field, replace
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..constants import (KEY_ACCESS_TOKEN, KEY_EXPIRES_AT, KEY_REFRESH_TOKEN,
                         KEY_USER_AUTHENTICATED, TOKEN_EXPIRY_MARGIN_MS)

_TRACK_ID_RE = re.compile(r"^[A-Za-z0-9]+$")
_OPEN_URL_RE = re.compile(r"^https?://open\.spotify\.com/(?:intl-[a-z]+/)?track/([^/?#]+)")


def normalize_track_id(raw: Any) -> Optional[str]:
    """Reduce ``spotify:track:<id>``, open.spotify.com links or bare ids to the id.

    Returns None for missing or malformed input.
    """
    if not isinstance(raw, str):
        return None
    value = raw.strip()
    if not value:
        return None
    match = _OPEN_URL_RE.match(value)
    if match:
        value = match.group(1)
    elif ":" in value:
        value = value.rsplit(":", 1)[-1]
    return value if _TRACK_ID_RE.match(value) else None


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "true", "yes", "on")
    return bool(value)


@dataclass(frozen=True)
class TokenBundle:
    """OAuth token bundle; ``expires_at_epoch_ms`` is always absolute."""
    access_token: Optional[str] = None
    refresh_token: Optional[str] = None
    expires_at_epoch_ms: int = 0
    user_authenticated: bool = False

    @classmethod
    def empty(cls) -> "TokenBundle":
        return cls()

    @property
    def is_empty(self) -> bool:
        return not self.access_token

    @property
    def is_consistent(self) -> bool:
        """A user bundle without a refresh token must be re-derived."""
        return not (self.user_authenticated and not self.refresh_token)

    def is_valid(self, now_ms: int, margin_ms: int = TOKEN_EXPIRY_MARGIN_MS) -> bool:
        return bool(self.access_token) and now_ms < self.expires_at_epoch_ms - margin_ms

    def to_storage(self) -> Dict[str, Any]:
        return {
            KEY_ACCESS_TOKEN: self.access_token,
            KEY_REFRESH_TOKEN: self.refresh_token,
            KEY_EXPIRES_AT: int(self.expires_at_epoch_ms),
            KEY_USER_AUTHENTICATED: bool(self.user_authenticated),
        }

    @classmethod
    def from_storage(cls, data: Mapping[str, Any]) -> "TokenBundle":
        try:
            expires_at = int(float(data.get(KEY_EXPIRES_AT) or 0))
        except (TypeError, ValueError):
            expires_at = 0
        return cls(
            access_token=data.get(KEY_ACCESS_TOKEN) or None,
            refresh_token=data.get(KEY_REFRESH_TOKEN) or None,
            expires_at_epoch_ms=expires_at,
            user_authenticated=_coerce_bool(data.get(KEY_USER_AUTHENTICATED)),
        )


@dataclass(frozen=True)
class TrackDescriptor:
    """A playlist track; either the stored stub or a fully enriched copy."""
    service_track_id: str
    name: str = ""
    artist_name: str = ""
    album_art_url: Optional[str] = None
    preview_url: Optional[str] = None
    album_name: Optional[str] = None
    duration_ms: Optional[int] = None
    resolved: bool = False

    @property
    def track_id(self) -> Optional[str]:
        return normalize_track_id(self.service_track_id)

    @property
    def uri(self) -> Optional[str]:
        track_id = self.track_id
        return f"spotify:track:{track_id}" if track_id else None

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "TrackDescriptor":
        """Build from a stored playlist track (``spotifyId``, ``name``, ``artist``...)."""
        service_id = doc.get("spotifyId") or doc.get("id") or doc.get("uri") or ""
        duration = doc.get("durationMs")
        return cls(
            service_track_id=str(service_id),
            name=str(doc.get("name") or ""),
            artist_name=str(doc.get("artist") or ""),
            album_art_url=doc.get("albumArt") or doc.get("albumImageUrl"),
            preview_url=doc.get("previewUrl"),
            album_name=doc.get("album") or doc.get("albumName"),
            duration_ms=int(duration) if isinstance(duration, (int, float)) else None,
        )

    def to_document(self) -> Dict[str, Any]:
        doc: Dict[str, Any] = {
            "spotifyId": self.service_track_id,
            "name": self.name,
            "artist": self.artist_name,
        }
        optional = {
            "albumArt": self.album_art_url,
            "previewUrl": self.preview_url,
            "album": self.album_name,
            "durationMs": self.duration_ms,
            "uri": self.uri,
        }
        doc.update({k: v for k, v in optional.items() if v is not None})
        return doc

    def merged_with(self, payload: Mapping[str, Any]) -> "TrackDescriptor":
        """Copy enriched with a ``GET /tracks/{id}`` payload; stored names win over catalog ones."""
        album = payload.get("album") or {}
        images = album.get("images") or []
        artists = payload.get("artists") or []
        catalog_artist = artists[0].get("name") if artists and isinstance(artists[0], dict) else None
        duration = payload.get("duration_ms")
        return replace(
            self,
            name=self.name or str(payload.get("name") or ""),
            artist_name=self.artist_name or str(catalog_artist or ""),
            album_art_url=images[0].get("url") if images else self.album_art_url,
            preview_url=payload.get("preview_url") or self.preview_url,
            album_name=album.get("name") or self.album_name,
            duration_ms=int(duration) if isinstance(duration, (int, float)) else self.duration_ms,
            resolved=True,
        )


def _parse_tracks(raw: Any) -> Tuple[TrackDescriptor, ...]:
    """Accept every shape stored playlists use for ``tracks``.

    A list of track objects, a mapping of key to track object, a list of bare
    ids, or a JSON string holding any of those.
    """
    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return ()
        try:
            raw = json.loads(text)
        except ValueError:
            # comma separated ids
            raw = [part.strip() for part in text.split(",") if part.strip()]

    if isinstance(raw, Mapping):
        items = list(raw.values())
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        return ()

    tracks: List[TrackDescriptor] = []
    for item in items:
        if isinstance(item, TrackDescriptor):
            tracks.append(item)
        elif isinstance(item, Mapping):
            tracks.append(TrackDescriptor.from_document(item))
        elif isinstance(item, str) and item.strip():
            tracks.append(TrackDescriptor(service_track_id=item.strip()))
    return tuple(tracks)


@dataclass(frozen=True)
class Playlist:
    playlist_id: str
    name: str = ""
    description: str = ""
    tracks: Tuple[TrackDescriptor, ...] = ()

    @classmethod
    def from_document(cls, doc: Mapping[str, Any]) -> "Playlist":
        return cls(
            playlist_id=str(doc.get("playlistId") or doc.get("_id") or doc.get("id") or ""),
            name=str(doc.get("name") or ""),
            description=str(doc.get("description") or ""),
            tracks=_parse_tracks(doc.get("tracks")),
        )

    def to_document(self) -> Dict[str, Any]:
        return {
            "playlistId": self.playlist_id,
            "name": self.name,
            "description": self.description,
            "tracks": [track.to_document() for track in self.tracks],
        }


@dataclass
class PlayQueueState:
    """Queue state; only TrackQueueController mutates it."""
    ordered_tracks: List[TrackDescriptor] = field(default_factory=list)
    current_index: int = 0
    using_device_playback: bool = False
    last_error: Optional[str] = None
    is_playing: bool = False
    exhausted: bool = False

    @property
    def current_track(self) -> Optional[TrackDescriptor]:
        if not self.ordered_tracks:
            return None
        return self.ordered_tracks[self.current_index]


@dataclass(frozen=True)
class PlaybackState:
    paused: bool
    position_ms: int
    duration_ms: int

    @property
    def remaining_ms(self) -> int:
        return max(0, self.duration_ms - self.position_ms)
