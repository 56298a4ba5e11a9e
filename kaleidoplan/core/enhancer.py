"""Playlist enrichment with live catalog metadata."""

import asyncio
import logging
from dataclasses import replace
from typing import Mapping, Optional

from ..api.spotify import SpotifyClient
from ..errors import KaleidoplanError, LookupFailure
from .models import Playlist, TrackDescriptor
from .token_manager import TokenManager

logger = logging.getLogger("kaleidoplan.enhancer")


class PlaylistEnhancer:
    """Returns an enriched copy of a playlist; the input is never touched.

    A failed lookup leaves that one stub as it was.
    """

    def __init__(
        self,
        token_manager: TokenManager,
        client: SpotifyClient,
        *,
        concurrency: int = 3,
        market: Optional[str] = None,
    ) -> None:
        self._token_manager = token_manager
        self._client = client
        self.concurrency = max(1, concurrency)
        self.market = market

    async def enhance(self, playlist: Playlist) -> Playlist:
        pending = [track for track in playlist.tracks if not track.resolved]
        if not pending:
            return playlist

        token = await self._token_manager.authenticate()
        if not token:
            logger.warning("enhancer.no_token", extra={"playlist_id": playlist.playlist_id})
            return playlist

        semaphore = asyncio.Semaphore(self.concurrency)

        async def enrich(track: TrackDescriptor) -> TrackDescriptor:
            if track.resolved:
                return track
            async with semaphore:
                return await self._enrich_track(track, token)

        tracks = await asyncio.gather(*(enrich(track) for track in playlist.tracks))
        enriched = sum(1 for before, after in zip(playlist.tracks, tracks) if after is not before)
        logger.info(
            "enhancer.done",
            extra={"playlist_id": playlist.playlist_id, "enriched": enriched, "total": len(tracks)},
        )
        return replace(playlist, tracks=tuple(tracks))

    async def _enrich_track(self, track: TrackDescriptor, token: str) -> TrackDescriptor:
        track_id = track.track_id
        if track_id is None:
            logger.debug("enhancer.skip", extra={"track": track.service_track_id})
            return track
        try:
            payload = await self._client.get_track(track_id, token, market=self.market)
            if not isinstance(payload, Mapping):
                raise LookupFailure("Track response is not an object", details={"track_id": track_id})
            return track.merged_with(payload)
        except KaleidoplanError as exc:
            logger.warning("enhancer.track_failed", extra={"track_id": track_id, "error": str(exc)})
        except Exception:
            logger.exception("enhancer.unexpected_error", extra={"track_id": track_id})
        return track
