"""
🎵 Playback Service - Business Logic for the music layer
========================================================

Facade over a PlaybackSession for front ends: sign-in status, premium
entitlement, login/logout, track resolution and playlist enrichment.
"""

from typing import Any, Dict, Mapping

from . import BaseService, ServiceResult
from ..constants import ADVANCE, DEVICE
from ..core.models import Playlist
from .playback_session import PlaybackSession


class PlaybackService(BaseService):
    """Service for the Spotify playback integration."""

    def __init__(self, session: PlaybackSession):
        super().__init__("playback")
        self.session = session

    async def start(self) -> ServiceResult:
        try:
            await self.session.start()
        except Exception as e:
            return self._handle_error(e, "start")
        return self.initialize()

    async def get_authentication_status(self) -> ServiceResult:
        """Check whether any token (app or user) can be obtained."""
        try:
            token = await self.session.token_manager.authenticate()
            if not token:
                return self._error_result(
                    "Spotify authentication required. Please configure your credentials.",
                    error_code="AUTH_REQUIRED"
                )
            return self._success_result(
                data={
                    "authenticated": True,
                    "user_authenticated": self.session.token_manager.is_user_authenticated(),
                    "token_cache": self.session.token_manager.get_cache_info(),
                },
                message="Spotify authentication successful"
            )
        except Exception as e:
            return self._handle_error(e, "get_authentication_status")

    async def get_premium_status(self) -> ServiceResult:
        try:
            if not self.session.token_manager.is_user_authenticated():
                return self._error_result("Sign in to check Spotify Premium", error_code="AUTH_REQUIRED")
            premium = await self.session.resolver.is_premium()
            return self._success_result(data={"premium": premium})
        except Exception as e:
            return self._handle_error(e, "get_premium_status")

    async def login(self) -> ServiceResult:
        try:
            if await self.session.token_manager.login():
                return self._success_result(message="Spotify account connected")
            return self._error_result("Spotify sign-in was cancelled or failed", error_code="LOGIN_FAILED")
        except Exception as e:
            return self._handle_error(e, "login")

    async def logout(self) -> ServiceResult:
        try:
            await self.session.token_manager.disconnect()
            return self._success_result(message="Spotify account disconnected")
        except Exception as e:
            return self._handle_error(e, "logout")

    async def resolve_track(self, track_id: str) -> ServiceResult:
        result = await self.session.resolver.resolve(track_id)
        if result == DEVICE:
            data: Dict[str, Any] = {"mode": "device", "device": self.session.config.device_name}
        elif result == ADVANCE:
            data = {"mode": "advance"}
        else:
            data = {"mode": "preview", "preview_url": result}
        return self._success_result(data=data)

    async def enhance_playlist(self, document: Mapping[str, Any]) -> ServiceResult:
        """Enrich a stored playlist document; returns the enriched document."""
        try:
            playlist = Playlist.from_document(document)
            enhanced = await self.session.enhancer.enhance(playlist)
            resolved = sum(1 for track in enhanced.tracks if track.resolved)
            return self._success_result(
                data=enhanced.to_document(),
                message=f"Enriched {resolved} of {len(enhanced.tracks)} tracks"
            )
        except Exception as e:
            return self._handle_error(e, "enhance_playlist")

    async def health_check(self) -> ServiceResult:
        if not self._initialized:
            return ServiceResult(
                success=False,
                message=f"{self.name} service not initialized",
                error_code="NOT_INITIALIZED"
            )
        return self._success_result(
            data={
                "status": "healthy",
                "service": self.name,
                "device_state": self.session.device.state.value,
                "breaker_open": self.session.client.breaker.is_open(),
                "token_cache": self.session.token_manager.get_cache_info(),
            }
        )
