#!/usr/bin/env python3
"""
🎯 Playback resolver
Decides how a track gets played and never raises:

1. user session with premium: play on the Connect device -> "device"
2. known benign control-plane error on the play call -> "device"
3. otherwise look the track up and return its preview clip URL
4. no preview: ask the fallback catalog, else -> "ADVANCE"
"""

import asyncio
import logging
import re
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Protocol

from ..api.spotify import SpotifyClient
from ..constants import ADVANCE, DEVICE
from ..errors import (ApiRequestError, BenignControlPlaneError, LookupFailure,
                      PlaybackUnavailable)
from ..utils.logger import log_structured
from .device_session import DeviceSessionController
from .models import normalize_track_id
from .token_manager import TokenManager

logger = logging.getLogger("kaleidoplan.resolver")

_PREVIEW_ID_RE = re.compile(r"/mp3-preview/([^/?#]+)")


class FallbackCatalog(Protocol):
    async def preview_url(self, track_id: str) -> Optional[str]: ...


class StaticFallbackCatalog:
    """Fixed track id -> preview URL table (empty unless configured)."""

    def __init__(self, entries: Optional[Mapping[str, str]] = None) -> None:
        self._entries: Dict[str, str] = dict(entries or {})

    def __len__(self) -> int:
        return len(self._entries)

    async def preview_url(self, track_id: str) -> Optional[str]:
        return self._entries.get(track_id)


def proxy_preview_url(url: str, prefix: Optional[str]) -> str:
    """Rewrite ``.../mp3-preview/<id>`` onto ``<prefix>/<id>``; other URLs pass through."""
    if not prefix:
        return url
    match = _PREVIEW_ID_RE.search(url)
    if not match:
        return url
    return f"{prefix.rstrip('/')}/{match.group(1)}"


class PlaybackResolver:
    def __init__(
        self,
        token_manager: TokenManager,
        device_session: DeviceSessionController,
        client: SpotifyClient,
        *,
        fallback_catalog: Optional[FallbackCatalog] = None,
        market: Optional[str] = None,
        preview_proxy_prefix: Optional[str] = None,
        verify_attempts: int = 3,
        verify_wait: float = 0.5,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._token_manager = token_manager
        self._device = device_session
        self._client = client
        self._fallback = fallback_catalog or StaticFallbackCatalog()
        self.market = market
        self.preview_proxy_prefix = preview_proxy_prefix
        self.verify_attempts = verify_attempts
        self.verify_wait = verify_wait
        self._sleep = sleep
        self._premium: Optional[bool] = None

    def reset(self) -> None:
        """Forget the cached entitlement (sign-out)."""
        self._premium = None

    async def is_premium(self) -> bool:
        """``GET /me`` product check, cached once known for the session."""
        if self._premium is not None:
            return self._premium
        if not self._token_manager.is_user_authenticated():
            return False
        token = await self._token_manager.authenticate()
        if not token:
            return False
        try:
            profile = await self._client.get_me(token)
        except ApiRequestError as exc:
            logger.warning("resolver.premium_check.failed", extra={"status": exc.status, "error": exc.message})
            return False
        self._premium = profile.get("product") == "premium"
        logger.info("resolver.premium_check", extra={"premium": self._premium})
        return self._premium

    async def resolve(self, track_id: Any) -> str:
        """Return ``"device"``, a preview URL or ``"ADVANCE"``."""
        try:
            return await self._resolve(track_id)
        except Exception:
            logger.exception("resolver.unexpected_error", extra={"track_id": str(track_id)})
            return ADVANCE

    async def _resolve(self, raw_id: Any) -> str:
        track_id = normalize_track_id(raw_id)
        if track_id is None:
            log_structured(logger, logging.INFO, "resolver.advance", reason="malformed id", track_id=str(raw_id))
            return ADVANCE

        if self._token_manager.is_user_authenticated() and await self._play_on_device(track_id):
            return DEVICE

        preview = await self._lookup_preview(track_id)
        if preview:
            log_structured(logger, logging.INFO, "resolver.fallback.preview", track_id=track_id)
            return proxy_preview_url(preview, self.preview_proxy_prefix)

        fallback = await self._fallback_preview(track_id)
        if fallback:
            log_structured(logger, logging.INFO, "resolver.fallback.catalog", track_id=track_id)
            return proxy_preview_url(fallback, self.preview_proxy_prefix)

        log_structured(logger, logging.INFO, "resolver.advance", reason="no preview", track_id=track_id)
        return ADVANCE

    async def _play_on_device(self, track_id: str) -> bool:
        if not await self.is_premium():
            logger.debug("resolver.device.skip", extra={"reason": "not premium"})
            return False
        if not await self._device.ensure_ready():
            logger.info("resolver.device.unavailable", extra={"error": self._device.last_error})
            return False

        token = await self._token_manager.authenticate()
        device_id = self._device.device_id
        if not token or not device_id:
            return False

        try:
            await self._client.play_track(track_id, device_id, token)
        except BenignControlPlaneError as exc:
            # the audio starts regardless of this error
            logger.info("resolver.device.benign_error", extra={"track_id": track_id, "error": exc.message})
            return True
        except PlaybackUnavailable as exc:
            logger.info(
                "resolver.device.unavailable",
                extra={"track_id": track_id, "status": exc.status, "reason": exc.reason},
            )
            return False
        except ApiRequestError as exc:
            logger.warning("resolver.device.failed", extra={"track_id": track_id, "status": exc.status, "error": exc.message})
            return False

        if await self._verify_playback(track_id, device_id, token):
            logger.info("resolver.device.playing", extra={"track_id": track_id})
            return True
        logger.info("resolver.device.silent", extra={"track_id": track_id})
        return False

    async def _verify_playback(self, track_id: str, device_id: str, token: str) -> bool:
        """Poll the player API to ensure playback is active on the expected device."""
        if self.verify_attempts <= 0:
            return True
        expected_uri = f"spotify:track:{track_id}"

        for attempt in range(self.verify_attempts):
            try:
                playback = await self._client.get_playback(token)
            except ApiRequestError as exc:
                logger.debug("verify_playback fetch failed: %s", exc)
                playback = None

            if playback:
                active_device_id = (playback.get("device") or {}).get("id")
                item_uri = (playback.get("item") or {}).get("uri")
                audible = bool(playback.get("is_playing")) or (playback.get("progress_ms") or 0) > 0
                if active_device_id == device_id and item_uri == expected_uri and audible:
                    return True

            if attempt + 1 < self.verify_attempts:
                await self._sleep(self.verify_wait)
        return False

    async def _lookup_preview(self, track_id: str) -> Optional[str]:
        token = await self._token_manager.authenticate()
        if not token:
            logger.warning("resolver.lookup.no_token", extra={"track_id": track_id})
            return None
        try:
            payload = await self._client.get_track(track_id, token, market=self.market)
        except LookupFailure as exc:
            logger.info("resolver.lookup.failed", extra={"track_id": track_id, "status": exc.status})
            return None
        return payload.get("preview_url") or None

    async def _fallback_preview(self, track_id: str) -> Optional[str]:
        try:
            return await self._fallback.preview_url(track_id)
        except Exception as exc:
            logger.warning("resolver.fallback.failed", extra={"track_id": track_id, "error": str(exc)})
            return None
