"""
🎧 Playback session - composition root
One session object per signed-in user: one token bundle, one device, one
resolver/queue/enhancer wired to them. Nothing in the core is global.
"""

import logging
from pathlib import Path
from typing import Optional

import httpx

from ..api.oauth import OAuthClient
from ..api.spotify import SpotifyClient
from ..config import SpotifyCredentials
from ..config_schema import PlayerConfig
from ..core.auth_dialog import AuthorizationDialog, LoopbackAuthorizationDialog
from ..core.connect_sdk import ConnectPlaybackSDK, PlaybackSDK
from ..core.device_session import DeviceSessionController
from ..core.enhancer import PlaylistEnhancer
from ..core.queue import AudioOutput, TrackQueueController
from ..core.resolver import FallbackCatalog, PlaybackResolver, StaticFallbackCatalog
from ..core.token_manager import TokenManager, create_token_manager
from ..core.token_store import TokenStore, create_token_store

logger = logging.getLogger("kaleidoplan.session")


class PlaybackSession:
    """Wires the playback core together for one signed-in session.

    Every collaborator can be injected, which is how the tests swap in a
    memory store, a fake SDK or a mock transport.
    """

    def __init__(
        self,
        config: PlayerConfig,
        credentials: SpotifyCredentials,
        *,
        http_client: Optional[httpx.AsyncClient] = None,
        store: Optional[TokenStore] = None,
        dialog: Optional[AuthorizationDialog] = None,
        sdk: Optional[PlaybackSDK] = None,
        fallback_catalog: Optional[FallbackCatalog] = None,
    ) -> None:
        self.config = config
        redirect_uri = credentials.redirect_uri or config.redirect_uri

        self.client = SpotifyClient(http_client, benign_markers=config.benign_error_markers)
        self.oauth = OAuthClient(credentials, http_client)
        self.store = store or create_token_store(config.token_store, str(Path(config.token_path).expanduser()))

        if dialog is None:
            try:
                dialog = LoopbackAuthorizationDialog(redirect_uri)
            except ValueError as exc:
                logger.warning("session.no_dialog", extra={"error": str(exc)})

        self.token_manager: TokenManager = create_token_manager(
            config.grant,
            self.oauth,
            self.store,
            redirect_uri=redirect_uri,
            dialog=dialog,
            show_dialog=config.show_dialog,
            dialog_timeout=config.auth_dialog_timeout,
        )
        self.sdk = sdk or ConnectPlaybackSDK(self.client, poll_interval=config.device_poll_interval)
        self.device = DeviceSessionController(
            self.token_manager,
            self.sdk,
            device_name=config.device_name,
            connect_timeout=config.device_connect_timeout,
        )
        self.resolver = PlaybackResolver(
            self.token_manager,
            self.device,
            self.client,
            fallback_catalog=fallback_catalog or StaticFallbackCatalog(),
            market=config.market,
            preview_proxy_prefix=config.preview_proxy_prefix,
            verify_attempts=config.playback_verify_attempts,
            verify_wait=config.playback_verify_wait,
        )
        self.enhancer = PlaylistEnhancer(
            self.token_manager,
            self.client,
            concurrency=config.enhance_concurrency,
            market=config.market,
        )
        self.queue: Optional[TrackQueueController] = None

        self.token_manager.add_disconnect_listener(self.device.teardown)
        self.token_manager.add_disconnect_listener(self.resolver.reset)

    def create_queue(self, audio: AudioOutput) -> TrackQueueController:
        """Build the queue controller around the UI's preview audio output."""
        self.queue = TrackQueueController(
            self.resolver,
            self.device,
            audio,
            poll_interval=self.config.end_of_track_poll_interval,
            advance_delay=self.config.advance_delay,
        )
        self.token_manager.add_disconnect_listener(self.queue.stop)
        return self.queue

    async def start(self) -> None:
        """Restore the persisted token bundle."""
        await self.token_manager.restore()
        logger.info(
            "session.start",
            extra={"grant": self.config.grant, "user_authenticated": self.token_manager.is_user_authenticated()},
        )

    async def close(self) -> None:
        if self.queue is not None:
            await self.queue.stop()
        await self.device.teardown()

