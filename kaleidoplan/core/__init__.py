"""Playback core: tokens, device session, resolver, queue and playlist enrichment."""

from .device_session import DeviceSessionController, DeviceState
from .enhancer import PlaylistEnhancer
from .models import (Playlist, PlaybackState, PlayQueueState, TokenBundle,
                     TrackDescriptor, normalize_track_id)
from .queue import TrackQueueController
from .resolver import PlaybackResolver, StaticFallbackCatalog
from .token_manager import (AuthorizationCodeTokenManager,
                            ImplicitGrantTokenManager, TokenManager)
from .token_store import (EncryptedFileTokenStore, JsonFileTokenStore,
                          MemoryTokenStore, TokenStore)

__all__ = [
    "AuthorizationCodeTokenManager", "DeviceSessionController", "DeviceState",
    "EncryptedFileTokenStore", "ImplicitGrantTokenManager", "JsonFileTokenStore",
    "MemoryTokenStore", "PlaybackResolver", "PlaybackState", "Playlist",
    "PlaylistEnhancer", "PlayQueueState", "StaticFallbackCatalog", "TokenBundle",
    "TokenManager", "TokenStore", "TrackDescriptor", "TrackQueueController",
    "normalize_track_id",
]
