"""Async access to the Spotify accounts service and Web API."""

from .oauth import OAuthClient, TokenResponse
from .spotify import SpotifyClient

__all__ = ["OAuthClient", "SpotifyClient", "TokenResponse"]
