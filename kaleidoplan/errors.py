"""
Exception classes for the Kaleidoplan playback layer.

These are raised inside the API layer and caught at component boundaries:
token managers return ``None``/``False``, the device controller returns
``False``, the resolver returns a sentinel and the enhancer leaves the stub
untouched. None of them should reach the UI.

Exception Hierarchy:
    KaleidoplanError (base)
        AuthExchangeError - token endpoint answered non-2xx or unusable payload
        AuthStateMismatch - authorization redirect carried the wrong state nonce
        DeviceInitError - playback SDK failed to load, connect or authenticate
        ApiRequestError - Web API answered non-2xx
            PlaybackUnavailable - 403 premium required / 404 not playable
            BenignControlPlaneError - known false-negative on a play command
            LookupFailure - track metadata could not be fetched
"""

from typing import Any, Dict, Optional


class KaleidoplanError(Exception):
    """
    Base exception for all playback layer errors.

    Attributes:
        message: Human-readable error description.
        details: Optional dictionary with additional context (track id, status, ...).
    """

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        return self.message


class AuthExchangeError(KaleidoplanError):
    """Raised when the accounts service rejects a grant (any non-2xx)."""

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        grant_type: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status
        self.grant_type = grant_type


class AuthStateMismatch(KaleidoplanError):
    """Raised when the authorization redirect's ``state`` does not match the stored nonce."""


class DeviceInitError(KaleidoplanError):
    """Raised when the playback SDK cannot be loaded or the device reports an init/auth/account error."""


class ApiRequestError(KaleidoplanError):
    """
    Raised when the Web API answers with a non-2xx status.

    Attributes:
        status: HTTP status code (None for transport failures).
        reason: Spotify's machine readable reason (e.g. ``PREMIUM_REQUIRED``).
    """

    def __init__(
        self,
        message: str,
        status: Optional[int] = None,
        reason: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details)
        self.status = status
        self.reason = reason


class PlaybackUnavailable(ApiRequestError):
    """403 (premium required) or 404 (track not playable) from the device play call."""


class BenignControlPlaneError(ApiRequestError):
    """The service's known false-negative on a play command whose audio actually starts."""


class LookupFailure(ApiRequestError):
    """Track metadata lookup failed."""
