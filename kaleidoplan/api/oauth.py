#!/usr/bin/env python3
"""
🔑 Spotify accounts service access
Token endpoint grants (client credentials, authorization code, refresh token)
and authorize URL construction. All grants use HTTP Basic client auth.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, Optional
from urllib.parse import urlencode

import httpx

from ..config import SpotifyCredentials
from ..constants import AUTHORIZE_URL, TOKEN_URL
from ..errors import AuthExchangeError
from .http import get_http_client

logger = logging.getLogger("kaleidoplan.oauth")


@dataclass
class TokenResponse:
    """Normalized token endpoint response from Spotify."""
    access_token: str
    expires_in: int
    refresh_token: Optional[str] = None
    scope: Optional[str] = None
    token_type: Optional[str] = None
    received_at: float = field(default_factory=time.time)

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "TokenResponse":
        token = payload.get("access_token")
        if not token:
            raise AuthExchangeError("Token response missing access_token")
        try:
            expires_in = int(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600
        return cls(
            access_token=token,
            expires_in=expires_in,
            refresh_token=payload.get("refresh_token"),
            scope=payload.get("scope"),
            token_type=payload.get("token_type"),
        )


class OAuthClient:
    """Talks to ``accounts.spotify.com``; raises :class:`AuthExchangeError` on any failure."""

    def __init__(self, credentials: SpotifyCredentials, http_client: Optional[httpx.AsyncClient] = None):
        self.credentials = credentials
        self._http_client = http_client

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    def authorize_url(
        self,
        *,
        response_type: str,
        redirect_uri: str,
        scopes: Iterable[str],
        state: Optional[str] = None,
        show_dialog: bool = True,
    ) -> str:
        params = {
            "client_id": self.credentials.client_id,
            "response_type": response_type,
            "redirect_uri": redirect_uri,
            "scope": " ".join(scopes),
        }
        if state:
            params["state"] = state
        if show_dialog:
            params["show_dialog"] = "true"
        return f"{AUTHORIZE_URL}?{urlencode(params)}"

    async def _token_request(self, grant_type: str, data: Dict[str, str]) -> TokenResponse:
        if not self.credentials.complete:
            raise AuthExchangeError("Spotify client credentials missing", grant_type=grant_type)

        start = time.perf_counter()
        try:
            response = await self.http.post(
                TOKEN_URL,
                data={"grant_type": grant_type, **data},
                auth=(self.credentials.client_id, self.credentials.client_secret),
            )
        except httpx.HTTPError as exc:
            logger.warning(
                "token.exchange.transport_error",
                extra={"grant_type": grant_type, "error": exc.__class__.__name__},
            )
            raise AuthExchangeError(f"Token request failed: {exc}", grant_type=grant_type) from exc

        elapsed = round(time.perf_counter() - start, 3)
        if response.status_code != 200:
            description = _error_description(response)
            logger.warning(
                "token.exchange.failed",
                extra={"grant_type": grant_type, "status": response.status_code, "elapsed": elapsed},
            )
            raise AuthExchangeError(
                f"Token endpoint returned {response.status_code}: {description}",
                status=response.status_code,
                grant_type=grant_type,
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise AuthExchangeError("Token response is not JSON", grant_type=grant_type) from exc

        token = TokenResponse.from_payload(payload)
        logger.info(
            "token.exchange.ok",
            extra={"grant_type": grant_type, "expires_in": token.expires_in, "elapsed": elapsed},
        )
        return token

    async def client_credentials(self) -> TokenResponse:
        return await self._token_request("client_credentials", {})

    async def exchange_code(self, code: str, redirect_uri: str) -> TokenResponse:
        return await self._token_request(
            "authorization_code", {"code": code, "redirect_uri": redirect_uri}
        )

    async def refresh(self, refresh_token: str) -> TokenResponse:
        """Refresh grant; Spotify may omit a rotated refresh token, so the old one is kept."""
        token = await self._token_request("refresh_token", {"refresh_token": refresh_token})
        if not token.refresh_token:
            token.refresh_token = refresh_token
        return token


def _error_description(response: httpx.Response) -> str:
    try:
        payload = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(payload, dict):
        return str(payload.get("error_description") or payload.get("error") or payload)
    return str(payload)
