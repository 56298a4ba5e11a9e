#!/usr/bin/env python3
"""
🎵 Spotify Web API Integration for Kaleidoplan
Provides the async Web API surface the playback layer needs:
- Track catalog lookups and the current user's profile
- Playback control on a Connect device
- Retry with backoff on 429/5xx, a small circuit breaker and
  single-flight de-duplication of identical concurrent GETs
"""

import asyncio
import logging
import os
import random
import time
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional, Type

import httpx

from ..constants import API_BASE_URL
from ..errors import (ApiRequestError, BenignControlPlaneError, LookupFailure,
                      PlaybackUnavailable)
from ..utils.single_flight import SingleFlight, freeze_value
from .http import BACKOFF_FACTOR, BREAKER_COOLDOWN, BREAKER_THRESHOLD, get_http_client

__all__ = ["SpotifyClient", "CircuitBreaker", "compute_backoff"]

logger = logging.getLogger("kaleidoplan.spotify")


def _coerce_float(value: Optional[str], default: float) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


PLAYER_MAX_ATTEMPTS = max(1, int(os.getenv('KALEIDOPLAN_PLAYER_RETRIES', '3')))
PLAYER_BACKOFF_JITTER = _coerce_float(os.getenv('KALEIDOPLAN_PLAYER_JITTER', None), 0.35)
RETRYABLE_STATUS = (429, 500, 502, 503, 504)
MAX_RETRY_AFTER = 30.0


def compute_backoff(base: float, attempt: int, jitter: float, cap: float = 15.0) -> float:
    """Compute exponential backoff with jitter."""
    delay = base * (2 ** max(attempt - 1, 0))
    jitter_value = random.uniform(0, delay * max(jitter, 0.0))
    return min(delay + jitter_value, cap)


def _retry_after(response: httpx.Response) -> Optional[float]:
    raw = response.headers.get("Retry-After")
    if raw is None:
        return None
    try:
        return min(max(0.0, float(raw)), MAX_RETRY_AFTER)
    except ValueError:
        return None


class CircuitBreaker:
    """Opens after ``threshold`` consecutive failures and stays open for ``cooldown`` seconds."""

    def __init__(
        self,
        threshold: int = BREAKER_THRESHOLD,
        cooldown: float = BREAKER_COOLDOWN,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.threshold = threshold
        self.cooldown = cooldown
        self._clock = clock
        self.consecutive_failures = 0
        self.open_until = 0.0

    def is_open(self) -> bool:
        return self._clock() < self.open_until

    def on_success(self) -> None:
        self.consecutive_failures = 0
        self.open_until = 0.0

    def on_failure(self) -> None:
        self.consecutive_failures += 1
        if self.consecutive_failures >= self.threshold:
            self.open_until = self._clock() + self.cooldown
            logger.warning(
                "spotify.breaker.open",
                extra={"failures": self.consecutive_failures, "cooldown": self.cooldown},
            )


def _error_fields(response: httpx.Response) -> tuple[str, Optional[str]]:
    """Extract ``(message, reason)`` from a Web API error body."""
    try:
        payload = response.json()
    except ValueError:
        return (response.text or f"HTTP {response.status_code}")[:300], None
    error = payload.get("error") if isinstance(payload, dict) else None
    if isinstance(error, dict):
        return str(error.get("message") or f"HTTP {response.status_code}"), error.get("reason")
    if isinstance(error, str):
        return error, None
    return f"HTTP {response.status_code}", None


class SpotifyClient:
    """Async Spotify Web API client.

    Non-2xx answers surface as :class:`ApiRequestError` subclasses; callers
    at component boundaries decide what a failure means.
    """

    def __init__(
        self,
        http_client: Optional[httpx.AsyncClient] = None,
        *,
        base_url: str = API_BASE_URL,
        max_attempts: int = PLAYER_MAX_ATTEMPTS,
        backoff_base: float = BACKOFF_FACTOR,
        backoff_jitter: float = PLAYER_BACKOFF_JITTER,
        breaker: Optional[CircuitBreaker] = None,
        benign_markers: Iterable[str] = (),
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._http_client = http_client
        self.base_url = base_url.rstrip("/")
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_jitter = backoff_jitter
        self.breaker = breaker or CircuitBreaker()
        self.benign_markers = tuple(benign_markers)
        self._sleep = sleep
        self._single_flight = SingleFlight("spotify.get")

    @property
    def http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    async def request(
        self,
        method: str,
        path: str,
        *,
        token: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        """Send a request with retries; identical concurrent GETs share one response."""
        if self.breaker.is_open():
            raise ApiRequestError("Spotify API temporarily unavailable (circuit breaker open)")

        method_upper = method.upper()
        url = f"{self.base_url}/{path.lstrip('/')}"

        async def send() -> httpx.Response:
            return await self._send_with_retries(method_upper, url, token, params, json)

        if method_upper == "GET":
            # the token is part of the key so two identities never share a response
            key = (method_upper, url, freeze_value(params or {}), token)
            return await self._single_flight.run(key, send)
        return await send()

    async def _send_with_retries(
        self,
        method: str,
        url: str,
        token: str,
        params: Optional[Dict[str, Any]],
        json: Optional[Dict[str, Any]],
    ) -> httpx.Response:
        headers = {"Authorization": f"Bearer {token}"}
        path_fragment = url.split("/v1/")[-1].split("?")[0]
        attempt = 0

        while True:
            attempt += 1
            start = time.perf_counter()
            try:
                response = await self.http.request(method, url, headers=headers, params=params, json=json)
            except httpx.HTTPError as exc:
                self.breaker.on_failure()
                logger.warning(
                    "spotify.request.error",
                    extra={
                        "method": method,
                        "path": path_fragment,
                        "elapsed": round(time.perf_counter() - start, 3),
                        "error": exc.__class__.__name__,
                        "attempt": attempt,
                    },
                )
                if attempt >= self.max_attempts:
                    raise ApiRequestError(f"{method} {path_fragment} failed: {exc}") from exc
                await self._sleep(compute_backoff(self.backoff_base, attempt, self.backoff_jitter))
                continue

            status = response.status_code
            if status in RETRYABLE_STATUS and attempt < self.max_attempts:
                delay = _retry_after(response) if status == 429 else None
                if delay is None:
                    delay = compute_backoff(self.backoff_base, attempt, self.backoff_jitter)
                logger.info(
                    "spotify.request.retry",
                    extra={"method": method, "path": path_fragment, "status": status, "attempt": attempt, "delay": round(delay, 2)},
                )
                await self._sleep(delay)
                continue

            if status >= 500:
                self.breaker.on_failure()
            else:
                self.breaker.on_success()
            return response

    def _raise_for_status(
        self,
        response: httpx.Response,
        error_cls: Type[ApiRequestError] = ApiRequestError,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        if response.is_success:
            return
        message, reason = _error_fields(response)
        raise error_cls(message, status=response.status_code, reason=reason, details=details)

    def _is_benign(self, response: httpx.Response, message: str) -> bool:
        haystack = f"{message} {response.text}"
        return any(marker in haystack for marker in self.benign_markers)

    # 👤 Profile
    async def get_me(self, token: str) -> Dict[str, Any]:
        response = await self.request("GET", "/me", token=token)
        self._raise_for_status(response)
        return response.json()

    # 🎼 Catalog
    async def get_track(self, track_id: str, token: str, market: Optional[str] = None) -> Dict[str, Any]:
        """Fetch a track's catalog metadata; raises :class:`LookupFailure`."""
        params = {"market": market} if market else None
        try:
            response = await self.request("GET", f"/tracks/{track_id}", token=token, params=params)
        except LookupFailure:
            raise
        except ApiRequestError as exc:
            raise LookupFailure(exc.message, status=exc.status, reason=exc.reason, details={"track_id": track_id}) from exc
        self._raise_for_status(response, LookupFailure, {"track_id": track_id})
        try:
            return response.json()
        except ValueError as exc:
            raise LookupFailure("Track response is not JSON", details={"track_id": track_id}) from exc

    # ▶️ Playback
    async def play_track(self, track_id: str, device_id: str, token: str) -> None:
        """Start ``spotify:track:<id>`` on ``device_id``.

        Raises:
            BenignControlPlaneError: error text carries a configured benign marker
            PlaybackUnavailable: 403 (premium required) or 404 (not playable)
            ApiRequestError: any other failure
        """
        response = await self.request(
            "PUT",
            "/me/player/play",
            token=token,
            params={"device_id": device_id},
            json={"uris": [f"spotify:track:{track_id}"]},
        )
        if response.is_success:
            return

        message, reason = _error_fields(response)
        details = {"track_id": track_id, "device_id": device_id}
        if self._is_benign(response, message):
            raise BenignControlPlaneError(message, status=response.status_code, reason=reason, details=details)
        if response.status_code in (403, 404):
            raise PlaybackUnavailable(message, status=response.status_code, reason=reason, details=details)
        raise ApiRequestError(message, status=response.status_code, reason=reason, details=details)

    async def get_playback(self, token: str) -> Optional[Dict[str, Any]]:
        """Current playback state, or None when nothing is active (204)."""
        response = await self.request("GET", "/me/player", token=token)
        if response.status_code == 204 or not response.content:
            return None
        self._raise_for_status(response)
        return response.json()

    async def get_devices(self, token: str) -> List[Dict[str, Any]]:
        response = await self.request("GET", "/me/player/devices", token=token)
        self._raise_for_status(response)
        return list(response.json().get("devices", []))

    def _device_params(self, device_id: Optional[str]) -> Optional[Dict[str, Any]]:
        return {"device_id": device_id} if device_id else None

    async def pause(self, token: str, device_id: Optional[str] = None) -> None:
        response = await self.request("PUT", "/me/player/pause", token=token, params=self._device_params(device_id))
        self._raise_for_status(response)

    async def resume(self, token: str, device_id: Optional[str] = None) -> None:
        response = await self.request("PUT", "/me/player/play", token=token, params=self._device_params(device_id))
        self._raise_for_status(response)

    async def next_track(self, token: str, device_id: Optional[str] = None) -> None:
        response = await self.request("POST", "/me/player/next", token=token, params=self._device_params(device_id))
        self._raise_for_status(response)

    async def previous_track(self, token: str, device_id: Optional[str] = None) -> None:
        response = await self.request("POST", "/me/player/previous", token=token, params=self._device_params(device_id))
        self._raise_for_status(response)
