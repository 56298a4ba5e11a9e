#!/usr/bin/env python3
"""Centralised async HTTP client configuration for Spotify API access."""

import logging
import os
import platform
from typing import Optional, Tuple

import httpx

_LOGGER = logging.getLogger("kaleidoplan.http")
_CLIENT: Optional[httpx.AsyncClient] = None
_CONFIG_LOGGED = False


def _parse_timeout_tuple() -> Tuple[float, float]:
    """Parse timeout defaults from environment variables."""
    raw = os.getenv("KALEIDOPLAN_HTTP_TIMEOUTS")
    if raw:
        parts = [p.strip() for p in raw.replace(";", ",").split(",") if p.strip()]
        if len(parts) == 2:
            try:
                connect = max(0.5, float(parts[0]))
                read = max(1.0, float(parts[1]))
                return connect, read
            except ValueError:
                pass

    connect_env = os.getenv("KALEIDOPLAN_HTTP_CONNECT_TIMEOUT")
    read_env = os.getenv("KALEIDOPLAN_HTTP_READ_TIMEOUT")
    try:
        connect = max(0.5, float(connect_env)) if connect_env else 4.0
    except ValueError:
        connect = 4.0
    try:
        read = max(1.0, float(read_env)) if read_env else 15.0
    except ValueError:
        read = 15.0
    return connect, read


def _int_env(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _float_env(name: str, default: float) -> float:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return float(value)
    except ValueError:
        return default


DEFAULT_TIMEOUT: Tuple[float, float] = _parse_timeout_tuple()

# Status-level retries live in SpotifyClient; the transport only retries
# connection setup failures.
RETRY_TOTAL = max(0, _int_env("KALEIDOPLAN_HTTP_RETRY_TOTAL", 3))
BACKOFF_FACTOR = max(0.0, _float_env("KALEIDOPLAN_HTTP_BACKOFF", 0.6))
BREAKER_THRESHOLD = max(1, _int_env("KALEIDOPLAN_BREAKER_THRESHOLD", 3))
BREAKER_COOLDOWN = max(1, _int_env("KALEIDOPLAN_BREAKER_COOLDOWN", 30))


def _log_configuration(client: httpx.AsyncClient) -> None:
    global _CONFIG_LOGGED
    if _CONFIG_LOGGED:
        return
    _CONFIG_LOGGED = True

    _LOGGER.info(
        "HTTP client configured",
        extra={
            "http.timeout_connect": client.timeout.connect,
            "http.timeout_read": client.timeout.read,
            "http.retry_total": RETRY_TOTAL,
        },
    )


def build_client(transport: Optional[httpx.AsyncBaseTransport] = None) -> httpx.AsyncClient:
    """Create a configured httpx.AsyncClient with timeouts and connection retries."""
    connect, read = DEFAULT_TIMEOUT
    limits = httpx.Limits(
        max_connections=_int_env("KALEIDOPLAN_HTTP_POOL_MAXSIZE", 20),
        max_keepalive_connections=_int_env("KALEIDOPLAN_HTTP_POOL_CONNECTIONS", 10),
    )
    if transport is None:
        transport = httpx.AsyncHTTPTransport(retries=RETRY_TOTAL, limits=limits)

    python_version = platform.python_version()
    client = httpx.AsyncClient(
        transport=transport,
        timeout=httpx.Timeout(read, connect=connect),
        headers={
            "Accept": "application/json",
            "User-Agent": f"Kaleidoplan/1.0 (Python {python_version}; httpx {httpx.__version__})",
        },
        trust_env=False,
    )
    _log_configuration(client)
    return client


def get_http_client() -> httpx.AsyncClient:
    """Return the shared HTTP client, creating it if necessary."""
    global _CLIENT
    if _CLIENT is None or _CLIENT.is_closed:
        _CLIENT = build_client()
    return _CLIENT


def set_http_client(client: Optional[httpx.AsyncClient]) -> None:
    """
    Override the shared HTTP client (primarily for testing).

    Args:
        client: Preconfigured client instance, or None to rebuild lazily
    """
    global _CLIENT, _CONFIG_LOGGED
    _CLIENT = client
    _CONFIG_LOGGED = False
    if client is not None:
        _log_configuration(client)


async def close_http_client() -> None:
    global _CLIENT
    if _CLIENT is not None and not _CLIENT.is_closed:
        await _CLIENT.aclose()
    _CLIENT = None


__all__ = [
    "DEFAULT_TIMEOUT", "RETRY_TOTAL", "BACKOFF_FACTOR", "BREAKER_THRESHOLD", "BREAKER_COOLDOWN",
    "build_client", "get_http_client", "set_http_client", "close_http_client",
]
