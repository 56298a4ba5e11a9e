#!/usr/bin/env python3
"""
🏗️ Service Layer Test Suite
===========================

Drives PlaybackService end to end over a mocked Spotify API: memory token
store, scripted login dialog and a fake playback SDK.
"""

from typing import Optional
from urllib.parse import parse_qs, urlparse

import pytest

from kaleidoplan.config_schema import PlayerConfig
from kaleidoplan.core.connect_sdk import EventEmitter
from kaleidoplan.errors import AuthStateMismatch
from kaleidoplan.services.playback_service import PlaybackService
from kaleidoplan.services.playback_session import PlaybackSession

from .fakes import token_payload, track_payload

TOKEN_PATH = "/api/token"
REDIRECT = "http://127.0.0.1:8888/callback"


class ApprovingDialog:
    """Answers the consent page with a code and the state it was given."""

    def __init__(self, approve: bool = True) -> None:
        self.approve = approve
        self.urls = []

    async def open(self, url: str) -> Optional[str]:
        self.urls.append(url)
        if not self.approve:
            return None
        state = parse_qs(urlparse(url).query)["state"][0]
        return f"{REDIRECT}?code=auth-code&state={state}"


class ReadyDevice(EventEmitter):
    async def connect(self) -> bool:
        self.emit("ready", {"device_id": "device-1"})
        return True

    async def disconnect(self) -> None:
        return None


class InstantSDK:
    def __init__(self) -> None:
        self.devices = []

    async def load(self) -> None:
        return None

    def create_device(self, name, token_supplier):
        device = ReadyDevice()
        self.devices.append(device)
        return device


@pytest.fixture
def dialog() -> ApprovingDialog:
    return ApprovingDialog()


def make_session(http_client, credentials, store, dialog) -> PlaybackSession:
    config = PlayerConfig(token_store="memory", playback_verify_attempts=0, redirect_uri=REDIRECT)
    return PlaybackSession(config, credentials, http_client=http_client, store=store, dialog=dialog, sdk=InstantSDK())


@pytest.fixture
def session(http_client, credentials, store, dialog) -> PlaybackSession:
    return make_session(http_client, credentials, store, dialog)


@pytest.fixture
async def service(session) -> PlaybackService:
    service = PlaybackService(session)
    result = await service.start()
    assert result.success
    return service


async def test_health_requires_start(session):
    result = await PlaybackService(session).health_check()

    assert result.success is False
    assert result.error_code == "NOT_INITIALIZED"


async def test_health_after_start(service):
    result = await service.health_check()

    assert result.success is True
    assert result.data["device_state"] == "uninitialized"
    assert result.data["breaker_open"] is False


async def test_app_authentication_status(service, spotify):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("app-1")))

    result = await service.get_authentication_status()

    assert result.success is True
    assert result.data["user_authenticated"] is False
    assert spotify.form()["grant_type"] == "client_credentials"


async def test_authentication_failure_reports_auth_required(service, spotify):
    spotify.on("POST", TOKEN_PATH, (400, {"error": "invalid_client"}))

    result = await service.get_authentication_status()

    assert result.success is False
    assert result.error_code == "AUTH_REQUIRED"
    assert result.to_dict()["error_code"] == "AUTH_REQUIRED"


async def test_premium_requires_sign_in(service):
    result = await service.get_premium_status()

    assert result.error_code == "AUTH_REQUIRED"


async def test_login_then_device_playback(service, spotify, dialog):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("user-1", refresh_token="refresh-1")))
    spotify.on("GET", "/v1/me", (200, {"product": "premium"}))
    spotify.on("PUT", "/v1/me/player/play", (204, None))

    login = await service.login()
    assert login.success is True
    assert "response_type=code" in dialog.urls[0]
    assert spotify.form()["code"] == "auth-code"

    premium = await service.get_premium_status()
    assert premium.data == {"premium": True}

    resolved = await service.resolve_track("spotify:track:abc123")
    assert resolved.data["mode"] == "device"


async def test_declined_login(http_client, credentials, store, spotify):
    service = PlaybackService(make_session(http_client, credentials, store, ApprovingDialog(approve=False)))

    result = await service.login()

    assert result.success is False
    assert result.error_code == "LOGIN_FAILED"
    assert spotify.count("POST", TOKEN_PATH) == 0


async def test_logout_tears_down_device(service, session, spotify):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("user-1", refresh_token="refresh-1")))
    spotify.on("GET", "/v1/me", (200, {"product": "premium"}))
    spotify.on("PUT", "/v1/me/player/play", (204, None))
    await service.login()
    await service.resolve_track("abc123")
    assert session.device.device_id == "device-1"

    result = await service.logout()

    assert result.success is True
    assert session.token_manager.is_user_authenticated() is False
    assert session.device.state.value == "uninitialized"
    assert await session.store.load() == {}


async def test_resolve_preview_for_app_session(service, spotify):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("app-1")))
    spotify.on("GET", "/v1/tracks/abc123", (200, track_payload("abc123", "https://p.scdn.co/mp3-preview/xyz")))

    result = await service.resolve_track("abc123")

    assert result.data == {"mode": "preview", "preview_url": "https://p.scdn.co/mp3-preview/xyz"}


async def test_resolve_advance(service, spotify):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("app-1")))
    spotify.on("GET", "/v1/tracks/abc123", (200, track_payload("abc123", None)))

    result = await service.resolve_track("abc123")

    assert result.data == {"mode": "advance"}


async def test_enhance_playlist_document(service, spotify):
    spotify.on("POST", TOKEN_PATH, (200, token_payload("app-1")))
    spotify.on("GET", "/v1/tracks/abc123", (200, track_payload("abc123", name="Catalog Name")))

    result = await service.enhance_playlist({"playlistId": "pl-1", "tracks": [{"spotifyId": "abc123"}]})

    assert result.success is True
    track = result.data["tracks"][0]
    assert track["name"] == "Catalog Name"
    assert track["albumArt"] == "https://i.scdn.co/image/abc123"
    assert result.message == "Enriched 1 of 1 tracks"


async def test_playback_errors_map_to_error_codes(service, session, monkeypatch):
    async def mismatched_login():
        raise AuthStateMismatch("Authorization state did not match", details={"flow": "code"})

    monkeypatch.setattr(session.token_manager, "login", mismatched_login)

    result = await service.login()

    assert result.success is False
    assert result.error_code == "STATE_MISMATCH"
    assert result.data == {"flow": "code"}


async def test_unexpected_errors_are_operation_failed(service, session, monkeypatch):
    async def broken_disconnect():
        raise RuntimeError("store offline")

    monkeypatch.setattr(session.token_manager, "disconnect", broken_disconnect)

    result = await service.logout()

    assert result.error_code == "OPERATION_FAILED"
    assert "store offline" in result.message
    assert result.data is None
