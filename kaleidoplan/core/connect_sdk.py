#!/usr/bin/env python3
"""
📡 Spotify Connect playback SDK
Presents a Connect device (located by name through ``/me/player/devices``)
behind the playback SDK surface: load once, create a device bound to a
token supplier, connect, control playback and receive events.

Events: ready, not_ready, initialization_error, authentication_error,
account_error, playback_error, player_state_changed
"""

import asyncio
import inspect
import logging
import re
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol, Set

from ..api.spotify import SpotifyClient
from ..errors import ApiRequestError, DeviceInitError

logger = logging.getLogger("kaleidoplan.connect_sdk")

TokenSupplier = Callable[[], Awaitable[Optional[str]]]
EventCallback = Callable[[Dict[str, Any]], Any]

SDK_EVENTS = (
    "ready",
    "not_ready",
    "initialization_error",
    "authentication_error",
    "account_error",
    "playback_error",
    "player_state_changed",
)

_DEVICE_WHITESPACE_RE = re.compile(r"\s+")


def normalize_device_name(value: Any) -> str:
    """Normalize device names for robust comparison."""
    if not isinstance(value, str):
        return ""
    collapsed = _DEVICE_WHITESPACE_RE.sub(" ", value).strip()
    return collapsed.casefold()


def pick_device_by_name(devices: List[Dict[str, Any]], name: str) -> Optional[Dict[str, Any]]:
    target = normalize_device_name(name)
    if not target:
        return None
    for device in devices:
        if normalize_device_name(device.get("name")) == target:
            return device
    return None


class PlaybackDeviceHandle(Protocol):
    def add_listener(self, event: str, callback: EventCallback) -> None: ...
    def remove_listener(self, event: str, callback: EventCallback) -> None: ...
    async def connect(self) -> bool: ...
    async def disconnect(self) -> None: ...
    async def pause(self) -> bool: ...
    async def resume(self) -> bool: ...
    async def next_track(self) -> bool: ...
    async def previous_track(self) -> bool: ...
    async def get_current_state(self) -> Optional[Dict[str, Any]]: ...


class PlaybackSDK(Protocol):
    async def load(self) -> None:
        """Load the SDK; raises DeviceInitError when that is impossible."""
        ...

    def create_device(self, name: str, token_supplier: TokenSupplier) -> PlaybackDeviceHandle: ...


class EventEmitter:
    """Minimal synchronous emitter; coroutine callbacks are scheduled on the loop."""

    def __init__(self) -> None:
        self._listeners: Dict[str, List[EventCallback]] = {}
        self._tasks: Set[asyncio.Task] = set()

    def add_listener(self, event: str, callback: EventCallback) -> None:
        if event not in SDK_EVENTS:
            raise ValueError(f"Unknown playback event: {event}")
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: str, callback: EventCallback) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def emit(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                result = callback(payload or {})
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._tasks.add(task)
                    task.add_done_callback(self._tasks.discard)
            except Exception:
                logger.exception("connect_sdk.listener_failed", extra={"event": event})


class ConnectDevice(EventEmitter):
    """A named Connect device watched by polling the devices endpoint."""

    def __init__(
        self,
        client: SpotifyClient,
        name: str,
        token_supplier: TokenSupplier,
        poll_interval: float = 2.0,
    ) -> None:
        super().__init__()
        self._client = client
        self.name = name
        self._token_supplier = token_supplier
        self.poll_interval = poll_interval
        self.device_id: Optional[str] = None
        self._ready = False
        self._last_state: Optional[Dict[str, Any]] = None
        self._watch_task: Optional[asyncio.Task] = None

    async def connect(self) -> bool:
        if self._watch_task is None or self._watch_task.done():
            self._watch_task = asyncio.ensure_future(self._watch())
        return True

    async def disconnect(self) -> None:
        task, self._watch_task = self._watch_task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._ready = False
        self.device_id = None

    async def _watch(self) -> None:
        while True:
            token = await self._token_supplier()
            if not token:
                self.emit("authentication_error", {"message": "No access token available"})
                return
            try:
                devices = await self._client.get_devices(token)
            except ApiRequestError as exc:
                if exc.status == 401:
                    self.emit("authentication_error", {"message": exc.message})
                    return
                if exc.status == 403:
                    self.emit("account_error", {"message": exc.message})
                    return
                logger.debug("connect_sdk.devices.failed", extra={"status": exc.status, "error": exc.message})
            else:
                self._update_presence(devices)
                if self._ready:
                    await self._poll_player_state(token)
            await asyncio.sleep(self.poll_interval)

    def _update_presence(self, devices: List[Dict[str, Any]]) -> None:
        device = pick_device_by_name(devices, self.name)
        if device and device.get("id") and not device.get("is_restricted"):
            if not self._ready or device["id"] != self.device_id:
                self.device_id = device["id"]
                self._ready = True
                logger.info("connect_sdk.device.found", extra={"device": self.name})
                self.emit("ready", {"device_id": self.device_id})
        elif self._ready:
            self._ready = False
            logger.info("connect_sdk.device.lost", extra={"device": self.name})
            self.emit("not_ready", {"device_id": self.device_id})

    async def _poll_player_state(self, token: str) -> None:
        try:
            playback = await self._client.get_playback(token)
        except ApiRequestError as exc:
            logger.debug("connect_sdk.state.failed", extra={"status": exc.status})
            return
        state = self._state_from_playback(playback)
        if state is not None and state != self._last_state:
            self._last_state = state
            self.emit("player_state_changed", state)

    def _state_from_playback(self, playback: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        if not playback:
            return None
        device = playback.get("device") or {}
        if self.device_id and device.get("id") != self.device_id:
            return None
        item = playback.get("item") or {}
        return {
            "paused": not bool(playback.get("is_playing")),
            "position": int(playback.get("progress_ms") or 0),
            "duration": int(item.get("duration_ms") or 0),
            "track_uri": item.get("uri"),
        }

    async def _command(self, name: str, call: Callable[[str], Awaitable[None]]) -> bool:
        token = await self._token_supplier()
        if not token or not self.device_id:
            return False
        try:
            await call(token)
            return True
        except ApiRequestError as exc:
            self.emit("playback_error", {"message": exc.message, "command": name, "status": exc.status})
            return False

    async def pause(self) -> bool:
        return await self._command("pause", lambda token: self._client.pause(token, self.device_id))

    async def resume(self) -> bool:
        return await self._command("resume", lambda token: self._client.resume(token, self.device_id))

    async def next_track(self) -> bool:
        return await self._command("next", lambda token: self._client.next_track(token, self.device_id))

    async def previous_track(self) -> bool:
        return await self._command("previous", lambda token: self._client.previous_track(token, self.device_id))

    async def get_current_state(self) -> Optional[Dict[str, Any]]:
        token = await self._token_supplier()
        if not token or not self.device_id:
            return None
        try:
            playback = await self._client.get_playback(token)
        except ApiRequestError as exc:
            logger.debug("connect_sdk.state.failed", extra={"status": exc.status})
            return None
        return self._state_from_playback(playback)


class ConnectPlaybackSDK:
    """Connect-backed SDK; ``load()`` checks the API is usable and runs once."""

    def __init__(self, client: SpotifyClient, poll_interval: float = 2.0) -> None:
        self._client = client
        self.poll_interval = poll_interval
        self.loaded = False
        self.load_count = 0

    async def load(self) -> None:
        if self.loaded:
            return
        if self._client.breaker.is_open():
            raise DeviceInitError("Spotify API temporarily unavailable")
        self.load_count += 1
        self.loaded = True
        logger.debug("connect_sdk.loaded")

    def create_device(self, name: str, token_supplier: TokenSupplier) -> ConnectDevice:
        if not self.loaded:
            raise DeviceInitError("Playback SDK not loaded")
        return ConnectDevice(self._client, name, token_supplier, poll_interval=self.poll_interval)
