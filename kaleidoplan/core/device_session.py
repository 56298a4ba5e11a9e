#!/usr/bin/env python3
"""
🔊 Device session controller
Owns the single playback device of a signed-in session and drives the
handshake state machine:

    UNINITIALIZED -> LOADING -> CONNECTING -> READY
                  any stage -> FAILED (next ensure_ready() retries)
    READY -> CONNECTING on not_ready (device kept, reconnect on demand)
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set

from ..errors import DeviceInitError
from ..utils.single_flight import SingleFlight
from .connect_sdk import PlaybackDeviceHandle, PlaybackSDK
from .models import PlaybackState
from .token_manager import TokenManager

logger = logging.getLogger("kaleidoplan.device")

StateListener = Callable[[str, Dict[str, Any]], Any]

_FAILURE_EVENTS = ("initialization_error", "authentication_error", "account_error")


class DeviceState(str, Enum):
    UNINITIALIZED = "uninitialized"
    LOADING = "loading"
    CONNECTING = "connecting"
    READY = "ready"
    FAILED = "failed"


@dataclass
class PlaybackDevice:
    device_id: Optional[str] = None
    ready: bool = False
    connected: bool = False


class DeviceSessionController:
    """Lazily loads the SDK and keeps one device ready for the user session."""

    def __init__(
        self,
        token_manager: TokenManager,
        sdk: PlaybackSDK,
        *,
        device_name: str,
        connect_timeout: float = 15.0,
    ) -> None:
        self._token_manager = token_manager
        self._sdk = sdk
        self.device_name = device_name
        self.connect_timeout = connect_timeout

        self.state = DeviceState.UNINITIALIZED
        self.device = PlaybackDevice()
        self.last_error: Optional[str] = None
        self._handle: Optional[PlaybackDeviceHandle] = None
        self._sdk_loaded = False
        self._outcome: Optional[asyncio.Future] = None
        self._flight = SingleFlight("device")
        self._subscribers: List[StateListener] = []
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------ subscribers

    def subscribe(self, listener: StateListener) -> None:
        self._subscribers.append(listener)

    def unsubscribe(self, listener: StateListener) -> None:
        if listener in self._subscribers:
            self._subscribers.remove(listener)

    def _publish(self, event: str, payload: Optional[Dict[str, Any]] = None) -> None:
        for listener in list(self._subscribers):
            try:
                listener(event, payload or {})
            except Exception:
                logger.exception("device.subscriber_failed", extra={"event": event})

    def _set_state(self, state: DeviceState) -> None:
        if state != self.state:
            logger.debug("device.state", extra={"from": self.state.value, "to": state.value})
            self.state = state
            self._publish("state", {"state": state.value})

    # ------------------------------------------------------------- handshake

    @property
    def is_ready(self) -> bool:
        return self.state == DeviceState.READY and self.device.ready

    async def ensure_ready(self) -> bool:
        """Load and connect the device if needed; False when unavailable."""
        if not self._token_manager.is_user_authenticated():
            return False
        if self.is_ready:
            return True
        return await self._flight.run("connect", self._connect_sequence)

    async def _connect_sequence(self) -> bool:
        try:
            ready = await asyncio.wait_for(self._load_and_connect(), self.connect_timeout)
        except asyncio.TimeoutError:
            await self._fail(f"no ready event within {self.connect_timeout:g}s")
            return False
        except DeviceInitError as exc:
            await self._fail(exc.message)
            return False
        return ready

    async def _load_and_connect(self) -> bool:
        if self._handle is None:
            self._set_state(DeviceState.LOADING)
            if not self._sdk_loaded:
                await self._sdk.load()
                self._sdk_loaded = True
            # the supplier calls back into the token manager on every use
            self._handle = self._sdk.create_device(self.device_name, self._token_manager.authenticate)
            self._attach(self._handle)

        self._set_state(DeviceState.CONNECTING)
        loop = asyncio.get_running_loop()
        self._outcome = loop.create_future()
        if not await self._handle.connect():
            raise DeviceInitError("Device refused to connect")
        return await self._outcome

    def _attach(self, handle: PlaybackDeviceHandle) -> None:
        handle.add_listener("ready", self._on_ready)
        handle.add_listener("not_ready", self._on_not_ready)
        for event in _FAILURE_EVENTS:
            handle.add_listener(event, self._failure_handler(event))
        handle.add_listener("playback_error", lambda payload: self._publish("playback_error", payload))
        handle.add_listener("player_state_changed", lambda payload: self._publish("player_state_changed", payload))

    def _on_ready(self, payload: Dict[str, Any]) -> None:
        self.device = PlaybackDevice(device_id=payload.get("device_id"), ready=True, connected=True)
        self.last_error = None
        self._set_state(DeviceState.READY)
        logger.info("device.ready", extra={"device": self.device_name})
        if self._outcome is not None and not self._outcome.done():
            self._outcome.set_result(True)

    def _on_not_ready(self, payload: Dict[str, Any]) -> None:
        if self.state != DeviceState.READY:
            return
        self.device.ready = False
        self._set_state(DeviceState.CONNECTING)
        logger.info("device.not_ready", extra={"device": self.device_name})

    def _failure_handler(self, event: str) -> Callable[[Dict[str, Any]], None]:
        def handler(payload: Dict[str, Any]) -> None:
            message = payload.get("message") or event
            logger.warning("device.error", extra={"event": event, "error": message})
            if self._outcome is not None and not self._outcome.done():
                self._outcome.set_exception(DeviceInitError(message, details={"event": event}))
            elif self.state == DeviceState.READY:
                task = asyncio.ensure_future(self._fail(message))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
        return handler

    async def _fail(self, reason: str) -> None:
        """Mark FAILED and drop the device; the next ensure_ready() starts at LOADING."""
        self.last_error = reason
        self._outcome = None
        await self._drop_handle()
        self._set_state(DeviceState.FAILED)

    async def _drop_handle(self) -> None:
        handle, self._handle = self._handle, None
        self.device = PlaybackDevice()
        if handle is not None:
            try:
                await handle.disconnect()
            except Exception as exc:
                logger.debug("device.disconnect.failed", extra={"error": str(exc)})

    async def teardown(self) -> None:
        """Disconnect and forget the device (sign-out); the SDK stays loaded."""
        await self._drop_handle()
        self._outcome = None
        self.last_error = None
        self._set_state(DeviceState.UNINITIALIZED)

    # -------------------------------------------------------------- controls

    @property
    def device_id(self) -> Optional[str]:
        return self.device.device_id if self.is_ready else None

    async def pause(self) -> bool:
        return bool(self.is_ready and self._handle and await self._handle.pause())

    async def resume(self) -> bool:
        return bool(self.is_ready and self._handle and await self._handle.resume())

    async def next(self) -> bool:
        return bool(self.is_ready and self._handle and await self._handle.next_track())

    async def previous(self) -> bool:
        return bool(self.is_ready and self._handle and await self._handle.previous_track())

    async def get_state(self) -> Optional[PlaybackState]:
        if not self.is_ready or self._handle is None:
            return None
        raw = await self._handle.get_current_state()
        if not raw:
            return None
        return PlaybackState(
            paused=bool(raw.get("paused")),
            position_ms=int(raw.get("position") or 0),
            duration_ms=int(raw.get("duration") or 0),
        )
