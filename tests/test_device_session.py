"""
Tests for the device session state machine.

The SDK is faked: each created device answers ``connect()`` with the next
scripted outcome ("ready", an error event name, or "silent").
"""

import asyncio
from typing import Any, Dict, List, Optional

import pytest

from kaleidoplan.core.connect_sdk import EventEmitter
from kaleidoplan.core.device_session import DeviceSessionController, DeviceState
from kaleidoplan.errors import DeviceInitError

from .fakes import FakeTokenManager


class FakeDevice(EventEmitter):
    def __init__(self, name: str, token_supplier, script: List[str]) -> None:
        super().__init__()
        self.name = name
        self.token_supplier = token_supplier
        self.script = script
        self.connects = 0
        self.disconnected = False
        self.commands: List[str] = []
        self.state: Optional[Dict[str, Any]] = {"paused": False, "position": 1000, "duration": 5000}

    async def connect(self) -> bool:
        self.connects += 1
        outcome = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        loop = asyncio.get_running_loop()
        if outcome == "ready":
            loop.call_soon(self.emit, "ready", {"device_id": f"{self.name}-id"})
        elif outcome != "silent":
            loop.call_soon(self.emit, outcome, {"message": f"{outcome} happened"})
        return True

    async def disconnect(self) -> None:
        self.disconnected = True

    async def _command(self, name: str) -> bool:
        self.commands.append(name)
        return True

    async def pause(self) -> bool:
        return await self._command("pause")

    async def resume(self) -> bool:
        return await self._command("resume")

    async def next_track(self) -> bool:
        return await self._command("next")

    async def previous_track(self) -> bool:
        return await self._command("previous")

    async def get_current_state(self) -> Optional[Dict[str, Any]]:
        return self.state


class FakeSDK:
    def __init__(self, script: Optional[List[str]] = None, load_error: bool = False) -> None:
        self.script = script or ["ready"]
        self.load_error = load_error
        self.load_count = 0
        self.devices: List[FakeDevice] = []

    async def load(self) -> None:
        self.load_count += 1
        await asyncio.sleep(0)
        if self.load_error:
            raise DeviceInitError("SDK script failed to load")

    def create_device(self, name: str, token_supplier) -> FakeDevice:
        device = FakeDevice(name, token_supplier, self.script)
        self.devices.append(device)
        return device


def make_controller(sdk: FakeSDK, user: bool = True, timeout: float = 1.0):
    tokens = FakeTokenManager(user=user)
    controller = DeviceSessionController(tokens, sdk, device_name="Kaleidoplan", connect_timeout=timeout)
    return controller, tokens


class TestEnsureReady:
    async def test_not_signed_in_never_loads(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk, user=False)

        assert await controller.ensure_ready() is False
        assert sdk.load_count == 0
        assert controller.state == DeviceState.UNINITIALIZED

    async def test_ready_event_resolves_handshake(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        states: List[str] = []
        controller.subscribe(lambda event, payload: states.append(payload.get("state")) if event == "state" else None)

        assert await controller.ensure_ready() is True

        assert controller.state == DeviceState.READY
        assert controller.device_id == "Kaleidoplan-id"
        assert states == ["loading", "connecting", "ready"]

    async def test_already_ready_returns_immediately(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        await controller.ensure_ready()

        assert await controller.ensure_ready() is True
        assert sdk.devices[0].connects == 1

    async def test_concurrent_callers_share_one_device(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)

        results = await asyncio.gather(*(controller.ensure_ready() for _ in range(5)))

        assert results == [True] * 5
        assert sdk.load_count == 1
        assert len(sdk.devices) == 1

    async def test_token_supplier_is_token_manager(self):
        sdk = FakeSDK()
        controller, tokens = make_controller(sdk)
        await controller.ensure_ready()

        assert await sdk.devices[0].token_supplier() == "user-token"
        assert tokens.calls == 1


class TestFailures:
    async def test_authentication_error_fails_then_retry_starts_over(self):
        sdk = FakeSDK(script=["authentication_error", "ready"])
        controller, _ = make_controller(sdk)

        assert await controller.ensure_ready() is False
        assert controller.state == DeviceState.FAILED
        assert controller.last_error == "authentication_error happened"
        assert sdk.devices[0].disconnected

        assert await controller.ensure_ready() is True
        assert len(sdk.devices) == 2
        # the SDK itself is only ever loaded once
        assert sdk.load_count == 1

    async def test_timeout_without_ready_event(self):
        sdk = FakeSDK(script=["silent"])
        controller, _ = make_controller(sdk, timeout=0.05)

        assert await controller.ensure_ready() is False
        assert controller.state == DeviceState.FAILED
        assert "no ready event" in controller.last_error

    async def test_sdk_load_failure(self):
        sdk = FakeSDK(load_error=True)
        controller, _ = make_controller(sdk)

        assert await controller.ensure_ready() is False
        assert controller.state == DeviceState.FAILED
        assert sdk.devices == []

    async def test_error_after_ready_marks_failed(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        await controller.ensure_ready()

        sdk.devices[0].emit("account_error", {"message": "premium required"})
        assert len(controller._tasks) == 1
        await asyncio.gather(*controller._tasks)

        assert controller.state == DeviceState.FAILED
        assert controller.device_id is None
        assert controller._tasks == set()


class TestReconnect:
    async def test_not_ready_demotes_and_reconnects_same_device(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        await controller.ensure_ready()
        device = sdk.devices[0]

        device.emit("not_ready", {"device_id": "Kaleidoplan-id"})
        assert controller.state == DeviceState.CONNECTING
        assert controller.device_id is None

        assert await controller.ensure_ready() is True
        assert len(sdk.devices) == 1
        assert device.connects == 2

    async def test_teardown_returns_to_uninitialized(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        await controller.ensure_ready()

        await controller.teardown()

        assert controller.state == DeviceState.UNINITIALIZED
        assert sdk.devices[0].disconnected
        assert await controller.ensure_ready() is True
        assert len(sdk.devices) == 2
        assert sdk.load_count == 1


class TestControls:
    async def test_controls_require_ready_device(self):
        controller, _ = make_controller(FakeSDK())

        assert await controller.pause() is False
        assert await controller.get_state() is None

    async def test_controls_delegate_to_device(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        await controller.ensure_ready()

        assert await controller.pause() is True
        assert await controller.next() is True
        assert sdk.devices[0].commands == ["pause", "next"]

        state = await controller.get_state()
        assert state.paused is False
        assert state.remaining_ms == 4000

    async def test_player_state_is_forwarded(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        events: List[str] = []
        controller.subscribe(lambda event, payload: events.append(event))
        await controller.ensure_ready()

        sdk.devices[0].emit("player_state_changed", {"paused": True})

        assert "player_state_changed" in events

    async def test_unsubscribed_listener_stops_receiving(self):
        sdk = FakeSDK()
        controller, _ = make_controller(sdk)
        events: List[str] = []

        def listener(event, payload):
            events.append(event)

        controller.subscribe(listener)
        await controller.ensure_ready()
        assert "state" in events

        controller.unsubscribe(listener)
        controller.unsubscribe(listener)
        sdk.devices[0].emit("player_state_changed", {"paused": True})

        assert "player_state_changed" not in events


class TestEventEmitter:
    async def test_coroutine_callbacks_are_held_until_done(self):
        emitter = EventEmitter()
        seen: List[Dict[str, Any]] = []

        async def on_ready(payload):
            await asyncio.sleep(0)
            seen.append(payload)

        emitter.add_listener("ready", on_ready)
        emitter.emit("ready", {"device_id": "d1"})

        assert len(emitter._tasks) == 1
        await asyncio.gather(*emitter._tasks)
        assert seen == [{"device_id": "d1"}]
        assert emitter._tasks == set()

    def test_unknown_event_is_rejected(self):
        with pytest.raises(ValueError):
            EventEmitter().add_listener("volume_changed", print)


@pytest.mark.parametrize("event", ["initialization_error", "account_error"])
async def test_failure_events_during_handshake(event):
    sdk = FakeSDK(script=[event])
    controller, _ = make_controller(sdk)

    assert await controller.ensure_ready() is False
    assert controller.state == DeviceState.FAILED
