#!/usr/bin/env python3
"""
⏭️ Track queue controller
Holds the play queue, plays the current entry through the resolver and
advances on track end or when a track cannot be played. A run of
unplayable tracks stops after one full pass over the queue.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Iterable, List, Optional, Protocol, Set

from ..constants import ADVANCE, DEVICE, NO_PLAYABLE_TRACK
from ..utils.logger import log_structured
from .device_session import DeviceSessionController
from .models import PlayQueueState, TrackDescriptor
from .resolver import PlaybackResolver

logger = logging.getLogger("kaleidoplan.queue")

QueueListener = Callable[[PlayQueueState], Any]


class AudioOutput(Protocol):
    """Plays preview clips; reports natural end and errors through callbacks."""

    async def play(self, url: str) -> bool: ...
    async def pause(self) -> None: ...
    async def resume(self) -> None: ...
    async def stop(self) -> None: ...
    def set_callbacks(self, on_ended: Callable[[], Any], on_error: Callable[[], Any]) -> None: ...


class TrackQueueController:
    def __init__(
        self,
        resolver: PlaybackResolver,
        device_session: DeviceSessionController,
        audio: AudioOutput,
        *,
        poll_interval: float = 3.0,
        advance_delay: float = 0.75,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._resolver = resolver
        self._device = device_session
        self._audio = audio
        self.poll_interval = poll_interval
        self.advance_delay = advance_delay
        self._sleep = sleep

        self.state = PlayQueueState()
        self._generation = 0
        self._failures = 0
        self._started: Optional[TrackDescriptor] = None
        self._poll_task: Optional[asyncio.Task] = None
        self._tasks: Set[asyncio.Task] = set()
        self._listeners: List[QueueListener] = []

        audio.set_callbacks(self._on_audio_ended, self._on_audio_error)

    # -------------------------------------------------------------- observers

    def subscribe(self, listener: QueueListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: QueueListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self.state)
            except Exception:
                logger.exception("queue.listener_failed")

    def _spawn(self, coro: Awaitable[Any]) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ---------------------------------------------------------------- queue

    @property
    def generation(self) -> int:
        return self._generation

    async def load(self, tracks: Iterable[TrackDescriptor]) -> None:
        await self.stop()
        self.state = PlayQueueState(ordered_tracks=list(tracks))
        self._failures = 0
        self._notify()

    def _step(self, delta: int) -> None:
        count = len(self.state.ordered_tracks)
        self.state.current_index = (self.state.current_index + delta) % count

    async def play(self, index: Optional[int] = None) -> None:
        if not self.state.ordered_tracks:
            return
        if index is not None:
            self.state.current_index = index % len(self.state.ordered_tracks)
        await self._run(reset_failures=True)

    async def next(self) -> None:
        if not self.state.ordered_tracks:
            return
        self._step(1)
        await self._run(reset_failures=True)

    async def previous(self) -> None:
        if not self.state.ordered_tracks:
            return
        self._step(-1)
        await self._run(reset_failures=True)

    async def on_track_ended(self) -> None:
        """Natural end of the current track: move on and play the next one."""
        log_structured(logger, logging.DEBUG, "queue.track_ended", index=self.state.current_index)
        await self.next()

    async def toggle(self) -> None:
        state = self.state
        if state.is_playing:
            if state.using_device_playback:
                await self._device.pause()
            else:
                await self._audio.pause()
            await self._cancel_poll()
            state.is_playing = False
            self._notify()
            return

        if self._started is not None and state.current_track == self._started:
            if state.using_device_playback:
                resumed = await self._device.resume()
                if resumed:
                    self._start_poll(self._generation)
            else:
                await self._audio.resume()
                resumed = True
            if resumed:
                state.is_playing = True
                self._notify()
                return

        await self.play()

    async def stop(self) -> None:
        self._generation += 1
        was_device = self.state.using_device_playback and self.state.is_playing
        await self._halt_output()
        if was_device:
            await self._device.pause()
        self.state.is_playing = False
        self._started = None
        self._notify()

    # ------------------------------------------------------------- playback

    async def _halt_output(self) -> None:
        await self._cancel_poll()
        await self._audio.stop()

    async def _run(self, reset_failures: bool) -> None:
        """Play from the current index, skipping unplayable tracks.

        A newer request (skip, stop, load) bumps the generation and turns this
        run into a no-op at its next suspension point.
        """
        self._generation += 1
        generation = self._generation
        if reset_failures:
            self._failures = 0
        state = self.state
        state.exhausted = False
        state.last_error = None
        await self._halt_output()

        while True:
            if generation != self._generation:
                return
            track = state.current_track
            state.is_playing = False
            self._notify()

            mode = await self._play_track(track, generation)
            if generation != self._generation:
                return
            if mode is not None:
                self._failures = 0
                self._started = track
                state.using_device_playback = mode == DEVICE
                state.is_playing = True
                self._notify()
                if mode == DEVICE:
                    self._start_poll(generation)
                return

            if not await self._count_failure(generation):
                return
            self._step(1)

    async def _play_track(self, track: TrackDescriptor, generation: int) -> Optional[str]:
        """Resolve and start ``track``; returns "device", "preview" or None."""
        result = await self._resolver.resolve(track.service_track_id)
        if generation != self._generation:
            return None
        if result == DEVICE:
            return DEVICE
        if result == ADVANCE:
            return None
        if await self._audio.play(result):
            return "preview"
        log_structured(logger, logging.INFO, "queue.preview_failed", index=self.state.current_index)
        return None

    async def _count_failure(self, generation: int) -> bool:
        """Record an unplayable track; False when the queue is exhausted or superseded."""
        self._failures += 1
        if self._failures >= len(self.state.ordered_tracks):
            self.state.exhausted = True
            self.state.is_playing = False
            self.state.last_error = NO_PLAYABLE_TRACK
            self._started = None
            log_structured(logger, logging.WARNING, "queue.exhausted", tracks=len(self.state.ordered_tracks))
            self._notify()
            return False
        await self._sleep(self.advance_delay)
        return generation == self._generation

    async def _advance_after_failure(self, generation: int) -> None:
        if generation != self._generation or not self.state.ordered_tracks:
            return
        self.state.is_playing = False
        if await self._count_failure(generation):
            self._step(1)
            await self._run(reset_failures=False)

    def _on_audio_ended(self) -> None:
        if self.state.is_playing and not self.state.using_device_playback:
            self._spawn(self.on_track_ended())

    def _on_audio_error(self) -> None:
        if not self.state.using_device_playback:
            self._spawn(self._advance_after_failure(self._generation))

    # ------------------------------------------------------- end-of-track poll

    def _start_poll(self, generation: int) -> None:
        self._poll_task = asyncio.ensure_future(self._poll_device(generation))

    async def _cancel_poll(self) -> None:
        task, self._poll_task = self._poll_task, None
        if task is None or task.done() or task is asyncio.current_task():
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _poll_device(self, generation: int) -> None:
        """The service pushes no end-of-track event, so poll while the device plays."""
        near_end_ms = self.poll_interval * 1000
        while True:
            await self._sleep(self.poll_interval)
            if generation != self._generation or not self.state.is_playing:
                return
            playback = await self._device.get_state()
            if playback is None or playback.paused or playback.duration_ms <= 0:
                continue
            if playback.remaining_ms <= near_end_ms:
                self._poll_task = None
                await self.on_track_ended()
                return
