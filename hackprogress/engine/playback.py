"""
RoutinePlayer - Sequential playback of a routine's steps.

States: IDLE -> PLAYING -> {PAUSED, AUTO_ADVANCING, COMPLETED}

The player owns at most one timer (the autoplay countdown). Every transition
cancels it before optionally starting a new one, and close() cancels it
unconditionally. Position writes go to the tracker without being awaited;
they are idempotent overwrites, so a retried or replayed write is harmless.
"""

import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from hackprogress.config import EngineSettings
from hackprogress.schemas import Identity, Routine

from .tracker import ProgressTracker

logger = logging.getLogger(__name__)


class PlaybackState(str, Enum):
    IDLE = "idle"
    PLAYING = "playing"
    PAUSED = "paused"
    AUTO_ADVANCING = "auto_advancing"
    COMPLETED = "completed"


class RoutinePlayer:
    """
    Playback state machine for one routine.

    Must be driven from inside a running event loop: position and completion
    writes are scheduled as tasks on it.
    """

    def __init__(
        self,
        routine: Routine,
        tracker: ProgressTracker,
        identity: Optional[Identity] = None,
        settings: Optional[EngineSettings] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        on_change: Optional[Callable[["RoutinePlayer"], None]] = None,
    ):
        """
        Initialize player.

        Args:
            routine: Routine to play
            tracker: Tracker receiving position and completion writes
            identity: Identity to write for (default: tracker's active identity)
            settings: Engine settings (countdown length)
            sleep: Awaitable sleep used for countdown ticks
            on_change: Called with the player after every state or countdown change
        """
        self.routine = routine
        self.tracker = tracker
        self.identity = identity
        self.countdown_seconds = (settings or EngineSettings()).countdown_seconds
        self._sleep = sleep
        self._on_change = on_change

        self.state = PlaybackState.IDLE
        self.position = 0
        self.countdown: Optional[int] = None
        self.autoplay_enabled = True
        self.entered_automatically = False
        self.closed = False

        self._timer: Optional[asyncio.Task] = None
        self._writes: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Properties
    # -------------------------------------------------------------------------

    @property
    def total_steps(self) -> int:
        return self.routine.total_steps

    @property
    def current_step_id(self) -> str:
        return self.routine.step_ids[self.position]

    @property
    def is_last_step(self) -> bool:
        return self.position == self.total_steps - 1

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None and not self._timer.done()

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _notify(self):
        if self._on_change is not None:
            self._on_change(self)

    def _spawn(self, coro: Awaitable[bool], what: str):
        task = asyncio.ensure_future(coro)
        self._writes.add(task)
        task.add_done_callback(lambda t: self._write_done(t, what))

    def _write_done(self, task: asyncio.Task, what: str):
        self._writes.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(f"{what} failed for routine {self.routine.id}: {error}")
        elif task.result() is False:
            logger.debug(f"{what} not confirmed for routine {self.routine.id}")

    def _cancel_timer(self) -> bool:
        """Cancel the countdown if one is running. Returns True if it was."""
        timer, self._timer = self._timer, None
        self.countdown = None
        if timer is not None and not timer.done():
            timer.cancel()
            return True
        return False

    def _persist_position(self):
        self._spawn(
            self.tracker.update_position(self.identity, self.routine.id, self.position, self.total_steps),
            "Position write",
        )

    def _go_to(self, index: int, automatic: bool):
        self._cancel_timer()
        self.position = index
        self.state = PlaybackState.PLAYING
        self.entered_automatically = automatic
        self._persist_position()
        self._notify()

    def _complete(self):
        self._cancel_timer()
        self.state = PlaybackState.COMPLETED
        self._spawn(
            self.tracker.complete_routine(self.identity, self.routine.id, list(self.routine.step_ids), self.position),
            "Routine completion",
        )
        logger.info(f"Routine {self.routine.id} completed")
        self._notify()

    def _interrupt_countdown(self) -> bool:
        if self.state is not PlaybackState.AUTO_ADVANCING:
            return False
        self._cancel_timer()
        self.state = PlaybackState.PAUSED
        self._notify()
        return True

    async def _run_countdown(self):
        for remaining in range(self.countdown_seconds, 0, -1):
            self.countdown = remaining
            self._notify()
            await self._sleep(1)
            if self._timer is not asyncio.current_task():
                return
        # Detach before advancing so the transition does not cancel this task
        self._timer = None
        self.countdown = 0
        self._notify()
        self._go_to(self.position + 1, automatic=True)

    # -------------------------------------------------------------------------
    # Events
    # -------------------------------------------------------------------------

    async def open(self, index: Optional[int] = None):
        """Load the saved position (from the remote if not cached), then start."""
        if self.closed:
            return
        await self.tracker.load_routine(self.identity, self.routine.id)
        self.start(index)

    def start(self, index: Optional[int] = None):
        """Begin playback at `index`, or where the routine was left off (cached progress only)."""
        if self.closed:
            return
        saved = self.tracker.routine_progress(self.identity, self.routine.id)
        if saved is not None:
            self.autoplay_enabled = saved.autoplay_enabled
        if index is None:
            index = min(saved.current_position, self.total_steps - 1) if saved is not None else 0
        if not 0 <= index < self.total_steps:
            raise IndexError(f"Step {index} out of range for routine {self.routine.id}")
        self._go_to(index, automatic=True)

    def go_next(self):
        if self.closed or self.state is PlaybackState.IDLE:
            return
        if not self.is_last_step:
            self._go_to(self.position + 1, automatic=False)
        elif self.state is not PlaybackState.COMPLETED:
            self._complete()

    def go_previous(self):
        if self.closed or self.state is PlaybackState.IDLE:
            return
        if self.position == 0:
            self._interrupt_countdown()
        else:
            self._go_to(self.position - 1, automatic=False)

    def jump_to(self, index: int):
        if self.closed or self.state is PlaybackState.IDLE:
            return
        if not 0 <= index < self.total_steps:
            logger.debug(f"Ignoring jump to {index} in routine {self.routine.id}")
            self._interrupt_countdown()
            return
        self._go_to(index, automatic=False)

    def video_ended(self):
        """The current step's video finished."""
        if self.closed or self.state not in (PlaybackState.PLAYING, PlaybackState.PAUSED):
            return
        if self.is_last_step:
            self._complete()
            return

        self._spawn(
            self.tracker.mark_step_complete(self.identity, self.routine.id, self.current_step_id, self.total_steps),
            "Step completion",
        )
        self._cancel_timer()
        if self.autoplay_enabled and self.entered_automatically:
            self.state = PlaybackState.AUTO_ADVANCING
            self._timer = asyncio.ensure_future(self._run_countdown())
        else:
            self.state = PlaybackState.PAUSED
        self._notify()

    def key_input(self, key: str) -> bool:
        """Any key press during a countdown cancels it. Returns True if it did."""
        if self.closed:
            return False
        cancelled = self._interrupt_countdown()
        if cancelled:
            logger.debug(f"Countdown cancelled by key {key!r}")
        return cancelled

    def cancel_autoplay(self) -> bool:
        if self.closed:
            return False
        return self._interrupt_countdown()

    def pause(self):
        if self.closed:
            return
        if self.state is PlaybackState.AUTO_ADVANCING:
            self._interrupt_countdown()
        elif self.state is PlaybackState.PLAYING:
            self.state = PlaybackState.PAUSED
            self._notify()

    def resume(self):
        if self.closed or self.state is not PlaybackState.PAUSED:
            return
        self.state = PlaybackState.PLAYING
        self._notify()

    def set_autoplay(self, enabled: bool):
        if self.closed:
            return
        self.autoplay_enabled = enabled
        self._spawn(
            self.tracker.set_autoplay(self.identity, self.routine.id, enabled, self.total_steps),
            "Autoplay write",
        )
        if not enabled:
            self._interrupt_countdown()

    def close(self):
        """Tear down. Pending timers are cancelled; later events are ignored."""
        self._cancel_timer()
        self.closed = True

    async def flush(self):
        """Wait for every scheduled write to finish."""
        while self._writes:
            await asyncio.gather(*list(self._writes), return_exceptions=True)
