"""Recording lifecycle: state machine, observable UI state and elapsed timer.

Lifecycle::

    idle --start--> recording <--pause/resume--> paused
    recording|paused --stop--> stopped   (a new start begins a new session)

Paused time never counts toward elapsed time. Pause and resume are
idempotent: pausing while paused keeps the original pause start.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from dataclasses import dataclass, replace
from enum import Enum
from typing import AsyncIterator, Awaitable, Callable, List, Optional


logger = logging.getLogger("chunkscribe.state")

Clock = Callable[[], float]
Sleep = Callable[[float], Awaitable[None]]

STATUS_RECORDING = "Recording"
STATUS_STOPPED = "Stopped"


class RecordingPhase(str, Enum):
    IDLE = "idle"
    RECORDING = "recording"
    PAUSED = "paused"
    STOPPED = "stopped"


class PauseCause(str, Enum):
    USER = "user"
    PHONE_CALL = "phone_call"


_PAUSE_STATUS = {
    PauseCause.USER: "Paused",
    PauseCause.PHONE_CALL: "Paused - Phone call",
}


class InvalidTransition(RuntimeError):
    def __init__(self, action: str, phase: RecordingPhase) -> None:
        super().__init__(f"Cannot {action} while {phase.value}")
        self.action = action
        self.phase = phase


class RecordingStateMachine:
    def __init__(self, clock: Clock = time.monotonic) -> None:
        self._clock = clock
        self.phase = RecordingPhase.IDLE
        self.session_id: Optional[int] = None
        self.pause_cause: Optional[PauseCause] = None
        self.stop_requested = False
        self._started_at = 0.0
        self._ended_at: Optional[float] = None
        self._pause_started_at: Optional[float] = None
        self._total_paused = 0.0

    @property
    def is_active(self) -> bool:
        return self.phase in (RecordingPhase.RECORDING, RecordingPhase.PAUSED)

    @property
    def is_paused(self) -> bool:
        return self.phase == RecordingPhase.PAUSED

    @property
    def total_paused_s(self) -> float:
        return self._total_paused

    def start(self, session_id: int) -> None:
        if self.is_active:
            raise InvalidTransition("start", self.phase)
        self.phase = RecordingPhase.RECORDING
        self.session_id = session_id
        self.pause_cause = None
        self.stop_requested = False
        self._started_at = self._clock()
        self._ended_at = None
        self._pause_started_at = None
        self._total_paused = 0.0

    def pause(self, cause: PauseCause = PauseCause.USER) -> None:
        if not self.is_active:
            raise InvalidTransition("pause", self.phase)
        if self._pause_started_at is None:
            self._pause_started_at = self._clock()
        self.phase = RecordingPhase.PAUSED
        self.pause_cause = cause

    def resume(self) -> None:
        if not self.is_active:
            raise InvalidTransition("resume", self.phase)
        self._close_pause_span()
        self.phase = RecordingPhase.RECORDING
        self.pause_cause = None

    def request_stop(self) -> None:
        if not self.is_active:
            raise InvalidTransition("stop", self.phase)
        self.stop_requested = True

    def finish(self) -> None:
        """Enter the terminal state once the capture loop has flushed."""
        if self.phase in (RecordingPhase.IDLE, RecordingPhase.STOPPED):
            return
        self._close_pause_span()
        self._ended_at = self._clock()
        self.phase = RecordingPhase.STOPPED
        self.pause_cause = None

    def elapsed_ms(self) -> int:
        if self.phase == RecordingPhase.IDLE:
            return 0
        now = self._ended_at if self._ended_at is not None else self._clock()
        in_progress = now - self._pause_started_at if self._pause_started_at is not None else 0.0
        elapsed = now - self._started_at - self._total_paused - in_progress
        return max(0, int(elapsed * 1000))

    def status_text(self) -> str:
        if self.phase == RecordingPhase.PAUSED and self.pause_cause is not None:
            return _PAUSE_STATUS[self.pause_cause]
        if self.phase == RecordingPhase.RECORDING:
            return STATUS_RECORDING
        return STATUS_STOPPED

    def _close_pause_span(self) -> None:
        if self._pause_started_at is not None:
            self._total_paused += self._clock() - self._pause_started_at
            self._pause_started_at = None


def format_elapsed(seconds: int) -> str:
    mm, ss = divmod(max(0, int(seconds)), 60)
    return f"{mm:02d}:{ss:02d}"


@dataclass(frozen=True)
class RecordingUiState:
    active_session_id: Optional[int] = None
    status: str = STATUS_STOPPED
    elapsed_sec: int = 0
    is_paused: bool = False
    phase: RecordingPhase = RecordingPhase.IDLE

    @property
    def elapsed_text(self) -> str:
        return format_elapsed(self.elapsed_sec)


class ObservableState:
    """Single-writer value cell with conflating subscribers.

    Each subscriber sees the current value first, then the latest value after
    every change; intermediate values may be skipped.
    """

    def __init__(self, initial: Optional[RecordingUiState] = None) -> None:
        self._value = initial or RecordingUiState()
        self._subscribers: List[asyncio.Queue] = []

    @property
    def value(self) -> RecordingUiState:
        return self._value

    def set(self, **changes) -> RecordingUiState:
        new = replace(self._value, **changes)
        if new != self._value:
            self._value = new
            self._notify()
        return new

    def reset(self, **changes) -> RecordingUiState:
        self._value = replace(RecordingUiState(), **changes)
        self._notify()
        return self._value

    async def subscribe(self) -> AsyncIterator[RecordingUiState]:
        q: asyncio.Queue = asyncio.Queue(maxsize=1)
        q.put_nowait(self._value)
        self._subscribers.append(q)
        try:
            while True:
                yield await q.get()
        finally:
            self._subscribers.remove(q)

    def view(self) -> "StateView":
        return StateView(self)

    def _notify(self) -> None:
        for q in self._subscribers:
            if q.full():
                q.get_nowait()
            q.put_nowait(self._value)


class StateView:
    """Read-only handle handed to observers."""

    def __init__(self, cell: ObservableState) -> None:
        self._cell = cell

    @property
    def value(self) -> RecordingUiState:
        return self._cell.value

    def subscribe(self) -> AsyncIterator[RecordingUiState]:
        return self._cell.subscribe()


class ElapsedTimer:
    """Publishes elapsed recording seconds once per ``interval``."""

    def __init__(
        self,
        machine: RecordingStateMachine,
        state: ObservableState,
        interval: float = 1.0,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self._machine = machine
        self._state = state
        self._interval = interval
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="elapsed-timer")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task

    def tick(self) -> int:
        elapsed = self._machine.elapsed_ms() // 1000
        self._state.set(elapsed_sec=elapsed)
        return elapsed

    async def _run(self) -> None:
        while True:
            self.tick()
            await self._sleep(self._interval)
