"""
Run state - running / paused flags and the current phase of the attack cycle

The state object is the cancellation token of the run loop: every suspension
point sleeps through it, so a stop is observed within one slice.
"""

import asyncio
import threading
import time
from enum import Enum
from typing import Optional

SLEEP_SLICE = 0.25
PAUSE_POLL = 0.5


class Phase(Enum):
    """Named steps of the attack cycle, surfaced to the operator"""
    IDLE = 'idle'
    DETECT_SCREEN = 'detect_screen'
    SEARCH_VILLAGE = 'search_village'
    ANALYZE_VILLAGE = 'analyze_village'
    CHECK_CRITERIA = 'check_criteria'
    START_ATTACK = 'start_attack'
    DEPLOY_TROOPS = 'deploy_troops'
    WAIT_ATTACK = 'wait_attack'
    END_ATTACK = 'end_attack'
    RETURN_HOME = 'return_home'
    CHECK_WALL_UPGRADE = 'check_wall_upgrade'
    UPGRADE_WALL = 'upgrade_wall'
    RANDOM_PAUSE = 'random_pause'


class RunState:
    """Thread-safe running / paused / phase holder"""

    def __init__(self, sleep_slice: float = SLEEP_SLICE, pause_poll: float = PAUSE_POLL):
        self.sleep_slice = sleep_slice
        self.pause_poll = pause_poll
        self._lock = threading.Lock()
        self._running = False
        self._paused = False
        self._phase = Phase.IDLE

    @property
    def running(self) -> bool:
        with self._lock:
            return self._running

    @property
    def paused(self) -> bool:
        with self._lock:
            return self._paused

    @property
    def phase(self) -> Phase:
        with self._lock:
            return self._phase

    @property
    def status(self) -> str:
        """Operator-facing status: idle, running or paused"""
        with self._lock:
            if not self._running:
                return 'idle'
            return 'paused' if self._paused else 'running'

    def start(self) -> None:
        with self._lock:
            self._running = True
            self._paused = False

    def request_stop(self) -> None:
        with self._lock:
            self._running = False
            self._paused = False

    def set_paused(self, paused: bool) -> None:
        with self._lock:
            self._paused = paused

    def set_phase(self, phase: Phase) -> None:
        with self._lock:
            self._phase = phase

    async def sleep(self, seconds: float) -> bool:
        """
        Sleep in short slices

        Returns:
            False as soon as a stop is observed, True when the full time elapsed
        """
        deadline = time.monotonic() + max(0.0, seconds)
        while True:
            if not self.running:
                return False
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return True
            await asyncio.sleep(min(self.sleep_slice, remaining))

    async def wait_while_paused(self) -> bool:
        """
        Poll while paused

        Returns:
            False if stopped while waiting, True once running and unpaused
        """
        while self.running and self.paused:
            await asyncio.sleep(self.pause_poll)
        return self.running

    async def checkpoint(self, phase: Optional[Phase] = None) -> bool:
        """Honour pause and stop; optionally enter a new phase"""
        if not await self.wait_while_paused():
            return False
        if phase is not None:
            self.set_phase(phase)
        return True
