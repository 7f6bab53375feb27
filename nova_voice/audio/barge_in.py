"""Sustained-speech detector that interrupts playback."""

from __future__ import annotations

import logging
import threading
from typing import Callable, Protocol

from nova_voice.core.errors import CaptureError, DeviceBusyError

from .devices import MICROPHONE, DeviceArbiter

LOGGER = logging.getLogger(__name__)


class LevelSource(Protocol):
    """Anything that can report the current microphone level in [0, 1]."""

    def start(self) -> None: ...

    def stop(self) -> None: ...

    def read_level(self) -> float: ...


class BargeInMonitor:
    """Poll a level source and fire once on sustained energy.

    The trigger needs ``required_samples`` consecutive readings above
    ``threshold``; any reading at or below it resets the count, so a click or
    a short echo of the assistant's own voice does not interrupt.
    """

    OWNER = "barge-in"

    def __init__(
        self,
        source: LevelSource,
        *,
        threshold: float,
        required_samples: int,
        poll_interval: float,
        arm_delay: float,
        on_trigger: Callable[[], None],
        on_armed: Callable[[], None] | None = None,
        arbiter: DeviceArbiter | None = None,
    ) -> None:
        self.source = source
        self.threshold = threshold
        self.required_samples = max(1, required_samples)
        self.poll_interval = poll_interval
        self.arm_delay = arm_delay
        self.on_trigger = on_trigger
        self.on_armed = on_armed
        self.arbiter = arbiter or DeviceArbiter()
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._consecutive = 0
        self._fired = False
        self._claimed = False
        self._source_started = False
        self._thread: threading.Thread | None = None

    @property
    def fired(self) -> bool:
        return self._fired

    def start(self) -> bool:
        """Claim shared microphone access and begin polling after the arm delay."""
        with self._lock:
            if self._stop.is_set() or self._thread is not None:
                return False
            try:
                self.arbiter.claim(MICROPHONE, self.OWNER, exclusive=False)
            except DeviceBusyError as exc:
                LOGGER.warning("Barge-in disabled for this reply: %s", exc)
                return False
            self._claimed = True
            self._thread = threading.Thread(target=self._run, name="barge-in", daemon=True)
            self._thread.start()
        return True

    def observe(self, level: float) -> bool:
        """Feed one reading; returns True when this reading fires the trigger."""
        with self._lock:
            if self._fired or self._stop.is_set():
                return False
            if level > self.threshold:
                self._consecutive += 1
            else:
                self._consecutive = 0
            if self._consecutive < self.required_samples:
                return False
            self._fired = True
        LOGGER.info("Barge-in detected after %d samples", self.required_samples)
        self.on_trigger()
        return True

    def arm(self) -> bool:
        """Start the level source; False when stopped or the source fails."""
        with self._lock:
            if self._stop.is_set():
                return False
            try:
                self.source.start()
            except CaptureError as exc:
                LOGGER.warning("Barge-in sampler unavailable: %s", exc)
                return False
            self._source_started = True
        if self.on_armed is not None:
            self.on_armed()
        return True

    def stop(self) -> None:
        """Stop polling and release the microphone; safe from any thread."""
        with self._lock:
            self._stop.set()
            started, self._source_started = self._source_started, False
            claimed, self._claimed = self._claimed, False
            thread = self._thread
        if started:
            self.source.stop()
        if claimed:
            self.arbiter.release(MICROPHONE, self.OWNER)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=1.0)

    def _run(self) -> None:
        if self._stop.wait(self.arm_delay):
            return
        if not self.arm():
            return
        while not self._stop.wait(self.poll_interval):
            if self.observe(self.source.read_level()):
                return
