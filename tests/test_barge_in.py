from __future__ import annotations

import threading

from nova_voice.audio.barge_in import BargeInMonitor
from nova_voice.audio.devices import MICROPHONE, DeviceArbiter
from nova_voice.core.errors import CaptureError


class FakeLevels:
    def __init__(self, level: float = 0.0, error: Exception | None = None):
        self.level = level
        self.error = error
        self.started = 0
        self.stopped = 0

    def start(self):
        if self.error is not None:
            raise self.error
        self.started += 1

    def stop(self):
        self.stopped += 1

    def read_level(self):
        return self.level


def _monitor(source=None, **overrides):
    fired = []
    options = dict(
        threshold=0.15,
        required_samples=3,
        poll_interval=0.001,
        arm_delay=0.0,
        on_trigger=lambda: fired.append(True),
        arbiter=DeviceArbiter(),
    )
    options.update(overrides)
    return BargeInMonitor(source or FakeLevels(), **options), fired


def test_fires_after_required_consecutive_samples():
    monitor, fired = _monitor()
    assert monitor.observe(0.5) is False
    assert monitor.observe(0.5) is False
    assert monitor.observe(0.5) is True
    assert fired == [True]
    assert monitor.observe(0.9) is False
    assert fired == [True]


def test_one_short_then_quiet_does_not_fire():
    monitor, fired = _monitor()
    for level in (0.5, 0.5, 0.1, 0.5, 0.5):
        monitor.observe(level)
    assert fired == []
    assert not monitor.fired


def test_threshold_is_strict():
    monitor, fired = _monitor()
    for _ in range(5):
        monitor.observe(0.15)
    assert fired == []


def test_stopped_monitor_ignores_levels():
    monitor, fired = _monitor()
    monitor.stop()
    for _ in range(5):
        monitor.observe(1.0)
    assert fired == []
    assert monitor.start() is False


def test_polling_thread_triggers_and_releases():
    source = FakeLevels(level=0.8)
    triggered = threading.Event()
    armed = threading.Event()
    arbiter = DeviceArbiter()
    monitor, _ = _monitor(source, on_trigger=triggered.set, on_armed=armed.set, arbiter=arbiter)

    assert monitor.start() is True
    assert arbiter.owners(MICROPHONE) == [BargeInMonitor.OWNER]
    assert triggered.wait(2.0)
    assert armed.is_set()
    monitor.stop()
    assert source.started == 1 and source.stopped == 1
    assert arbiter.owners(MICROPHONE) == []


def test_exclusive_microphone_owner_blocks_monitor():
    arbiter = DeviceArbiter()
    arbiter.claim(MICROPHONE, "speech-capture")
    monitor, _ = _monitor(arbiter=arbiter)
    assert monitor.start() is False
    assert arbiter.owners(MICROPHONE) == ["speech-capture"]


def test_source_failure_disarms_quietly():
    source = FakeLevels(error=CaptureError(CaptureError.DEVICE_BUSY))
    monitor, fired = _monitor(source)
    assert monitor.arm() is False
    monitor.stop()
    assert source.stopped == 0
    assert fired == []
