from __future__ import annotations

import math

import numpy as np
import pytest

from nova_voice.audio.level import AudioLevelMeter


def _pcm(value: int, count: int = 320) -> bytes:
    return np.full(count, value, dtype="<i2").tobytes()


def test_silence_is_zero():
    meter = AudioLevelMeter()
    assert meter.measure(_pcm(0)) == 0.0
    assert meter.measure(b"") == 0.0
    assert meter.measure(None) == 0.0


def test_level_is_mean_amplitude_times_gain():
    meter = AudioLevelMeter(gain=50)
    # 328 / 32768 ~= 0.01
    assert meter.measure(_pcm(328)) == pytest.approx(0.5, abs=1e-2)
    assert meter.measure(_pcm(-328)) == pytest.approx(0.5, abs=1e-2)


def test_level_is_clamped_to_one():
    meter = AudioLevelMeter()
    assert meter.measure(_pcm(32767)) == 1.0


def test_odd_trailing_byte_is_ignored():
    meter = AudioLevelMeter()
    assert meter.measure(_pcm(328) + b"\x7f") == meter.measure(_pcm(328))


def test_float_arrays_are_taken_as_is():
    meter = AudioLevelMeter(gain=10)
    assert meter.measure(np.full(100, 0.05, dtype=np.float32)) == pytest.approx(0.5)


def test_dbfs():
    assert AudioLevelMeter.dbfs(_pcm(0)) == float("-inf")
    full = AudioLevelMeter.dbfs(_pcm(32767))
    assert math.isclose(full, 0.0, abs_tol=0.01)
