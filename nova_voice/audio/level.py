"""Coarse energy meter shared by endpointing, visualisation and barge-in."""

from __future__ import annotations

import math

import numpy as np


_INT16_SCALE = 32768.0


class AudioLevelMeter:
    """Map a buffer of samples to a normalised level in [0, 1].

    The level is the mean absolute amplitude multiplied by ``gain`` and
    clamped, so ordinary speech lands well inside the range.
    """

    def __init__(self, gain: float = 50.0) -> None:
        self.gain = gain

    def measure(self, frame: bytes | np.ndarray | None) -> float:
        samples = self.to_samples(frame)
        if samples.size == 0:
            return 0.0
        mean_abs = float(np.mean(np.abs(samples)))
        if not math.isfinite(mean_abs):
            return 0.0
        return min(1.0, max(0.0, mean_abs * self.gain))

    @staticmethod
    def to_samples(frame: bytes | np.ndarray | None) -> np.ndarray:
        """Return float32 samples in [-1, 1] from PCM16 bytes or an array."""
        if frame is None:
            return np.zeros(0, dtype=np.float32)
        if isinstance(frame, (bytes, bytearray, memoryview)):
            raw = bytes(frame)
            if len(raw) % 2:
                raw = raw[:-1]
            return np.frombuffer(raw, dtype="<i2").astype(np.float32) / _INT16_SCALE
        array = np.asarray(frame)
        if array.dtype == np.int16:
            return array.astype(np.float32).ravel() / _INT16_SCALE
        return array.astype(np.float32).ravel()

    @staticmethod
    def dbfs(frame: bytes | np.ndarray | None) -> float:
        """RMS level in dBFS, -inf for silence."""
        samples = AudioLevelMeter.to_samples(frame)
        if samples.size == 0:
            return float("-inf")
        rms = float(np.sqrt(np.mean(np.square(samples))))
        if rms <= 0.0:
            return float("-inf")
        return 20.0 * math.log10(rms)
