"""Frame-level speech detection used by eco mode."""

from __future__ import annotations

from dataclasses import dataclass

import webrtcvad


_VALID_SAMPLE_RATES = (8000, 16_000, 32_000, 48_000)
_VALID_FRAME_DURATIONS_MS = (10, 20, 30)
_BYTES_PER_SAMPLE = 2


@dataclass(slots=True)
class VADConfig:
    aggressiveness: int = 2  # 0 (lenient) .. 3 (strict)


class VoiceActivityDetector:
    """WebRTC VAD that tolerates odd-sized PCM16 frames."""

    def __init__(self, config: VADConfig | None = None) -> None:
        self.config = config or VADConfig()
        self._vad = webrtcvad.Vad(self.config.aggressiveness)

    def is_speech(self, frame: bytes, sample_rate: int) -> bool:
        if sample_rate not in _VALID_SAMPLE_RATES:
            # webrtcvad rejects other rates; treat everything as voiced
            return True
        fitted = self.fit_frame(frame, sample_rate)
        if not fitted:
            return False
        return self._vad.is_speech(fitted, sample_rate)

    @staticmethod
    def fit_frame(frame: bytes, sample_rate: int) -> bytes:
        """Pad or trim to the nearest 10/20/30 ms frame length."""
        sample_count = len(frame) // _BYTES_PER_SAMPLE
        if sample_count == 0:
            return b""
        candidates = [sample_rate * duration // 1000 for duration in _VALID_FRAME_DURATIONS_MS]
        target = min(candidates, key=lambda expected: abs(expected - sample_count))
        target_bytes = target * _BYTES_PER_SAMPLE
        if len(frame) >= target_bytes:
            return frame[:target_bytes]
        return frame + bytes(target_bytes - len(frame))
