"""Engine-neutral contracts between the speech components and their backends.

Kept free of audio and model imports so capture and playback logic loads
without PortAudio, Whisper or Piper present.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from nova_voice.services.schemas import TranscriptEvent

if TYPE_CHECKING:  # pragma: no cover
    from nova_voice.config.settings import Settings

# rate 0.5 is the neutral speaking rate
_NEUTRAL_RATE = 0.5
_BASE_NOISE_SCALE = 0.667

TranscriptCallback = Callable[[TranscriptEvent], None]


class RecognitionSession(Protocol):
    """One push-mode recognition request."""

    def feed(self, frame: bytes) -> None: ...

    def finish(self) -> None: ...

    def cancel(self) -> None: ...


class SpeechRecognizer(Protocol):
    """Opens recognition sessions that report partial, final and error events."""

    def open(self, on_event: TranscriptCallback, *, sample_rate: int) -> RecognitionSession: ...


class SynthesisEvent(str, Enum):
    STARTED = "started"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    ERROR = "error"


SynthesisCallback = Callable[[SynthesisEvent, Optional[BaseException]], None]


@dataclass(slots=True, frozen=True)
class VoiceParams:
    voice_id: str = ""
    rate: float = 0.5
    pitch: float = 1.0

    @classmethod
    def from_settings(cls, settings: "Settings") -> "VoiceParams":
        return cls(voice_id=settings.voice_id, rate=settings.voice_rate, pitch=settings.voice_pitch)

    @property
    def length_scale(self) -> float:
        """Piper duration multiplier; higher rate means shorter phonemes."""
        return max(0.5, min(2.0, _NEUTRAL_RATE / max(self.rate, 0.05)))

    @property
    def noise_scale(self) -> float:
        return _BASE_NOISE_SCALE * self.pitch


class SpeechSynthesizer(Protocol):
    """Speaks text asynchronously and reports lifecycle events."""

    def speak(self, text: str, voice: VoiceParams, on_event: SynthesisCallback) -> None: ...

    def cancel(self) -> None: ...
