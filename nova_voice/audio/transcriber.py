"""Speech recognition sessions powered by faster-whisper."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from functools import lru_cache
from typing import Callable

import numpy as np
from faster_whisper import WhisperModel

from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import CaptureError
from nova_voice.services.schemas import TranscriptEvent

from .interfaces import TranscriptCallback

LOGGER = logging.getLogger(__name__)

WHISPER_SAMPLE_RATE = 16_000


@dataclass(slots=True, frozen=True)
class WhisperConfig:
    model: str = "base.en"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str | None = "en"


class FasterWhisperEngine:
    """Thin wrapper around WhisperModel for float32 mono audio."""

    def __init__(self, config: WhisperConfig) -> None:
        self.config = config
        self.model = WhisperModel(
            config.model,
            device=config.device,
            compute_type=config.compute_type,
        )

    def transcribe(self, audio: np.ndarray) -> str:
        if audio.size == 0:
            return ""
        segments, _info = self.model.transcribe(
            audio,
            language=self.config.language,
            beam_size=1,
            vad_filter=True,
            vad_parameters={"min_silence_duration_ms": 250},
            condition_on_previous_text=False,
        )
        return " ".join(segment.text.strip() for segment in segments if segment.text.strip()).strip()


@lru_cache(maxsize=2)
def get_whisper_engine(config: WhisperConfig) -> FasterWhisperEngine:
    """Return a cached engine for the given model settings."""
    LOGGER.info("Loading faster-whisper model %s on %s", config.model, config.device)
    return FasterWhisperEngine(config)


def linear_resample(samples: np.ndarray, sr_in: int, sr_out: int) -> np.ndarray:
    """Linear resampler for mono float audio."""
    if sr_in == sr_out or samples.size == 0:
        return samples
    n_out = int(round(samples.size * sr_out / sr_in))
    t_out = np.linspace(0, samples.size - 1, n_out)
    return np.interp(t_out, np.arange(samples.size), samples).astype(np.float32)


class FasterWhisperRecognizer:
    """SpeechRecognizer that re-decodes the growing buffer at a fixed interval.

    Whisper has no native streaming mode, so partial transcripts come from
    decoding everything heard so far; a partial is only emitted when the text
    changes, which lets silence run the endpointing timer down.
    """

    def __init__(self, store: ConfigStore, engine_loader: Callable[[WhisperConfig], FasterWhisperEngine] = get_whisper_engine) -> None:
        self.store = store
        self._engine_loader = engine_loader

    def open(self, on_event: TranscriptCallback, *, sample_rate: int) -> "WhisperSession":
        settings = self.store.current
        config = WhisperConfig(
            model=settings.asr_model,
            device=settings.asr_device,
            compute_type=settings.asr_compute_type,
            language=settings.asr_language,
        )
        session = WhisperSession(
            lambda: self._engine_loader(config),
            on_event,
            sample_rate=sample_rate,
            interval=settings.asr_partial_interval_sec,
        )
        session.start()
        return session


class WhisperSession:
    def __init__(
        self,
        engine_factory: Callable[[], FasterWhisperEngine],
        on_event: TranscriptCallback,
        *,
        sample_rate: int,
        interval: float,
    ) -> None:
        self._engine_factory = engine_factory
        self._on_event = on_event
        self._sample_rate = sample_rate
        self._interval = interval
        self._chunks: list[bytes] = []
        self._dirty = False
        self._last_text = ""
        self._lock = threading.Lock()
        self._wake = threading.Event()
        self._finishing = False
        self._cancelled = False
        self._thread = threading.Thread(target=self._run, name="whisper-session", daemon=True)

    def start(self) -> None:
        self._thread.start()

    def feed(self, frame: bytes) -> None:
        if not frame:
            return
        with self._lock:
            if self._finishing or self._cancelled:
                return
            self._chunks.append(frame)
            self._dirty = True

    def finish(self) -> None:
        with self._lock:
            self._finishing = True
        self._wake.set()

    def cancel(self) -> None:
        with self._lock:
            self._cancelled = True
        self._wake.set()

    # ------------------------------------------------------------------ #
    # Worker
    # ------------------------------------------------------------------ #
    def _run(self) -> None:
        try:
            engine = self._engine_factory()
        except Exception as exc:  # model missing, bad device, ...
            LOGGER.exception("Speech recognizer failed to load")
            self._emit(TranscriptEvent(text="", final=True, error=CaptureError(CaptureError.ENGINE, str(exc))))
            return

        while True:
            self._wake.wait(self._interval)
            self._wake.clear()
            with self._lock:
                cancelled = self._cancelled
                finishing = self._finishing
                dirty = self._dirty
                self._dirty = False
                audio_bytes = b"".join(self._chunks) if (dirty or finishing) else b""
            if cancelled:
                return
            if not (dirty or finishing):
                continue
            try:
                text = engine.transcribe(self._to_whisper_audio(audio_bytes))
            except Exception as exc:
                LOGGER.exception("Speech recognition failed")
                self._emit(
                    TranscriptEvent(text=self._last_text, final=True, error=CaptureError(CaptureError.ENGINE, str(exc)))
                )
                return
            if finishing:
                self._emit(TranscriptEvent(text=text or self._last_text, final=True))
                return
            if text and text != self._last_text:
                self._last_text = text
                self._emit(TranscriptEvent(text=text))

    def _to_whisper_audio(self, pcm: bytes) -> np.ndarray:
        if len(pcm) % 2:
            pcm = pcm[:-1]
        samples = np.frombuffer(pcm, dtype=np.int16).astype(np.float32) / 32768.0
        return linear_resample(samples, self._sample_rate, WHISPER_SAMPLE_RATE)

    def _emit(self, event: TranscriptEvent) -> None:
        with self._lock:
            if self._cancelled:
                return
        self._on_event(event)
