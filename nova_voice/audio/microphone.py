"""sounddevice-backed microphone input."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, Iterable, Protocol

import sounddevice as sd

from nova_voice.core.errors import CaptureError

from .level import AudioLevelMeter
from .vad import VADConfig, VoiceActivityDetector

LOGGER = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover
    from nova_voice.config.settings import Settings
    from nova_voice.config.store import ConfigStore


class FrameConsumer(Protocol):
    """Receives PCM16 mono frames; ``voiced`` is the VAD verdict."""

    def __call__(self, frame: bytes, voiced: bool) -> None: ...


@dataclass(slots=True)
class MicrophoneConfig:
    sample_rate: int = 16_000
    channels: int = 1
    frame_duration_ms: int = 20
    device_name: str | None = None
    eco_mode: bool = False
    vad_aggressiveness: int = 2

    @classmethod
    def from_settings(cls, settings: Settings) -> MicrophoneConfig:
        return cls(
            sample_rate=settings.sample_rate,
            frame_duration_ms=settings.frame_duration_ms,
            device_name=settings.input_device,
            eco_mode=settings.eco_mode,
            vad_aggressiveness=settings.vad_aggressiveness,
        )


def translate_portaudio_error(exc: Exception) -> CaptureError:
    """Map a PortAudio failure onto a capture error reason."""
    message = str(exc)
    lowered = message.lower()
    if "permission" in lowered or "not authorized" in lowered:
        return CaptureError(CaptureError.PERMISSION_DENIED, message)
    if "busy" in lowered or "unanticipated host error" in lowered:
        return CaptureError(CaptureError.DEVICE_BUSY, message)
    return CaptureError(CaptureError.AUDIO_ROUTE, message)


def input_devices() -> list[str]:
    """Names of devices with at least one input channel."""
    return [
        device["name"]
        for device in sd.query_devices()
        if int(device.get("max_input_channels", 0)) > 0
    ]


def output_devices() -> list[str]:
    return [
        device["name"]
        for device in sd.query_devices()
        if int(device.get("max_output_channels", 0)) > 0
    ]


class MicrophoneCapture:
    """Stream microphone frames to a bound consumer from the PortAudio thread."""

    def __init__(self, config: MicrophoneConfig | None = None, *, store: ConfigStore | None = None) -> None:
        self._store = store
        self.config = config or (MicrophoneConfig.from_settings(store.current) if store else MicrophoneConfig())
        self._vad = self._build_vad(self.config)
        self._consumer: FrameConsumer | None = None
        self._stream: sd.RawInputStream | None = None
        self._lock = threading.Lock()
        self._running = False

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def running(self) -> bool:
        return self._running

    def bind(self, consumer: FrameConsumer | None) -> None:
        self._consumer = consumer

    def available_devices(self) -> Iterable[str]:
        return input_devices()

    def prepare(self) -> int:
        """Pick up device settings for the next start; returns the frame sample rate."""
        with self._lock:
            if self._store is not None and not self._running:
                config = MicrophoneConfig.from_settings(self._store.current)
                if config != self.config:
                    LOGGER.info("Microphone settings changed: %s", config)
                    self.config = config
                    self._vad = self._build_vad(config)
            return self.config.sample_rate

    def start(self) -> None:
        """Open the input stream; raises CaptureError on device failures."""
        if self._consumer is None:
            raise RuntimeError("No audio consumer registered.")
        with self._lock:
            if self._running:
                return
            frame_size = int(self.config.sample_rate * self.config.frame_duration_ms / 1000)
            try:
                self._stream = sd.RawInputStream(
                    samplerate=self.config.sample_rate,
                    channels=self.config.channels,
                    dtype="int16",
                    blocksize=frame_size,
                    callback=self._on_frame,
                    device=self.config.device_name,
                )
                self._stream.start()
            except sd.PortAudioError as exc:
                self._stream = None
                raise translate_portaudio_error(exc) from exc
            self._running = True
            LOGGER.debug("Microphone capture started.")

    def stop(self) -> None:
        with self._lock:
            if not self._running:
                return
            stream, self._stream = self._stream, None
            self._running = False
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:  # pragma: no cover
                LOGGER.warning("Microphone close failed: %s", exc)
        LOGGER.debug("Microphone capture stopped.")

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    @staticmethod
    def _build_vad(config: MicrophoneConfig) -> VoiceActivityDetector | None:
        return VoiceActivityDetector(VADConfig(config.vad_aggressiveness)) if config.eco_mode else None

    def _on_frame(self, indata, frames: int, time, status) -> None:  # noqa: ANN001
        if status:  # pragma: no cover
            LOGGER.warning("Microphone status: %s", status)
        frame = bytes(indata)
        voiced = True
        if self._vad is not None:
            voiced = self._vad.is_speech(frame, self.config.sample_rate)
        consumer = self._consumer
        if consumer is not None:
            consumer(frame, voiced)


class MicrophoneMeter:
    """Low-rate level source for barge-in detection.

    Keeps only the latest block level; nothing is buffered or transcribed, so
    it can run next to playback without feeding the recognizer.
    """

    def __init__(
        self,
        config: MicrophoneConfig | None = None,
        meter: AudioLevelMeter | None = None,
        *,
        store: ConfigStore | None = None,
        block_duration_ms: int = 50,
    ) -> None:
        self._store = store
        self.config = config or MicrophoneConfig()
        self.meter = meter or AudioLevelMeter()
        self.block_duration_ms = block_duration_ms
        self._level = 0.0
        self._lock = threading.Lock()
        self._stream: sd.RawInputStream | None = None

    def start(self) -> None:
        with self._lock:
            if self._stream is not None:
                return
            if self._store is not None:
                self.config = MicrophoneConfig.from_settings(self._store.current)
            blocksize = int(self.config.sample_rate * self.block_duration_ms / 1000)
            try:
                stream = sd.RawInputStream(
                    samplerate=self.config.sample_rate,
                    channels=1,
                    dtype="int16",
                    blocksize=blocksize,
                    callback=self._on_block,
                    device=self.config.device_name,
                )
                stream.start()
            except sd.PortAudioError as exc:
                raise translate_portaudio_error(exc) from exc
            self._stream = stream
            self._level = 0.0

    def stop(self) -> None:
        with self._lock:
            stream, self._stream = self._stream, None
            self._level = 0.0
        if stream is not None:
            try:
                stream.stop()
                stream.close()
            except sd.PortAudioError as exc:  # pragma: no cover
                LOGGER.warning("Level sampler close failed: %s", exc)

    def read_level(self) -> float:
        return self._level

    def _on_block(self, indata, frames: int, time, status) -> None:  # noqa: ANN001
        self._level = self.meter.measure(bytes(indata))


