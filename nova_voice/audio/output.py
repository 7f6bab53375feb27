"""Callback-driven PCM16 output stream."""

from __future__ import annotations

import logging
import threading
from collections import deque
from dataclasses import dataclass

import sounddevice as sd

from nova_voice.core.errors import PlaybackError

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class OutputConfig:
    sample_rate: int = 22_050
    channels: int = 1
    device_name: str | None = None


class PcmOutput:
    """Queue PCM buffers and feed them to a RawOutputStream."""

    def __init__(self, config: OutputConfig | None = None) -> None:
        self.config = config or OutputConfig()
        self._buffer: deque[bytes] = deque()
        self._drained = threading.Condition(threading.RLock())
        self._stream: sd.RawOutputStream | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def play(self, pcm_data: bytes, sample_rate: int | None = None) -> None:
        if not pcm_data:
            return
        with self._drained:
            if sample_rate and sample_rate != self.config.sample_rate:
                self._close_stream()
                self.config.sample_rate = sample_rate
            self._ensure_stream()
            self._buffer.append(pcm_data)

    def wait_drained(self, cancelled: threading.Event, poll: float = 0.05) -> bool:
        """Block until the queue is empty; False when ``cancelled`` was set first."""
        with self._drained:
            while self._buffer:
                if cancelled.is_set():
                    return False
                self._drained.wait(poll)
        return not cancelled.is_set()

    def stop(self) -> None:
        """Drop queued audio and close the device."""
        with self._drained:
            self._buffer.clear()
            self._close_stream()
            self._drained.notify_all()

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _ensure_stream(self) -> None:
        if self._stream is not None:
            if not self._stream.active:
                self._stream.start()
            return
        try:
            self._stream = sd.RawOutputStream(
                samplerate=self.config.sample_rate,
                channels=self.config.channels,
                dtype="int16",
                callback=self._on_write,
                device=self.config.device_name,
            )
            self._stream.start()
        except sd.PortAudioError as exc:
            self._stream = None
            raise PlaybackError(f"Audio output unavailable: {exc}") from exc

    def _close_stream(self) -> None:
        stream, self._stream = self._stream, None
        if stream is None:
            return
        try:
            stream.stop()
            stream.close()
        except sd.PortAudioError as exc:  # pragma: no cover
            LOGGER.warning("Audio output close failed: %s", exc)

    def _on_write(self, outdata, frames: int, time, status) -> None:  # noqa: ANN001
        if status:  # pragma: no cover
            LOGGER.debug("Audio output status: %s", status)
        with self._drained:
            filled = 0
            size = len(outdata)
            while filled < size and self._buffer:
                chunk = self._buffer.popleft()
                take = min(len(chunk), size - filled)
                outdata[filled : filled + take] = chunk[:take]
                if take < len(chunk):
                    self._buffer.appendleft(chunk[take:])
                filled += take
            if filled < size:
                outdata[filled:] = b"\x00" * (size - filled)
            if not self._buffer:
                self._drained.notify_all()
