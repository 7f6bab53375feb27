"""Endpointed speech capture: microphone frames in, one finalized utterance out."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Callable, Protocol

from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import CaptureError, DeviceBusyError
from nova_voice.services.schemas import TranscriptEvent, Utterance

from .devices import MICROPHONE, DeviceArbiter
from .interfaces import RecognitionSession, SpeechRecognizer
from .level import AudioLevelMeter

LOGGER = logging.getLogger(__name__)

UtteranceCallback = Callable[[Utterance], None]
TimerFactory = Callable[..., Any]


class AudioSource(Protocol):
    """Push-mode microphone; see MicrophoneCapture."""

    def bind(self, consumer: Callable[[bytes, bool], None] | None) -> None: ...

    def prepare(self) -> int:
        """Refresh device settings; returns the sample rate frames will arrive at."""
        ...

    def start(self) -> None: ...

    def stop(self) -> None: ...


@dataclass(slots=True, frozen=True)
class CaptureHandle:
    session_id: int


@dataclass(slots=True, eq=False)
class _Session:
    handle: CaptureHandle
    on_utterance: UtteranceCallback
    text: str = ""
    finalized: bool = False
    claimed: bool = False
    recognition: RecognitionSession | None = None
    timer: Any = None


class SpeechCapture:
    """Own the microphone while listening and decide when the user is done.

    Every partial transcript restarts a silence timer whose duration is read
    from configuration each time. When it expires with a non-empty transcript,
    or when the recognizer reports a final or error event, the utterance is
    finalized and handed to ``on_utterance`` exactly once. Failures are
    delivered the same way, as a finalized utterance carrying ``error``.
    """

    OWNER = "speech-capture"

    def __init__(
        self,
        store: ConfigStore,
        source: AudioSource,
        recognizer: SpeechRecognizer,
        *,
        arbiter: DeviceArbiter | None = None,
        meter: AudioLevelMeter | None = None,
        timer_factory: TimerFactory = threading.Timer,
    ) -> None:
        self.store = store
        self.source = source
        self.recognizer = recognizer
        self.arbiter = arbiter or DeviceArbiter()
        self.meter = meter or AudioLevelMeter()
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._counter = 0
        self._active: _Session | None = None
        self._level = 0.0
        self._level_listeners: list[Callable[[float], None]] = []
        self._partial_listeners: list[Callable[[str], None]] = []

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def active(self) -> bool:
        with self._lock:
            return self._active is not None

    @property
    def level(self) -> float:
        return self._level

    @property
    def partial_text(self) -> str:
        with self._lock:
            return self._active.text if self._active is not None else ""

    def add_level_listener(self, listener: Callable[[float], None]) -> None:
        self._level_listeners.append(listener)

    def add_partial_listener(self, listener: Callable[[str], None]) -> None:
        self._partial_listeners.append(listener)

    def start(self, on_utterance: UtteranceCallback) -> CaptureHandle:
        """Begin a listening session, or return the one already running."""
        with self._lock:
            if self._active is not None:
                return self._active.handle
            self._counter += 1
            session = _Session(handle=CaptureHandle(self._counter), on_utterance=on_utterance)
            self._active = session
            self._level = 0.0

        try:
            self.arbiter.claim(MICROPHONE, self.OWNER, exclusive=True)
            session.claimed = True
        except DeviceBusyError as exc:
            self._finalize(session, CaptureError(CaptureError.DEVICE_BUSY, str(exc)))
            return session.handle

        sample_rate = self.source.prepare()
        try:
            session.recognition = self.recognizer.open(
                lambda event: self._on_transcript(session, event),
                sample_rate=sample_rate,
            )
        except CaptureError as exc:
            self._finalize(session, exc)
            return session.handle
        except Exception as exc:
            LOGGER.exception("Could not open a recognition session")
            self._finalize(session, CaptureError(CaptureError.ENGINE, str(exc)))
            return session.handle

        self.source.bind(lambda frame, voiced: self._on_frame(session, frame, voiced))
        try:
            self.source.start()
        except CaptureError as exc:
            self._finalize(session, exc)
            return session.handle
        except Exception as exc:
            LOGGER.exception("Microphone failed to start")
            self._finalize(session, CaptureError(CaptureError.AUDIO_ROUTE, str(exc)))
            return session.handle

        LOGGER.info("Listening (session %s)", session.handle.session_id)
        return session.handle

    def stop(self) -> Utterance | None:
        """End the session without invoking its callback.

        Returns what was heard so far, or None when nothing was active.
        """
        with self._lock:
            session = self._active
        if session is None:
            return None
        return self._finalize(session, None, deliver=False)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _on_frame(self, session: _Session, frame: bytes, voiced: bool) -> None:
        if session is not self._active:
            return
        level = self.meter.measure(frame)
        self._level = level
        for listener in list(self._level_listeners):
            listener(level)
        recognition = session.recognition
        if voiced and recognition is not None:
            recognition.feed(frame)

    def _on_transcript(self, session: _Session, event: TranscriptEvent) -> None:
        if event.error is not None:
            with self._lock:
                heard = event.text or session.text
            if heard.strip():
                # keep what was understood before the engine gave up
                LOGGER.warning("Recognizer error after partial transcript: %s", event.error)
                with self._lock:
                    session.text = heard
                self._finalize(session, None)
            else:
                error = event.error if isinstance(event.error, CaptureError) else CaptureError(CaptureError.ENGINE, str(event.error))
                self._finalize(session, error)
            return

        if event.final:
            with self._lock:
                if session is not self._active:
                    return
                if event.text:
                    session.text = event.text
            self._finalize(session, None)
            return

        with self._lock:
            if session is not self._active or session.finalized:
                return
            session.text = event.text
            self._restart_timer(session)
        for listener in list(self._partial_listeners):
            listener(event.text)

    def _restart_timer(self, session: _Session) -> None:
        if session.timer is not None:
            session.timer.cancel()
        timeout = self.store.current.silence_timeout_sec
        timer = self._timer_factory(timeout, self._on_silence, args=(session,))
        timer.daemon = True
        session.timer = timer
        timer.start()

    def _on_silence(self, session: _Session) -> None:
        with self._lock:
            if session is not self._active or not session.text.strip():
                return
        LOGGER.debug("Silence timeout reached (session %s)", session.handle.session_id)
        self._finalize(session, None)

    def _finalize(self, session: _Session, error: CaptureError | None, *, deliver: bool = True) -> Utterance | None:
        with self._lock:
            if session.finalized or session is not self._active:
                return None
            session.finalized = True
            self._active = None
            utterance = Utterance(text=session.text.strip(), finalized=True, error=error)
            timer, session.timer = session.timer, None
        if timer is not None:
            timer.cancel()
        self._teardown(session)
        if error is not None:
            LOGGER.warning("Listening failed (%s): %s", error.reason, error)
        if deliver:
            session.on_utterance(utterance)
        return utterance

    def _teardown(self, session: _Session) -> None:
        self.source.bind(None)
        try:
            self.source.stop()
        except Exception:  # device already gone
            LOGGER.debug("Microphone stop failed", exc_info=True)
        if session.recognition is not None:
            session.recognition.cancel()
        if session.claimed:
            self.arbiter.release(MICROPHONE, self.OWNER)
            session.claimed = False
        self._level = 0.0
