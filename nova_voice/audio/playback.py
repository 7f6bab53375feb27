"""Speak assistant replies and watch for the user talking over them."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional

from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import DeviceBusyError

from .barge_in import BargeInMonitor, LevelSource
from .devices import SPEAKER, DeviceArbiter
from .interfaces import SpeechSynthesizer, SynthesisEvent, VoiceParams
from .prosody import add_natural_pauses

LOGGER = logging.getLogger(__name__)

MonitorFactory = Callable[..., BargeInMonitor]


class PlaybackState(str, Enum):
    SPEAKING = "speaking"
    CANCELLED = "cancelled"
    COMPLETED = "completed"


@dataclass(slots=True, eq=False)
class PlaybackSession:
    """One ``speak`` call; exactly one of its callbacks fires."""

    utterance_text: str
    session_id: int
    state: PlaybackState = PlaybackState.SPEAKING
    interrupt_armed: bool = False
    error: Optional[BaseException] = None
    _on_complete: Callable[[], None] | None = field(default=None, repr=False)
    _on_interrupt: Callable[[], None] | None = field(default=None, repr=False)
    _monitor: Any = field(default=None, repr=False)
    _speaker_claimed: bool = field(default=False, repr=False)


class SpeechPlayback:
    """Drive the synthesizer and a barge-in monitor for each reply.

    Completion covers normal end of speech and synthesizer failures, so a
    broken voice never leaves the caller waiting. Interruption covers barge-in
    and :meth:`stop`. Either way the monitor is stopped and devices released
    before the callback runs.
    """

    OWNER = "speech-playback"

    def __init__(
        self,
        store: ConfigStore,
        synthesizer: SpeechSynthesizer,
        *,
        level_source: LevelSource | None = None,
        arbiter: DeviceArbiter | None = None,
        monitor_factory: MonitorFactory = BargeInMonitor,
    ) -> None:
        self.store = store
        self.synthesizer = synthesizer
        self.level_source = level_source
        self.arbiter = arbiter or DeviceArbiter()
        self._monitor_factory = monitor_factory
        self._lock = threading.RLock()
        self._counter = 0
        self._current: PlaybackSession | None = None

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def current(self) -> PlaybackSession | None:
        with self._lock:
            return self._current

    def speak(
        self,
        text: str,
        on_complete: Callable[[], None],
        on_interrupt: Callable[[], None],
    ) -> PlaybackSession:
        self.stop()
        settings = self.store.current
        spoken = add_natural_pauses(text)
        with self._lock:
            self._counter += 1
            session = PlaybackSession(
                utterance_text=spoken,
                session_id=self._counter,
                _on_complete=on_complete,
                _on_interrupt=on_interrupt,
            )
            self._current = session

        if not spoken.strip():
            self._settle(session, PlaybackState.COMPLETED)
            return session

        try:
            self.arbiter.claim(SPEAKER, self.OWNER, exclusive=True)
            session._speaker_claimed = True
        except DeviceBusyError as exc:
            self._settle(session, PlaybackState.COMPLETED, exc)
            return session

        if settings.barge_in_enabled and self.level_source is not None:
            monitor = self._monitor_factory(
                self.level_source,
                threshold=settings.barge_in_threshold,
                required_samples=settings.barge_in_required_samples,
                poll_interval=settings.barge_in_poll_interval_sec,
                arm_delay=settings.barge_in_arm_delay_sec,
                on_trigger=lambda: self._on_barge_in(session),
                on_armed=lambda: self._on_armed(session),
                arbiter=self.arbiter,
            )
            monitor.start()
            with self._lock:
                attached = session.state is PlaybackState.SPEAKING
                if attached:
                    session._monitor = monitor
            if not attached:
                monitor.stop()

        LOGGER.info("Speaking (session %s): %s", session.session_id, spoken[:60])
        try:
            self.synthesizer.speak(
                spoken,
                VoiceParams.from_settings(settings),
                lambda event, error=None: self._on_synthesis(session, event, error),
            )
        except Exception as exc:
            LOGGER.exception("Synthesizer refused the reply")
            self._settle(session, PlaybackState.COMPLETED, exc)
        return session

    def stop(self) -> bool:
        """Cancel the current reply as if the user had interrupted."""
        with self._lock:
            session = self._current
        if session is None:
            return False
        return self._settle(session, PlaybackState.CANCELLED)

    # ------------------------------------------------------------------ #
    # Internals
    # ------------------------------------------------------------------ #
    def _on_armed(self, session: PlaybackSession) -> None:
        with self._lock:
            if session.state is PlaybackState.SPEAKING:
                session.interrupt_armed = True

    def _on_barge_in(self, session: PlaybackSession) -> None:
        self._settle(session, PlaybackState.CANCELLED)

    def _on_synthesis(self, session: PlaybackSession, event: SynthesisEvent, error: BaseException | None) -> None:
        if event is SynthesisEvent.STARTED:
            LOGGER.debug("Synthesis started (session %s)", session.session_id)
            return
        if event is SynthesisEvent.ERROR:
            LOGGER.warning("Synthesis error (session %s): %s", session.session_id, error)
        # finished, failed, or cancelled by something other than us
        self._settle(session, PlaybackState.COMPLETED, error)

    def _settle(self, session: PlaybackSession, state: PlaybackState, error: BaseException | None = None) -> bool:
        with self._lock:
            if session.state is not PlaybackState.SPEAKING:
                return False
            session.state = state
            session.error = error
            if self._current is session:
                self._current = None
            monitor, session._monitor = session._monitor, None
            if state is PlaybackState.CANCELLED:
                self.synthesizer.cancel()
        if monitor is not None:
            monitor.stop()
        if session._speaker_claimed:
            self.arbiter.release(SPEAKER, self.OWNER)
            session._speaker_claimed = False
        callback = session._on_complete if state is PlaybackState.COMPLETED else session._on_interrupt
        session._on_complete = session._on_interrupt = None
        LOGGER.debug("Playback session %s %s", session.session_id, state.value)
        if callback is not None:
            callback()
        return True
