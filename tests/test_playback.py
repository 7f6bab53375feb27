from __future__ import annotations

import pytest

from nova_voice.audio.devices import MICROPHONE, SPEAKER, DeviceArbiter
from nova_voice.audio.interfaces import SynthesisEvent
from nova_voice.audio.playback import PlaybackState, SpeechPlayback
from nova_voice.core.errors import PlaybackError


class FakeSynthesizer:
    def __init__(self, error: Exception | None = None):
        self.spoken: list[str] = []
        self.voices = []
        self.on_event = None
        self.cancelled = 0
        self.error = error

    def speak(self, text, voice, on_event):
        if self.error is not None:
            raise self.error
        self.spoken.append(text)
        self.voices.append(voice)
        self.on_event = on_event

    def cancel(self):
        self.cancelled += 1


class FakeMonitor:
    def __init__(self, source, **options):
        self.source = source
        self.options = options
        self.started = False
        self.stopped = 0

    def start(self):
        self.started = True
        return True

    def stop(self):
        self.stopped += 1

    def trigger(self):
        self.options["on_trigger"]()


class Outcome:
    def __init__(self):
        self.events: list[str] = []

    def complete(self):
        self.events.append("complete")

    def interrupt(self):
        self.events.append("interrupt")


@pytest.fixture
def rig(make_store):
    monitors: list[FakeMonitor] = []

    def monitor_factory(source, **options):
        monitor = FakeMonitor(source, **options)
        monitors.append(monitor)
        return monitor

    synthesizer = FakeSynthesizer()
    arbiter = DeviceArbiter()
    playback = SpeechPlayback(
        make_store(barge_in_threshold=0.3, voice_rate=0.75),
        synthesizer,
        level_source=object(),
        arbiter=arbiter,
        monitor_factory=monitor_factory,
    )
    return playback, synthesizer, arbiter, monitors


def test_natural_completion(rig):
    playback, synthesizer, arbiter, monitors = rig
    outcome = Outcome()
    session = playback.speak("Sure, and done", outcome.complete, outcome.interrupt)

    assert synthesizer.spoken == ["Sure, and done"]
    assert synthesizer.voices[0].rate == 0.75
    assert arbiter.owners(SPEAKER) == [SpeechPlayback.OWNER]
    assert monitors[0].started
    assert monitors[0].options["threshold"] == 0.3

    synthesizer.on_event(SynthesisEvent.STARTED, None)
    assert outcome.events == []
    synthesizer.on_event(SynthesisEvent.FINISHED, None)

    assert outcome.events == ["complete"]
    assert session.state is PlaybackState.COMPLETED
    assert monitors[0].stopped == 1
    assert arbiter.owners(SPEAKER) == []
    assert playback.current is None


def test_pauses_are_added_before_speaking(rig):
    playback, synthesizer, _arbiter, _monitors = rig
    playback.speak("Steps: eggs and milk", lambda: None, lambda: None)
    assert synthesizer.spoken == ["Steps:... eggs, and milk"]


def test_barge_in_interrupts_once(rig):
    playback, synthesizer, arbiter, monitors = rig
    outcome = Outcome()
    session = playback.speak("a long story", outcome.complete, outcome.interrupt)
    monitors[0].options["on_armed"]()
    assert session.interrupt_armed

    monitors[0].trigger()
    synthesizer.on_event(SynthesisEvent.CANCELLED, None)
    monitors[0].trigger()

    assert outcome.events == ["interrupt"]
    assert session.state is PlaybackState.CANCELLED
    assert synthesizer.cancelled == 1
    assert arbiter.owners(SPEAKER) == []


def test_stop_interrupts_and_returns_false_when_idle(rig):
    playback, synthesizer, _arbiter, _monitors = rig
    outcome = Outcome()
    assert playback.stop() is False
    playback.speak("hello there", outcome.complete, outcome.interrupt)
    assert playback.stop() is True
    assert outcome.events == ["interrupt"]
    synthesizer.on_event(SynthesisEvent.FINISHED, None)
    assert outcome.events == ["interrupt"]


def test_new_speak_cancels_previous(rig):
    playback, synthesizer, arbiter, _monitors = rig
    first, second = Outcome(), Outcome()
    playback.speak("first", first.complete, first.interrupt)
    playback.speak("second", second.complete, second.interrupt)
    assert first.events == ["interrupt"]
    assert second.events == []
    assert arbiter.owners(SPEAKER) == [SpeechPlayback.OWNER]


def test_synthesis_error_counts_as_completion(rig):
    playback, synthesizer, arbiter, _monitors = rig
    outcome = Outcome()
    session = playback.speak("hello", outcome.complete, outcome.interrupt)
    synthesizer.on_event(SynthesisEvent.ERROR, PlaybackError("no voice"))
    assert outcome.events == ["complete"]
    assert isinstance(session.error, PlaybackError)
    assert arbiter.owners(SPEAKER) == []


def test_synthesizer_refusal_completes(make_store):
    playback = SpeechPlayback(make_store(barge_in_enabled=False), FakeSynthesizer(error=FileNotFoundError("voice")))
    outcome = Outcome()
    playback.speak("hello", outcome.complete, outcome.interrupt)
    assert outcome.events == ["complete"]


def test_empty_text_completes_immediately(rig):
    playback, synthesizer, _arbiter, monitors = rig
    outcome = Outcome()
    playback.speak("   ", outcome.complete, outcome.interrupt)
    assert outcome.events == ["complete"]
    assert synthesizer.spoken == []
    assert monitors == []


def test_busy_speaker_completes_with_error(rig):
    playback, synthesizer, arbiter, _monitors = rig
    arbiter.claim(SPEAKER, "other-app")
    outcome = Outcome()
    session = playback.speak("hello", outcome.complete, outcome.interrupt)
    assert outcome.events == ["complete"]
    assert session.error is not None
    assert synthesizer.spoken == []
    assert arbiter.owners(SPEAKER) == ["other-app"]


def test_barge_in_disabled_skips_monitor(make_store):
    monitors = []
    playback = SpeechPlayback(
        make_store(barge_in_enabled=False),
        FakeSynthesizer(),
        level_source=object(),
        monitor_factory=lambda *args, **kwargs: monitors.append(args),
    )
    playback.speak("hello", lambda: None, lambda: None)
    assert monitors == []
    assert playback.arbiter.owners(MICROPHONE) == []
