from __future__ import annotations

import threading

import numpy as np

from nova_voice.audio.transcriber import FasterWhisperRecognizer, linear_resample
from nova_voice.core.errors import CaptureError


class FakeEngine:
    def __init__(self, texts):
        self.texts = list(texts)
        self.calls = []

    def transcribe(self, audio):
        self.calls.append(audio)
        return self.texts.pop(0) if self.texts else ""


class Collector:
    def __init__(self):
        self.events = []
        self.final = threading.Event()
        self.partial = threading.Event()

    def __call__(self, event):
        self.events.append(event)
        if event.final:
            self.final.set()
        else:
            self.partial.set()


FRAME = np.full(320, 1000, dtype="<i2").tobytes()


def test_partials_then_final(make_store):
    engine = FakeEngine(["hello", "hello world"])
    recognizer = FasterWhisperRecognizer(make_store(asr_partial_interval_sec=0.01), engine_loader=lambda config: engine)
    collector = Collector()
    session = recognizer.open(collector, sample_rate=16_000)

    session.feed(FRAME)
    assert collector.partial.wait(2.0)
    session.finish()
    assert collector.final.wait(2.0)

    assert collector.events[0].text == "hello" and not collector.events[0].final
    assert collector.events[-1].final
    assert collector.events[-1].text == "hello world"
    assert engine.calls[0].dtype == np.float32


def test_loader_failure_reports_engine_error(make_store):
    def loader(config):
        raise RuntimeError("model not found")

    recognizer = FasterWhisperRecognizer(make_store(), engine_loader=loader)
    collector = Collector()
    recognizer.open(collector, sample_rate=16_000)
    assert collector.final.wait(2.0)
    error = collector.events[0].error
    assert isinstance(error, CaptureError) and error.reason == CaptureError.ENGINE


def test_cancel_suppresses_events(make_store):
    engine = FakeEngine(["ignored"])
    recognizer = FasterWhisperRecognizer(make_store(asr_partial_interval_sec=0.01), engine_loader=lambda config: engine)
    collector = Collector()
    session = recognizer.open(collector, sample_rate=16_000)
    session.cancel()
    session.feed(FRAME)
    session.finish()
    assert not collector.final.wait(0.1)
    assert collector.events == []


def test_linear_resample():
    samples = np.linspace(-1, 1, 480, dtype=np.float32)
    assert linear_resample(samples, 16_000, 16_000) is samples
    resampled = linear_resample(samples, 48_000, 16_000)
    assert resampled.size == 160
    assert resampled[0] == -1.0 and resampled[-1] == 1.0
