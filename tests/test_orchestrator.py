from __future__ import annotations

import asyncio
import threading

import pytest

from nova_voice.audio.capture import CaptureHandle
from nova_voice.core.errors import CaptureError, ChatClientError, ChatErrorKind
from nova_voice.runtime.orchestrator import ConversationHooks, ConversationOrchestrator, ConversationState
from nova_voice.services.executor import ActionRegistry
from nova_voice.services.schemas import ChatResult, Role, Utterance

IDLE = ConversationState.IDLE
LISTENING = ConversationState.LISTENING
THINKING = ConversationState.THINKING
SPEAKING = ConversationState.SPEAKING


class FakeCapture:
    def __init__(self, fail_with: CaptureError | None = None):
        self.callbacks = []
        self.stops = 0
        self.fail_with = fail_with
        self.pending_text: str | None = None
        self.partial_listeners = []

    def add_partial_listener(self, listener):
        self.partial_listeners.append(listener)

    def start(self, on_utterance):
        self.callbacks.append(on_utterance)
        if self.fail_with is not None:
            on_utterance(Utterance("", finalized=True, error=self.fail_with))
        return CaptureHandle(len(self.callbacks))

    def stop(self):
        self.stops += 1
        text, self.pending_text = self.pending_text, None
        return Utterance(text, finalized=True) if text else None

    def say(self, text):
        self.callbacks[-1](Utterance(text, finalized=True))


class FakeChat:
    def __init__(self, stream_result=ChatResult("ok"), send_result=ChatResult("ok"), gate=None):
        self.stream_result = stream_result
        self.send_result = send_result
        self.gate = gate
        self.calls = []
        self.cancelled = False

    async def stream(self, history, new_turn, attachment=None, on_chunk=None):
        self.calls.append(("stream", tuple(history), new_turn))
        try:
            if self.gate is not None:
                await self.gate.wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        if on_chunk is not None and self.stream_result.text:
            on_chunk(self.stream_result.text)
        return self.stream_result

    async def send(self, history, new_turn, attachment=None):
        self.calls.append(("send", tuple(history), new_turn))
        return self.send_result


class FakePlayback:
    def __init__(self):
        self.spoken: list[str] = []
        self.stops = 0
        self._callbacks = None

    def speak(self, text, on_complete, on_interrupt):
        self.spoken.append(text)
        self._callbacks = (on_complete, on_interrupt)

    def finish(self):
        on_complete, _ = self._callbacks
        self._callbacks = None
        on_complete()

    def stop(self):
        self.stops += 1
        if self._callbacks is None:
            return False
        _, on_interrupt = self._callbacks
        self._callbacks = None
        on_interrupt()
        return True


@pytest.fixture
def registry():
    registry = ActionRegistry()
    registry.register("weather", lambda: "72F sunny")
    return registry


@pytest.fixture
def build(make_store, registry):
    def _build(chat=None, capture=None, hooks=None, dispatcher=None, **settings):
        capture = capture or FakeCapture()
        chat = chat or FakeChat()
        playback = FakePlayback()
        orchestrator = ConversationOrchestrator(
            make_store(**settings),
            capture,
            chat,
            playback,
            dispatcher=dispatcher or registry.dispatch_async,
            hooks=hooks,
        )
        return orchestrator, capture, chat, playback

    return _build


@pytest.mark.asyncio
async def test_full_turn_with_action(build):
    chunks = []
    orchestrator, capture, chat, playback = build(
        chat=FakeChat(stream_result=ChatResult("bet [ACTION:weather]")),
        hooks=ConversationHooks(on_chunk=chunks.append),
    )
    await orchestrator.start()
    assert orchestrator.state is LISTENING

    capture.say("what's the weather")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    assert playback.spoken == ["bet 72F sunny"]
    assert chunks == ["bet [ACTION:weather]"]

    playback.finish()
    await orchestrator.wait_for_state(LISTENING, timeout=1)
    assert orchestrator.transitions == [LISTENING, THINKING, SPEAKING, LISTENING]
    assert [(turn.role, turn.text) for turn in orchestrator.history] == [
        (Role.USER, "what's the weather"),
        (Role.ASSISTANT, "bet 72F sunny"),
    ]
    assert len(capture.callbacks) == 2
    await orchestrator.aclose()
    assert orchestrator.state is IDLE


@pytest.mark.asyncio
async def test_plain_function_executor(build):
    threads = []

    def dispatch(name, params):
        threads.append(threading.current_thread())
        return "72F sunny"

    orchestrator, capture, _chat, playback = build(
        chat=FakeChat(stream_result=ChatResult("bet [ACTION:weather]")),
        dispatcher=dispatch,
    )
    await orchestrator.start()
    capture.say("what's the weather")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    assert playback.spoken == ["bet 72F sunny"]
    assert threads and threads[0] is not threading.main_thread()
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_stream_failure_falls_back_to_batch(build):
    chat = FakeChat(
        stream_result=ChatResult("", ChatClientError(ChatErrorKind.UNREACHABLE)),
        send_result=ChatResult("**Hello** there"),
    )
    orchestrator, capture, chat, playback = build(chat=chat)
    await orchestrator.start()
    capture.say("hi")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    assert [call[0] for call in chat.calls] == ["stream", "send"]
    assert playback.spoken == ["Hello there"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_failed_request_apologizes_then_listens(build):
    errors = []
    failure = ChatResult("", ChatClientError(ChatErrorKind.TIMEOUT))
    orchestrator, capture, chat, playback = build(
        chat=FakeChat(stream_result=failure, send_result=failure),
        hooks=ConversationHooks(on_error=errors.append),
    )
    await orchestrator.start()
    capture.say("hi")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    assert playback.spoken == ["Sorry, couldn't process that."]
    assert errors == ["Connection timed out - is the model server running?"]

    playback.finish()
    await orchestrator.wait_for_state(LISTENING, timeout=1)
    assert orchestrator.history == ()
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_empty_utterance_keeps_listening(build):
    orchestrator, capture, chat, _playback = build()
    await orchestrator.start()
    capture.say("   ")
    await asyncio.sleep(0.01)
    assert orchestrator.state is LISTENING
    assert len(capture.callbacks) == 2
    assert chat.calls == []
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_repeated_capture_failures_go_idle(build):
    errors = []
    capture = FakeCapture(fail_with=CaptureError(CaptureError.PERMISSION_DENIED))
    orchestrator, capture, _chat, _playback = build(
        capture=capture,
        hooks=ConversationHooks(on_error=errors.append),
        max_capture_failures=3,
    )
    await orchestrator.start()
    await orchestrator.wait_for_state(IDLE, timeout=1)
    assert len(capture.callbacks) == 3
    assert errors == ["Microphone access is not allowed."] * 3
    assert orchestrator.transitions == [LISTENING, IDLE]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_interrupt_while_speaking_listens_immediately(build):
    orchestrator, capture, _chat, playback = build()
    await orchestrator.start()
    capture.say("tell me a story")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)

    await orchestrator.interrupt()
    await orchestrator.wait_for_state(LISTENING, timeout=1)
    assert playback.stops == 1
    assert orchestrator.transitions == [LISTENING, THINKING, SPEAKING, LISTENING]
    assert len(capture.callbacks) == 2
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_interrupt_while_thinking_cancels_request(build):
    gate = asyncio.Event()
    chat = FakeChat(gate=gate)
    orchestrator, capture, chat, playback = build(chat=chat)
    await orchestrator.start()
    capture.say("hello")
    await orchestrator.wait_for_state(THINKING, timeout=1)
    await asyncio.sleep(0.01)

    await orchestrator.interrupt()
    assert orchestrator.state is LISTENING
    assert chat.cancelled
    gate.set()
    await asyncio.sleep(0.01)
    assert orchestrator.state is LISTENING
    assert playback.spoken == []
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_interrupt_while_listening_sends_what_was_heard(build):
    orchestrator, capture, chat, playback = build()
    await orchestrator.start()
    capture.pending_text = "turn it up"
    await orchestrator.interrupt()
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    assert chat.calls[0][2] == "turn it up"
    assert playback.spoken == ["ok"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_stop_ignores_late_callbacks(build):
    orchestrator, capture, chat, _playback = build()
    await orchestrator.start()
    await orchestrator.stop()
    assert orchestrator.state is IDLE
    assert capture.stops >= 1

    capture.callbacks[0](Utterance("too late", finalized=True))
    await asyncio.sleep(0.01)
    assert orchestrator.state is IDLE
    assert chat.calls == []

    await orchestrator.start()
    assert orchestrator.state is LISTENING
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_history_is_trimmed(build):
    orchestrator, capture, chat, playback = build(history_max_turns=2)
    await orchestrator.start()
    for text in ("first", "second"):
        capture.say(text)
        await orchestrator.wait_for_state(SPEAKING, timeout=1)
        playback.finish()
        await orchestrator.wait_for_state(LISTENING, timeout=1)
    assert [turn.text for turn in orchestrator.history] == ["second", "ok"]
    # the second request saw the first exchange
    assert [turn.text for turn in chat.calls[1][1]] == ["first", "ok"]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_goes_idle_after_reply_without_auto_listen(build):
    orchestrator, _capture, _chat, playback = build(auto_start_listening=False)
    await orchestrator.submit_text("typed question")
    await orchestrator.wait_for_state(SPEAKING, timeout=1)
    playback.finish()
    await orchestrator.wait_for_state(IDLE, timeout=1)
    assert orchestrator.transitions == [THINKING, SPEAKING, IDLE]
    await orchestrator.aclose()


@pytest.mark.asyncio
async def test_partials_from_other_threads_reach_hook(build):
    received = asyncio.Event()
    partials = []

    def on_partial(text):
        partials.append(text)
        received.set()

    orchestrator, capture, _chat, _playback = build(hooks=ConversationHooks(on_partial=on_partial))
    await orchestrator.start()
    worker = threading.Thread(target=capture.partial_listeners[0], args=("hel",))
    worker.start()
    worker.join()
    await asyncio.wait_for(received.wait(), 1)
    assert partials == ["hel"]
    await orchestrator.aclose()
