"""Turn-taking state machine: listen, think, speak, listen again."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional, Protocol, Sequence

from nova_voice.audio.capture import CaptureHandle
from nova_voice.audio.playback import PlaybackSession
from nova_voice.audio.prosody import clean_for_speech
from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import NovaError, describe_error
from nova_voice.core.trace import new_request_id
from nova_voice.services.actions import ActionDirectiveProcessor, AsyncDispatcher, strip_directives
from nova_voice.services.schemas import ChatResult, ConversationTurn, Utterance

LOGGER = logging.getLogger(__name__)


class ConversationState(str, Enum):
    IDLE = "idle"
    LISTENING = "listening"
    THINKING = "thinking"
    SPEAKING = "speaking"


class CaptureLike(Protocol):
    def start(self, on_utterance: Callable[[Utterance], None]) -> CaptureHandle: ...

    def stop(self) -> Utterance | None: ...


class ChatLike(Protocol):
    async def stream(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn | str,
        attachment: Any = None,
        on_chunk: Callable[[str], None] | None = None,
    ) -> ChatResult: ...

    async def send(
        self,
        history: Sequence[ConversationTurn],
        new_turn: ConversationTurn | str,
        attachment: Any = None,
    ) -> ChatResult: ...


class PlaybackLike(Protocol):
    def speak(self, text: str, on_complete: Callable[[], None], on_interrupt: Callable[[], None]) -> PlaybackSession: ...

    def stop(self) -> bool: ...


@dataclass(slots=True)
class ConversationHooks:
    """Optional observers, all invoked on the event loop."""

    on_state: Optional[Callable[[ConversationState], None]] = None
    on_partial: Optional[Callable[[str], None]] = None
    on_level: Optional[Callable[[float], None]] = None
    on_user: Optional[Callable[[str], None]] = None
    on_chunk: Optional[Callable[[str], None]] = None
    on_reply: Optional[Callable[[str], None]] = None
    on_error: Optional[Callable[[str], None]] = None


@dataclass(slots=True, frozen=True)
class _Event:
    kind: str
    generation: int | None = None
    payload: Any = None


class ConversationOrchestrator:
    """Sequence capture, the chat client and playback into one loop.

    Every callback from a sub-component, on whatever thread it fires, is
    posted to a queue drained by a single task, so transitions never run
    concurrently. Each sub-operation is tagged with the generation current
    when it started; events from an older generation are dropped, which is
    how a cancelled request or a stopped playback is kept from steering the
    machine later.
    """

    def __init__(
        self,
        store: ConfigStore,
        capture: CaptureLike,
        chat: ChatLike,
        playback: PlaybackLike,
        *,
        dispatcher: AsyncDispatcher | None = None,
        processor: ActionDirectiveProcessor | None = None,
        hooks: ConversationHooks | None = None,
    ) -> None:
        self.store = store
        self.capture = capture
        self.chat = chat
        self.playback = playback
        self.dispatcher = dispatcher
        self.processor = processor or ActionDirectiveProcessor()
        self.hooks = hooks or ConversationHooks()
        self._state = ConversationState.IDLE
        self._generation = 0
        self._history: list[ConversationTurn] = []
        self._capture_failures = 0
        self._loop: asyncio.AbstractEventLoop | None = None
        self._queue: asyncio.Queue[_Event] | None = None
        self._pump_task: asyncio.Task[None] | None = None
        self._think_task: asyncio.Task[None] | None = None
        self._waiters: list[tuple[ConversationState, asyncio.Future[None]]] = []
        self.transitions: list[ConversationState] = []

        add_partial = getattr(capture, "add_partial_listener", None)
        if add_partial is not None:
            add_partial(self._partial_from_thread)
        add_level = getattr(capture, "add_level_listener", None)
        if add_level is not None:
            add_level(self._level_from_thread)

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    @property
    def state(self) -> ConversationState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def history(self) -> tuple[ConversationTurn, ...]:
        return tuple(self._history)

    def reset_history(self) -> None:
        self._history.clear()

    async def start(self) -> None:
        """Begin listening; restarts a stopped session."""
        await self._command("start")

    async def stop(self) -> None:
        """Cancel whatever is running and go Idle."""
        if self._pump_task is None:
            self._set_state(ConversationState.IDLE)
            return
        await self._command("stop")

    async def interrupt(self) -> None:
        """User tap: cut speech or thinking short, or send what was heard."""
        await self._command("interrupt")

    async def submit_text(self, text: str) -> None:
        """Treat typed text as a finalized utterance."""
        await self._command("submit", text)

    async def wait_for_state(self, state: ConversationState, timeout: float | None = None) -> None:
        if self._state is state:
            return
        future: asyncio.Future[None] = asyncio.get_running_loop().create_future()
        entry = (state, future)
        self._waiters.append(entry)
        try:
            await asyncio.wait_for(future, timeout)
        finally:
            if entry in self._waiters:
                self._waiters.remove(entry)

    async def aclose(self) -> None:
        """Stop the session and the event pump."""
        await self.stop()
        pump, self._pump_task = self._pump_task, None
        if pump is not None:
            pump.cancel()
            await asyncio.gather(pump, return_exceptions=True)
        self._queue = None

    # ------------------------------------------------------------------ #
    # Event funnel
    # ------------------------------------------------------------------ #
    def _ensure_pump(self) -> None:
        if self._pump_task is not None and not self._pump_task.done():
            return
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._pump_task = self._loop.create_task(self._pump(), name="conversation-pump")

    async def _command(self, kind: str, payload: Any = None) -> None:
        self._ensure_pump()
        assert self._loop is not None and self._queue is not None
        done: asyncio.Future[None] = self._loop.create_future()
        self._queue.put_nowait(_Event(kind, None, (payload, done)))
        await done

    def _post(self, kind: str, generation: int, payload: Any = None) -> None:
        """Thread-safe delivery of a sub-component callback."""
        loop, queue = self._loop, self._queue
        if loop is None or queue is None or loop.is_closed():
            return
        try:
            loop.call_soon_threadsafe(queue.put_nowait, _Event(kind, generation, payload))
        except RuntimeError:  # loop shutting down
            LOGGER.debug("Dropped %s event after loop shutdown", kind)

    async def _pump(self) -> None:
        assert self._queue is not None
        while True:
            event = await self._queue.get()
            if event.generation is not None and event.generation != self._generation:
                LOGGER.debug("Ignoring stale %s (generation %s, now %s)", event.kind, event.generation, self._generation)
                continue
            try:
                await self._handle(event)
            except asyncio.CancelledError:
                raise
            except Exception:
                LOGGER.exception("Transition failed on %s", event.kind)
                self._notify_error("Something went wrong.")
                self._teardown_all()
                self._set_state(ConversationState.IDLE)
            finally:
                if event.generation is None:
                    _payload, done = event.payload
                    if not done.done():
                        done.set_result(None)

    async def _handle(self, event: _Event) -> None:
        kind = event.kind
        if event.generation is None:
            payload, _done = event.payload
            if kind == "start":
                if self._state is ConversationState.IDLE:
                    self._capture_failures = 0
                    self._begin_listening()
            elif kind == "stop":
                await self._cancel_thinking()
                self._teardown_all()
                self._set_state(ConversationState.IDLE)
            elif kind == "interrupt":
                await self._handle_interrupt()
            elif kind == "submit":
                await self._cancel_thinking()
                self._teardown_all()
                self._begin_thinking(str(payload))
            return

        if kind == "utterance":
            self._on_utterance(event.payload)
        elif kind == "reply":
            self._on_reply(*event.payload)
        elif kind == "failed":
            self._on_failed(event.payload)
        elif kind == "spoken":
            self._on_spoken()
        elif kind == "interrupted":
            LOGGER.info("Reply interrupted, listening again")
            self._begin_listening()
        elif kind == "partial":
            self._call_hook(self.hooks.on_partial, event.payload)
        elif kind == "level":
            self._call_hook(self.hooks.on_level, event.payload)

    # ------------------------------------------------------------------ #
    # Transitions
    # ------------------------------------------------------------------ #
    def _next_generation(self) -> int:
        self._generation += 1
        return self._generation

    def _set_state(self, state: ConversationState) -> None:
        if state is self._state:
            return
        LOGGER.info("State %s -> %s", self._state.value, state.value)
        self._state = state
        self.transitions.append(state)
        for wanted, future in list(self._waiters):
            if wanted is state and not future.done():
                future.set_result(None)
        self._call_hook(self.hooks.on_state, state)

    def _begin_listening(self) -> None:
        generation = self._next_generation()
        self._set_state(ConversationState.LISTENING)
        self.capture.start(lambda utterance: self._post("utterance", generation, utterance))

    def _on_utterance(self, utterance: Utterance) -> None:
        if self._state is not ConversationState.LISTENING:
            return
        if utterance.error is not None:
            self._capture_failures += 1
            self._notify_error(describe_error(utterance.error))
            limit = self.store.current.max_capture_failures
            if self._capture_failures >= limit:
                LOGGER.error("Listening failed %d times in a row, going idle", self._capture_failures)
                self._next_generation()
                self._set_state(ConversationState.IDLE)
                return
            self._begin_listening()
            return
        self._capture_failures = 0
        if not utterance.usable:
            self._begin_listening()
            return
        self._begin_thinking(utterance.text.strip())

    def _begin_thinking(self, text: str) -> None:
        generation = self._next_generation()
        self._set_state(ConversationState.THINKING)
        self._call_hook(self.hooks.on_user, text)
        assert self._loop is not None
        self._think_task = self._loop.create_task(self._think(generation, text), name="conversation-think")

    async def _think(self, generation: int, text: str) -> None:
        new_request_id()
        history = tuple(self._history)

        def forward(delta: str) -> None:
            if generation == self._generation:
                self._call_hook(self.hooks.on_chunk, delta)

        try:
            result = await self.chat.stream(history, text, on_chunk=forward)
            if result.error is not None or not result.text.strip():
                LOGGER.warning("Streaming reply failed (%r), retrying once in batch mode", result.error)
                result = await self.chat.send(history, text)
            if result.error is not None:
                self._post("failed", generation, result.error)
                return
            if not result.text.strip():
                self._post("failed", generation, NovaError("empty reply"))
                return
            reply = result.text.strip()
            if self.dispatcher is not None:
                resolved = await self.processor.resolve_async(reply, self.dispatcher)
            else:
                resolved = strip_directives(reply)
            self._post("reply", generation, (text, resolved))
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            LOGGER.exception("Reply pipeline failed")
            self._post("failed", generation, exc)

    def _on_reply(self, user_text: str, reply: str) -> None:
        self._think_task = None
        self._remember(ConversationTurn.user(user_text), ConversationTurn.assistant(reply))
        self._call_hook(self.hooks.on_reply, reply)
        spoken = clean_for_speech(reply)
        if not spoken:
            self._begin_listening()
            return
        self._begin_speaking(spoken)

    def _on_failed(self, error: BaseException) -> None:
        self._think_task = None
        self._notify_error(describe_error(error))
        self._begin_speaking(self.store.current.apology_text)

    def _begin_speaking(self, text: str) -> None:
        generation = self._next_generation()
        self._set_state(ConversationState.SPEAKING)
        self.playback.speak(
            text,
            on_complete=lambda: self._post("spoken", generation),
            on_interrupt=lambda: self._post("interrupted", generation),
        )

    def _on_spoken(self) -> None:
        if self.store.current.auto_start_listening:
            self._begin_listening()
        else:
            self._next_generation()
            self._set_state(ConversationState.IDLE)

    async def _handle_interrupt(self) -> None:
        if self._state is ConversationState.SPEAKING:
            # on_interrupt comes back through the queue with the current generation
            self.playback.stop()
        elif self._state is ConversationState.THINKING:
            await self._cancel_thinking()
            self._begin_listening()
        elif self._state is ConversationState.LISTENING:
            heard = self.capture.stop()
            if heard is not None and heard.usable:
                self._begin_thinking(heard.text.strip())
            else:
                self._begin_listening()
        else:
            self._begin_listening()

    # ------------------------------------------------------------------ #
    # Helpers
    # ------------------------------------------------------------------ #
    async def _cancel_thinking(self) -> None:
        self._next_generation()
        task, self._think_task = self._think_task, None
        if task is not None and not task.done():
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)

    def _teardown_all(self) -> None:
        self._next_generation()
        self.capture.stop()
        self.playback.stop()

    def _remember(self, *turns: ConversationTurn) -> None:
        self._history.extend(turns)
        limit = self.store.current.history_max_turns
        if limit <= 0:
            self._history.clear()
        elif len(self._history) > limit:
            del self._history[: len(self._history) - limit]

    def _partial_from_thread(self, text: str) -> None:
        self._post("partial", self._generation, text)

    def _level_from_thread(self, level: float) -> None:
        if self.hooks.on_level is not None:
            self._post("level", self._generation, level)

    def _notify_error(self, message: str) -> None:
        LOGGER.warning("Surfacing error: %s", message)
        self._call_hook(self.hooks.on_error, message)

    @staticmethod
    def _call_hook(hook: Optional[Callable[[Any], None]], value: Any) -> None:
        if hook is None:
            return
        try:
            hook(value)
        except Exception:
            LOGGER.exception("Conversation hook failed")
