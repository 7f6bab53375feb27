"""Assemble the concrete audio, model and action components."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass

from nova_voice.audio.capture import SpeechCapture
from nova_voice.audio.devices import DeviceArbiter
from nova_voice.audio.level import AudioLevelMeter
from nova_voice.audio.playback import SpeechPlayback
from nova_voice.config.store import ConfigStore
from nova_voice.core.logger import setup_logging
from nova_voice.services.actions import ActionDirectiveProcessor
from nova_voice.services.builtin_actions import register_builtin_actions
from nova_voice.services.chat_client import StreamingChatClient
from nova_voice.services.executor import ActionRegistry

from .orchestrator import ConversationHooks, ConversationOrchestrator, ConversationState

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class VoiceRuntime:
    store: ConfigStore
    arbiter: DeviceArbiter
    capture: SpeechCapture
    playback: SpeechPlayback
    chat: StreamingChatClient
    registry: ActionRegistry
    orchestrator: ConversationOrchestrator


def build_registry(store: ConfigStore) -> ActionRegistry:
    registry = ActionRegistry()
    register_builtin_actions(registry, store)
    return registry


def build_chat_client(store: ConfigStore) -> StreamingChatClient:
    return StreamingChatClient(store)


def build_runtime(store: ConfigStore | None = None, hooks: ConversationHooks | None = None) -> VoiceRuntime:
    """Wire microphone, Whisper, Piper and the chat endpoint from settings.

    Device streams and models are opened on first use, not here.
    """
    # local imports: PortAudio, Whisper and Piper load only when a live loop is built
    from nova_voice.audio.microphone import MicrophoneCapture, MicrophoneMeter
    from nova_voice.audio.transcriber import FasterWhisperRecognizer
    from nova_voice.audio.tts import PiperSpeechEngine

    store = store or ConfigStore()
    settings = store.current
    arbiter = DeviceArbiter()
    meter = AudioLevelMeter()

    capture = SpeechCapture(
        store,
        MicrophoneCapture(store=store),
        FasterWhisperRecognizer(store),
        arbiter=arbiter,
        meter=meter,
    )

    synthesizer = PiperSpeechEngine(settings.tts_models_dir, device_name=settings.output_device)
    playback = SpeechPlayback(
        store,
        synthesizer,
        level_source=MicrophoneMeter(meter=meter, store=store),
        arbiter=arbiter,
    )

    chat = build_chat_client(store)
    registry = build_registry(store)
    orchestrator = ConversationOrchestrator(
        store,
        capture,
        chat,
        playback,
        dispatcher=registry.dispatch_async,
        processor=ActionDirectiveProcessor(),
        hooks=hooks,
    )
    return VoiceRuntime(
        store=store,
        arbiter=arbiter,
        capture=capture,
        playback=playback,
        chat=chat,
        registry=registry,
        orchestrator=orchestrator,
    )


async def serve(runtime: VoiceRuntime) -> None:
    """Run the conversation until it goes Idle on its own or is cancelled."""
    orchestrator = runtime.orchestrator
    await orchestrator.start()
    try:
        await orchestrator.wait_for_state(ConversationState.IDLE)
    finally:
        await orchestrator.aclose()


def run_voice_loop(store: ConfigStore | None = None, hooks: ConversationHooks | None = None) -> None:
    """Blocking entry point: talk until Ctrl+C."""
    store = store or ConfigStore()
    setup_logging(store.current)
    runtime = build_runtime(store, hooks)
    LOGGER.info("Voice loop starting with model %s at %s", store.current.chat_model, store.current.chat_base_url)
    try:
        asyncio.run(serve(runtime))
    except KeyboardInterrupt:
        LOGGER.info("Voice loop stopped by user")
