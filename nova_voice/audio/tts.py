"""Text-to-speech using Piper voices."""

from __future__ import annotations

import logging
import threading
import unicodedata
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterator

from piper import PiperVoice, SynthesisConfig

from nova_voice.core.errors import PlaybackError

from .interfaces import SynthesisCallback, SynthesisEvent, VoiceParams
from .prosody import split_sentences

if TYPE_CHECKING:  # pragma: no cover
    from .output import PcmOutput

LOGGER = logging.getLogger(__name__)


@dataclass(slots=True)
class PiperConfig:
    model_path: Path
    config_path: Path
    speaker_id: int | None = None


class PiperTTS:
    """Thin wrapper around PiperVoice."""

    def __init__(self, config: PiperConfig) -> None:
        self.config = config
        self._voice = self._load_voice(config)

    def synthesize_stream(
        self,
        text: str,
        *,
        length_scale: float = 1.0,
        noise_scale: float | None = None,
    ) -> Iterator[tuple[bytes, int]]:
        """Yield (pcm16 bytes, sample_rate) chunks."""
        text = self._sanitize_text(text)
        if not text.strip():
            return
        kwargs: dict[str, object] = {}
        if self.config.speaker_id is not None:
            kwargs["speaker_id"] = self.config.speaker_id
        if length_scale != 1.0:
            kwargs["length_scale"] = length_scale
        if noise_scale is not None and noise_scale > 0:
            kwargs["noise_scale"] = noise_scale
        syn_config = SynthesisConfig(**kwargs) if kwargs else None
        for chunk in self._voice.synthesize(text, syn_config=syn_config):
            yield chunk.audio_int16_bytes, chunk.sample_rate

    @staticmethod
    def _load_voice(config: PiperConfig) -> PiperVoice:
        if not config.model_path.exists():
            raise FileNotFoundError(f"Piper model not found: {config.model_path}")
        if not config.config_path.exists():
            raise FileNotFoundError(f"Piper config not found: {config.config_path}")
        return PiperVoice.load(str(config.model_path), str(config.config_path))

    @staticmethod
    def _sanitize_text(text: str) -> str:
        """Strip combining marks the voice may have no phonemes for."""
        normalized = unicodedata.normalize("NFD", text)
        stripped = "".join(ch for ch in normalized if unicodedata.category(ch) != "Mn")
        return unicodedata.normalize("NFC", stripped)


def resolve_voice_model(models_dir: Path, voice_id: str) -> PiperConfig:
    """Locate ``<voice_id>.onnx`` (or the first voice) under ``models_dir``."""
    models_dir = models_dir.expanduser()
    if voice_id:
        candidates = [models_dir / f"{voice_id}.onnx", models_dir / voice_id / f"{voice_id}.onnx"]
        model_path = next((path for path in candidates if path.exists()), candidates[0])
    else:
        found = sorted(models_dir.glob("**/*.onnx")) if models_dir.exists() else []
        if not found:
            raise FileNotFoundError(f"No Piper voice found in {models_dir}")
        model_path = found[0]
    return PiperConfig(model_path=model_path, config_path=model_path.with_suffix(".onnx.json"))


class PiperSpeechEngine:
    """SpeechSynthesizer running Piper on a worker thread per utterance."""

    def __init__(self, models_dir: str | Path, output: PcmOutput | None = None, *, device_name: str | None = None) -> None:
        self.models_dir = Path(models_dir)
        if output is None:
            # local import: PortAudio loads only when real speakers are used
            from .output import OutputConfig, PcmOutput

            output = PcmOutput(OutputConfig(device_name=device_name))
        self.output = output
        self._voices: dict[Path, PiperTTS] = {}
        self._lock = threading.Lock()
        self._cancel_event: threading.Event | None = None

    def speak(self, text: str, voice: VoiceParams, on_event: SynthesisCallback) -> None:
        cancel_event = threading.Event()
        with self._lock:
            previous, self._cancel_event = self._cancel_event, cancel_event
        if previous is not None:
            previous.set()
            self.output.stop()
        worker = threading.Thread(
            target=self._run,
            args=(text, voice, on_event, cancel_event),
            name="piper-speak",
            daemon=True,
        )
        worker.start()

    def cancel(self) -> None:
        with self._lock:
            cancel_event, self._cancel_event = self._cancel_event, None
        if cancel_event is not None:
            cancel_event.set()
        self.output.stop()

    def _voice_for(self, voice: VoiceParams) -> PiperTTS:
        config = resolve_voice_model(self.models_dir, voice.voice_id)
        with self._lock:
            tts = self._voices.get(config.model_path)
        if tts is None:
            tts = PiperTTS(config)
            with self._lock:
                self._voices[config.model_path] = tts
        return tts

    def _run(self, text: str, voice: VoiceParams, on_event: SynthesisCallback, cancel_event: threading.Event) -> None:
        try:
            tts = self._voice_for(voice)
            on_event(SynthesisEvent.STARTED, None)
            for sentence in split_sentences(text):
                for pcm, sample_rate in tts.synthesize_stream(
                    sentence,
                    length_scale=voice.length_scale,
                    noise_scale=voice.noise_scale,
                ):
                    if cancel_event.is_set():
                        break
                    self.output.play(pcm, sample_rate)
                if cancel_event.is_set():
                    break
            finished = self.output.wait_drained(cancel_event)
        except (FileNotFoundError, PlaybackError) as exc:
            LOGGER.error("Speech synthesis failed: %s", exc)
            on_event(SynthesisEvent.ERROR, exc)
            return
        except Exception as exc:
            LOGGER.exception("Speech worker crashed")
            on_event(SynthesisEvent.ERROR, exc)
            return
        on_event(SynthesisEvent.FINISHED if finished else SynthesisEvent.CANCELLED, None)
