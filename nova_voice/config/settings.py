"""Unified configuration for the voice assistant."""

from __future__ import annotations

import json
import os
from enum import Enum
from functools import lru_cache
from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


CONFIG_FILE_ENV = "NOVA_CONFIG_FILE"
DEFAULT_CONFIG_FILE = "nova.json"

DEFAULT_SYSTEM_PROMPT = """You are Nova, a casual voice assistant. Keep replies short and spoken-friendly.
Use SHORT sentences. When listing options, give at most 2-3 at a time.
When the user asks for something you can do, include an action tag in your reply:
[ACTION:weather] - current weather
[ACTION:forecast|days:5] - weather forecast
[ACTION:search|query:X] - web search
[ACTION:date] - today's date
[ACTION:time] - current time
The tag is replaced by the result before your reply is spoken, so write around it.
Example: User: "Weather?" -> "gotchu [ACTION:weather]"."""


def config_file_path() -> Path:
    """Path of the JSON configuration file (may not exist)."""
    return Path(os.environ.get(CONFIG_FILE_ENV, DEFAULT_CONFIG_FILE)).expanduser()


class TemperaturePreset(float, Enum):
    """Named sampling temperatures."""

    PRECISE = 0.2
    BALANCED = 0.7
    CREATIVE = 1.0
    RANDOM = 1.5

    @classmethod
    def closest(cls, value: float) -> "TemperaturePreset":
        return min(cls, key=lambda preset: abs(preset.value - value))


class Settings(BaseSettings):
    """Runtime settings; read fresh by each component on every operation."""

    model_config = SettingsConfigDict(
        env_prefix="NOVA_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Model endpoint
    chat_base_url: str = "http://127.0.0.1:11434/v1"
    chat_endpoint: str = "/chat/completions"
    chat_model: str = "qwen2.5:1.5b"
    chat_temperature: float = Field(0.7, ge=0.0, le=2.0)
    chat_max_tokens: int = Field(2048, gt=0)
    chat_api_key: str | None = None
    chat_extra_headers: dict[str, str] = {}
    chat_timeout_sec: float = Field(120.0, gt=0)
    chat_max_attempts: int = Field(3, ge=1)
    chat_backoff_base_sec: float = Field(1.0, ge=0)

    # Conversation
    system_prompt: str = DEFAULT_SYSTEM_PROMPT
    history_max_turns: int = Field(10, ge=0)
    apology_text: str = "Sorry, couldn't process that."
    auto_start_listening: bool = True
    max_capture_failures: int = Field(3, ge=1)

    # Speech recognition / endpointing
    asr_model: str = "base.en"
    asr_device: str = "cpu"
    asr_compute_type: str = "int8"
    asr_language: str | None = "en"
    asr_partial_interval_sec: float = Field(0.6, gt=0)
    silence_timeout_sec: float = Field(1.2, gt=0)

    # Audio devices
    sample_rate: int = 16_000
    frame_duration_ms: int = 20
    input_device: str | None = None
    output_device: str | None = None
    eco_mode: bool = False
    vad_aggressiveness: int = Field(2, ge=0, le=3)

    # Speech synthesis
    tts_models_dir: str = "~/.cache/nova_voice/piper"
    voice_id: str = ""
    voice_rate: float = Field(0.5, gt=0, le=1.0)
    voice_pitch: float = Field(1.0, gt=0, le=2.0)

    # Barge-in
    barge_in_enabled: bool = True
    barge_in_threshold: float = Field(0.15, ge=0.0, le=1.0)
    barge_in_required_samples: int = Field(3, ge=1)
    barge_in_poll_interval_sec: float = Field(0.05, gt=0)
    barge_in_arm_delay_sec: float = Field(0.5, ge=0)

    # Built-in actions
    weather_latitude: float | None = None
    weather_longitude: float | None = None
    weather_temperature_unit: str = "fahrenheit"

    # Logs
    log_dir: str | None = "~/.cache/nova_voice/logs"
    log_level: str = "INFO"
    log_rotate_mb: int = 5
    log_retention_days: int = 7

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls.json_config_settings_source,
            file_secret_settings,
        )

    @staticmethod
    def json_config_settings_source() -> dict[str, object]:
        """Load the JSON configuration file when present."""
        config_path = config_file_path()
        if config_path.is_file():
            try:
                data = json.loads(config_path.read_text(encoding="utf-8").lstrip("﻿"))
            except ValueError:
                return {}
            return data if isinstance(data, dict) else {}
        return {}


@lru_cache()
def get_settings() -> Settings:
    """Return a cached Settings instance."""
    return Settings()
