"""Audio capture, level metering, speech synthesis and playback."""

from .devices import MICROPHONE, SPEAKER, DeviceArbiter
from .level import AudioLevelMeter

__all__ = ["AudioLevelMeter", "DeviceArbiter", "MICROPHONE", "SPEAKER"]
