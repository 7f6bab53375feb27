"""Error taxonomy shared by the capture, network and playback layers."""

from __future__ import annotations

from enum import Enum


class NovaError(RuntimeError):
    """Base class for errors raised inside nova_voice."""


class ChatErrorKind(str, Enum):
    """Failure classes reported by the chat client."""

    TIMEOUT = "timeout"
    UNREACHABLE = "unreachable"
    NO_NETWORK = "no_network"
    SERVER_STATUS = "server_status"
    DECODE_ERROR = "decode_error"


TRANSIENT_KINDS = frozenset({ChatErrorKind.TIMEOUT, ChatErrorKind.UNREACHABLE, ChatErrorKind.NO_NETWORK})


class ChatClientError(NovaError):
    """Typed failure of a request to the model endpoint."""

    def __init__(
        self,
        kind: ChatErrorKind,
        message: str = "",
        *,
        status_code: int | None = None,
        transient: bool | None = None,
    ) -> None:
        super().__init__(message or kind.value)
        self.kind = kind
        self.status_code = status_code
        self._transient = transient

    @property
    def transient(self) -> bool:
        """Return True when retrying the whole request may succeed."""
        if self._transient is not None:
            return self._transient
        return self.kind in TRANSIENT_KINDS

    def __repr__(self) -> str:
        if self.status_code is not None:
            return f"ChatClientError({self.kind.value}, {self.status_code})"
        return f"ChatClientError({self.kind.value})"


class CaptureError(NovaError):
    """Terminal failure of a listening session."""

    PERMISSION_DENIED = "permission_denied"
    DEVICE_BUSY = "device_busy"
    AUDIO_ROUTE = "audio_route"
    ENGINE = "engine"

    def __init__(self, reason: str, message: str = "") -> None:
        super().__init__(message or reason)
        self.reason = reason


class PlaybackError(NovaError):
    """Speech synthesis or audio output failure."""


class DeviceBusyError(NovaError):
    """Raised when an audio device is already claimed by another owner."""

    def __init__(self, resource: str, owner: str, holders: list[str]) -> None:
        super().__init__(f"{resource} requested by {owner} but held by {', '.join(holders)}")
        self.resource = resource
        self.owner = owner
        self.holders = holders


_CHAT_MESSAGES = {
    ChatErrorKind.TIMEOUT: "Connection timed out - is the model server running?",
    ChatErrorKind.UNREACHABLE: "Can't connect to the model server - check the address.",
    ChatErrorKind.NO_NETWORK: "No network connection.",
    ChatErrorKind.DECODE_ERROR: "The model server sent a reply I couldn't read.",
}

_CAPTURE_MESSAGES = {
    CaptureError.PERMISSION_DENIED: "Microphone access is not allowed.",
    CaptureError.DEVICE_BUSY: "The microphone is busy.",
    CaptureError.AUDIO_ROUTE: "Couldn't open the microphone.",
    CaptureError.ENGINE: "Speech recognition stopped unexpectedly.",
}


def describe_error(exc: BaseException) -> str:
    """Short user-facing message for an error."""
    if isinstance(exc, ChatClientError):
        if exc.kind is ChatErrorKind.SERVER_STATUS:
            return f"The model server answered with status {exc.status_code}."
        return _CHAT_MESSAGES.get(exc.kind, "Network error.")
    if isinstance(exc, CaptureError):
        return _CAPTURE_MESSAGES.get(exc.reason, "Listening failed.")
    if isinstance(exc, PlaybackError):
        return "Couldn't play the reply."
    if isinstance(exc, DeviceBusyError):
        return f"The {exc.resource} is busy."
    return "Something went wrong."
