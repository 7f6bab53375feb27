"""Data exchanged between capture, the chat client, playback and the orchestrator."""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, NamedTuple, Optional


class Role(str, Enum):
    """Speaker of a conversation turn."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(slots=True, frozen=True)
class Attachment:
    """Binary payload (typically an image) sent inline with a turn."""

    data: bytes
    mime_type: str = "image/jpeg"

    def data_url(self) -> str:
        encoded = base64.b64encode(self.data).decode("ascii")
        return f"data:{self.mime_type};base64,{encoded}"


@dataclass(slots=True, frozen=True)
class ConversationTurn:
    """One immutable message of the conversation."""

    role: Role
    text: str
    attachment: Optional[Attachment] = None

    def to_message(self) -> dict[str, Any]:
        """Serialize to the chat-completions ``messages`` entry."""
        role = self.role.value if isinstance(self.role, Role) else str(self.role)
        if self.attachment is None:
            return {"role": role, "content": self.text}
        parts: list[dict[str, Any]] = [{"type": "text", "text": self.text}]
        parts.append({"type": "image_url", "image_url": {"url": self.attachment.data_url()}})
        return {"role": role, "content": parts}

    @classmethod
    def user(cls, text: str, attachment: Attachment | None = None) -> "ConversationTurn":
        return cls(Role.USER, text, attachment)

    @classmethod
    def assistant(cls, text: str) -> "ConversationTurn":
        return cls(Role.ASSISTANT, text)

    @classmethod
    def system(cls, text: str) -> "ConversationTurn":
        return cls(Role.SYSTEM, text)


@dataclass(slots=True, frozen=True)
class Utterance:
    """Transcript of one listening session.

    ``error`` is set when the session ended on a capture failure; the text is
    then empty or whatever was heard before the failure.
    """

    text: str
    finalized: bool = False
    error: Optional[BaseException] = None

    @property
    def usable(self) -> bool:
        return self.finalized and self.error is None and bool(self.text.strip())


@dataclass(slots=True)
class TranscriptEvent:
    """Event produced by a speech recognition session."""

    text: str
    final: bool = False
    confidence: Optional[float] = None
    error: Optional[BaseException] = None


@dataclass(slots=True)
class StreamSession:
    """State of one in-flight request to the model endpoint."""

    request_id: str
    accumulated_text: str = ""
    is_complete: bool = False
    last_error: Optional[BaseException] = None
    attempts: int = 0
    chunks: list[str] = field(default_factory=list)

    def append(self, delta: str) -> None:
        self.chunks.append(delta)
        self.accumulated_text += delta


class ChatResult(NamedTuple):
    """Outcome of a chat request: full text, or the error that ended it."""

    text: str
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None
