"""Decoding of chat-completions responses, batch and server-sent events."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Optional

LOGGER = logging.getLogger(__name__)

DATA_PREFIX = "data:"
DONE_SENTINEL = "[DONE]"


@dataclass(slots=True, frozen=True)
class StreamFrame:
    """One decoded ``data:`` line."""

    delta: str = ""
    finish_reason: Optional[str] = None
    done: bool = False


def decode_line(line: str) -> StreamFrame | None:
    """Decode one SSE line.

    Returns None for lines that carry nothing usable: blanks, comments,
    other SSE fields, and payloads that are not the expected JSON shape.
    """
    line = line.strip()
    if not line.startswith(DATA_PREFIX):
        return None
    body = line[len(DATA_PREFIX) :].strip()
    if body == DONE_SENTINEL:
        return StreamFrame(done=True)
    try:
        payload = json.loads(body)
    except ValueError:
        LOGGER.debug("Skipping undecodable stream frame: %.80s", body)
        return None
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    delta = choice.get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    if not isinstance(content, str):
        # some servers stream completions-style ``text``
        content = choice.get("text") if isinstance(choice.get("text"), str) else ""
    finish_reason = choice.get("finish_reason")
    return StreamFrame(delta=content, finish_reason=finish_reason if isinstance(finish_reason, str) else None)


def extract_message_text(payload: Any) -> str | None:
    """Text of a non-streaming response, or None when the shape is wrong."""
    if not isinstance(payload, dict):
        return None
    choices = payload.get("choices")
    if not isinstance(choices, list) or not choices or not isinstance(choices[0], dict):
        return None
    choice = choices[0]
    message = choice.get("message") or {}
    content = message.get("content") if isinstance(message, dict) else None
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        # content parts
        return "".join(part.get("text", "") for part in content if isinstance(part, dict))
    text = choice.get("text")
    if isinstance(text, str):
        return text
    return None
