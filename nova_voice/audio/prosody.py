"""Text shaping applied to replies before they are spoken."""

from __future__ import annotations

import re

_MARKUP_TOKENS = ("**", "*", "#", "`", "[", "]")
_URL_RE = re.compile(r"https?://\S+")
_NEWLINES_RE = re.compile(r"[ \t]*\r?\n[ \t\r\n]*")

_CONNECTIVES = ("you know", "so", "well", "okay", "alright", "anyway", "basically", "honestly", "actually", "like")
_CONNECTIVE_RE = re.compile(
    r"\b(" + "|".join(re.escape(word) for word in _CONNECTIVES) + r"),",
    re.IGNORECASE,
)
_AND_RE = re.compile(r"(?<![,;:]) and ")
_COLON_RE = re.compile(r":\s+")
_LIST_NUMBER_RE = re.compile(r"(?<![\d.])(\d+)\.(?=\s|$)")
_GAP_RE = re.compile(r"([.!?,;:])?\s{2,}")
_SENTENCE_RE = re.compile(r"(?<=[.!?])\s+")


def clean_for_speech(text: str) -> str:
    """Drop markdown punctuation and URLs that read badly aloud."""
    cleaned = _URL_RE.sub("", text)
    for token in _MARKUP_TOKENS:
        cleaned = cleaned.replace(token, "")
    # paragraph breaks become sentence gaps for add_natural_pauses
    cleaned = _NEWLINES_RE.sub("  ", cleaned)
    return cleaned.strip()


def add_natural_pauses(text: str) -> str:
    """Insert pause markers after connectives, list numbers and colons."""
    result = _CONNECTIVE_RE.sub(r"\1...", text)
    result = _AND_RE.sub(", and ", result)
    result = _COLON_RE.sub(":... ", result)
    result = _LIST_NUMBER_RE.sub(r"\1...", result)
    result = _GAP_RE.sub(lambda match: (match.group(1) or ".") + " ", result)
    return result.strip()


def split_sentences(text: str) -> list[str]:
    """Split on sentence punctuation so synthesis can start early."""
    return [part.strip() for part in _SENTENCE_RE.split(text) if part.strip()]


def prepare_for_speech(text: str) -> str:
    return add_natural_pauses(clean_for_speech(text))
