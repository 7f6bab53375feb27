"""Recognition and resolution of ``[ACTION:name|key:value]`` directives."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Mapping

from .dates import parse_date

LOGGER = logging.getLogger(__name__)

DIRECTIVE_OPEN = "[ACTION:"
DIRECTIVE_CLOSE = "]"
PARAM_SEPARATOR = "|"
KEY_SEPARATOR = ":"

INVALID_MARKER = "(invalid action)"
FAILED_MARKER = "(couldn't run {name})"

Dispatcher = Callable[[str, Mapping[str, Any]], str]
AsyncDispatcher = Callable[[str, Mapping[str, Any]], Awaitable[str] | str]


@dataclass(slots=True, frozen=True)
class ActionDirective:
    """A parsed directive; ``date`` values are datetimes when they parse."""

    name: str
    parameters: dict[str, str | datetime] = field(default_factory=dict)


@dataclass(slots=True, frozen=True)
class DirectiveSpan:
    start: int
    end: int
    body: str

    @property
    def source(self) -> str:
        return f"{DIRECTIVE_OPEN}{self.body}{DIRECTIVE_CLOSE}"


def find_directives(text: str) -> list[DirectiveSpan]:
    """Non-overlapping directive spans, left to right.

    An opening marker with no closing bracket after it is left as plain text.
    """
    spans: list[DirectiveSpan] = []
    position = 0
    while True:
        start = text.find(DIRECTIVE_OPEN, position)
        if start < 0:
            break
        body_start = start + len(DIRECTIVE_OPEN)
        close = text.find(DIRECTIVE_CLOSE, body_start)
        if close < 0:
            break
        spans.append(DirectiveSpan(start=start, end=close + 1, body=text[body_start:close]))
        position = close + 1
    return spans


def parse_directive(body: str, *, now: datetime | None = None) -> ActionDirective | None:
    """Split ``name|key:value|...``; None when the name is missing."""
    name, *pairs = body.split(PARAM_SEPARATOR)
    name = name.strip().lower()
    if not name:
        return None
    parameters: dict[str, str | datetime] = {}
    for pair in pairs:
        key, separator, value = pair.partition(KEY_SEPARATOR)
        key = key.strip()
        if not separator or not key:
            continue
        value = value.strip()
        if key == "date":
            parsed = parse_date(value, now=now)
            parameters[key] = parsed if parsed is not None else value
        else:
            parameters[key] = value
    return ActionDirective(name=name, parameters=parameters)


def strip_directives(text: str) -> str:
    """Remove every directive span, for display of unresolved text."""
    pieces: list[str] = []
    cursor = 0
    for span in find_directives(text):
        pieces.append(text[cursor : span.start])
        cursor = span.end
    pieces.append(text[cursor:])
    return "".join(pieces)


class ActionDirectiveProcessor:
    """Replace each directive span with the dispatcher's result.

    Text around the spans is preserved verbatim. A directive without a name
    becomes :data:`INVALID_MARKER`; a dispatch that raises becomes
    ``(couldn't run <name>)``. Neither stops the remaining directives.
    """

    def __init__(self, clock: Callable[[], datetime] = datetime.now) -> None:
        self._clock = clock

    def parse(self, text: str) -> list[tuple[DirectiveSpan, ActionDirective | None]]:
        now = self._clock()
        return [(span, parse_directive(span.body, now=now)) for span in find_directives(text)]

    def resolve(self, text: str, dispatch: Dispatcher) -> str:
        parsed = self.parse(text)
        if not parsed:
            return text
        replacements = [self._dispatch_one(directive, dispatch) for _span, directive in parsed]
        return self._substitute(text, parsed, replacements)

    async def resolve_async(self, text: str, dispatch: AsyncDispatcher) -> str:
        """Run dispatches concurrently; results are still substituted in text order."""
        parsed = self.parse(text)
        if not parsed:
            return text
        replacements = await asyncio.gather(
            *(self._dispatch_one_async(directive, dispatch) for _span, directive in parsed)
        )
        return self._substitute(text, parsed, list(replacements))

    @staticmethod
    def _dispatch_one(directive: ActionDirective | None, dispatch: Dispatcher) -> str:
        if directive is None:
            return INVALID_MARKER
        try:
            return str(dispatch(directive.name, directive.parameters))
        except Exception:
            LOGGER.exception("Action %s failed", directive.name)
            return FAILED_MARKER.format(name=directive.name)

    @staticmethod
    async def _dispatch_one_async(directive: ActionDirective | None, dispatch: AsyncDispatcher) -> str:
        if directive is None:
            return INVALID_MARKER
        try:
            if inspect.iscoroutinefunction(dispatch):
                result = await dispatch(directive.name, directive.parameters)
            else:
                # plain executors may block on I/O
                result = await asyncio.to_thread(dispatch, directive.name, directive.parameters)
                if inspect.isawaitable(result):
                    result = await result
            return str(result)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("Action %s failed", directive.name)
            return FAILED_MARKER.format(name=directive.name)

    @staticmethod
    def _substitute(
        text: str,
        parsed: list[tuple[DirectiveSpan, ActionDirective | None]],
        replacements: list[str],
    ) -> str:
        pieces: list[str] = []
        cursor = 0
        for (span, _directive), replacement in zip(parsed, replacements):
            pieces.append(text[cursor : span.start])
            pieces.append(replacement)
            cursor = span.end
        pieces.append(text[cursor:])
        return "".join(pieces)
