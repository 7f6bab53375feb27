from __future__ import annotations

import threading
from datetime import datetime

import pytest

from nova_voice.services.actions import (
    FAILED_MARKER,
    INVALID_MARKER,
    ActionDirectiveProcessor,
    find_directives,
    parse_directive,
    strip_directives,
)

NOW = datetime(2024, 5, 15, 14, 30)


@pytest.fixture
def processor():
    return ActionDirectiveProcessor(clock=lambda: NOW)


def test_directive_is_replaced_with_result(processor):
    calls = []

    def dispatch(name, params):
        calls.append((name, params))
        return "72F sunny"

    assert processor.resolve("bet [ACTION:weather]", dispatch) == "bet 72F sunny"
    assert calls == [("weather", {})]


def test_text_without_directives_is_untouched(processor):
    assert processor.resolve("just chatting", lambda name, params: "x") == "just chatting"


def test_parameters_and_date_parsing(processor):
    seen = {}

    def dispatch(name, params):
        seen.update(params)
        return "done"

    processor.resolve("ok [ACTION:reminder|title:Call mom|date:tomorrow 3pm]", dispatch)
    assert seen["title"] == "Call mom"
    assert seen["date"] == datetime(2024, 5, 16, 15, 0)


def test_unparseable_date_is_passed_through(processor):
    seen = {}
    processor.resolve("[ACTION:reminder|date:someday]", lambda name, params: seen.update(params) or "")
    assert seen["date"] == "someday"


def test_multiple_directives_resolve_in_text_order(processor):
    results = {"time": "3 PM", "date": "Wednesday"}
    text = "It's [ACTION:time] on [ACTION:date]."
    assert processor.resolve(text, lambda name, params: results[name]) == "It's 3 PM on Wednesday."


def test_invalid_directive_becomes_marker(processor):
    out = processor.resolve("hmm [ACTION:] and [ACTION:time]", lambda name, params: "noon")
    assert out == f"hmm {INVALID_MARKER} and noon"


def test_failed_dispatch_becomes_marker_and_others_continue(processor):
    def dispatch(name, params):
        if name == "weather":
            raise RuntimeError("service down")
        return "noon"

    out = processor.resolve("[ACTION:weather] / [ACTION:time]", dispatch)
    assert out == f"{FAILED_MARKER.format(name='weather')} / noon"


def test_unterminated_directive_is_plain_text(processor):
    text = "see [ACTION:weather|lat:1"
    assert find_directives(text) == []
    assert processor.resolve(text, lambda name, params: "x") == text


def test_parse_directive_details():
    directive = parse_directive(" Weather | lat: 40.7 |junk| :x|lon:-74")
    assert directive.name == "weather"
    assert directive.parameters == {"lat": "40.7", "lon": "-74"}
    assert parse_directive("  ") is None


def test_strip_directives():
    assert strip_directives("a [ACTION:time] b") == "a  b"


@pytest.mark.asyncio
async def test_resolve_async_runs_dispatches(processor):
    async def dispatch(name, params):
        if name == "search":
            raise ValueError("bad")
        return {"weather": "72F sunny", "time": "3 PM"}[name]

    out = await processor.resolve_async("[ACTION:weather], [ACTION:search|query:x], [ACTION:time]", dispatch)
    assert out == f"72F sunny, {FAILED_MARKER.format(name='search')}, 3 PM"


@pytest.mark.asyncio
async def test_resolve_async_accepts_plain_dispatchers(processor):
    threads = []

    def dispatch(name, params):
        threads.append(threading.current_thread())
        if name == "search":
            raise ValueError("bad")
        return "72F sunny"

    out = await processor.resolve_async("bet [ACTION:weather] / [ACTION:search|query:x]", dispatch)
    assert out == f"bet 72F sunny / {FAILED_MARKER.format(name='search')}"
    assert all(thread is not threading.main_thread() for thread in threads)
