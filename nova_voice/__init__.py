"""Nova voice assistant package."""

from __future__ import annotations

from typing import Any

__all__ = ["run"]

__version__ = "0.1.0"


def run(*args: Any, **kwargs: Any) -> Any:
    """Entry point for the voice loop (lazy import keeps audio deps optional)."""
    from .runtime.factory import run_voice_loop

    return run_voice_loop(*args, **kwargs)
