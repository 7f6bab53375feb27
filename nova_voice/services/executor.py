"""Registry of actions that directives can invoke."""

from __future__ import annotations

import asyncio
import inspect
import logging
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Type

from pydantic import BaseModel, ValidationError, create_model

LOGGER = logging.getLogger(__name__)


class ActionRegistryError(Exception):
    """Raised for registration mistakes (duplicate names, bad schemas)."""


@dataclass(slots=True)
class ActionSpec:
    name: str
    handler: Callable[..., Any]
    schema: Type[BaseModel] | None = None
    description: str = ""
    aliases: tuple[str, ...] = ()


def _build_schema(name: str, schema_def: Any) -> Type[BaseModel] | None:
    if schema_def is None:
        return None
    if isinstance(schema_def, type) and issubclass(schema_def, BaseModel):
        return schema_def
    if isinstance(schema_def, dict):
        try:
            return create_model(f"{name.title().replace('_', '')}Params", **schema_def)
        except Exception as exc:  # pragma: no cover - pydantic internals
            raise ActionRegistryError(f"Invalid parameter schema for action '{name}': {exc}") from exc
    raise ActionRegistryError(f"Schema for '{name}' must be a pydantic model or a field dict")


def describe_validation_error(exc: ValidationError) -> str:
    """First problem as a short sentence, e.g. ``Missing title``."""
    errors = exc.errors()
    if not errors:
        return "Invalid parameters"
    first = errors[0]
    field_name = ".".join(str(part) for part in first.get("loc", ())) or "parameters"
    if first.get("type") == "missing":
        return f"Missing {field_name}"
    return f"Invalid {field_name}"


class ActionRegistry:
    """Map action names (and aliases) to handlers with typed parameters.

    The directive grammar hands over a loose ``{str: str | datetime}`` map;
    each handler receives a validated pydantic model instead. Unknown actions
    and invalid parameters produce a short sentence rather than an exception,
    while a handler that raises is left for the caller to report.
    """

    def __init__(self) -> None:
        self._actions: dict[str, ActionSpec] = {}
        self._aliases: dict[str, str] = {}

    def register(
        self,
        name: str,
        handler: Callable[..., Any],
        *,
        schema: Any = None,
        description: str = "",
        aliases: tuple[str, ...] = (),
    ) -> ActionSpec:
        key = name.lower()
        if key in self._actions or key in self._aliases:
            raise ActionRegistryError(f"Action '{name}' is already registered")
        spec = ActionSpec(
            name=key,
            handler=handler,
            schema=_build_schema(key, schema),
            description=description,
            aliases=tuple(alias.lower() for alias in aliases),
        )
        self._actions[key] = spec
        for alias in spec.aliases:
            self._aliases[alias] = key
        return spec

    def action(self, name: str, **options: Any) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(handler: Callable[..., Any]) -> Callable[..., Any]:
            self.register(name, handler, **options)
            return handler

        return decorator

    def get(self, name: str) -> ActionSpec | None:
        key = name.lower()
        return self._actions.get(self._aliases.get(key, key))

    def names(self) -> list[str]:
        return sorted(self._actions)

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and self.get(name) is not None

    async def dispatch_async(self, name: str, params: Mapping[str, Any]) -> str:
        spec = self.get(name)
        if spec is None:
            LOGGER.info("Unknown action requested: %s", name)
            return f"Unknown action: {name}"
        try:
            args = self._bind(spec, params)
        except ValidationError as exc:
            message = describe_validation_error(exc)
            LOGGER.info("Action %s rejected: %s", spec.name, message)
            return message
        if inspect.iscoroutinefunction(spec.handler):
            result = await spec.handler(*args)
        else:
            result = await asyncio.to_thread(spec.handler, *args)
            if inspect.isawaitable(result):
                result = await result
        LOGGER.debug("Action %s -> %.80s", spec.name, result)
        return str(result)

    def dispatch(self, name: str, params: Mapping[str, Any]) -> str:
        """Blocking dispatch; must not be called from a running event loop."""
        return asyncio.run(self.dispatch_async(name, params))

    __call__ = dispatch

    @staticmethod
    def _bind(spec: ActionSpec, params: Mapping[str, Any]) -> tuple[Any, ...]:
        if spec.schema is None:
            return ()
        return (spec.schema.model_validate(dict(params)),)
