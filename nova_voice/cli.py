from __future__ import annotations

import asyncio
import json
import mimetypes
from pathlib import Path
from typing import Optional

import typer

from nova_voice.config.settings import config_file_path
from nova_voice.config.store import ConfigStore
from nova_voice.core.errors import describe_error
from nova_voice.core.logger import setup_logging
from nova_voice.runtime.factory import build_chat_client, build_registry, run_voice_loop
from nova_voice.runtime.orchestrator import ConversationHooks, ConversationState
from nova_voice.services.actions import ActionDirectiveProcessor
from nova_voice.services.schemas import Attachment

cli = typer.Typer(name="nova", help="Nova voice assistant")
config_cli = typer.Typer(help="Configuration")
cli.add_typer(config_cli, name="config")


def _coerce(value: str) -> object:
    """Objects, lists and ``null`` are read as JSON; scalars stay strings for pydantic to convert."""
    try:
        parsed = json.loads(value)
    except ValueError:
        return value
    if parsed is None or isinstance(parsed, (dict, list)):
        return parsed
    return value


@cli.command()
def run() -> None:
    """Start the hands-free conversation loop."""

    def on_state(state: ConversationState) -> None:
        typer.echo(f"[{state.value}]")

    hooks = ConversationHooks(
        on_state=on_state,
        on_user=lambda text: typer.echo(f"you: {text}"),
        on_reply=lambda text: typer.echo(f"nova: {text}"),
        on_error=lambda message: typer.echo(f"error: {message}", err=True),
    )
    run_voice_loop(ConfigStore(), hooks)


@cli.command()
def ask(
    text: str,
    no_stream: bool = typer.Option(False, "--no-stream", help="Wait for the whole reply"),
    image: Optional[Path] = typer.Option(None, "--image", help="Attach an image"),
) -> None:
    """Send one typed message and print the resolved reply."""
    store = ConfigStore()
    setup_logging(store.current)
    chat = build_chat_client(store)
    registry = build_registry(store)
    attachment = None
    if image is not None:
        if not image.is_file():
            typer.echo(f"No such file: {image}", err=True)
            raise typer.Exit(code=1)
        mime_type = mimetypes.guess_type(image.name)[0] or "application/octet-stream"
        attachment = Attachment(data=image.read_bytes(), mime_type=mime_type)

    streamed: list[str] = []

    def show(delta: str) -> None:
        streamed.append(delta)
        typer.echo(delta, nl=False)

    async def _ask() -> tuple[str, Exception | None]:
        if no_stream:
            result = await chat.send((), text, attachment)
        else:
            result = await chat.stream((), text, attachment, on_chunk=show)
            if result.error is not None:
                result = await chat.send((), text, attachment)
        if result.error is not None:
            return "", result.error
        resolved = await ActionDirectiveProcessor().resolve_async(result.text, registry.dispatch_async)
        return resolved, None

    reply, error = asyncio.run(_ask())
    if streamed:
        typer.echo()
    if error is not None:
        typer.echo(describe_error(error), err=True)
        raise typer.Exit(code=1)
    # streamed text is reprinted only when actions or a batch retry changed it
    if reply.strip() != "".join(streamed).strip():
        typer.echo(reply)


@cli.command()
def ping() -> None:
    """Check that the model endpoint answers."""
    store = ConfigStore()
    result = asyncio.run(build_chat_client(store).ping())
    if result.error is not None:
        typer.echo(f"{store.current.chat_base_url}: {describe_error(result.error)}", err=True)
        raise typer.Exit(code=1)
    typer.echo(f"{store.current.chat_base_url}: ok ({result.text or 'no models listed'})")


@cli.command()
def devices() -> None:
    """List audio input and output devices."""
    from nova_voice.audio.microphone import input_devices, output_devices

    typer.echo(json.dumps({"input": input_devices(), "output": output_devices()}, ensure_ascii=False))


@cli.command()
def actions() -> None:
    """List the actions replies can invoke."""
    registry = build_registry(ConfigStore())
    for name in registry.names():
        spec = registry.get(name)
        typer.echo(f"{name}\t{spec.description if spec else ''}")


@config_cli.command("show")
def config_show() -> None:
    store = ConfigStore()
    typer.echo(json.dumps(store.current.model_dump(mode="json"), ensure_ascii=False, indent=2))


@config_cli.command("set")
def config_set(key: str, value: str) -> None:
    """Validate a value and persist it to the configuration file."""
    store = ConfigStore()
    try:
        store.update(**{key: _coerce(value)})
    except KeyError:
        typer.echo(f"Unknown setting: {key}", err=True)
        raise typer.Exit(code=1)
    except ValueError as exc:
        typer.echo(f"Invalid value for {key}: {exc}", err=True)
        raise typer.Exit(code=1)
    path = store.save(keys=[key])
    typer.echo(f"{key} saved to {path}")


@config_cli.command("path")
def config_path() -> None:
    typer.echo(str(config_file_path().resolve()))


if __name__ == "__main__":
    cli()
