"""Command-line entry point for coder-stream."""

from __future__ import annotations

import asyncio
import logging
import os
import sys

import click
from rich.console import Console

from coder_stream import __version__
from coder_stream.config import StreamConfig, load_config
from coder_stream.core.controller import ContinuationController, GenerationResult
from coder_stream.errors import StreamFailedError
from coder_stream.llm.client import CompletionClient
from coder_stream.storage.store import SQLiteMessageStore
from coder_stream.types import EventType, StreamEvent

console = Console()

_API_KEY_ENV = "CODER_STREAM_API_KEY"


class StreamingDisplay:
    """Renders engine events to the terminal in real time."""

    def __init__(self, con: Console):
        self.con = con
        self._streaming = False

    def text(self, delta: str):
        self._streaming = True
        self.con.print(delta, end="", highlight=False, markup=False)

    def handle(self, event: StreamEvent):
        if event.type == EventType.STREAM_RETRY:
            self._flush()
            self.con.print(
                f"[yellow]attempt {event.data['attempt']} failed, retrying in "
                f"{event.data['delay']:.1f}s[/yellow] [dim]{event.data['error']}[/dim]"
            )
        elif event.type == EventType.CONTINUATION_REQUESTED:
            self._flush()
            self.con.print(f"[cyan]> continuing ({event.data['prompt']})[/cyan]")
        elif event.type == EventType.CONTINUATION_FAILED:
            self._flush()
            self.con.print(f"[red]continuation failed:[/red] [dim]{event.data['error']}[/dim]")

    def _flush(self):
        if self._streaming:
            self.con.print()
            self._streaming = False


async def _ask(
    config: StreamConfig, prompt: str, model: str, credential: str,
) -> GenerationResult:
    client = CompletionClient(config.upstream)
    store = SQLiteMessageStore(config.storage.db_path)
    display = StreamingDisplay(console)
    controller = ContinuationController(
        client,
        store,
        upstream=config.upstream,
        retry=config.retry,
        detector=config.detector,
        continuation=config.continuation,
        max_history=config.max_history,
    )
    controller.event_bus.subscribe("*", display.handle)
    try:
        title = await client.generate_title(prompt, credential)
        chat = await store.create_chat(model=model, title=title or prompt[:80])
        message = await store.append_message(chat.id, "user", prompt)
        return await controller.generate(message.id, model, credential, on_delta=display.text)
    finally:
        await client.close()
        store.close()


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to coder_stream.yaml (auto-detected from CWD or ~/.config/coder-stream/)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.version_option(__version__)
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool):
    """coder-stream - streaming LLM completions with retry and continuation."""
    logging.basicConfig(level=logging.DEBUG if verbose else logging.WARNING)
    ctx.obj = load_config(config_path)


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id (defaults to the high-quality tier)")
@click.pass_obj
def ask(config: StreamConfig, prompt: str, model: str | None):
    """Generate a response to PROMPT, continuing until it looks complete."""
    credential = os.environ.get(_API_KEY_ENV)
    if not credential:
        console.print(f"[red]Set {_API_KEY_ENV} to your API key.[/red]")
        sys.exit(1)

    model = model or config.upstream.model_for_quality("high")
    try:
        result = asyncio.run(_ask(config, prompt, model, credential))
    except StreamFailedError as e:
        console.print(f"\n[red]Generation failed:[/red] {e}")
        sys.exit(1)

    console.print()
    status = "complete" if result.complete else "possibly incomplete"
    console.print(
        f"[dim]{len(result.content)} chars, {result.continuations} continuation(s), {status}[/dim]"
    )


@main.command()
@click.option("--host", default="127.0.0.1", show_default=True)
@click.option("--port", "-p", default=8000, show_default=True, type=int)
@click.pass_obj
def serve(config: StreamConfig, host: str, port: int):
    """Run the HTTP relay service."""
    import uvicorn

    from coder_stream.server.app import create_app

    uvicorn.run(create_app(config), host=host, port=port)


if __name__ == "__main__":
    main()
