"""Command line entry point: ``reply-stream ask`` and ``reply-stream chat``."""

from __future__ import annotations

import asyncio
import logging
import os
import uuid
from pathlib import Path

import click
from prompt_toolkit import PromptSession
from prompt_toolkit.history import FileHistory
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel

from reply_stream.config import ReplyStreamConfig, load_config, resolve_model_id
from reply_stream.coordinator import ResponseCoordinator
from reply_stream.errors import ReplyError
from reply_stream.events.bus import EventBus
from reply_stream.flags import InMemoryReasoningFlag, YamlReasoningFlag
from reply_stream.session import ConversationSession
from reply_stream.transcript import SqliteTranscriptStore
from reply_stream.transport import HttpxTransport
from reply_stream.types import DeltaEvent, EventType, PromptSegment, ReplyEvent, ReplyRequest

console = Console()


class TerminalView:
    """Render fragments as they arrive; redraw when a fallback supersedes them."""

    def __init__(self, show_reasoning: bool = True) -> None:
        self.show_reasoning = show_reasoning
        self.streamed_chars = 0
        self.superseded = False
        self._in_reasoning = False

    def attach(self, bus: EventBus) -> None:
        bus.subscribe(EventType.NOTICE, self.on_notice)
        bus.subscribe(EventType.REPLY_FALLBACK, self.on_fallback)

    def on_delta(self, delta: DeltaEvent) -> None:
        if delta.reasoning and self.show_reasoning:
            self._in_reasoning = True
            console.print(delta.reasoning, style="dim", end="", markup=False, highlight=False)
        if delta.content:
            if self._in_reasoning:
                console.print()
                self._in_reasoning = False
            self.streamed_chars += len(delta.content)
            console.print(delta.content, end="", markup=False, highlight=False)

    def on_notice(self, event: ReplyEvent) -> None:
        console.print(f"\n[yellow]{event.data.get('message', '')}[/yellow]")

    def on_fallback(self, event: ReplyEvent) -> None:
        self.superseded = True
        console.print("\n[dim](stream interrupted, fetching the complete reply)[/dim]")

    def finish(self, content: str, model: str) -> None:
        if self.superseded or not self.streamed_chars:
            console.print(Markdown(content))
        else:
            console.print()
        console.print(f"[dim]{model}[/dim]")


def _setup_logging(verbose: bool) -> None:
    if verbose:
        logging.basicConfig(level=logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


def _load(config_path: str | None) -> ReplyStreamConfig:
    config, config_file = load_config(config_path)
    if config_file:
        console.print(f"[dim]Config: {config_file}[/dim]")
    if not config.endpoint.resolved_api_key():
        console.print("[yellow]No API key configured (set OPENROUTER_API_KEY).[/yellow]")
    return config


@click.group()
@click.option("--config", "-c", "config_path", default=None,
              help="Path to reply_stream.yaml")
@click.option("--verbose", "-v", is_flag=True, help="Verbose logging")
@click.pass_context
def main(ctx: click.Context, config_path: str | None, verbose: bool) -> None:
    """reply-stream - streaming chat replies with fallback and quota recovery."""
    _setup_logging(verbose)
    ctx.obj = _load(config_path)


@main.command()
@click.argument("prompt")
@click.option("--model", "-m", default=None, help="Model id (overrides config)")
@click.option("--stream/--no-stream", default=None, help="Request an event stream")
@click.option("--reasoning/--no-reasoning", default=None, help="Request extended reasoning")
@click.pass_obj
def ask(config: ReplyStreamConfig, prompt: str, model: str | None,
        stream: bool | None, reasoning: bool | None) -> None:
    """Ask a single question and stream the reply."""
    defaults = config.defaults
    segments = []
    if defaults.system_prompt.strip():
        segments.append(PromptSegment("system", defaults.system_prompt.strip()))
    segments.append(PromptSegment("user", prompt))
    flags = InMemoryReasoningFlag(defaults.reasoning if reasoning is None else reasoning)
    request = ReplyRequest(
        conversation_id=f"ask-{uuid.uuid4().hex[:8]}",
        model=resolve_model_id(config.endpoint.default_model, override=model),
        segments=tuple(segments),
        temperature=defaults.temperature,
        top_p=defaults.top_p,
        max_tokens=defaults.max_tokens,
        reasoning=flags.get(),
        stream=defaults.stream if stream is None else stream,
    )

    async def _run() -> int:
        transport = HttpxTransport(config.endpoint)
        bus = EventBus()
        view = TerminalView()
        view.attach(bus)
        coordinator = ResponseCoordinator(
            transport, flags, bus=bus, empty_reply_text=defaults.empty_reply_text,
        )
        try:
            result = await coordinator.issue_reply(request, view.on_delta)
        except ReplyError as e:
            console.print(f"\n[red]Reply failed: {e}[/red]")
            return 1
        finally:
            await transport.close()
        view.finish(result.content, result.model)
        return 0

    raise SystemExit(asyncio.run(_run()))


@main.command()
@click.option("--conversation", "conversation_id", default="default",
              help="Conversation id to resume")
@click.option("--model", "-m", default=None, help="Model id (overrides config)")
@click.pass_obj
def chat(config: ReplyStreamConfig, conversation_id: str, model: str | None) -> None:
    """Interactive chat with a persisted transcript."""
    asyncio.run(_chat(config, conversation_id, model))


async def _chat(config: ReplyStreamConfig, conversation_id: str, model: str | None) -> None:
    store = SqliteTranscriptStore(config.transcript_db)
    flags = YamlReasoningFlag(config.settings_path, default=config.defaults.reasoning)
    transport = HttpxTransport(config.endpoint)
    bus = EventBus()
    session = ConversationSession(
        conversation_id, transport, flags, store,
        config=config, bus=bus, model=model,
    )

    history_path = Path(os.path.expanduser("~/.reply_stream/history"))
    history_path.parent.mkdir(parents=True, exist_ok=True)
    prompt = PromptSession(history=FileHistory(str(history_path)))

    console.print(
        f"[dim]Conversation {conversation_id}: "
        f"{len(session.transcript)} message(s), "
        f"reasoning {'on' if flags.get() else 'off'}. "
        f"/help for commands.[/dim]"
    )
    try:
        while True:
            try:
                user_input = (await prompt.prompt_async("❯ ")).strip()
            except (EOFError, KeyboardInterrupt):
                console.print("\n[dim]Goodbye![/dim]")
                break
            if not user_input:
                continue
            if user_input.startswith("/"):
                if not _handle_command(user_input, session, flags):
                    break
                continue

            view = TerminalView()
            view.attach(bus)
            try:
                message = await session.send(user_input, view.on_delta)
            except ReplyError as e:
                console.print(f"\n[red]Reply failed: {e}[/red]")
                continue
            finally:
                bus.unsubscribe(EventType.NOTICE, view.on_notice)
                bus.unsubscribe(EventType.REPLY_FALLBACK, view.on_fallback)
            view.finish(message.content, message.meta.get("model", ""))
    finally:
        await transport.close()
        store.close()


def _handle_command(line: str, session: ConversationSession, flags: YamlReasoningFlag) -> bool:
    """Run a slash command.  Returns False to quit."""
    cmd, _, arg = line.partition(" ")
    arg = arg.strip().lower()
    if cmd in ("/quit", "/exit"):
        return False
    if cmd == "/reasoning":
        if arg in ("on", "off"):
            flags.set(arg == "on")
        console.print(f"[dim]Reasoning: {'on' if flags.get() else 'off'}[/dim]")
    elif cmd == "/history":
        for msg in session.transcript.messages:
            stamp = msg.created_at.astimezone().strftime("%Y-%m-%d %H:%M")
            console.print(Panel(msg.content, title=f"{msg.role} · {stamp}", title_align="left"))
    elif cmd == "/help":
        console.print(
            "  /reasoning on|off - toggle extended reasoning\n"
            "  /history          - show the transcript\n"
            "  /quit             - exit"
        )
    else:
        console.print(f"[red]Unknown command: {cmd}[/red]")
    return True
