"""
SiliconTalk CLI: terminal front-end for the on-device conversation loop.

Registered as `silicon-talk` console script via pyproject.toml.
"""

from __future__ import annotations

import asyncio
import logging
import os
from dataclasses import replace

import click

from .adapters import StdinAdapter
from .config import TalkConfig, resolve_log_level
from .exceptions import EngineUnavailable, SiliconTalkError
from .gateway import InferenceGateway
from .models import Message, ModelStatus, Sender, StatusKind, StructuredMessage
from .monitor import AvailabilityMonitor
from .orchestrator import TurnOrchestrator
from .protocols import AppleFMEngine, InferenceEngine
from .speech import InputArbiter

logger = logging.getLogger("silicon_talk")

STATUS_COLORS: dict[StatusKind, str] = {
    StatusKind.READY: "green",
    StatusKind.DOWNLOADING: "cyan",
    StatusKind.DOWNLOADABLE: "yellow",
    StatusKind.CHECKING: "yellow",
    StatusKind.UNKNOWN: "yellow",
    StatusKind.NOT_AVAILABLE: "red",
    StatusKind.ERROR: "red",
}
STAGE_LABELS = {"received": "受信しました", "sent": "送信しました", "thinking": "考え中..."}

CHAT_HELP = """Commands
/log          Show conversation history and summary state
/reset        Start over (forget messages, history, name, topics)
/expand N     Toggle the full JSON response of message N
/download     Start the model download
/quit         Exit
"""


def _configure_logging(verbose: bool) -> None:
    level = os.environ.get("SILICON_TALK_LOG_LEVEL", "debug" if verbose else "warning")
    logging.basicConfig(
        level=resolve_log_level(level),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_engine() -> InferenceEngine | None:
    """Bind the Apple Foundation Models engine, or None when the SDK is absent."""
    try:
        return AppleFMEngine()
    except EngineUnavailable as exc:
        logger.info("%s", exc)
        return None


def _build_gateway(config: TalkConfig) -> InferenceGateway:
    return InferenceGateway(
        _build_engine(),
        language=config.language,
        first_chunk_timeout=config.first_chunk_timeout_seconds,
        chunk_idle_timeout=config.chunk_idle_timeout_seconds,
    )


def _echo_status(status: ModelStatus) -> None:
    progress = f" ({status.progress_percent}%)" if status.progress is not None else ""
    click.secho(
        f"Model status: {status.status.value}{progress} - {status.message}",
        fg=STATUS_COLORS.get(status.status, "white"),
    )


@click.group(context_settings={"help_option_names": ["-h", "--help"]})
@click.version_option(package_name="silicon-talk")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.option("--language", default=None, help="Model language (default: ja).")
@click.pass_context
def cli(ctx: click.Context, verbose: bool, language: str | None) -> None:
    """SiliconTalk: on-device conversational front-end."""
    _configure_logging(verbose)
    overrides = {"language": language} if language else {}
    ctx.obj = TalkConfig.from_env(**overrides)


# ── Model status & download ───────────────────────────────────────────────────


@cli.command()
@click.pass_obj
def status(config: TalkConfig) -> None:
    """Probe the inference engine once and print its status."""
    result = asyncio.run(_build_gateway(config).check_status())
    _echo_status(result)
    if result.status in {StatusKind.NOT_AVAILABLE, StatusKind.ERROR}:
        raise SystemExit(1)


@cli.command()
@click.option("--wait/--no-wait", default=True, show_default=True, help="Poll until done.")
@click.pass_obj
def download(config: TalkConfig, wait: bool) -> None:
    """Ask the engine to download the model."""

    async def run() -> ModelStatus:
        monitor = AvailabilityMonitor(
            _build_gateway(config), config.poll_interval_seconds, config.language
        )
        monitor.subscribe(_echo_status)
        request = await monitor.begin_download()
        if not request.started:
            click.secho(f"Download did not start: {request.error}", fg="red", err=True)
        if not wait:
            monitor.stop()
            return monitor.status
        return await monitor.wait_until_settled()

    final = asyncio.run(run())
    if final.status is not StatusKind.READY and wait:
        raise SystemExit(1)


# ── Chat ──────────────────────────────────────────────────────────────────────


class TerminalView:
    """Prints orchestrator state changes: stages, streamed text, settled messages."""

    def __init__(self, orchestrator: TurnOrchestrator, show_stream: bool = True) -> None:
        self.orchestrator = orchestrator
        self.show_stream = show_stream
        self._printed = 0
        self._streamed_chars = 0
        self._streaming: Message | None = None
        orchestrator.subscribe(self.on_change)

    def on_change(self, field_name: str) -> None:
        if field_name == "messages":
            self._render_messages()
        elif field_name == "ai_ephemeral":
            ephemeral = self.orchestrator.ai_ephemeral
            if ephemeral.active and ephemeral.stage is not None:
                click.secho(f"  … {STAGE_LABELS[ephemeral.stage.value]}", dim=True)
        elif field_name == "model_status":
            _echo_status(self.orchestrator.model_status)

    def _render_messages(self) -> None:
        messages = self.orchestrator.messages
        if len(messages) < self._printed:
            if self._streamed_chars:
                click.echo()
            self._printed = 0
            self._streamed_chars = 0
            self._streaming = None
        while self._printed < len(messages):
            message = messages[self._printed]
            if message.streaming:
                if message is not self._streaming:
                    self._streaming = message
                    self._streamed_chars = 0
                if self.show_stream:
                    delta = message.text[self._streamed_chars :]
                    click.secho(delta, nl=False, dim=True)
                self._streamed_chars = len(message.text)
                return
            if self._streamed_chars:
                click.echo()
                self._streamed_chars = 0
            self._streaming = None
            self.print_message(self._printed, message)
            self._printed += 1

    def print_message(self, index: int, message: Message) -> None:
        if message.sender is Sender.USER:
            return
        if message.sender is Sender.SYSTEM:
            click.secho(message.display_text, fg="yellow")
            return
        click.secho(f"[{index}] AI: ", fg="cyan", bold=True, nl=False)
        click.echo(message.display_text)
        if (
            isinstance(message, StructuredMessage)
            and index in self.orchestrator.expanded_messages
        ):
            click.secho(message.full_response, dim=True)


async def _chat_loop(config: TalkConfig) -> int:
    orchestrator = TurnOrchestrator(_build_gateway(config), config)
    view = TerminalView(orchestrator, show_stream=config.streaming)
    # No speech recognizer exists in a terminal: voice mode stays off.
    arbiter = InputArbiter(orchestrator, recognizer_factory=None, locale=config.speech_locale)

    await orchestrator.check_ai_availability()
    if not orchestrator.ai_available:
        click.secho("AI is unavailable on this host; input is disabled.", fg="red", err=True)
        return 2
    click.secho(CHAT_HELP, dim=True)

    source = StdinAdapter(before_read=lambda: click.echo("> ", nl=False))
    try:
        async for line in source:
            if await _handle_local_command(line, orchestrator, view):
                continue
            if not await arbiter.submit_text(line):
                click.secho("(not sent: AI busy or unavailable)", fg="yellow", err=True)
    finally:
        arbiter.close()
        await orchestrator.aclose()
    return 0


async def _handle_local_command(
    line: str, orchestrator: TurnOrchestrator, view: TerminalView
) -> bool:
    command, _, argument = line.partition(" ")
    if command == "/help":
        click.secho(CHAT_HELP, dim=True)
        return True
    if command == "/reset":
        orchestrator.reset_conversation()
        click.secho("Conversation reset.", fg="green")
        return True
    if command == "/download":
        await orchestrator.begin_model_download()
        return True
    if command == "/expand":
        try:
            index = int(argument.strip())
        except ValueError:
            click.secho("Usage: /expand N", fg="yellow", err=True)
            return True
        if not 0 <= index < len(orchestrator.messages):
            click.secho(f"No message {index}.", fg="yellow", err=True)
            return True
        orchestrator.toggle_message_expansion(index)
        view.print_message(index, orchestrator.messages[index])
        return True
    return False


@cli.command()
@click.option("--no-stream", is_flag=True, help="Use blocking prompts instead of streaming.")
@click.pass_obj
def chat(config: TalkConfig, no_stream: bool) -> None:
    """Chat with the on-device model in the terminal.

    \b
    Examples:
        silicon-talk chat
        silicon-talk --verbose chat --no-stream
    """
    if no_stream:
        config = replace(config, streaming=False)
    raise SystemExit(asyncio.run(_chat_loop(config)))


# ── Entry point ───────────────────────────────────────────────────────────────


def cli_entry() -> None:
    """Entry point for the console_scripts."""
    try:
        cli()
    except SiliconTalkError as exc:
        click.secho(str(exc), fg="red", err=True)
        raise SystemExit(2) from exc


if __name__ == "__main__":
    cli_entry()
