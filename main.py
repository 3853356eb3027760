"""
codeloop - a coding assistant engine powered by Amazon Bedrock.
Console runner built with Rich.
"""

import argparse
import asyncio
import dataclasses
import logging
import os
import sys
from typing import List, Optional

from rich.console import Console
from rich.markup import escape as rich_escape
from rich.prompt import Prompt

from bedrock_client import BedrockModelClient
from config import engine_config, get_credentials_info, model_config
from engine import CodingEngine, EngineCallbacks, EngineError, EventType
from engine.checkpoints import CheckpointStore, GitSnapshots
from tools import build_default_registry

logger = logging.getLogger(__name__)

TOOL_ICONS = {
    "read_file":      "\U0001f4c4 ",
    "write_file":     "✏️ ",
    "edit_section":   "\U0001f527 ",
    "run_command":    "▶ ",
    "grep":           "\U0001f50d ",
    "list_files":     "\U0001f4c2 ",
    "find_files":     "\U0001f50e ",
}

EXIT_WORDS = {"exit", "quit", ":q"}


def setup_logging(log_file: str, level: str) -> None:
    # Log to file so it doesn't interfere with the console
    logging.basicConfig(
        filename=log_file,
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


class ConsoleRenderer:
    """Engine observer that prints events to a rich Console."""

    def __init__(self, console: Console):
        self.console = console
        self._streaming = False

    def _end_stream(self) -> None:
        if self._streaming:
            self.console.print()
            self._streaming = False

    def on_chunk(self, event) -> None:
        self._streaming = True
        self.console.print(event.content, end="", markup=False, highlight=False)

    def on_tool_start(self, event) -> None:
        self._end_stream()
        name = (event.data or {}).get("tool_name", event.content)
        icon = TOOL_ICONS.get(name, "• ")
        self.console.print(f"[#6e7681]{icon}{rich_escape(name)}[/#6e7681]")

    def on_tool_update(self, event) -> None:
        status = (event.data or {}).get("status", "")
        color = {"succeeded": "#3fb950", "failed": "#f85149", "skipped": "#d29922"}.get(status, "#6e7681")
        first_line = (event.content or "").splitlines()[0] if event.content else ""
        self.console.print(f"   [{color}]{status}[/{color}] [#6e7681]{rich_escape(first_line[:120])}[/#6e7681]")

    def on_status(self, event) -> None:
        self._end_stream()
        if event.type == EventType.WARNING:
            self.console.print(f"[#d29922]⚠ {rich_escape(event.content)}[/#d29922]")
        else:
            self.console.print(f"[#6e7681]{rich_escape(event.content)}[/#6e7681]")

    def on_error(self, event) -> None:
        self._end_stream()
        self.console.print(f"[bold #f85149]Error:[/bold #f85149] {rich_escape(event.content)}")

    def on_event(self, event) -> None:
        if event.type == EventType.CHECKPOINT_ROLLED_BACK:
            self._end_stream()
            self.console.print(f"[#d29922]↺ {rich_escape(event.content)}[/#d29922]")
        elif event.type == EventType.DONE:
            self._end_stream()

    def callbacks(self) -> EngineCallbacks:
        return EngineCallbacks(
            on_chunk=self.on_chunk,
            on_tool_start=self.on_tool_start,
            on_tool_update=self.on_tool_update,
            on_status=self.on_status,
            on_error=self.on_error,
            on_event=self.on_event,
        )


def make_confirm(console: Console):
    """Confirmation collaborator backed by rich.prompt.Prompt."""

    def confirm(message: str, choices: List[str], default: str) -> str:
        console.print()
        return Prompt.ask(f"[bold]{rich_escape(message)}[/bold]", choices=choices, default=default,
                          console=console)

    return confirm


def build_engine(working_dir: str, model_id: Optional[str], config, console: Console) -> CodingEngine:
    model_client = BedrockModelClient(model_id=model_id)
    fallbacks = [BedrockModelClient(model_id=m) for m in model_config.fallbacks() if m != model_client.model_id]
    checkpoints = CheckpointStore(GitSnapshots(working_dir)) if config.checkpoints_enabled else None
    engine = CodingEngine(
        model_client,
        build_default_registry(),
        working_directory=working_dir,
        config=config,
        checkpoints=checkpoints,
        confirm=None if config.auto_approve else make_confirm(console),
        fallback_clients=fallbacks,
    )
    return engine


async def run_once(engine: CodingEngine, text: str, renderer: ConsoleRenderer) -> None:
    task = asyncio.ensure_future(engine.process_message(text, renderer.callbacks()))
    try:
        await asyncio.shield(task)
    except asyncio.CancelledError:
        engine.abort()
        await task


def repl(engine: CodingEngine, console: Console, renderer: ConsoleRenderer) -> None:
    console.print("[#6e7681]Type a request, or 'exit' to quit. Ctrl-C stops the current turn.[/#6e7681]")
    while True:
        try:
            text = Prompt.ask("\n[bold #58a6ff]>[/bold #58a6ff]", console=console).strip()
        except (EOFError, KeyboardInterrupt):
            console.print()
            return
        if not text:
            continue
        if text.lower() in EXIT_WORDS:
            return
        if text == "/reset":
            engine.reset()
            console.print("[#6e7681]Conversation cleared.[/#6e7681]")
            continue
        try:
            asyncio.run(run_once(engine, text, renderer))
        except KeyboardInterrupt:
            engine.abort()
            console.print("\n[#d29922]Interrupted[/#d29922]")
        except EngineError as e:
            logger.error(f"Turn failed: {e}")
        m = engine.get_metrics()
        console.print(f"[#6e7681]{m.total_tokens:,} tokens · ${m.cost_total:.4f} · "
                      f"{m.tools_executed} tool call(s)[/#6e7681]")


def main():
    parser = argparse.ArgumentParser(
        description="codeloop - coding assistant engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  codeloop                              Run in current directory
  codeloop --cwd ~/my-project           Run in a specific project directory
  codeloop --prompt "add a README" -y   One request, no confirmations
        """,
    )
    parser.add_argument("--cwd", default=engine_config.working_directory,
                        help="Working directory for the engine (default: current directory)")
    parser.add_argument("--model", default=None, help="Bedrock model id (default: BEDROCK_MODEL_ID)")
    parser.add_argument("--max-iterations", type=int, default=None, help="Model turns per request")
    parser.add_argument("-y", "--yes", action="store_true", help="Apply destructive tools without asking")
    parser.add_argument("--prompt", default=None, help="Run a single request and exit")
    args = parser.parse_args()

    config = engine_config
    overrides = {}
    if args.max_iterations:
        overrides["max_iterations"] = args.max_iterations
    if args.yes:
        overrides["auto_approve"] = True
    if overrides:
        config = dataclasses.replace(engine_config, **overrides)

    setup_logging(config.log_file, config.log_level)

    working_dir = os.path.abspath(os.path.expanduser(args.cwd))
    if not os.path.isdir(working_dir):
        print(f"Error: {working_dir} is not a directory")
        sys.exit(1)

    console = Console()
    renderer = ConsoleRenderer(console)
    try:
        engine = build_engine(working_dir, args.model, config, console)
    except EngineError as e:
        console.print(f"[bold #f85149]Could not start:[/bold #f85149] {rich_escape(str(e))}")
        sys.exit(1)

    console.print(f"[bold]codeloop[/bold] [#6e7681]{rich_escape(engine.model_id)} · "
                  f"{rich_escape(working_dir)} · {get_credentials_info()}[/#6e7681]")

    if args.prompt:
        try:
            asyncio.run(run_once(engine, args.prompt, renderer))
        except EngineError:
            sys.exit(1)
        return

    repl(engine, console, renderer)


if __name__ == "__main__":
    main()
