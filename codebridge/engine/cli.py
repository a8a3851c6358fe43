"""CLI entry point for the bridge.

Usage:
    codebridge ask "Summarize the failing tests"
    codebridge ask --continue "And fix them"
    codebridge ask --session-id 3f2c... "Where were we?"
    codebridge shell "npm test" --cwd ./web
    codebridge launch ../worktree-b --verbose
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
import threading
from collections.abc import Iterable
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

import yaml
from rich.console import Console
from rich.markdown import Markdown

from .config import BotConfig
from .errors import BridgeError, ProviderNotAvailableError
from .launcher import launch_sibling
from .runtime import BotRuntime
from .supervisor import ProcessSupervisor
from .yaml_config import load_yaml_config

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codebridge",
        description="Bridge chat commands to shell processes and Claude sessions",
    )
    parser.add_argument(
        "--config", "-c",
        default=None,
        help="YAML config file (bot: section)",
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    ask = sub.add_parser("ask", help="Send a prompt to Claude")
    ask.add_argument("prompt", help="Prompt text")
    resume = ask.add_mutually_exclusive_group()
    resume.add_argument(
        "--session-id",
        default=None,
        help="Continue a specific conversation",
    )
    resume.add_argument(
        "--continue",
        dest="continue_latest",
        action="store_true",
        help="Continue the most recent conversation in the directory",
    )
    ask.add_argument("--cwd", default=None, help="Working directory")

    shell = sub.add_parser("shell", help="Run a shell command under supervision")
    shell.add_argument("shell_command", metavar="COMMAND", help="Command line")
    shell.add_argument(
        "--input",
        default=None,
        help="Text written to the command's stdin right after start",
    )
    shell.add_argument("--cwd", default=None, help="Working directory")

    launch = sub.add_parser("launch", help="Start a detached sibling instance")
    launch.add_argument("dir", help="Working directory for the sibling")
    launch.add_argument(
        "args",
        nargs=argparse.REMAINDER,
        help="Arguments passed to the sibling",
    )
    return parser


def configure_logging(config: BotConfig, verbose: bool = False) -> None:
    """Configure the root logger; adds a rotating file when configured."""
    level = logging.DEBUG if verbose else getattr(
        logging, config.log_level.upper(), logging.INFO,
    )
    logging.basicConfig(level=level, format=_LOG_FORMAT, datefmt="%H:%M:%S")
    if config.log_file:
        log_path = Path(config.log_file).expanduser()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=2_000_000, backupCount=5, encoding="utf-8",
        )
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s %(levelname)s %(name)s [pid=%(process)d] %(message)s"
            )
        )
        logging.getLogger().addHandler(file_handler)


def load_config(config_path: str | None, cwd: str | None = None) -> BotConfig:
    config = BotConfig.from_env()
    if config_path:
        config = load_yaml_config(config_path, base=config)
    if cwd is not None:
        config.work_dir = cwd
    return config


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    console = Console()
    err_console = Console(stderr=True)

    try:
        config = load_config(args.config, getattr(args, "cwd", None))
    except (OSError, ValueError, yaml.YAMLError) as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(2)
    configure_logging(config, args.verbose)

    try:
        if args.command == "ask":
            sys.exit(_cmd_ask(args, config, console, err_console))
        if args.command == "shell":
            sys.exit(_cmd_shell(args, config, err_console))
        if args.command == "launch":
            pid = launch_sibling(args.dir, args.args)
            err_console.print(f"[dim]Launched sibling pid {pid} in {args.dir}[/dim]")
            sys.exit(0)
    except BridgeError as exc:
        err_console.print(f"[red]Error:[/red] {exc}")
        sys.exit(1)


# ── ask ────────────────────────────────────────────────────────


def _cmd_ask(
    args: argparse.Namespace,
    config: BotConfig,
    console: Console,
    err_console: Console,
) -> int:
    runtime = BotRuntime.from_config(config)
    provider = runtime.client.provider
    if not provider.is_available():
        raise ProviderNotAvailableError(
            provider.name, "install claude-agent-sdk or set CODEBRIDGE_CLAUDE_CLI_PATH",
        )

    def on_event(event: Any) -> None:
        text = provider.assistant_text_of(event)
        if text:
            err_console.print(text, style="dim", markup=False, highlight=False)

    async def run():
        if args.continue_latest:
            return await runtime.continue_conversation(args.prompt, on_event=on_event)
        return await runtime.ask(
            args.prompt, continuation_id=args.session_id, on_event=on_event,
        )

    try:
        result = asyncio.run(run())
    except KeyboardInterrupt:
        runtime.shutdown()
        err_console.print("\nInterrupted.")
        return 130

    if result.cancelled:
        err_console.print("[yellow]Cancelled.[/yellow]")
        return 130

    console.print(Markdown(result.text))
    details = [f"model: {result.model_id or result.model_used.value}"]
    if result.continuation_id:
        details.append(f"session: {result.continuation_id}")
    if result.cost_usd is not None:
        details.append(f"cost: ${result.cost_usd:.4f}")
    if result.duration_ms is not None:
        details.append(f"duration: {result.duration_ms / 1000:.1f}s")
    err_console.print("[dim]" + " | ".join(details) + "[/dim]")
    return 0


# ── shell ──────────────────────────────────────────────────────


def forward_stdin_lines(
    lines: Iterable[str],
    supervisor: ProcessSupervisor,
    handle: int,
    loop: asyncio.AbstractEventLoop,
) -> int:
    """Forward terminal lines to a process from a reader thread.

    Stops when the process rejects input or *loop* has closed.
    Returns the number of lines delivered.
    """
    sent = 0
    for line in lines:
        if loop.is_closed():
            break
        coro = supervisor.send_input(handle, line.rstrip("\n"))
        try:
            future = asyncio.run_coroutine_threadsafe(coro, loop)
        except RuntimeError:
            # Loop closed after the check above.
            coro.close()
            break
        if not future.result():
            break
        sent += 1
    return sent


def _cmd_shell(
    args: argparse.Namespace, config: BotConfig, err_console: Console,
) -> int:
    supervisor = ProcessSupervisor(
        str(Path(config.work_dir).expanduser().resolve()),
        grace_seconds=config.kill_grace_seconds,
        drain_seconds=config.output_drain_seconds,
        shell=config.shell,
    )
    return asyncio.run(
        _run_shell(supervisor, args.shell_command, args.input, err_console)
    )


async def _run_shell(
    supervisor: ProcessSupervisor,
    command: str,
    initial_input: str | None,
    err_console: Console,
) -> int:
    loop = asyncio.get_running_loop()

    def on_output(text: str) -> None:
        sys.stdout.write(text)
        sys.stdout.flush()

    result = await supervisor.spawn(command, initial_input, on_output=on_output)

    def on_interrupt() -> None:
        err_console.print(f"\n[yellow]Stopping process #{result.handle}...[/yellow]")
        loop.create_task(supervisor.kill(result.handle))

    try:
        loop.add_signal_handler(signal.SIGINT, on_interrupt)
    except NotImplementedError:
        logger.debug("SIGINT handler unavailable on this loop")

    if sys.stdin is not None:
        threading.Thread(
            target=forward_stdin_lines,
            args=(sys.stdin, supervisor, result.handle, loop),
            name="stdin-forward",
            daemon=True,
        ).start()

    try:
        exit_code = await result.wait()
    finally:
        try:
            loop.remove_signal_handler(signal.SIGINT)
        except NotImplementedError:
            pass
    err_console.print(f"[dim]Process #{result.handle} exited with code {exit_code}[/dim]")
    return exit_code if exit_code >= 0 else 128 - exit_code


if __name__ == "__main__":
    main()
