"""Configuration loaded from environment variables.

All settings have sensible defaults. Override via CODEBRIDGE_* env vars.
"""
from __future__ import annotations

import inspect
import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)


# Subscriber callbacks may be plain functions or coroutine functions.
#   output:     def callback(text: str) -> None
#   completion: def callback(exit_code: int, output: str) -> None
#   error:      def callback(exc: BaseException) -> None
#   event:      def callback(event: Any) -> None
Callback = Callable[..., Awaitable[None] | None]

DEFAULT_FALLBACK_MODEL = "claude-sonnet-4-20250514"


async def fire_event(callback: Callback | None, *args: Any) -> None:
    """Invoke a subscriber callback if set, logging and swallowing its errors."""
    if callback is None:
        return
    try:
        result = callback(*args)
        if inspect.isawaitable(result):
            await result
    except Exception:
        # Never let subscriber errors break the core.
        logger.exception("Subscriber callback %r failed", callback)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring non-numeric %s=%r", name, raw)
        return default


@dataclass
class BotConfig:
    """Bridge configuration for one working directory."""

    work_dir: str = "."

    # Invocation models. None lets the SDK pick its own default.
    default_model: str | None = None
    fallback_model: str = DEFAULT_FALLBACK_MODEL
    permission_mode: str = "bypassPermissions"
    # Use a specific Claude CLI binary instead of the SDK-bundled one.
    claude_cli_path: str | None = None

    # Seconds between SIGTERM and SIGKILL in ProcessSupervisor.kill().
    kill_grace_seconds: float = 5.0
    # Max seconds to wait for stdout/stderr EOF after a process exits.
    output_drain_seconds: float = 2.0
    # Shell used for spawned commands. None means bash if on PATH.
    shell: str | None = None

    # Logging
    log_level: str = "INFO"
    log_file: str | None = None

    @classmethod
    def from_env(cls) -> BotConfig:
        """Load configuration from CODEBRIDGE_* environment variables."""
        bridge_vars = {
            k: v for k, v in os.environ.items() if k.startswith("CODEBRIDGE_")
        }
        if bridge_vars:
            logger.info(
                "BotConfig.from_env: CODEBRIDGE_* env overrides: %s",
                ", ".join(sorted(bridge_vars)),
            )
        else:
            logger.debug("BotConfig.from_env: no CODEBRIDGE_* env vars set, using defaults")

        config = cls(
            work_dir=os.getenv("CODEBRIDGE_WORK_DIR", cls.work_dir),
            default_model=os.getenv("CODEBRIDGE_DEFAULT_MODEL") or None,
            fallback_model=os.getenv(
                "CODEBRIDGE_FALLBACK_MODEL", cls.fallback_model
            ),
            permission_mode=os.getenv(
                "CODEBRIDGE_PERMISSION_MODE", cls.permission_mode
            ),
            claude_cli_path=os.getenv("CODEBRIDGE_CLAUDE_CLI_PATH") or None,
            kill_grace_seconds=_env_float(
                "CODEBRIDGE_KILL_GRACE", cls.kill_grace_seconds
            ),
            output_drain_seconds=_env_float(
                "CODEBRIDGE_OUTPUT_DRAIN", cls.output_drain_seconds
            ),
            shell=os.getenv("CODEBRIDGE_SHELL") or None,
            log_level=os.getenv("CODEBRIDGE_LOG_LEVEL", cls.log_level),
            log_file=os.getenv("CODEBRIDGE_LOG_FILE") or None,
        )
        logger.info(
            "BotConfig.from_env: work_dir=%s model=%s fallback=%s grace=%.1fs",
            config.work_dir,
            config.default_model or "<sdk-default>",
            config.fallback_model,
            config.kill_grace_seconds,
        )
        return config
