"""Abstract base for streaming invocation providers.

A provider wraps one external compute runtime that yields a stream of
structured events and can be aborted mid-stream. The session client
never inspects events itself beyond what the provider exposes here:
continuation id, assistant text, and result metrics.

This is also the boundary where raw failures are mapped onto the
FailureKind taxonomy.
"""
from __future__ import annotations

import abc
import asyncio
import logging
import re
import shutil
from collections.abc import Mapping
from typing import Any, AsyncIterator

from ..errors import FailureKind

logger = logging.getLogger(__name__)

# Exit status 1 from the CLI: rate limit / model unavailable.
_RETRYABLE_EXIT_CODES = frozenset({1})
# 143 = 128 + SIGTERM: the CLI was stopped by our own abort.
_TERMINATED_EXIT_CODES = frozenset({143, -15})

_RETRYABLE_TEXT_RE = re.compile(r"\bexit(?:ed with)? code:? 1\b", re.IGNORECASE)
_TERMINATED_TEXT_RE = re.compile(
    r"\bexit(?:ed with)? code:? 143\b|\baborterror\b", re.IGNORECASE,
)


def exception_chain(exc: BaseException) -> list[BaseException]:
    """Flatten an exception, its causes/contexts and group members."""
    seen: list[BaseException] = []

    def visit(err: BaseException | None) -> None:
        if err is None or any(err is s for s in seen):
            return
        seen.append(err)
        nested = getattr(err, "exceptions", None)
        if isinstance(nested, tuple):
            for child in nested:
                if isinstance(child, BaseException):
                    visit(child)
        visit(err.__cause__)
        visit(err.__context__)

    visit(exc)
    return seen


class StreamingProvider(abc.ABC):
    """Abstract streaming provider interface.

    Implementations wrap a specific runtime:
    - ClaudeProvider: Claude Agent SDK (query())
    """

    @property
    @abc.abstractmethod
    def name(self) -> str:
        """Short provider name (e.g. 'claude')."""

    @abc.abstractmethod
    async def stream(
        self,
        prompt: str,
        *,
        cwd: str,
        model: str | None = None,
        resume: str | None = None,
        continue_conversation: bool = False,
    ) -> AsyncIterator[Any]:
        """Start one external call and yield its events as they arrive.

        At most one of *resume* / *continue_conversation* is set. If
        neither is, a fresh conversation starts. Closing the iterator
        must abort the external call.
        """
        yield  # pragma: no cover

    @abc.abstractmethod
    def is_available(self) -> bool:
        """Check if this provider's runtime is installed."""

    # ── Event views ────────────────────────────────────────────
    # Defaults understand the stream-json wire shape (plain dicts).

    def session_id_of(self, event: Any) -> str | None:
        """Continuation id carried by *event*, if any."""
        if isinstance(event, Mapping):
            value = event.get("session_id")
        else:
            value = getattr(event, "session_id", None)
            if not value:
                data = getattr(event, "data", None)
                if isinstance(data, Mapping):
                    value = data.get("session_id")
        return str(value) if value else None

    def assistant_text_of(self, event: Any) -> str | None:
        """Joined text blocks of an assistant event, or None."""
        if not isinstance(event, Mapping) or event.get("type") != "assistant":
            return None
        message = event.get("message") or {}
        content = message.get("content") if isinstance(message, Mapping) else None
        if not isinstance(content, list):
            return None
        text = "".join(
            str(block.get("text", ""))
            for block in content
            if isinstance(block, Mapping) and block.get("type") == "text"
        )
        return text or None

    def result_metrics_of(self, event: Any) -> tuple[float | None, int | None]:
        """(cost_usd, duration_ms) from a terminal result event."""
        if isinstance(event, Mapping):
            cost = event.get("total_cost_usd")
            duration = event.get("duration_ms")
        else:
            cost = getattr(event, "total_cost_usd", None)
            duration = getattr(event, "duration_ms", None)
        return (
            float(cost) if isinstance(cost, (int, float)) else None,
            int(duration) if isinstance(duration, (int, float)) else None,
        )

    # ── Failure classification ─────────────────────────────────

    def classify_failure(self, exc: BaseException) -> FailureKind:
        """Map a raw failure onto the retry taxonomy.

        Exit codes carried on the exception (or anything it wraps) win;
        the message text is only consulted when no code is present.
        """
        chain = exception_chain(exc)
        if any(isinstance(err, asyncio.CancelledError) for err in chain):
            return FailureKind.CANCELLED

        codes = [getattr(err, "exit_code", None) for err in chain]
        if any(code in _TERMINATED_EXIT_CODES for code in codes):
            return FailureKind.CANCELLED
        if any(code in _RETRYABLE_EXIT_CODES for code in codes):
            return FailureKind.RETRYABLE
        if any(isinstance(code, int) for code in codes):
            return FailureKind.OTHER

        text = "\n".join(f"{type(err).__name__}: {err}" for err in chain)
        if _TERMINATED_TEXT_RE.search(text):
            return FailureKind.CANCELLED
        if _RETRYABLE_TEXT_RE.search(text):
            return FailureKind.RETRYABLE
        return FailureKind.OTHER

    def failure_detail(self) -> str:
        """Extra diagnostics (e.g. CLI stderr) for the last failed stream."""
        return ""

    def resolve_command(self, command: str, fallback: str | None = None) -> str:
        """Resolve a provider binary by preferring explicit command, then fallback.

        The command may point to a CLI that is not on PATH when using
        custom wrappers or tests. In that case, keep the raw value so
        callers can surface the configured command in error messages.
        """
        if command and shutil.which(command):
            return command
        if fallback and shutil.which(fallback):
            logger.debug(
                "Command %s not found; falling back to %s for provider %s",
                command, fallback, self.name,
            )
            return fallback
        return command or fallback or ""
