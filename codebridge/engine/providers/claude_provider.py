"""Claude Agent SDK provider.

Wraps claude_agent_sdk.query() as a cancellable event stream for
the session client.
"""
from __future__ import annotations

import logging
import os
import shutil
from collections import deque
from typing import Any, AsyncIterator

from ..errors import ProviderNotAvailableError
from .base import StreamingProvider

logger = logging.getLogger(__name__)

_STDERR_TAIL_LINES = 20


class ClaudeProvider(StreamingProvider):
    """Provider backed by the Claude Agent SDK.

    Auth: Works with OAuth (Claude Max plan) by default. If the
    environment carries ANTHROPIC_API_KEY, the bundled CLI uses it.
    """

    def __init__(
        self,
        permission_mode: str = "bypassPermissions",
        cli_path: str | None = None,
    ) -> None:
        self._permission_mode = permission_mode
        self._cli_path = self.resolve_command(cli_path, None) if cli_path else None
        self._stderr_tail: deque[str] = deque(maxlen=_STDERR_TAIL_LINES)

    @property
    def name(self) -> str:
        return "claude"

    async def stream(
        self,
        prompt: str,
        *,
        cwd: str,
        model: str | None = None,
        resume: str | None = None,
        continue_conversation: bool = False,
    ) -> AsyncIterator[Any]:
        """Run one query() call and yield its SDK messages verbatim."""
        # Import SDK lazily so the core stays importable without it.
        try:
            from claude_agent_sdk import ClaudeAgentOptions, query
        except ImportError as exc:
            raise ProviderNotAvailableError(self.name, str(exc)) from exc

        self._stderr_tail.clear()

        def _capture_stderr(line: str) -> None:
            self._stderr_tail.append(line.rstrip())
            logger.debug("claude stderr: %s", line.rstrip())

        options_kwargs: dict[str, Any] = dict(
            cwd=cwd,
            permission_mode=self._permission_mode,
            stderr=_capture_stderr,
        )
        if model:
            options_kwargs["model"] = model
        if continue_conversation:
            options_kwargs["continue_conversation"] = True
        elif resume:
            options_kwargs["resume"] = resume
        if self._cli_path:
            options_kwargs["cli_path"] = self._cli_path

        # The CLI refuses to start as a nested session when this is set.
        os.environ.pop("CLAUDECODE", None)

        logger.info(
            "Claude query model=%s mode=%s cwd=%s resume=%s continue=%s cli=%s",
            model or "<sdk-default>",
            self._permission_mode,
            cwd,
            (resume[:12] + "...") if resume else None,
            continue_conversation,
            self._cli_path or "<sdk-bundled>",
        )
        options = ClaudeAgentOptions(**options_kwargs)
        async for message in query(prompt=prompt, options=options):
            yield message

    def assistant_text_of(self, event: Any) -> str | None:
        try:
            from claude_agent_sdk import AssistantMessage, TextBlock
        except ImportError:
            return super().assistant_text_of(event)
        if not isinstance(event, AssistantMessage):
            return super().assistant_text_of(event)
        text = "".join(
            block.text for block in event.content if isinstance(block, TextBlock)
        )
        return text or None

    def failure_detail(self) -> str:
        if not self._stderr_tail:
            return ""
        return "stderr: " + "\n".join(self._stderr_tail)

    def is_available(self) -> bool:
        """Check if the SDK is importable and a claude CLI can be found."""
        try:
            import claude_agent_sdk  # noqa: F401
        except ImportError:
            return False
        if self._cli_path:
            return shutil.which(self._cli_path) is not None or os.path.exists(self._cli_path)
        return True
