"""Bot runtime: one supervisor, one coordinator, one client per directory.

This is the surface a chat command layer talks to. It never holds a
cancel token of its own; every invocation goes through the
SessionCoordinator so a new request always supersedes the old one.
"""
from __future__ import annotations

import asyncio
import logging
import signal
import threading
from dataclasses import dataclass
from pathlib import Path

from .config import BotConfig, Callback
from .coordinator import SessionCoordinator
from .models import InvocationResult
from .providers.base import StreamingProvider
from .providers.claude_provider import ClaudeProvider
from .session_client import StreamingSessionClient
from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)

DEFAULT_CONTINUE_PROMPT = "Please continue."


@dataclass(frozen=True)
class RuntimeStatus:
    """Snapshot for a status command."""

    invocation_active: bool
    running_processes: int
    work_dir: str
    continuation_id: str | None

    @property
    def state(self) -> str:
        return "active" if self.invocation_active else "idle"


class BotRuntime:
    """Wires the bridge components for a single working directory."""

    def __init__(
        self,
        supervisor: ProcessSupervisor,
        client: StreamingSessionClient,
        coordinator: SessionCoordinator | None = None,
    ) -> None:
        self.supervisor = supervisor
        self.client = client
        self.coordinator = coordinator or SessionCoordinator()
        self._continuation_id: str | None = None
        self._lock = threading.Lock()
        self._shut_down = False

    @classmethod
    def from_config(
        cls,
        config: BotConfig,
        provider: StreamingProvider | None = None,
    ) -> BotRuntime:
        work_dir = str(Path(config.work_dir).expanduser().resolve())
        supervisor = ProcessSupervisor(
            work_dir,
            grace_seconds=config.kill_grace_seconds,
            drain_seconds=config.output_drain_seconds,
            shell=config.shell,
        )
        if provider is None:
            provider = ClaudeProvider(
                permission_mode=config.permission_mode,
                cli_path=config.claude_cli_path,
            )
        client = StreamingSessionClient(
            provider,
            default_model=config.default_model,
            fallback_model=config.fallback_model,
        )
        return cls(supervisor, client)

    @property
    def work_dir(self) -> str:
        return self.supervisor.work_dir

    @property
    def continuation_id(self) -> str | None:
        with self._lock:
            return self._continuation_id

    # ── Invocations ────────────────────────────────────────────

    async def ask(
        self,
        prompt: str,
        continuation_id: str | None = None,
        on_event: Callback | None = None,
    ) -> InvocationResult:
        """Invoke with *prompt*, superseding whatever is running."""
        return await self._invoke(
            prompt, continuation_id=continuation_id, on_event=on_event,
        )

    async def continue_conversation(
        self,
        prompt: str | None = None,
        on_event: Callback | None = None,
    ) -> InvocationResult:
        """Resume the most recent conversation in the working directory."""
        return await self._invoke(
            prompt or DEFAULT_CONTINUE_PROMPT,
            continue_latest=True,
            on_event=on_event,
        )

    async def _invoke(
        self,
        prompt: str,
        *,
        continuation_id: str | None = None,
        continue_latest: bool = False,
        on_event: Callback | None = None,
    ) -> InvocationResult:
        token = self.coordinator.start_new()
        try:
            result = await self.client.invoke(
                self.work_dir,
                prompt,
                continuation_id=continuation_id,
                continue_latest=continue_latest,
                on_event=on_event,
                token=token,
            )
        finally:
            self.coordinator.release(token)
        if result.continuation_id and not result.cancelled:
            with self._lock:
                self._continuation_id = result.continuation_id
        return result

    def cancel(self) -> bool:
        """Stop the running invocation and forget the remembered session."""
        cancelled = self.coordinator.cancel_current()
        with self._lock:
            self._continuation_id = None
        return cancelled

    def status(self) -> RuntimeStatus:
        return RuntimeStatus(
            invocation_active=self.coordinator.is_active,
            running_processes=self.supervisor.running_count,
            work_dir=self.work_dir,
            continuation_id=self.continuation_id,
        )

    # ── Shutdown ───────────────────────────────────────────────

    def shutdown(self) -> int:
        """Cancel the invocation and SIGTERM every child. Idempotent."""
        with self._lock:
            if self._shut_down:
                return 0
            self._shut_down = True
        self.coordinator.cancel_current()
        signalled = self.supervisor.kill_all()
        logger.info(
            "Runtime shutdown cwd=%s signalled=%d", self.work_dir, signalled,
        )
        return signalled

    def install_signal_handlers(
        self, loop: asyncio.AbstractEventLoop | None = None,
    ) -> bool:
        """Shut down and stop *loop* on SIGINT/SIGTERM.

        Returns False where the loop cannot install signal handlers
        (non-POSIX loops).
        """
        loop = loop or asyncio.get_running_loop()

        def _on_signal(signum: int) -> None:
            logger.info("Received %s, shutting down", signal.Signals(signum).name)
            self.shutdown()
            loop.stop()

        try:
            for signum in (signal.SIGINT, signal.SIGTERM):
                loop.add_signal_handler(signum, _on_signal, signum)
        except (NotImplementedError, RuntimeError) as exc:
            logger.warning("Signal handlers not installed: %s", exc)
            return False
        return True
