"""Per-process output multiplexer.

Reads a child's stdout and stderr concurrently, appends every decoded
chunk to one accumulated buffer and fans it out to output subscribers.
Also owns the process's two terminal events (completion and error),
which are mutually exclusive and published at most once.

Ordering: chunks from one stream reach subscribers in the order they
were read. Nothing is promised about interleaving between stdout and
stderr.
"""
from __future__ import annotations

import asyncio
import codecs
import logging
from typing import Any

from .config import Callback, fire_event

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 4096


class OutputMultiplexer:
    """Merges a process's output streams and publishes them to subscribers."""

    def __init__(self, label: str = "") -> None:
        self._label = label
        self._chunks: list[str] = []
        self._output_subscribers: list[Callback] = []
        self._completion_subscribers: list[Callback] = []
        self._error_subscribers: list[Callback] = []
        self._readers: list[asyncio.Task] = []
        # Set once: ("complete", exit_code) or ("error", exc)
        self._terminal: tuple[str, Any] | None = None
        self._finished = asyncio.Event()
        self._late_deliveries: set[asyncio.Task] = set()

    @property
    def text(self) -> str:
        """Everything read so far from both streams."""
        return "".join(self._chunks)

    @property
    def finished(self) -> bool:
        return self._terminal is not None

    # ── Subscriptions ──────────────────────────────────────────

    def subscribe_output(self, callback: Callback) -> None:
        self._output_subscribers.append(callback)

    def subscribe_completion(self, callback: Callback) -> None:
        if self._terminal is None:
            self._completion_subscribers.append(callback)
        elif self._terminal[0] == "complete":
            self._deliver_late(callback, self._terminal[1], self.text)

    def subscribe_error(self, callback: Callback) -> None:
        if self._terminal is None:
            self._error_subscribers.append(callback)
        elif self._terminal[0] == "error":
            self._deliver_late(callback, self._terminal[1])

    def _deliver_late(self, callback: Callback, *args: Any) -> None:
        task = asyncio.ensure_future(fire_event(callback, *args))
        self._late_deliveries.add(task)
        task.add_done_callback(self._late_deliveries.discard)

    # ── Readers ────────────────────────────────────────────────

    def start(
        self,
        stdout: asyncio.StreamReader | None,
        stderr: asyncio.StreamReader | None,
    ) -> None:
        """Start one independent reader task per stream."""
        for stream, name in ((stdout, "stdout"), (stderr, "stderr")):
            if stream is None:
                continue
            self._readers.append(
                asyncio.create_task(
                    self._pump(stream, name),
                    name=f"output-{self._label}-{name}",
                )
            )

    async def _pump(self, stream: asyncio.StreamReader, name: str) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        try:
            while True:
                chunk = await stream.read(READ_CHUNK_SIZE)
                if not chunk:
                    break
                text = decoder.decode(chunk)
                if text:
                    await self.publish(text)
        except asyncio.CancelledError:
            raise
        except Exception:
            # A broken stream stops only its own reader.
            logger.exception("Process %s %s read error", self._label, name)
        tail = decoder.decode(b"", final=True)
        if tail:
            await self.publish(tail)

    async def publish(self, text: str) -> None:
        """Append a chunk to the buffer and hand it to every output subscriber."""
        self._chunks.append(text)
        for callback in list(self._output_subscribers):
            await fire_event(callback, text)

    async def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for both readers to hit EOF.

        Readers still blocked after the timeout (e.g. a grandchild keeps
        the pipe open) are cancelled. Returns True if both finished.
        """
        pending = [t for t in self._readers if not t.done()]
        if not pending:
            return True
        _, still_pending = await asyncio.wait(pending, timeout=max(timeout, 0.0))
        if not still_pending:
            return True
        logger.warning(
            "Process %s output did not close within %.1fs; abandoning %d reader(s)",
            self._label, timeout, len(still_pending),
        )
        for task in still_pending:
            task.cancel()
        await asyncio.gather(*still_pending, return_exceptions=True)
        return False

    # ── Terminal events ────────────────────────────────────────

    async def complete(self, exit_code: int) -> bool:
        """Publish completion. Returns False if a terminal event already fired."""
        if self._terminal is not None:
            return False
        self._terminal = ("complete", exit_code)
        self._finished.set()
        output = self.text
        subscribers, self._completion_subscribers = self._completion_subscribers, []
        self._error_subscribers = []
        for callback in subscribers:
            await fire_event(callback, exit_code, output)
        return True

    async def fail(self, exc: BaseException) -> bool:
        """Publish an error. Returns False if a terminal event already fired."""
        if self._terminal is not None:
            return False
        self._terminal = ("error", exc)
        self._finished.set()
        subscribers, self._error_subscribers = self._error_subscribers, []
        self._completion_subscribers = []
        for callback in subscribers:
            await fire_event(callback, exc)
        return True

    async def wait(self) -> int:
        """Wait for the terminal event; return the exit code or raise the error."""
        await self._finished.wait()
        assert self._terminal is not None
        kind, value = self._terminal
        if kind == "error":
            raise value
        return value
