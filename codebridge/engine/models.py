"""Core data models for the bridge core.

All dataclasses and enums. Single source of truth to avoid
circular imports.
"""
from __future__ import annotations

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from .output import OutputMultiplexer


class ProcessState(str, Enum):
    """Managed process lifecycle states. See lifecycle.py for transition rules."""
    RUNNING = "running"
    TERMINATING = "terminating"
    EXITED = "exited"
    KILLED = "killed"
    FAILED = "failed"


class ModelChoice(str, Enum):
    """Which model configuration serviced an invocation."""
    DEFAULT = "default"
    FALLBACK = "fallback"


class InvocationOutcome(str, Enum):
    COMPLETED = "completed"
    CANCELLED = "cancelled"


NO_RESPONSE = "(no response)"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ManagedProcess:
    """A live child process owned by a ProcessSupervisor.

    Only the supervisor mutates this. Presence in the registry means
    the OS process has not been observed to exit.
    """
    handle: int
    command: str
    process: asyncio.subprocess.Process
    output: OutputMultiplexer
    start_time: datetime = field(default_factory=_utcnow)
    state: ProcessState = ProcessState.RUNNING
    # Serializes writes to stdin across concurrent send_input() calls.
    stdin_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)
    waiter: asyncio.Task | None = field(default=None, repr=False)

    @property
    def pid(self) -> int:
        return self.process.pid


@dataclass(frozen=True)
class ProcessInfo:
    """Snapshot row returned by ProcessSupervisor.list()."""
    handle: int
    command: str
    start_time: datetime
    pid: int


@dataclass
class InvocationSession:
    """Tracking state for one attempt of an external invocation."""
    model_choice: ModelChoice = ModelChoice.DEFAULT
    model_id: str | None = None
    continuation_id: str | None = None
    text: str = ""
    last_event: Any = None
    event_count: int = 0


@dataclass
class InvocationResult:
    """What a finished invocation reports back to its caller."""
    text: str
    outcome: InvocationOutcome = InvocationOutcome.COMPLETED
    continuation_id: str | None = None
    cost_usd: float | None = None
    duration_ms: int | None = None
    model_used: ModelChoice = ModelChoice.DEFAULT
    model_id: str | None = None

    @property
    def cancelled(self) -> bool:
        return self.outcome == InvocationOutcome.CANCELLED
