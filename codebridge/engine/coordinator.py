"""Session coordinator: the single active-invocation slot.

Holds at most one live CancelToken per bot instance. Starting a new
invocation cancels the previous one before the new token is handed
out, so no two external calls are ever in flight together. Callers
must route through here instead of keeping their own tokens.
"""
from __future__ import annotations

import asyncio
import logging
import threading

logger = logging.getLogger(__name__)


class CancelToken:
    """Cooperative cancellation signal for one invocation."""

    def __init__(self, label: str = "") -> None:
        self.label = label
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> bool:
        """Fire the signal. Returns False if it had already fired."""
        if self._event.is_set():
            return False
        self.reason = reason
        self._event.set()
        return True

    async def wait(self) -> None:
        await self._event.wait()

    def __repr__(self) -> str:
        state = f"cancelled:{self.reason}" if self.cancelled else "active"
        return f"CancelToken({self.label or '?'}, {state})"


class SessionCoordinator:
    """Swap-and-cancel owner of the active invocation's CancelToken."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._current: CancelToken | None = None
        self._issued = 0

    @property
    def is_active(self) -> bool:
        with self._lock:
            return self._current is not None

    def start_new(self) -> CancelToken:
        """Cancel any active invocation and install a fresh token."""
        with self._lock:
            self._issued += 1
            token = CancelToken(label=f"invocation-{self._issued}")
            previous = self._current
            if previous is not None:
                previous.cancel("superseded")
            self._current = token
        if previous is not None:
            logger.info("Invocation %s superseded by %s", previous.label, token.label)
        return token

    def cancel_current(self) -> bool:
        """Cancel and clear the active token. Returns whether one was active."""
        with self._lock:
            previous, self._current = self._current, None
            if previous is not None:
                previous.cancel("cancel requested")
        if previous is None:
            return False
        logger.info("Invocation %s cancelled", previous.label)
        return True

    def release(self, token: CancelToken) -> bool:
        """Clear the slot if *token* still holds it (its invocation ended)."""
        with self._lock:
            if self._current is not token:
                return False
            self._current = None
        return True
