"""Streaming session client: one external invocation at a time.

Drives a provider stream to completion, forwarding every event
verbatim to the caller while tracking two things: the latest
continuation id and the latest assistant text.

CANCELLATION:
    The consuming loop checks the CancelToken between events and also
    races it while waiting for the next one, so a stream stuck inside
    the external call is closed promptly. A cancelled invocation
    returns an InvocationResult with outcome CANCELLED; it never
    raises and is never retried.

RETRY POLICY:
    A RETRYABLE failure (CLI exit code 1: rate limit / availability)
    on the default model is retried exactly once, from scratch, on the
    fallback model. Any other failure propagates immediately. If the
    fallback also fails, FallbackExhaustedError carries both causes.
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from typing import Any, AsyncIterator

from .config import DEFAULT_FALLBACK_MODEL, Callback, fire_event
from .coordinator import CancelToken
from .errors import (
    BridgeError,
    FailureKind,
    FallbackExhaustedError,
    InvocationError,
)
from .models import (
    NO_RESPONSE,
    InvocationOutcome,
    InvocationResult,
    InvocationSession,
    ModelChoice,
)
from .providers.base import StreamingProvider

logger = logging.getLogger(__name__)

_FENCED_RE = re.compile(
    r"^```[\w.+-]*[ \t]*\r?\n(?P<body>.*?)\r?\n?```$", re.DOTALL,
)
_NEWLINES_RE = re.compile(r"[\r\n]")


def sanitize_continuation_id(raw: str | None) -> str | None:
    """Clean a continuation id pasted by a user.

    Strips surrounding whitespace, inline backticks, fenced code
    blocks (with or without a language tag) and embedded newlines.
    An id written on the fence line itself (```abc123) is kept.
    Returns None when nothing is left.
    """
    if raw is None:
        return None
    text = raw.strip()
    match = _FENCED_RE.match(text)
    # An empty body means the "language tag" was the id.
    if match and match.group("body").strip():
        text = match.group("body")
    text = text.strip().strip("`")
    text = _NEWLINES_RE.sub("", text).strip()
    return text or None


class StreamingSessionClient:
    """Runs invocations against a StreamingProvider with model fallback."""

    def __init__(
        self,
        provider: StreamingProvider,
        *,
        default_model: str | None = None,
        fallback_model: str = DEFAULT_FALLBACK_MODEL,
    ) -> None:
        self._provider = provider
        self._default_model = default_model
        self._fallback_model = fallback_model

    @property
    def provider(self) -> StreamingProvider:
        return self._provider

    async def invoke(
        self,
        work_dir: str,
        prompt: str,
        *,
        continuation_id: str | None = None,
        continue_latest: bool = False,
        on_event: Callback | None = None,
        token: CancelToken | None = None,
    ) -> InvocationResult:
        """Run one invocation, retrying once on the fallback model if needed.

        ``continue_latest`` wins over ``continuation_id``; with neither
        a fresh conversation starts.

        Raises:
            InvocationError: Non-retryable failure (``cause`` attached).
            FallbackExhaustedError: Default and fallback both failed.
        """
        token = token or CancelToken(label="adhoc")
        resume = None if continue_latest else sanitize_continuation_id(continuation_id)
        started = time.monotonic()
        logger.info(
            "Invocation %s starting cwd=%s mode=%s prompt=%d chars",
            token.label,
            work_dir,
            "continue" if continue_latest else ("resume" if resume else "new"),
            len(prompt),
        )
        attempt = dict(
            work_dir=work_dir,
            prompt=prompt,
            resume=resume,
            continue_latest=continue_latest,
            on_event=on_event,
            token=token,
        )

        try:
            result = await self._attempt(ModelChoice.DEFAULT, **attempt)
            self._log_finished(token, result, started)
            return result
        except Exception as exc:
            first_error = exc
            first_kind = self._classify(exc, token)
            first_message = self._describe(exc)

        if first_kind == FailureKind.CANCELLED:
            logger.info("Invocation %s terminated by abort signal", token.label)
            return self._cancelled(ModelChoice.DEFAULT, self._default_model)
        if first_kind != FailureKind.RETRYABLE:
            logger.error("Invocation %s failed: %s", token.label, first_error)
            if isinstance(first_error, BridgeError):
                raise first_error
            raise InvocationError(
                first_message, kind=first_kind, cause=first_error,
            ) from first_error

        logger.warning(
            "Invocation %s hit a rate-class failure; retrying with %s: %s",
            token.label, self._fallback_model, first_error,
        )
        try:
            result = await self._attempt(ModelChoice.FALLBACK, **attempt)
            self._log_finished(token, result, started)
            return result
        except Exception as exc:
            second_error = exc
            second_kind = self._classify(exc, token)
            second_message = self._describe(exc)

        if second_kind == FailureKind.CANCELLED:
            logger.info("Invocation %s (retry) terminated by abort signal", token.label)
            return self._cancelled(ModelChoice.FALLBACK, self._fallback_model)
        logger.error(
            "Invocation %s failed on both default and fallback models",
            token.label,
        )
        raise FallbackExhaustedError(
            first_error,
            second_error,
            self._fallback_model,
            first_detail=first_message,
            second_detail=second_message,
        ) from second_error

    # ── Attempts ───────────────────────────────────────────────

    async def _attempt(
        self,
        choice: ModelChoice,
        *,
        work_dir: str,
        prompt: str,
        resume: str | None,
        continue_latest: bool,
        on_event: Callback | None,
        token: CancelToken,
    ) -> InvocationResult:
        model_id = (
            self._fallback_model if choice == ModelChoice.FALLBACK
            else self._default_model
        )
        session = InvocationSession(model_choice=choice, model_id=model_id)
        if token.cancelled:
            return self._cancelled(choice, model_id, session)

        stream = self._provider.stream(
            prompt,
            cwd=work_dir,
            model=model_id,
            resume=resume,
            continue_conversation=continue_latest,
        )
        consumer = asyncio.ensure_future(
            self._consume(stream, session, on_event, token)
        )
        watcher = asyncio.ensure_future(token.wait())
        try:
            done, _ = await asyncio.wait(
                {consumer, watcher}, return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            watcher.cancel()
            if not consumer.done():
                # Cancelling the consumer closes the provider stream.
                consumer.cancel()
                await asyncio.gather(consumer, return_exceptions=True)

        completed = consumer in done and consumer.result()
        if not completed or token.cancelled:
            logger.info(
                "Invocation %s%s: abort signal detected, stopped after %d event(s)",
                token.label,
                " (retry)" if choice == ModelChoice.FALLBACK else "",
                session.event_count,
            )
            return self._cancelled(choice, model_id, session)

        cost, duration = self._provider.result_metrics_of(session.last_event)
        return InvocationResult(
            text=session.text or NO_RESPONSE,
            outcome=InvocationOutcome.COMPLETED,
            continuation_id=session.continuation_id,
            cost_usd=cost,
            duration_ms=duration,
            model_used=choice,
            model_id=model_id,
        )

    async def _consume(
        self,
        stream: AsyncIterator[Any],
        session: InvocationSession,
        on_event: Callback | None,
        token: CancelToken,
    ) -> bool:
        """Iterate the stream. Returns False if it stopped on cancellation."""
        try:
            async for event in stream:
                if token.cancelled:
                    return False
                session.event_count += 1
                session.last_event = event

                continuation_id = self._provider.session_id_of(event)
                if continuation_id:
                    session.continuation_id = continuation_id
                text = self._provider.assistant_text_of(event)
                if text:
                    session.text = text

                await fire_event(on_event, event)
        finally:
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()
        return not token.cancelled

    # ── Helpers ────────────────────────────────────────────────

    def _classify(self, exc: BaseException, token: CancelToken) -> FailureKind:
        if token.cancelled:
            return FailureKind.CANCELLED
        return self._provider.classify_failure(exc)

    def _describe(self, exc: BaseException) -> str:
        message = str(exc) or type(exc).__name__
        detail = self._provider.failure_detail()
        if detail and detail not in message:
            message = f"{message}\n{detail}"
        return message

    @staticmethod
    def _cancelled(
        choice: ModelChoice,
        model_id: str | None,
        session: InvocationSession | None = None,
    ) -> InvocationResult:
        return InvocationResult(
            text="",
            outcome=InvocationOutcome.CANCELLED,
            continuation_id=session.continuation_id if session else None,
            model_used=choice,
            model_id=model_id,
        )

    @staticmethod
    def _log_finished(
        token: CancelToken, result: InvocationResult, started: float,
    ) -> None:
        logger.info(
            "Invocation %s finished outcome=%s model=%s session=%s cost=%s elapsed=%.1fs",
            token.label,
            result.outcome.value,
            result.model_used.value,
            (result.continuation_id or "-")[:12],
            f"${result.cost_usd:.4f}" if result.cost_usd is not None else "-",
            time.monotonic() - started,
        )
