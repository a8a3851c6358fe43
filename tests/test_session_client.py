from __future__ import annotations

import asyncio

import pytest
from unittest.mock import MagicMock

from codebridge.engine.config import DEFAULT_FALLBACK_MODEL
from codebridge.engine.coordinator import CancelToken
from codebridge.engine.errors import (
    FailureKind,
    FallbackExhaustedError,
    InvocationError,
    ProviderNotAvailableError,
)
from codebridge.engine.models import NO_RESPONSE, InvocationOutcome, ModelChoice
from codebridge.engine.providers.base import StreamingProvider
from codebridge.engine.session_client import (
    StreamingSessionClient,
    sanitize_continuation_id,
)

HANG = object()


class CLIExit(Exception):
    """Stands in for an SDK process error carrying the CLI exit status."""

    def __init__(self, exit_code: int, message: str = "Command failed"):
        super().__init__(f"{message} (exit code {exit_code})")
        self.exit_code = exit_code


class FakeProvider(StreamingProvider):
    """Replays one scripted list of events/exceptions per stream() call."""

    def __init__(self, *scripts):
        self.scripts = list(scripts)
        self.calls: list[dict] = []
        self.closed = 0

    @property
    def name(self) -> str:
        return "fake"

    async def stream(self, prompt, *, cwd, model=None, resume=None,
                     continue_conversation=False):
        self.calls.append(dict(
            prompt=prompt, cwd=cwd, model=model, resume=resume,
            continue_conversation=continue_conversation,
        ))
        script = self.scripts.pop(0)
        try:
            for item in script:
                if item is HANG:
                    await asyncio.sleep(3600)
                if isinstance(item, BaseException):
                    raise item
                yield item
        finally:
            self.closed += 1

    def is_available(self) -> bool:
        return True


def system(session_id="sess-1"):
    return {"type": "system", "subtype": "init", "session_id": session_id}


def assistant(*texts, session_id="sess-1"):
    return {
        "type": "assistant",
        "session_id": session_id,
        "message": {
            "content": [{"type": "text", "text": t} for t in texts],
        },
    }


def tool_use(session_id="sess-1"):
    return {
        "type": "assistant",
        "session_id": session_id,
        "message": {"content": [{"type": "tool_use", "name": "Bash", "input": {}}]},
    }


def result(session_id="sess-1", cost=0.0123, duration=1500):
    return {
        "type": "result",
        "subtype": "success",
        "session_id": session_id,
        "total_cost_usd": cost,
        "duration_ms": duration,
    }


# ── sanitize_continuation_id ──


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("abc-123", "abc-123"),
        ("  abc-123 \n", "abc-123"),
        ("`abc-123`", "abc-123"),
        ("```\nabc-123\n```", "abc-123"),
        ("```text\nabc-123\n```", "abc-123"),
        ("```abc123\n```", "abc123"),
        ("```5f3c1a2b-9d4e\n```", "5f3c1a2b-9d4e"),
        ("```abc123```", "abc123"),
        ("abc\n-123", "abc-123"),
        ("``", None),
        ("   ", None),
        (None, None),
    ],
)
def test_sanitize_continuation_id(raw, expected):
    assert sanitize_continuation_id(raw) == expected


# ── invoke: happy paths ──


@pytest.mark.asyncio
async def test_new_conversation_returns_text_and_metrics():
    provider = FakeProvider([system(), assistant("Hello ", "world"), result()])
    client = StreamingSessionClient(provider, default_model="claude-opus-4-6")
    events = []

    res = await client.invoke("/work", "hi", on_event=events.append)

    assert res.text == "Hello world"
    assert res.outcome == InvocationOutcome.COMPLETED
    assert res.continuation_id == "sess-1"
    assert res.cost_usd == pytest.approx(0.0123)
    assert res.duration_ms == 1500
    assert res.model_used == ModelChoice.DEFAULT
    assert res.model_id == "claude-opus-4-6"
    assert [e["type"] for e in events] == ["system", "assistant", "result"]
    assert provider.calls == [dict(
        prompt="hi", cwd="/work", model="claude-opus-4-6", resume=None,
        continue_conversation=False,
    )]


@pytest.mark.asyncio
async def test_last_assistant_text_wins_and_empty_events_do_not_clear_it():
    provider = FakeProvider([
        system(), assistant("draft"), assistant("final"), tool_use(), result(),
    ])
    res = await StreamingSessionClient(provider).invoke("/w", "go")
    assert res.text == "final"


@pytest.mark.asyncio
async def test_no_assistant_text_yields_sentinel():
    provider = FakeProvider([system(), tool_use(), result(cost=None, duration=None)])
    res = await StreamingSessionClient(provider).invoke("/w", "go")

    assert res.text == NO_RESPONSE
    assert res.cost_usd is None
    assert res.duration_ms is None


@pytest.mark.asyncio
async def test_resume_uses_sanitized_continuation_id():
    provider = FakeProvider([system("abc-123"), assistant("ok"), result("abc-123")])
    await StreamingSessionClient(provider).invoke(
        "/w", "more", continuation_id="```\nabc-123\n```",
    )
    assert provider.calls[0]["resume"] == "abc-123"
    assert provider.calls[0]["continue_conversation"] is False


@pytest.mark.asyncio
async def test_continue_latest_wins_over_continuation_id():
    provider = FakeProvider([system("s9"), assistant("ok"), result("s9")])
    res = await StreamingSessionClient(provider).invoke(
        "/w", "Please continue.", continuation_id="abc", continue_latest=True,
    )
    assert provider.calls[0]["resume"] is None
    assert provider.calls[0]["continue_conversation"] is True
    assert res.continuation_id == "s9"


@pytest.mark.asyncio
async def test_event_callback_failure_does_not_abort():
    provider = FakeProvider([system(), assistant("fine"), result()])
    callback = MagicMock(side_effect=RuntimeError("renderer crashed"))

    res = await StreamingSessionClient(provider).invoke("/w", "go", on_event=callback)

    assert res.text == "fine"
    assert callback.call_count == 3


# ── invoke: failures and fallback ──


@pytest.mark.asyncio
async def test_exit_code_one_retries_once_on_fallback_model():
    provider = FakeProvider(
        [system(), CLIExit(1)],
        [system("sess-2"), assistant("from fallback"), result("sess-2")],
    )
    client = StreamingSessionClient(provider, default_model="claude-opus-4-6")

    res = await client.invoke("/w", "go")

    assert res.text == "from fallback"
    assert res.model_used == ModelChoice.FALLBACK
    assert res.model_id == DEFAULT_FALLBACK_MODEL
    assert [c["model"] for c in provider.calls] == [
        "claude-opus-4-6", DEFAULT_FALLBACK_MODEL,
    ]
    assert provider.calls[0]["prompt"] == provider.calls[1]["prompt"]


@pytest.mark.asyncio
async def test_rate_class_detected_from_message_text():
    provider = FakeProvider(
        [RuntimeError("Claude Code process exited with code 1")],
        [assistant("ok"), result()],
    )
    res = await StreamingSessionClient(provider).invoke("/w", "go")
    assert res.model_used == ModelChoice.FALLBACK


@pytest.mark.asyncio
async def test_rate_class_detected_through_cause_chain():
    wrapper = RuntimeError("stream failed")
    wrapper.__cause__ = CLIExit(1)
    provider = FakeProvider([wrapper], [assistant("ok"), result()])
    res = await StreamingSessionClient(provider).invoke("/w", "go")
    assert res.model_used == ModelChoice.FALLBACK


@pytest.mark.asyncio
async def test_other_failure_is_not_retried():
    boom = RuntimeError("exited with code 127")
    provider = FakeProvider([system(), boom])

    with pytest.raises(InvocationError) as excinfo:
        await StreamingSessionClient(provider).invoke("/w", "go")

    assert excinfo.value.kind == FailureKind.OTHER
    assert excinfo.value.cause is boom
    assert len(provider.calls) == 1


@pytest.mark.asyncio
async def test_both_models_failing_reports_both_causes():
    provider = FakeProvider(
        [CLIExit(1, "rate limited")],
        [CLIExit(1, "still overloaded")],
    )

    with pytest.raises(FallbackExhaustedError) as excinfo:
        await StreamingSessionClient(provider).invoke("/w", "go")

    message = str(excinfo.value)
    assert "rate limited" in message
    assert "still overloaded" in message
    assert DEFAULT_FALLBACK_MODEL in message
    assert len(provider.calls) == 2


class StderrProvider(FakeProvider):
    """Reports a distinct stderr tail for each attempt."""

    def failure_detail(self) -> str:
        return f"stderr: attempt {len(self.calls)} overloaded_error"


@pytest.mark.asyncio
async def test_fallback_exhausted_message_carries_both_stderr_tails():
    provider = StderrProvider([CLIExit(1)], [CLIExit(1)])

    with pytest.raises(FallbackExhaustedError) as excinfo:
        await StreamingSessionClient(provider).invoke("/w", "go")

    message = str(excinfo.value)
    assert "stderr: attempt 1 overloaded_error" in message
    assert "stderr: attempt 2 overloaded_error" in message
    assert excinfo.value.first is not excinfo.value.second


@pytest.mark.asyncio
async def test_provider_errors_propagate_unwrapped():
    provider = FakeProvider([ProviderNotAvailableError("fake", "not installed")])
    with pytest.raises(ProviderNotAvailableError):
        await StreamingSessionClient(provider).invoke("/w", "go")


@pytest.mark.asyncio
async def test_termination_exit_code_reports_cancelled_outcome():
    provider = FakeProvider([system(), CLIExit(143)])
    res = await StreamingSessionClient(provider).invoke("/w", "go")

    assert res.outcome == InvocationOutcome.CANCELLED
    assert res.cancelled
    assert res.text == ""
    assert len(provider.calls) == 1


# ── invoke: cancellation ──


@pytest.mark.asyncio
async def test_cancelled_before_start_makes_no_call():
    provider = FakeProvider([assistant("never")])
    token = CancelToken()
    token.cancel()

    res = await StreamingSessionClient(provider).invoke("/w", "go", token=token)

    assert res.cancelled
    assert provider.calls == []


@pytest.mark.asyncio
async def test_cancel_between_events_stops_iteration():
    provider = FakeProvider([system(), assistant("one"), assistant("two"), result()])
    token = CancelToken()
    seen = []

    def on_event(event):
        seen.append(event)
        token.cancel()

    res = await StreamingSessionClient(provider).invoke(
        "/w", "go", on_event=on_event, token=token,
    )

    assert res.cancelled
    assert len(seen) == 1
    assert res.continuation_id == "sess-1"
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_cancel_interrupts_stream_waiting_for_next_event():
    provider = FakeProvider([system(), HANG, assistant("too late")])
    token = CancelToken()
    first_event = asyncio.Event()

    task = asyncio.create_task(
        StreamingSessionClient(provider).invoke(
            "/w", "go", on_event=lambda e: first_event.set(), token=token,
        )
    )
    await asyncio.wait_for(first_event.wait(), timeout=2)
    token.cancel()
    res = await asyncio.wait_for(task, timeout=2)

    assert res.cancelled
    assert res.text == ""
    assert res.continuation_id == "sess-1"
    assert provider.closed == 1


@pytest.mark.asyncio
async def test_rate_failure_after_cancel_is_not_retried():
    provider = FakeProvider([system(), CLIExit(1)], [assistant("fallback")])
    token = CancelToken()

    res = await StreamingSessionClient(provider).invoke(
        "/w", "go", on_event=lambda e: token.cancel(), token=token,
    )

    assert res.cancelled
    assert len(provider.calls) == 1
