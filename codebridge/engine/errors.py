"""Exception hierarchy for the bridge core.

Not-found handles and cancelled invocations are reported as values,
never raised. Everything here is a real failure a caller must see.
"""
from __future__ import annotations

from enum import Enum


class FailureKind(str, Enum):
    """How a failed external invocation should be treated."""
    RETRYABLE = "retryable"
    CANCELLED = "cancelled"
    OTHER = "other"


class BridgeError(Exception):
    """Base exception for all bridge errors."""


class ProcessSpawnError(BridgeError):
    """The OS refused to start a shell command."""
    def __init__(self, command: str, reason: str):
        self.command = command
        self.reason = reason
        super().__init__(f"Failed to spawn {command!r}: {reason}")


class ProviderNotAvailableError(BridgeError):
    """The external invocation runtime is not installed."""
    def __init__(self, provider_name: str, detail: str = ""):
        self.provider_name = provider_name
        self.detail = detail
        message = f"Provider '{provider_name}' is not available"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)


class InvocationError(BridgeError):
    """An external invocation failed and was not recovered."""
    def __init__(
        self,
        message: str,
        *,
        kind: FailureKind = FailureKind.OTHER,
        cause: BaseException | None = None,
    ):
        self.kind = kind
        self.cause = cause
        super().__init__(message)


class FallbackExhaustedError(InvocationError):
    """Both the default and the fallback model failed."""
    def __init__(
        self,
        first: BaseException,
        second: BaseException,
        fallback_model: str,
        *,
        first_detail: str | None = None,
        second_detail: str | None = None,
    ):
        self.first = first
        self.second = second
        self.fallback_model = fallback_model
        super().__init__(
            f"{first_detail or first}\n{second_detail or second}\n\n"
            f"Both the default model and the fallback model "
            f"({fallback_model}) failed. Wait a while and try again.",
            kind=FailureKind.RETRYABLE,
            cause=second,
        )
