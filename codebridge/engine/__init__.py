"""Codebridge: supervised shell processes and streaming Claude sessions for chat bots."""
from .models import (
    InvocationOutcome,
    InvocationResult,
    InvocationSession,
    ModelChoice,
    ProcessInfo,
    ProcessState,
)
from .config import BotConfig
from .errors import (
    BridgeError,
    FailureKind,
    FallbackExhaustedError,
    InvocationError,
    ProcessSpawnError,
    ProviderNotAvailableError,
)

__all__ = [
    # Runtime (lazy import)
    "BotRuntime",
    "RuntimeStatus",
    "launch_sibling",
    # Components (lazy import)
    "OutputMultiplexer",
    "ProcessSupervisor",
    "SpawnResult",
    "StreamingSessionClient",
    "sanitize_continuation_id",
    "SessionCoordinator",
    "CancelToken",
    # Providers (lazy import)
    "StreamingProvider",
    "ClaudeProvider",
    # Models
    "InvocationOutcome",
    "InvocationResult",
    "InvocationSession",
    "ModelChoice",
    "ProcessInfo",
    "ProcessState",
    # Config
    "BotConfig",
    "load_yaml_config",
    # Errors
    "BridgeError",
    "FailureKind",
    "FallbackExhaustedError",
    "InvocationError",
    "ProcessSpawnError",
    "ProviderNotAvailableError",
]


def __getattr__(name: str):
    if name in ("BotRuntime", "RuntimeStatus"):
        from . import runtime
        return getattr(runtime, name)
    if name == "launch_sibling":
        from .launcher import launch_sibling
        return launch_sibling
    if name == "OutputMultiplexer":
        from .output import OutputMultiplexer
        return OutputMultiplexer
    if name in ("ProcessSupervisor", "SpawnResult"):
        from . import supervisor
        return getattr(supervisor, name)
    if name in ("StreamingSessionClient", "sanitize_continuation_id"):
        from . import session_client
        return getattr(session_client, name)
    if name in ("SessionCoordinator", "CancelToken"):
        from . import coordinator
        return getattr(coordinator, name)
    if name == "StreamingProvider":
        from .providers.base import StreamingProvider
        return StreamingProvider
    if name == "ClaudeProvider":
        from .providers.claude_provider import ClaudeProvider
        return ClaudeProvider
    if name == "load_yaml_config":
        from .yaml_config import load_yaml_config
        return load_yaml_config
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
