"""Streaming provider abstraction for external invocations."""
from .base import StreamingProvider, exception_chain
from .claude_provider import ClaudeProvider

__all__ = [
    "StreamingProvider",
    "ClaudeProvider",
    "exception_chain",
]
