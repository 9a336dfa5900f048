"""Model call adapters."""

from agent_loop.llm.client import (
    HttpLlmClient,
    LlmClient,
    LlmMessage,
    LlmRequest,
    LlmResponse,
    LlmUsage,
)

__all__ = [
    "HttpLlmClient",
    "LlmClient",
    "LlmMessage",
    "LlmRequest",
    "LlmResponse",
    "LlmUsage",
]
