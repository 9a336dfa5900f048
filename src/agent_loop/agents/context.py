"""Context enrichment collaborator interface."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

DEFAULT_CONTEXT_MAX_TOKENS = 4_000


@dataclass(slots=True)
class ContextSlice:
    """One piece of retrieved context with its relevance weight."""

    type: str
    content: str
    weight: float
    source: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class BuiltContext:
    system_prompt: str
    user_prompt: str
    slices: list[ContextSlice] = field(default_factory=list)


class ContextBuilder(Protocol):
    """Builds project-specific prompt context for an agent task."""

    def build_context(
        self,
        *,
        user_id: str,
        project_id: str,
        task_type: str,
        max_tokens: int,
    ) -> BuiltContext:
        """Return prompts and the slices they were assembled from."""


class NullContextBuilder:
    """Adds nothing; used when no enrichment source is configured."""

    def build_context(
        self,
        *,
        user_id: str,
        project_id: str,
        task_type: str,
        max_tokens: int,
    ) -> BuiltContext:
        return BuiltContext(system_prompt="", user_prompt="", slices=[])
