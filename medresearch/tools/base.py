"""Common contract for knowledge providers."""
from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from medresearch.models.research import SourceItem


@dataclass
class ProviderResult:
    found: int
    retrieved: int
    results: list[SourceItem] = field(default_factory=list)
    latency_ms: int = 0
    error: str | None = None


class KnowledgeProvider(ABC):
    """One external evidence source.

    ``search`` either returns a ``ProviderResult`` or raises; the round executor
    owns timeouts and turns exceptions into failed calls.
    """

    name: str = "provider"

    def __init__(self, timeout: float = 10.0):
        self.timeout = timeout

    @abstractmethod
    async def search(
        self,
        query: str,
        filters: dict[str, Any],
        max_results: int,
    ) -> ProviderResult:
        raise NotImplementedError

    def default_filters(self) -> dict[str, Any]:
        return {}

    def __repr__(self) -> str:
        return f"{type(self).__name__}(name={self.name!r}, timeout={self.timeout})"
