"""
Shared fakes for the Sage test-suite.

Nothing here touches the network: generation backends are scripted,
the vector store is an in-memory double, and every time-dependent
component receives a ``FakeClock`` instead of sleeping.
"""

from __future__ import annotations

import json
from typing import Any

import pytest

from sage.src.services.embeddings import EmbeddingService
from sage.src.services.providers import Completion, ProviderRegistry, ProviderSlot


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class StatusError(Exception):
    """Mimics an SDK error carrying an HTTP status."""

    def __init__(self, status_code: int, message: str = "") -> None:
        super().__init__(message or f"HTTP {status_code}")
        self.status_code = status_code


class ScriptedBackend:
    """
    Generation backend that replays *outcomes* in order.

    Each outcome is a string, a ``Completion`` or an exception to raise.
    The last outcome repeats once the script is used up.
    """

    def __init__(self, *outcomes: Any) -> None:
        self.outcomes = list(outcomes) or ["ok"]
        self.requests: list[Any] = []

    @property
    def calls(self) -> int:
        return len(self.requests)

    async def complete(self, request):
        self.requests.append(request)
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, BaseException):
            raise outcome
        if isinstance(outcome, Completion):
            return outcome
        return Completion(text=outcome, finish_reason="STOP")


class FakeStore:
    """In-memory stand-in for ``VectorStoreClient``."""

    def __init__(self, rows: list[dict[str, Any]] | None = None, available: bool = True) -> None:
        self.rows = rows or []
        self.is_available = available
        self.queries: list[tuple[Any, int, Any]] = []
        self.added: list[dict[str, Any]] = []

    def query(self, embedding, k=None, filters=None):
        self.queries.append((embedding, k, filters))
        return list(self.rows)

    def add(self, ids, embeddings, documents, metadatas):
        for doc_id, vector, text, meta in zip(ids, embeddings, documents, metadatas):
            self.added.append({"id": doc_id, "vector": vector, "text": text, **meta})
        return len(ids)


def make_registry(*backends: Any, clock: FakeClock, cooldown: float = 30.0) -> ProviderRegistry:
    slots = [ProviderSlot(name=f"provider-{i}", priority=i, model=f"model-{i}", backend=backend) for i, backend in enumerate(backends, start=1)]
    return ProviderRegistry(slots, cooldown=cooldown, clock=clock)


def answer_json(answer: str, **extra: Any) -> str:
    return json.dumps({"answer": answer, **extra})


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def embeddings() -> EmbeddingService:
    return EmbeddingService(dims=8, use_remote=False)
