"""
Sage - Provider Fallback Chain
===============================
Ordered set of interchangeable Gemini generation backends with
per-provider cooldown / disable state.

Provider lifecycle
------------------
::

    AVAILABLE ──429/402──▶ COOLING ──(cooldown elapsed, checked lazily)──▶ AVAILABLE
        │                     │
        └───────404───────────┴──▶ DISABLED  (terminal for the process)

Timeouts, connection errors, 5xx responses and blank completions advance
to the next provider with **no** state change.

Request semantics
-----------------
1. Providers are consulted in fixed priority order (slot 1 → 6).
2. Each provider gets at most **one** attempt per request.
3. A cooling provider is re-checked only when consulted; there is no
   background timer.
4. If every active provider is cooling, the one whose cooldown ends
   soonest is attempted anyway.
5. When nothing produced usable text, ``AllProvidersExhaustedError``
   is raised and recorded by the ``HealthMonitor``.

Transport is LangChain's ``ChatGoogleGenerativeAI`` (``ainvoke`` with a
``SystemMessage`` + ``HumanMessage`` pair).  Every attempt is bounded by
``asyncio.wait_for`` with ``settings.REQUEST_TIMEOUT_SECONDS``.
"""

from __future__ import annotations

import asyncio
import threading
import time
from collections.abc import Callable
from contextlib import nullcontext
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Protocol

from pydantic import SecretStr

from sage.config.settings import settings
from sage.src.utils.errors import AllProvidersExhaustedError, EmptyCompletionError, ProviderError, ProviderNotFoundError, RateLimitError, TransientProviderError, error_message
from sage.src.utils.logger import get_logger

logger = get_logger(__name__)

# Hard ceiling on max_output_tokens accepted by the Gemini endpoints.
MAX_OUTPUT_TOKENS_CAP = 65_536

# Finish reasons that mean the output was cut off by the token budget.
_TRUNCATION_REASONS = frozenset({"length", "MAX_TOKENS", "max_tokens"})

_RATE_LIMIT_MARKERS = ("429", "resource_exhausted", "resource exhausted", "quota", "rate limit", "402", "payment required")
_NOT_FOUND_MARKERS = ("404", "not_found", "not found")


# ── Data Model ────────────────────────────────────────────────────────

class ProviderState(str, Enum):
    AVAILABLE = "available"
    COOLING = "cooling"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    """One immutable generation call."""

    system_prompt: str
    user_prompt: str
    temperature: float = settings.LLM_TEMPERATURE
    max_tokens: int = settings.MAX_TOKENS
    json_mode: bool = False


@dataclass(slots=True)
class Completion:
    text: str
    finish_reason: str | None = None
    prompt_tokens: int | None = None
    completion_tokens: int | None = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason in _TRUNCATION_REASONS


class GenerationBackend(Protocol):
    """Anything that can turn a ``GenerationRequest`` into a ``Completion``."""

    async def complete(self, request: GenerationRequest) -> Completion: ...


@dataclass(slots=True)
class ProviderSlot:
    """
    One tier of the fallback chain.

    ``rate_limited_until`` is a ``clock()`` timestamp (0 = not limited);
    ``active`` becomes ``False`` permanently on a 404.
    """

    name: str
    priority: int
    model: str
    backend: GenerationBackend
    api_key: SecretStr | None = field(default=None, repr=False)
    rate_limited_until: float = 0.0
    active: bool = True

    def state(self, now: float) -> ProviderState:
        if not self.active:
            return ProviderState.DISABLED
        if self.rate_limited_until > now:
            return ProviderState.COOLING
        return ProviderState.AVAILABLE


# ── Error Classification ──────────────────────────────────────────────

def _status_of(error: BaseException) -> int | None:
    for attr in ("status_code", "code", "status"):
        value = getattr(error, attr, None)
        if isinstance(value, int) and not isinstance(value, bool):
            return value
    response = getattr(error, "response", None)
    value = getattr(response, "status_code", None)
    return value if isinstance(value, int) else None


def classify_provider_error(error: BaseException, provider: str | None = None) -> ProviderError:
    """
    Translate a backend exception into the Sage provider taxonomy.

    The HTTP status exposed on the exception wins; message markers are
    used when no status is available.  Anything unrecognised is
    transient.
    """
    if isinstance(error, ProviderError):
        return error

    message = error_message(error)
    if isinstance(error, (asyncio.TimeoutError, TimeoutError)):
        return TransientProviderError(f"timeout: {message}", provider=provider)

    status = _status_of(error)
    if status in (429, 402):
        return RateLimitError(message, provider=provider, status=status)
    if status == 404:
        return ProviderNotFoundError(message, provider=provider, status=status)
    if status is not None:
        return TransientProviderError(message, provider=provider, status=status)

    lowered = message.lower()
    if any(marker in lowered for marker in _RATE_LIMIT_MARKERS):
        return RateLimitError(message, provider=provider)
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return ProviderNotFoundError(message, provider=provider)
    return TransientProviderError(message, provider=provider)


# ── Gemini Transport ──────────────────────────────────────────────────

class GeminiChatBackend:
    """``ChatGoogleGenerativeAI`` adapter implementing ``GenerationBackend``."""

    __slots__ = ("model", "_api_key", "_timeout")

    def __init__(self, model: str, api_key: SecretStr, timeout: float | None = None) -> None:
        self.model = model
        self._api_key = api_key
        self._timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS


    def _build_llm(self, request: GenerationRequest) -> Any:
        from langchain_google_genai import ChatGoogleGenerativeAI

        kwargs: dict[str, Any] = {}
        if request.json_mode:
            kwargs["response_mime_type"] = "application/json"
        return ChatGoogleGenerativeAI(model=self.model, google_api_key=self._api_key.get_secret_value(), temperature=request.temperature, max_output_tokens=request.max_tokens, timeout=self._timeout, max_retries=0, **kwargs)


    async def complete(self, request: GenerationRequest) -> Completion:
        from langchain_core.messages import HumanMessage, SystemMessage

        llm = self._build_llm(request)
        response = await llm.ainvoke([SystemMessage(content=request.system_prompt), HumanMessage(content=request.user_prompt)])

        content = response.content
        if isinstance(content, list):
            content = "".join(block if isinstance(block, str) else str(block.get("text", "")) for block in content)

        metadata = getattr(response, "response_metadata", None) or {}
        usage = getattr(response, "usage_metadata", None) or {}
        finish_reason = metadata.get("finish_reason")
        return Completion(text=content or "", finish_reason=getattr(finish_reason, "name", finish_reason), prompt_tokens=usage.get("input_tokens"), completion_tokens=usage.get("output_tokens"))


# ── Provider Registry ─────────────────────────────────────────────────

class ProviderRegistry:
    """
    Owns every ``ProviderSlot`` and its cooldown / disable state.

    All state transitions happen under one lock.  Reactivation after a
    cooldown is lazy: it happens inside ``consult``.
    """

    __slots__ = ("_slots", "_cooldown", "_clock", "_lock")

    def __init__(self, slots: list[ProviderSlot], cooldown: float | None = None, clock: Callable[[], float] = time.monotonic) -> None:
        self._slots = sorted(slots, key=lambda s: s.priority)
        self._cooldown = cooldown or settings.PROVIDER_COOLDOWN_SECONDS
        self._clock = clock
        self._lock = threading.Lock()
        chain = " → ".join(f"{s.name} ({s.model})" for s in self._slots if s.active)
        logger.info("[LLM] Fallback chain initialised: %s (count=%d)", chain or "<empty>", len(self.active_slots()))


    @classmethod
    def from_settings(cls, clock: Callable[[], float] = time.monotonic) -> ProviderRegistry:
        """Build one Gemini slot per configured tier; tiers missing a key or model are skipped."""
        slots: list[ProviderSlot] = []
        for priority, (name, api_key, model) in enumerate(settings.provider_slots(), start=1):
            if api_key is None or not api_key.get_secret_value() or not model:
                continue
            slots.append(ProviderSlot(name=name, priority=priority, model=model, backend=GeminiChatBackend(model, api_key), api_key=api_key))
        return cls(slots, clock=clock)


    @property
    def slots(self) -> list[ProviderSlot]:
        return list(self._slots)


    def active_slots(self) -> list[ProviderSlot]:
        return [slot for slot in self._slots if slot.active]


    def consult(self, slot: ProviderSlot) -> bool:
        """Return ``True`` if *slot* may be attempted now, re-enabling it if its cooldown has elapsed."""
        with self._lock:
            if not slot.active:
                return False
            if slot.rate_limited_until <= 0:
                return True
            now = self._clock()
            if now >= slot.rate_limited_until:
                slot.rate_limited_until = 0.0
                logger.info("[LLM] Cooldown expired, provider re-enabled: %s", slot.name)
                return True
            logger.debug("[LLM] Provider cooling, skipping: %s (%.1fs left)", slot.name, slot.rate_limited_until - now)
            return False


    def mark_rate_limited(self, slot: ProviderSlot) -> None:
        with self._lock:
            slot.rate_limited_until = self._clock() + self._cooldown
        logger.warning("[LLM] Provider rate-limited, cooling for %.0fs: %s", self._cooldown, slot.name)


    def disable(self, slot: ProviderSlot) -> None:
        with self._lock:
            slot.active = False
        logger.error("[LLM] Provider disabled for this process (model not found): %s", slot.name)


    def soonest_cooling(self) -> ProviderSlot | None:
        """The active slot whose cooldown ends first, or ``None`` if none is active."""
        active = self.active_slots()
        if not active:
            return None
        return min(active, key=lambda s: (s.rate_limited_until, s.priority))


    def states(self) -> dict[str, ProviderState]:
        now = self._clock()
        return {slot.name: slot.state(now) for slot in self._slots}


# ── Fallback Chain ────────────────────────────────────────────────────

class FallbackChain:
    """
    ``generate(request) → text`` across the registry's providers.

    Parameters
    ----------
    registry
        Owned provider state.
    gate
        Optional ``ConcurrencyGate``; when given, each ``generate`` call
        holds one slot for its whole duration.
    health
        Optional ``HealthMonitor`` that records chain exhaustion.
    timeout
        Per-attempt hard timeout in seconds.
    """

    __slots__ = ("_registry", "_gate", "_health", "_timeout")

    def __init__(self, registry: ProviderRegistry, gate: Any = None, health: Any = None, timeout: float | None = None) -> None:
        self._registry = registry
        self._gate = gate
        self._health = health
        self._timeout = timeout or settings.REQUEST_TIMEOUT_SECONDS


    @property
    def registry(self) -> ProviderRegistry:
        return self._registry


    async def generate(self, request: GenerationRequest) -> str:
        """
        Return the first non-blank completion.

        Raises
        ------
        AllProvidersExhaustedError
            Every eligible provider was attempted once and none produced
            usable output (or no provider is configured).
        """
        if request.max_tokens > MAX_OUTPUT_TOKENS_CAP:
            request = GenerationRequest(request.system_prompt, request.user_prompt, request.temperature, MAX_OUTPUT_TOKENS_CAP, request.json_mode)

        async with self._gate.slot() if self._gate is not None else nullcontext():
            return await self._generate(request)


    async def _generate(self, request: GenerationRequest) -> str:
        attempted: list[str] = []
        last_error: ProviderError | None = None
        started = time.perf_counter()

        for slot in self._registry.active_slots():
            if not self._registry.consult(slot):
                continue
            attempted.append(slot.name)
            try:
                return await self._attempt(slot, request, len(attempted))
            except ProviderError as exc:
                last_error = exc
                self._apply(slot, exc)

        if not attempted:
            soonest = self._registry.soonest_cooling()
            if soonest is not None:
                logger.warning("[LLM] All providers cooling, using soonest to recover: %s", soonest.name)
                attempted.append(soonest.name)
                try:
                    return await self._attempt(soonest, request, 1)
                except ProviderError as exc:
                    last_error = exc
                    self._apply(soonest, exc)

        elapsed_ms = (time.perf_counter() - started) * 1000
        logger.error("[LLM] All providers failed: attempted=%s total_ms=%.0f error=%s", attempted, elapsed_ms, error_message(last_error))
        if self._health is not None:
            self._health.record_error(last_error or "no provider available")
        raise AllProvidersExhaustedError(attempted, last_error)


    async def _attempt(self, slot: ProviderSlot, request: GenerationRequest, attempt: int) -> str:
        logger.debug("[LLM] Request starting: provider=%s model=%s attempt=%d", slot.name, slot.model, attempt)
        started = time.perf_counter()
        try:
            completion = await asyncio.wait_for(slot.backend.complete(request), timeout=self._timeout)
        except ProviderError:
            raise
        except Exception as exc:
            raise classify_provider_error(exc, slot.name) from exc
        elapsed_ms = (time.perf_counter() - started) * 1000

        if not completion.text or not completion.text.strip():
            raise EmptyCompletionError("empty completion", provider=slot.name)

        if completion.truncated:
            logger.warning("[LLM] Response truncated at token limit: provider=%s model=%s max_tokens=%d finish_reason=%s", slot.name, slot.model, request.max_tokens, completion.finish_reason)

        logger.info("[LLM] Response received: provider=%s model=%s elapsed_ms=%.0f prompt_tokens=%s completion_tokens=%s finish_reason=%s truncated=%s chars=%d attempt=%d", slot.name, slot.model, elapsed_ms, completion.prompt_tokens, completion.completion_tokens, completion.finish_reason, completion.truncated, len(completion.text), attempt)
        return completion.text


    def _apply(self, slot: ProviderSlot, error: ProviderError) -> None:
        """Apply the state transition for a failed attempt."""
        logger.warning("[LLM] Provider %s failed (%s, status=%s), trying next: %s", slot.name, type(error).__name__, error.status, error_message(error))
        if isinstance(error, RateLimitError):
            self._registry.mark_rate_limited(slot)
        elif isinstance(error, ProviderNotFoundError):
            self._registry.disable(slot)
