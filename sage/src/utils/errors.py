"""
Sage - Error Taxonomy
======================
Exceptions raised along the generation-serving path.

Only ``AllProvidersExhaustedError`` is allowed to escape the core; every
other class is raised and absorbed internally to drive a fallback:

``TransientProviderError``
    Timeout, connection reset, 5xx, empty completion.  Advance to the
    next provider, no state change.
``RateLimitError``
    429 / 402.  Advance and put the provider into cooldown.
``ProviderNotFoundError``
    404 model/route.  Advance and disable the provider for the process.
``RetrievalUnavailableError``
    Vector store down or circuit open.  Answer in LLM-only mode.
``ParseError``
    One output-recovery strategy failed.  Try the next one.
"""

from __future__ import annotations


class SageError(Exception):
    """Base class for all Sage errors."""


# ── Generation ────────────────────────────────────────────────────────

class ProviderError(SageError):
    """A single provider attempt failed."""

    def __init__(self, message: str, *, provider: str | None = None, status: int | None = None) -> None:
        super().__init__(message)
        self.provider = provider
        self.status = status


class TransientProviderError(ProviderError):
    """Timeout, connection, or server-side failure. Retry elsewhere, no cooldown."""


class EmptyCompletionError(TransientProviderError):
    """The provider answered, but with blank text."""


class RateLimitError(ProviderError):
    """Rate limited or payment required. The provider enters cooldown."""


class ProviderNotFoundError(ProviderError):
    """Model or route does not exist. The provider is disabled for the process."""


class AllProvidersExhaustedError(SageError):
    """Every eligible provider was tried once and none produced usable output."""

    def __init__(self, attempted: list[str], last_error: BaseException | None = None) -> None:
        detail = str(last_error) if last_error is not None else "no provider available"
        super().__init__(f"All LLM providers failed (attempted: {', '.join(attempted) or 'none'}): {detail}")
        self.attempted = attempted
        self.last_error = last_error


# ── Retrieval / parsing ───────────────────────────────────────────────

class RetrievalUnavailableError(SageError):
    """The vector store cannot be reached right now."""


class ParseError(SageError):
    """A single recovery strategy could not extract structured output."""


def error_message(error: object) -> str:
    """Safely render any error-ish value as a message string."""
    if isinstance(error, BaseException):
        return str(error) or type(error).__name__
    if isinstance(error, str):
        return error
    return "Unknown error"
