"""
Sage - Centralized Configuration
=================================
Uses ``pydantic-settings`` (``BaseSettings``) to load *all* configuration
from environment variables and the project-level ``.env`` file.

Security
--------
- Every API key is typed as ``SecretStr``.  The raw value is never
  exposed in repr, logs, or tracebacks.
- No key is *required*: a provider slot without both key and model is
  inactive and the fallback chain skips it.  A missing embedding key
  switches the embedding service to its deterministic hash fallback.

Provider Slots
--------------
``GEMINI1_*`` … ``GEMINI6_*`` form the generation fallback chain, tried
in that priority order.  Each slot carries its own key so a rate limit
on one key does not stall the others.

Fixed Serving Knobs
-------------------
Concurrency, cooldown, timeout, cache and retrieval parameters default
to the values the serving path was tuned with.  They are process-wide;
no caller can override them per request (except TTL on specific
cache writes).
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import SecretStr, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

# Display names for the six provider tiers, in priority order.
PROVIDER_SLOT_NAMES: tuple[str, ...] = ("Gemini 3 Flash", "Gemini 2.5 Flash", "Gemini 2.5 Flash Lite A", "Gemini 2.5 Flash Lite B", "Gemini 2.5 Flash Lite C", "Gemini 2.5 Flash Lite D")


class Settings(BaseSettings):
    """
    Application-wide settings.

    Every field is loaded from environment variables (or ``.env``).

    Attributes
    ----------
    ENV : Literal["dev", "prod"]
        Environment mode controlling logging verbosity.
    GEMINI{n}_API_KEY / GEMINI{n}_MODEL
        Credentials and model id for provider tier *n* (1–6).
    EMBEDDING_API_KEY : SecretStr | None
        Key for the embedding endpoint.  Falls back to ``GEMINI1_API_KEY``.
    EMBEDDING_MODEL : str
        Model identifier passed to ``GoogleGenerativeAIEmbeddings``.
    EMBEDDING_DIMENSIONS : int
        Vector width; the hash fallback produces vectors of this size so
        both paths land in the same LanceDB column.
    LLM_TEMPERATURE : float
        Default sampling temperature for completions.
    MAX_TOKENS : int
        Base completion budget, scaled per user level.
    MAX_CONCURRENT_GENERATIONS : int
        Concurrency gate size.
    PROVIDER_COOLDOWN_SECONDS : float
        How long a rate-limited provider sits out.
    REQUEST_TIMEOUT_SECONDS : float
        Hard bound on every network call (generation, embedding).
    CACHE_TTL_SECONDS / CACHE_MAX_ENTRIES / CACHE_SWEEP_INTERVAL_SECONDS
        Response cache parameters.
    SIMILARITY_THRESHOLD : float
        Minimum boosted similarity a chunk needs to reach the prompt.
    RAG_TOP_K / RAG_RERANK_TOP
        Neighbours fetched from the vector store / chunks kept after rerank.
    CHUNK_SIZE / CHUNK_OVERLAP
        Ingestion chunk size and overlap, in approximate tokens.
    VECTOR_STORE_RETRY_SECONDS : float
        Circuit-breaker cooldown after a LanceDB failure.
    """

    # ── Resolved Absolute Paths ────────────────────────────────────────
    BASE_DIR: Path = Path(__file__).resolve().parent.parent
    DATA_RAW_DIR: Path = BASE_DIR / "data" / "raw"
    DATA_PROCESSED_DIR: Path = BASE_DIR / "data" / "processed"
    REGISTRY_DIR: Path = BASE_DIR / "data" / "registry"
    LANCEDB_PATH: Path = BASE_DIR / "data" / "lancedb"

    # ── Environment Mode ───────────────────────────────────────────────
    ENV: Literal["dev", "prod"] = "dev"

    # ── Provider Fallback Chain (priority 1 → 6) ───────────────────────
    GEMINI1_API_KEY: SecretStr | None = None
    GEMINI1_MODEL: str = ""
    GEMINI2_API_KEY: SecretStr | None = None
    GEMINI2_MODEL: str = ""
    GEMINI3_API_KEY: SecretStr | None = None
    GEMINI3_MODEL: str = ""
    GEMINI4_API_KEY: SecretStr | None = None
    GEMINI4_MODEL: str = ""
    GEMINI5_API_KEY: SecretStr | None = None
    GEMINI5_MODEL: str = ""
    GEMINI6_API_KEY: SecretStr | None = None
    GEMINI6_MODEL: str = ""

    # ── Embeddings ─────────────────────────────────────────────────────
    EMBEDDING_API_KEY: SecretStr | None = None
    EMBEDDING_MODEL: str = "gemini-embedding-001"
    EMBEDDING_DIMENSIONS: int = 3072

    # ── Generation Defaults ────────────────────────────────────────────
    LLM_TEMPERATURE: float = 0.7
    MAX_TOKENS: int = 4096

    # ── Serving Knobs ──────────────────────────────────────────────────
    MAX_CONCURRENT_GENERATIONS: int = 2
    PROVIDER_COOLDOWN_SECONDS: float = 30.0
    REQUEST_TIMEOUT_SECONDS: float = 30.0

    # ── Response Cache ─────────────────────────────────────────────────
    CACHE_TTL_SECONDS: float = 300.0
    CACHE_MAX_ENTRIES: int = 200
    CACHE_SWEEP_INTERVAL_SECONDS: float = 60.0

    # ── Retrieval ──────────────────────────────────────────────────────
    SIMILARITY_THRESHOLD: float = 0.3
    RAG_TOP_K: int = 10
    RAG_RERANK_TOP: int = 5

    # ── Ingestion ──────────────────────────────────────────────────────
    CHUNK_SIZE: int = 512
    CHUNK_OVERLAP: int = 50
    MAX_WORKERS: int = 4

    # ── LanceDB ────────────────────────────────────────────────────────
    LANCEDB_TABLE_NAME: str = "sage_knowledge"
    VECTOR_STORE_RETRY_SECONDS: float = 60.0

    # ── Validators ─────────────────────────────────────────────────────

    @field_validator("SIMILARITY_THRESHOLD")
    @classmethod
    def _threshold_range(cls, v: float) -> float:
        if not 0.0 <= v <= 1.0:
            raise ValueError(f"SIMILARITY_THRESHOLD must be within [0, 1], got {v}")
        return v


    @field_validator("MAX_CONCURRENT_GENERATIONS", "CACHE_MAX_ENTRIES", "RAG_TOP_K", "RAG_RERANK_TOP", "MAX_TOKENS", "EMBEDDING_DIMENSIONS")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v < 1:
            raise ValueError(f"value must be ≥ 1, got {v}")
        return v


    @field_validator("PROVIDER_COOLDOWN_SECONDS", "REQUEST_TIMEOUT_SECONDS", "CACHE_TTL_SECONDS", "CACHE_SWEEP_INTERVAL_SECONDS", "VECTOR_STORE_RETRY_SECONDS")
    @classmethod
    def _positive_seconds(cls, v: float) -> float:
        if v <= 0:
            raise ValueError(f"duration must be > 0 seconds, got {v}")
        return v


    @field_validator("MAX_WORKERS")
    @classmethod
    def _workers_range(cls, v: int) -> int:
        if not 1 <= v <= 16:
            raise ValueError(f"MAX_WORKERS must be 1–16, got {v}")
        return v


    @model_validator(mode="after")
    def _overlap_below_size(self) -> Settings:
        if not 0 <= self.CHUNK_OVERLAP < self.CHUNK_SIZE:
            raise ValueError(f"CHUNK_OVERLAP must be in [0, CHUNK_SIZE), got {self.CHUNK_OVERLAP} for size {self.CHUNK_SIZE}")
        return self

    # ── Derived Views ──────────────────────────────────────────────────

    def provider_slots(self) -> list[tuple[str, SecretStr | None, str]]:
        """Return ``(name, api_key, model)`` for all six tiers in priority order."""
        return [(name, getattr(self, f"GEMINI{i}_API_KEY"), getattr(self, f"GEMINI{i}_MODEL")) for i, name in enumerate(PROVIDER_SLOT_NAMES, start=1)]


    def embedding_key(self) -> SecretStr | None:
        """The embedding key, falling back to the first provider's key."""
        return self.EMBEDDING_API_KEY or self.GEMINI1_API_KEY

    # ── Pydantic Settings Configuration ────────────────────────────────
    model_config = SettingsConfigDict(env_file=Path(__file__).resolve().parent.parent / ".env", env_file_encoding="utf-8", extra="ignore")


# ── Singleton Instance ─────────────────────────────────────────────────
# Import this throughout the project:
#     from sage.config.settings import settings
settings = Settings()
