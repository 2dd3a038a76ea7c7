"""Server configuration, read from the environment at construction time."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

VALID_PROVIDERS = frozenset({"auto", "ollama", "google", "hash"})


def _env_int(name: str) -> int | None:
    value = os.environ.get(name)
    return int(value) if value else None


@dataclass(frozen=True, slots=True)
class Config:
    """Server configuration with sensible defaults."""

    db_path: Path = field(
        default_factory=lambda: Path(
            os.environ.get("SEMANTIC_RECALL_DB_PATH", Path.home() / ".mcp-semantic-recall")
        )
    )
    table_name: str = "memories"
    config_table_name: str = "config"
    embedding_provider: str = field(
        default_factory=lambda: os.environ.get("EMBEDDING_PROVIDER", "auto").lower()
    )  # auto | ollama | google | hash
    # None means "use the provider's default model/dimension"
    embedding_model: str | None = field(default_factory=lambda: os.environ.get("EMBEDDING_MODEL") or None)
    embedding_dim: int | None = field(default_factory=lambda: _env_int("EMBEDDING_DIM"))
    ollama_base_url: str = field(
        default_factory=lambda: os.environ.get("OLLAMA_BASE_URL", "http://localhost:11434")
    )
    request_timeout: float = 30.0
    probe_timeout: float = 2.0
    embedding_cache_size: int = 128
    fts_weight: float = 0.3  # Weight for FTS in hybrid fusion (vector gets 1 - this)
    max_list_limit: int = 100

    def __post_init__(self) -> None:
        if self.embedding_provider not in VALID_PROVIDERS:
            raise ValueError(
                f"Invalid EMBEDDING_PROVIDER '{self.embedding_provider}'. Valid: {sorted(VALID_PROVIDERS)}"
            )
        if self.embedding_dim is not None and self.embedding_dim <= 0:
            raise ValueError(f"EMBEDDING_DIM must be positive, got {self.embedding_dim}")
        if not 0.0 <= self.fts_weight <= 1.0:
            raise ValueError(f"fts_weight must be in [0, 1], got {self.fts_weight}")
        if self.max_list_limit <= 0:
            raise ValueError(f"max_list_limit must be positive, got {self.max_list_limit}")
