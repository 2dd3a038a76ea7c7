"""Error types shared by the store, retriever and tool layer."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from models import EmbeddingConfig


class MemoryStoreError(Exception):
    """Base class for failures surfaced to callers as failure results."""


class StoreUnavailable(MemoryStoreError, RuntimeError):
    """Raised when the store is used before initialize() or after close()."""

    def __init__(self, message: str = "Database not initialized"):
        super().__init__(message)


class ConfigMismatch(MemoryStoreError):
    """Persisted embedding identity disagrees with the active provider/model."""

    def __init__(self, persisted: EmbeddingConfig, active: EmbeddingConfig, db_path: str):
        created = f"{persisted.embedding_provider}/{persisted.embedding_model}"
        current = f"{active.embedding_provider}/{active.embedding_model}"
        if created == current:
            # Same model, different vector size (EMBEDDING_DIM override)
            created += f" ({persisted.embedding_dimension} dims)"
            current += f" ({active.embedding_dimension} dims)"
        super().__init__(
            f"Database was created with {created} but current session is using {current}. "
            f"Either switch to the original model or delete {db_path} to start fresh."
        )
        self.persisted = persisted
        self.active = active
        self.db_path = db_path


class NotFound(MemoryStoreError, LookupError):
    """Raised when an operation references a memory id that does not exist."""

    def __init__(self, memory_id: str):
        super().__init__(f"Memory with id {memory_id} not found")
        self.memory_id = memory_id


class EmbeddingGenerationFailure(MemoryStoreError, RuntimeError):
    """Raised when the embedding provider fails or returns malformed output."""


class UsageBookkeepingFailure(MemoryStoreError):
    """Usage write-back failed after a search. Logged, never raised to callers."""

    def __init__(self, memory_id: str, cause: BaseException):
        super().__init__(f"Failed to update usage for {memory_id}: {cause}")
        self.memory_id = memory_id
        self.cause = cause
