"""Shared data models for semantic-recall."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any

import pyarrow as pa
from lancedb.pydantic import LanceModel
from pydantic import BaseModel


class EmbeddingConfig(LanceModel):
    """Config table schema: the embedding space a store is bound to.

    Written once when the store is created, compared on every later open,
    never updated in place.
    """

    embedding_provider: str
    embedding_model: str
    embedding_dimension: int

    def identity(self) -> tuple[str, str]:
        return self.embedding_provider, self.embedding_model


class Memory(LanceModel):
    """One stored note, decoded from a raw LanceDB row.

    The on-disk column type of `embedding` is a fixed-size vector whose
    length is set by memory_schema(); rows are validated through this
    model as soon as they leave the table.
    """

    id: str  # uuid4 hex, immutable
    content: str  # Indexed for FTS
    embedding: list[float]
    timestamp: int  # creation time, epoch millis
    project: str | None = None
    tags: list[str] | None = None
    usage_count: int = 0
    last_used: int | None = None

    @classmethod
    def from_row(cls, row: dict[str, Any]) -> Memory:
        # usage_count may be null in rows written by older builds
        if row.get("usage_count") is None:
            row = {**row, "usage_count": 0}
        return cls.model_validate(row)


def memory_schema(dimension: int) -> pa.Schema:
    """Arrow schema for the memories table.

    IMPORTANT: Any changes to this schema require migration of existing data.
    """
    return pa.schema(
        [
            pa.field("id", pa.string(), nullable=False),
            pa.field("content", pa.string(), nullable=False),
            pa.field("embedding", pa.list_(pa.float32(), dimension), nullable=False),
            pa.field("timestamp", pa.int64(), nullable=False),
            pa.field("project", pa.string(), nullable=True),
            pa.field("tags", pa.list_(pa.string()), nullable=True),
            pa.field("usage_count", pa.int64(), nullable=False),
            pa.field("last_used", pa.int64(), nullable=True),
        ]
    )


class MemoryInput(BaseModel):
    """One item of a batch add. Unset project/tags fall back to the batch defaults."""

    content: str
    project: str | None = None
    tags: list[str] | None = None


@dataclass(frozen=True, slots=True)
class ScoredMemory:
    """A candidate from the combined vector + keyword query, before boosting."""

    memory: Memory
    score: float  # cosine distance, lower = more similar


@dataclass(frozen=True, slots=True)
class RankedResult:
    """A search hit as returned to callers."""

    id: str
    content: str
    score: float
    timestamp: int
    project: str | None = None
    tags: list[str] | None = None
    usage_count: int = 0

    @classmethod
    def from_scored(cls, candidate: ScoredMemory) -> RankedResult:
        memory = candidate.memory
        return cls(
            id=memory.id,
            content=memory.content,
            score=candidate.score,
            timestamp=memory.timestamp,
            project=memory.project,
            tags=memory.tags,
            usage_count=memory.usage_count,
        )
