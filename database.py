"""
LanceDB storage layer: config guard and the memories table.

The store owns the on-disk tables. Everything above it works with typed
Memory records; raw rows are decoded here and never leave this module.
"""

from __future__ import annotations

import threading
from collections.abc import Sequence
from pathlib import Path
from typing import Any

import lancedb
import numpy as np
import pyarrow as pa

from errors import ConfigMismatch, StoreUnavailable
from models import EmbeddingConfig, Memory, ScoredMemory, memory_schema
from utils import escape_filter_value, log

RRF_K = 60
USAGE_COLUMNS = frozenset({"usage_count", "last_used"})


def _table_names(db: lancedb.DBConnection) -> list[str]:
    try:
        response = db.list_tables()
    except AttributeError:
        return list(db.table_names())
    return list(getattr(response, "tables", response))


def reconcile_embedding_config(
    db: lancedb.DBConnection,
    active: EmbeddingConfig,
    table_name: str,
    db_path: Path,
) -> EmbeddingConfig:
    """Bind the store to one embedding space, or refuse to open it.

    The first open persists the active config. Later opens compare
    provider and model; a mismatch raises ConfigMismatch.
    """
    if table_name not in _table_names(db):
        table = db.create_table(table_name, schema=EmbeddingConfig)
        table.add([active.model_dump()])
        log(f"Store bound to {active.embedding_provider}/{active.embedding_model} ({active.embedding_dimension} dims)")
        return active

    table = db.open_table(table_name)
    rows = table.to_arrow().to_pylist()[:1]
    if not rows:
        table.add([active.model_dump()])
        return active

    persisted = EmbeddingConfig.model_validate(rows[0])
    if persisted.identity() != active.identity():
        raise ConfigMismatch(persisted, active, str(db_path))
    return persisted


def build_filter(project: str | None = None, tags: Sequence[str] | None = None) -> str | None:
    """Predicate for project equality AND membership of ANY of the tags."""
    clauses = []
    if project:
        clauses.append(f"project = '{escape_filter_value(project)}'")
    if tags:
        tag_clause = " OR ".join(f"array_contains(tags, '{escape_filter_value(tag)}')" for tag in tags)
        clauses.append(f"({tag_clause})")
    return " AND ".join(clauses) if clauses else None


def rrf_fusion(
    vector_results: list[dict], fts_results: list[dict], fts_weight: float, k: int = RRF_K
) -> list[dict]:
    """Reciprocal Rank Fusion to combine vector and FTS results."""
    scores: dict[str, float] = {}
    all_results: dict[str, dict] = {}

    vector_weight = 1 - fts_weight
    for rank, r in enumerate(vector_results):
        rid = r["id"]
        scores[rid] = scores.get(rid, 0) + vector_weight / (k + rank + 1)
        all_results[rid] = r

    # Vector rows win on overlap: they carry _distance
    for rank, r in enumerate(fts_results):
        rid = r["id"]
        scores[rid] = scores.get(rid, 0) + fts_weight / (k + rank + 1)
        if rid not in all_results:
            all_results[rid] = r

    sorted_ids = sorted(scores.keys(), key=lambda x: scores[x], reverse=True)
    return [all_results[rid] for rid in sorted_ids]


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    denom = np.linalg.norm(va) * np.linalg.norm(vb)
    if denom == 0:
        return 1.0
    return float(1 - np.dot(va, vb) / denom)


class MemoryStore:
    """The memories table plus its config guard.

    Every operation raises StoreUnavailable outside initialize()/close().
    """

    def __init__(
        self,
        db_path: Path,
        embedding_config: EmbeddingConfig,
        table_name: str = "memories",
        config_table_name: str = "config",
        fts_weight: float = 0.3,
    ):
        self.db_path = Path(db_path)
        self.embedding_config = embedding_config
        self.table_name = table_name
        self.config_table_name = config_table_name
        self.fts_weight = fts_weight
        self._db: lancedb.DBConnection | None = None
        self._table: lancedb.table.Table | None = None
        self._has_fts = False
        # Serializes commits; concurrent updates of one row conflict in Lance
        self._write_lock = threading.Lock()

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def initialize(self) -> None:
        """Connect, run the config guard, open or create the memories table."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        db = lancedb.connect(str(self.db_path))
        active = self.embedding_config
        persisted = reconcile_embedding_config(db, active, self.config_table_name, self.db_path)

        if self.table_name in _table_names(db):
            table = db.open_table(self.table_name)
            stored_dim = table.schema.field("embedding").type.list_size
            if stored_dim != active.embedding_dimension:
                raise ConfigMismatch(
                    persisted.model_copy(update={"embedding_dimension": stored_dim}),
                    active,
                    str(self.db_path),
                )
        else:
            table = db.create_table(self.table_name, schema=memory_schema(active.embedding_dimension))

        self._db = db
        self._table = table
        self._ensure_fts_index()

    def close(self) -> None:
        self._table = None
        self._db = None
        self._has_fts = False

    @property
    def is_ready(self) -> bool:
        return self._table is not None

    @property
    def table(self) -> lancedb.table.Table:
        if self._table is None:
            raise StoreUnavailable()
        return self._table

    def _ensure_fts_index(self) -> None:
        """Create the FTS index on content if it is missing."""
        table = self.table
        try:
            indices = table.list_indices()
            self._has_fts = any("content" in list(getattr(idx, "columns", None) or []) for idx in indices)
            if not self._has_fts:
                table.create_fts_index("content", use_tantivy=False, replace=True)
                self._has_fts = True
                log("FTS index (BM25) created on 'content'")
        except Exception as e:
            # Retried after the next insert
            log(f"FTS index warning: {e}")

    def has_fts_index(self) -> bool:
        if self._table is None:
            raise StoreUnavailable()
        return self._has_fts

    # -------------------------------------------------------------------------
    # Row operations
    # -------------------------------------------------------------------------

    def _to_arrow(self, records: Sequence[Memory]) -> pa.Table:
        return pa.Table.from_pylist([r.model_dump() for r in records], schema=self.table.schema)

    def insert(self, records: Sequence[Memory]) -> None:
        """Append records in one atomic batch."""
        table = self.table
        if not records:
            return
        with self._write_lock:
            table.add(self._to_arrow(records))
            if not self._has_fts:
                self._ensure_fts_index()

    def find_by_id(self, memory_id: str) -> Memory | None:
        safe_id = escape_filter_value(memory_id)
        rows = self.table.search().where(f"id = '{safe_id}'").limit(1).to_list()
        return Memory.from_row(rows[0]) if rows else None

    def delete_by_id(self, memory_id: str) -> None:
        table = self.table
        with self._write_lock:
            table.delete(f"id = '{escape_filter_value(memory_id)}'")

    def update_fields(self, memory_id: str, values: dict[str, Any]) -> None:
        """Overwrite some columns of one record in a single commit.

        Only the given columns are written, so usage counters bumped by a
        concurrent search survive. A row deleted concurrently stays deleted.
        """
        owned = USAGE_COLUMNS & values.keys()
        if owned:
            raise ValueError(f"{sorted(owned)} are only written by record_usage")
        table = self.table
        if not values:
            return
        with self._write_lock:
            table.update(where=f"id = '{escape_filter_value(memory_id)}'", values=values)

    def filter(
        self,
        project: str | None = None,
        tags: Sequence[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Memory]:
        """Filtered listing. LanceDB has no native offset, so limit + offset rows are read and sliced."""
        table = self.table
        if limit <= 0:
            return []
        query = table.search()
        predicate = build_filter(project, tags)
        if predicate:
            query = query.where(predicate)
        rows = query.limit(limit + offset).to_list()
        return [Memory.from_row(row) for row in rows[offset : offset + limit]]

    def count(self) -> int:
        return self.table.count_rows()

    # -------------------------------------------------------------------------
    # Retrieval primitives
    # -------------------------------------------------------------------------

    def hybrid_search(self, vector: Sequence[float], text: str, limit: int) -> list[ScoredMemory]:
        """Vector (cosine) + FTS (BM25) candidates fused with RRF.

        Scores are cosine distances. Keyword-only hits get theirs computed
        from the stored embedding.
        """
        table = self.table
        vector_results: list[dict[str, Any]] = (
            table.search(list(vector), vector_column_name="embedding")
            .distance_type("cosine")
            .limit(limit)
            .to_list()
        )

        fts_results: list[dict[str, Any]] = []
        try:
            fts_results = table.search(text, query_type="fts").limit(limit).to_list()
        except Exception as e:
            log(f"FTS search warning (falling back to vector-only): {e}")

        if fts_results:
            candidates = rrf_fusion(vector_results, fts_results, self.fts_weight)[:limit]
        else:
            candidates = vector_results

        scored = []
        for row in candidates:
            memory = Memory.from_row(row)
            distance = row.get("_distance")
            if distance is None:
                distance = cosine_distance(vector, memory.embedding)
            scored.append(ScoredMemory(memory=memory, score=float(distance)))
        return scored

    def record_usage(self, memory_id: str, used_at: int) -> None:
        """Increment usage_count and stamp last_used for one record."""
        table = self.table
        with self._write_lock:
            table.update(
                where=f"id = '{escape_filter_value(memory_id)}'",
                values_sql={"usage_count": "usage_count + 1", "last_used": str(int(used_at))},
            )
