"""
Hybrid retrieval: combined vector + keyword candidates, usage write-back
and optional frequency boosting.
"""

from __future__ import annotations

import asyncio
from dataclasses import replace

from database import MemoryStore
from embeddings import EmbeddingProvider, embed_text
from errors import NotFound, StoreUnavailable, UsageBookkeepingFailure
from models import RankedResult, ScoredMemory
from utils import log, now_millis

OVERFETCH_FACTOR = 3
BOOST_SATURATION = 10  # uses at which the boost is at full strength
BOOST_MAX = 0.4  # largest fractional reduction of the distance


def usage_boost(score: float, usage_count: int) -> float:
    """Shrink a distance by up to 40% for frequently used memories.

    Linear from 0 uses (no change) to 10+ uses (score * 0.6).
    """
    usage_factor = min(1.0, max(usage_count, 0) / BOOST_SATURATION)
    return score * (1 - usage_factor * BOOST_MAX)


class HybridRetriever:
    """search() and related() over a MemoryStore.

    Usage statistics are written back in a detached task after each
    search. The caller never waits for it and never sees its failures.
    """

    def __init__(self, store: MemoryStore, embedder: EmbeddingProvider):
        self.store = store
        self.embedder = embedder
        self._pending: set[asyncio.Task] = set()

    async def search(
        self, query: str, limit: int = 10, boost_frequent: bool = False
    ) -> list[RankedResult]:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        if not self.store.is_ready:
            raise StoreUnavailable()

        embedding = await embed_text(self.embedder, query)
        candidates = self.store.hybrid_search(embedding, query, limit * OVERFETCH_FACTOR)
        results = [RankedResult.from_scored(c) for c in candidates]

        self._schedule_usage_update(candidates[:limit])

        if boost_frequent:
            results = [replace(r, score=usage_boost(r.score, r.usage_count)) for r in results]
            results.sort(key=lambda r: r.score)

        return results[:limit]

    async def related(
        self, memory_id: str, limit: int = 5, boost_frequent: bool = False
    ) -> list[RankedResult]:
        """Search with a memory's own content, excluding that memory."""
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        source = self.store.find_by_id(memory_id)
        if source is None:
            raise NotFound(memory_id)

        results = await self.search(source.content, limit + 1, boost_frequent)
        return [r for r in results if r.id != memory_id][:limit]

    # -------------------------------------------------------------------------
    # Usage bookkeeping
    # -------------------------------------------------------------------------

    def _schedule_usage_update(self, candidates: list[ScoredMemory]) -> None:
        if not candidates:
            return
        ids = [c.memory.id for c in candidates]
        task = asyncio.create_task(asyncio.to_thread(self._record_usage, ids, now_millis()))
        self._pending.add(task)
        task.add_done_callback(self._usage_task_done)

    def _record_usage(self, memory_ids: list[str], used_at: int) -> None:
        for memory_id in memory_ids:
            try:
                self.store.record_usage(memory_id, used_at)
            except Exception as e:
                log(str(UsageBookkeepingFailure(memory_id, e)))

    def _usage_task_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log(f"Usage bookkeeping task failed: {task.exception()}")

    async def wait_for_bookkeeping(self) -> None:
        """Wait until every scheduled usage update has finished."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
