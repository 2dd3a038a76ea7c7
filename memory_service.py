"""Memory lifecycle: add, batch add, update, delete, list, search, related."""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Sequence
from typing import Any

from database import MemoryStore
from embeddings import EmbeddingProvider, embed_text
from errors import NotFound, StoreUnavailable
from models import Memory, MemoryInput, RankedResult
from retriever import HybridRetriever
from utils import now_millis


def new_memory_id() -> str:
    return uuid.uuid4().hex


class MemoryService:
    """Public API over the store and retriever.

    Owns the record invariants: ids are generated here, timestamps are set
    once at creation, embeddings follow content.
    """

    def __init__(
        self,
        store: MemoryStore,
        embedder: EmbeddingProvider,
        retriever: HybridRetriever | None = None,
    ):
        self.store = store
        self.embedder = embedder
        self.retriever = retriever or HybridRetriever(store, embedder)

    def _require_store(self) -> None:
        # Checked before embedding so a closed store fails without a provider call
        if not self.store.is_ready:
            raise StoreUnavailable()

    async def add_memory(
        self,
        content: str,
        project: str | None = None,
        tags: list[str] | None = None,
    ) -> str:
        self._require_store()
        embedding = await embed_text(self.embedder, content)
        memory = Memory(
            id=new_memory_id(),
            content=content,
            embedding=embedding,
            timestamp=now_millis(),
            project=project,
            tags=tags,
            usage_count=0,
        )
        await asyncio.to_thread(self.store.insert, [memory])
        return memory.id

    async def add_memories(
        self,
        items: Sequence[MemoryInput],
        default_project: str | None = None,
        default_tags: list[str] | None = None,
    ) -> list[str]:
        """Add many memories in one insert.

        Embeddings are generated concurrently; if any fails nothing is
        written. The whole batch shares one timestamp.
        """
        self._require_store()
        if not items:
            return []
        embeddings = await asyncio.gather(*(embed_text(self.embedder, item.content) for item in items))

        now = now_millis()
        memories = [
            Memory(
                id=new_memory_id(),
                content=item.content,
                embedding=embedding,
                timestamp=now,
                project=item.project if item.project is not None else default_project,
                tags=item.tags if item.tags is not None else default_tags,
                usage_count=0,
            )
            for item, embedding in zip(items, embeddings, strict=True)
        ]
        await asyncio.to_thread(self.store.insert, memories)
        return [m.id for m in memories]

    async def update_memory(
        self,
        memory_id: str,
        content: str | None = None,
        project: str | None = None,
        tags: list[str] | None = None,
    ) -> Memory:
        """Change content and/or metadata; None leaves a field as it was.

        Only the changed columns are written; timestamp, usage_count and
        last_used are left to the store. The embedding is regenerated only
        when content is given. The returned record carries the usage
        statistics as they were read before the write.
        """
        existing = self.store.find_by_id(memory_id)
        if existing is None:
            raise NotFound(memory_id)

        changes: dict[str, Any] = {}
        if content is not None:
            changes["content"] = content
            changes["embedding"] = await embed_text(self.embedder, content)
        if project is not None:
            changes["project"] = project
        if tags is not None:
            changes["tags"] = tags

        await asyncio.to_thread(self.store.update_fields, memory_id, changes)
        return existing.model_copy(update=changes)

    async def delete_memory(self, memory_id: str) -> None:
        """Idempotent: deleting an unknown id is not an error."""
        await asyncio.to_thread(self.store.delete_by_id, memory_id)

    async def get_memory(self, memory_id: str) -> Memory | None:
        return self.store.find_by_id(memory_id)

    async def list_memories(
        self,
        project: str | None = None,
        tags: list[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Memory]:
        """Filtered page of memories. Callers clamp limit."""
        return self.store.filter(project=project, tags=tags, limit=limit, offset=offset)

    async def search_memories(
        self, query: str, limit: int = 10, boost_frequent: bool = False
    ) -> list[RankedResult]:
        return await self.retriever.search(query, limit, boost_frequent)

    async def get_related_memories(
        self, memory_id: str, limit: int = 5, boost_frequent: bool = False
    ) -> list[RankedResult]:
        return await self.retriever.related(memory_id, limit, boost_frequent)
