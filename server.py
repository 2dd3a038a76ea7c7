#!/usr/bin/env python3
"""
Semantic Recall MCP Server - LanceDB Hybrid Search Memory

Persistent memory for short notes with hybrid retrieval:
- FastMCP for the stdio tool shell
- LanceDB for vector + full-text (BM25) search, fused with RRF
- Usage-count re-ranking of frequently recalled memories
- Ollama or Google Gemini embeddings, bound to the store on first use
"""

from __future__ import annotations

import asyncio
import sys

from mcp.server.fastmcp import FastMCP

from config import Config
from database import MemoryStore
from embeddings import create_embedding_provider
from errors import ConfigMismatch, EmbeddingGenerationFailure, MemoryStoreError
from memory_service import MemoryService
from models import Memory, MemoryInput, RankedResult
from utils import format_millis, log, preview

READ = {"readOnlyHint": True, "destructiveHint": False, "idempotentHint": True}
# search/related bump usage counters
RETRIEVE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
WRITE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": False}
UPDATE = {"readOnlyHint": False, "destructiveHint": False, "idempotentHint": True}
DESTRUCTIVE = {"readOnlyHint": False, "destructiveHint": True, "idempotentHint": True}


def _plural(count: int) -> str:
    return "memory" if count == 1 else "memories"


# =============================================================================
# Formatting
# =============================================================================


def format_ranked(results: list[RankedResult]) -> str:
    """Numbered search/related hits with score and usage."""
    entries = []
    for i, r in enumerate(results, 1):
        lines = [f"{i}. [ID: {r.id}] (Score: {r.score:.4f})", f"   {r.content}"]
        if r.project:
            lines.append(f"   Project: {r.project}")
        if r.tags:
            lines.append(f"   Tags: {', '.join(r.tags)}")
        lines.append(f"   Timestamp: {format_millis(r.timestamp)}")
        lines.append(f"   Used: {r.usage_count} times")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


def format_listing(memories: list[Memory], offset: int) -> str:
    entries = []
    for i, m in enumerate(memories, offset + 1):
        lines = [f"{i}. [ID: {m.id}]", f"   {preview(m.content, 200)}"]
        if m.project:
            lines.append(f"   Project: {m.project}")
        if m.tags:
            lines.append(f"   Tags: {', '.join(m.tags)}")
        lines.append(f"   Created: {format_millis(m.timestamp)}")
        if m.usage_count > 0:
            last_used = f", Last used: {format_millis(m.last_used)}" if m.last_used else ""
            lines.append(f"   Usage: {m.usage_count} times{last_used}")
        entries.append("\n".join(lines))
    return "\n\n".join(entries)


# =============================================================================
# Tools
# =============================================================================


class MemoryTools:
    """Tool handlers: validate arguments, call the service, render text.

    Failures come back as "Failed to ..." strings rather than exceptions.
    """

    def __init__(self, service: MemoryService, config: Config):
        self.service = service
        self.config = config

    async def add_memory(
        self,
        content: str,
        project: str | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """Store a memory with a semantic embedding for later retrieval.

        Use this to remember decisions, code patterns, solutions to problems,
        or anything that might be useful later.

        Args:
            content: The content to remember (keep it atomic, ~250 words max)
            project: Project path - MUST be the current working directory path
            tags: Tags for categorization, e.g. ["typescript", "bug-fix"]
        """
        if not content.strip():
            return "Error: content is required"
        try:
            memory_id = await self.service.add_memory(content, project=project, tags=tags)
        except MemoryStoreError as e:
            return f"Failed to add memory: {e}"

        lines = ["Memory added successfully!", f"ID: {memory_id}", f"Content: {content}"]
        if project:
            lines.append(f"Project: {project}")
        if tags:
            lines.append(f"Tags: {', '.join(tags)}")
        return "\n".join(lines)

    async def add_memories(
        self,
        memories: list[MemoryInput],
        default_project: str | None = None,
        default_tags: list[str] | None = None,
    ) -> str:
        """Store several memories at once; embeddings are generated in parallel.

        All memories in a batch share the same timestamp. default_project and
        default_tags apply to every memory that does not set its own.

        Args:
            memories: Items with content and optional project/tags overrides
            default_project: Project path for items without one (current working directory)
            default_tags: Tags for items without their own, e.g. ["session-2026-02-22"]
        """
        if not memories:
            return "Error: at least one memory is required"
        if any(not m.content.strip() for m in memories):
            return "Error: every memory needs non-empty content"
        try:
            memory_ids = await self.service.add_memories(
                memories, default_project=default_project, default_tags=default_tags
            )
        except MemoryStoreError as e:
            return f"Failed to add memories: {e}"

        summary = []
        for i, (m, memory_id) in enumerate(zip(memories, memory_ids, strict=True), 1):
            project = m.project if m.project is not None else default_project
            tags = m.tags if m.tags is not None else default_tags
            lines = [f"{i}. [ID: {memory_id}]", f"   {preview(m.content, 80)}"]
            if project:
                lines.append(f"   Project: {project}")
            if tags:
                lines.append(f"   Tags: {', '.join(tags)}")
            summary.append("\n".join(lines))
        count = len(memory_ids)
        return f"Successfully added {count} {_plural(count)}!\n\n" + "\n\n".join(summary)

    async def search_memories(self, query: str, limit: int = 10, boost_frequent: bool = False) -> str:
        """Hybrid search (vector similarity + keyword matching) over stored memories.

        Args:
            query: Search query - works with both keywords and semantic concepts
            limit: Maximum number of results (default 10)
            boost_frequent: Rank frequently recalled memories higher
        """
        if not query.strip():
            return "Error: query is required"
        if limit <= 0:
            return f"Error: limit must be positive, got {limit}"
        try:
            results = await self.service.search_memories(query, limit, boost_frequent)
        except (MemoryStoreError, ValueError) as e:
            return f"Failed to search memories: {e}"

        if not results:
            return f"No memories found for '{query}'."
        return f"Found {len(results)} {_plural(len(results))}:\n\n{format_ranked(results)}"

    async def update_memory(
        self,
        memory_id: str,
        content: str | None = None,
        project: str | None = None,
        tags: list[str] | None = None,
    ) -> str:
        """Update a memory's content and/or metadata. New content is re-embedded.

        Args:
            memory_id: The ID of the memory to update
            content: New content
            project: New project path (omit to keep the current one)
            tags: New tags, replacing the existing ones (omit to keep them)
        """
        if content is not None and not content.strip():
            return "Error: content cannot be empty"
        try:
            await self.service.update_memory(memory_id, content=content, project=project, tags=tags)
        except MemoryStoreError as e:
            return f"Failed to update memory: {e}"
        return f"Memory {memory_id} updated successfully"

    async def delete_memory(self, memory_id: str) -> str:
        """Permanently delete a memory. This cannot be undone.

        Args:
            memory_id: The ID of the memory to delete (from search results)
        """
        try:
            await self.service.delete_memory(memory_id)
        except MemoryStoreError as e:
            return f"Failed to delete memory: {e}"
        return f"Memory {memory_id} deleted successfully"

    async def list_memories(
        self,
        project: str | None = None,
        tags: list[str] | None = None,
        limit: int = 50,
        offset: int = 0,
    ) -> str:
        """List stored memories, optionally filtered by project or tags.

        Args:
            project: Only memories for this project path
            tags: Only memories carrying ANY of these tags
            limit: Maximum number of memories (default 50, max 100)
            offset: Number of memories to skip for pagination
        """
        if offset < 0:
            return f"Error: offset cannot be negative, got {offset}"
        capped_limit = max(1, min(limit, self.config.max_list_limit))
        try:
            results = await self.service.list_memories(
                project=project, tags=tags, limit=capped_limit, offset=offset
            )
        except MemoryStoreError as e:
            return f"Failed to list memories: {e}"

        if not results:
            message = "No memories found"
            if project:
                message += f" for project: {project}"
            if tags:
                message += f" with tags: {', '.join(tags)}"
            return message + "."

        filters = []
        if project:
            filters.append(f"Project: {project}")
        if tags:
            filters.append(f"Tags: {', '.join(tags)}")
        if offset > 0:
            filters.append(f"Offset: {offset}")
        header = f"Filters: {' | '.join(filters)}\n\n" if filters else ""

        if len(results) == capped_limit:
            footer = (
                f"Showing {len(results)} {_plural(len(results))}. "
                f"Use offset={offset + capped_limit} to see more."
            )
        else:
            footer = f"Total: {len(results)} {_plural(len(results))}."
        return f"{header}{format_listing(results, offset)}\n\n{footer}"

    async def get_related_memories(
        self, memory_id: str, limit: int = 5, boost_frequent: bool = False
    ) -> str:
        """Find memories similar to a given memory, using its content as the query.

        Same hybrid search as search_memories; the source memory is excluded.

        Args:
            memory_id: The ID of the memory to find related memories for
            limit: Maximum number of related memories (default 5)
            boost_frequent: Rank frequently recalled memories higher
        """
        if limit <= 0:
            return f"Error: limit must be positive, got {limit}"
        try:
            results = await self.service.get_related_memories(memory_id, limit, boost_frequent)
        except (MemoryStoreError, ValueError) as e:
            return f"Failed to get related memories: {e}"

        if not results:
            return f"No related memories found for memory {memory_id}."
        return f"Found {len(results)} related {_plural(len(results))}:\n\n{format_ranked(results)}"

    async def memory_stats(self) -> str:
        """Memory store statistics - total, embedding model, index status."""
        store = self.service.store
        try:
            total = store.count()
            has_fts = store.has_fts_index()
        except MemoryStoreError as e:
            return f"Failed to get stats: {e}"

        embedding = store.embedding_config
        return "\n".join(
            [
                "=== Memory Statistics (LanceDB) ===",
                f"Total: {total} memories",
                f"Database: {store.db_path}",
                f"Embedding: {embedding.embedding_provider}/{embedding.embedding_model} "
                f"({embedding.embedding_dimension} dims)",
                f"FTS Index: {'Yes (BM25)' if has_fts else 'No (vector-only search)'}",
                "Search: Hybrid (Vector + BM25 RRF) + usage boost",
            ]
        )


# =============================================================================
# Server Wiring
# =============================================================================


def create_server(tools: MemoryTools) -> FastMCP:
    """Register the tool handlers on a FastMCP server."""
    mcp = FastMCP(
        "semantic-recall",
        instructions="Persistent semantic memory with LanceDB hybrid search (vector + BM25) and usage boosting",
    )
    registrations = [
        (tools.add_memory, WRITE),
        (tools.add_memories, WRITE),
        (tools.search_memories, RETRIEVE),
        (tools.update_memory, UPDATE),
        (tools.delete_memory, DESTRUCTIVE),
        (tools.list_memories, READ),
        (tools.get_related_memories, RETRIEVE),
        (tools.memory_stats, READ),
    ]
    for handler, annotations in registrations:
        mcp.tool(name=handler.__name__, annotations=annotations)(handler)
    return mcp


def build_service(config: Config) -> MemoryService:
    """Construct provider and store, run the config guard, return the service."""
    embedder = create_embedding_provider(config)
    store = MemoryStore(
        config.db_path,
        embedder.config(),
        table_name=config.table_name,
        config_table_name=config.config_table_name,
        fts_weight=config.fts_weight,
    )
    store.initialize()
    return MemoryService(store, embedder)


async def run_server(service: MemoryService, config: Config) -> None:
    """Serve MCP over stdio until shutdown, then drain bookkeeping and close the store."""
    mcp = create_server(MemoryTools(service, config))
    try:
        await mcp.run_stdio_async()
    finally:
        await service.retriever.wait_for_bookkeeping()
        service.store.close()
        log("Shut down")


def main():
    """Entry point."""
    log("Initializing...")
    try:
        config = Config()
        service = build_service(config)
    except (ConfigMismatch, EmbeddingGenerationFailure, ValueError) as e:
        log(f"Startup failed: {e}")
        sys.exit(1)
    log("Services initialized successfully")

    try:
        asyncio.run(run_server(service, config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
