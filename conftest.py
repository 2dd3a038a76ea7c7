"""Shared fixtures: an isolated LanceDB directory per test, offline embeddings."""

from __future__ import annotations

import pytest

from config import Config
from database import MemoryStore
from embeddings import HashEmbeddingProvider
from memory_service import MemoryService
from server import MemoryTools

# Wide enough that unrelated words almost never share a hash bucket
TEST_DIMENSION = 4096


class FailingEmbedder(HashEmbeddingProvider):
    """Hash embeddings, except for texts containing a trigger word."""

    def __init__(self, fail_on: str, **kwargs):
        super().__init__(**kwargs)
        self.fail_on = fail_on

    def _compute(self, text: str):
        if self.fail_on in text:
            raise RuntimeError("embedding backend unavailable")
        return super()._compute(text)


@pytest.fixture
def embedder() -> HashEmbeddingProvider:
    return HashEmbeddingProvider(dimension=TEST_DIMENSION)


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "lancedb-memory-test"


@pytest.fixture
def store(db_path, embedder):
    store = MemoryStore(db_path, embedder.config())
    store.initialize()
    yield store
    store.close()


@pytest.fixture
async def service(store, embedder):
    service = MemoryService(store, embedder)
    yield service
    # Let detached usage write-backs finish before the store closes
    await service.retriever.wait_for_bookkeeping()


@pytest.fixture
def tools(service, db_path) -> MemoryTools:
    return MemoryTools(service, Config(db_path=db_path, embedding_provider="hash"))
