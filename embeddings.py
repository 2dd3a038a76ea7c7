"""Embedding providers.

Every provider returns unit-length vectors of exactly dimension() floats or
raises EmbeddingGenerationFailure. Nothing here pads, truncates or falls
back to zeros: a store must never receive a vector from the wrong space.
"""

from __future__ import annotations

import asyncio
import hashlib
import os
import re
import threading
from collections.abc import Sequence
from functools import lru_cache
from pathlib import Path
from typing import TYPE_CHECKING

import numpy as np
import requests

from errors import EmbeddingGenerationFailure
from models import EmbeddingConfig
from utils import log

if TYPE_CHECKING:
    from google.genai import Client as GenAIClient

    from config import Config


def _normalize(raw: Sequence[float], dimension: int, provider: str) -> list[float]:
    vector = np.asarray(raw, dtype=np.float64)
    if vector.ndim != 1 or vector.size == 0:
        raise EmbeddingGenerationFailure(f"{provider} returned an empty or malformed embedding")
    if vector.size != dimension:
        raise EmbeddingGenerationFailure(
            f"{provider} returned {vector.size} dimensions, expected {dimension}"
        )
    if not np.all(np.isfinite(vector)):
        raise EmbeddingGenerationFailure(f"{provider} returned non-finite values")
    norm = np.linalg.norm(vector)
    if norm == 0:
        raise EmbeddingGenerationFailure(f"{provider} returned a zero vector")
    return (vector / norm).tolist()


class EmbeddingProvider:
    """Base class: subclasses implement _compute() for one backend."""

    provider_name: str = ""
    default_model: str = ""
    default_dimension: int = 0

    def __init__(
        self,
        model: str | None = None,
        dimension: int | None = None,
        cache_size: int = 128,
    ):
        self.model = model or self.default_model
        self._dimension = dimension or self.default_dimension
        # Failures raise and are therefore never cached
        self._embed_cached = lru_cache(maxsize=cache_size)(self._embed_checked)

    def _compute(self, text: str) -> Sequence[float]:
        raise NotImplementedError

    def _embed_checked(self, text: str) -> tuple[float, ...]:
        try:
            raw = self._compute(text)
        except EmbeddingGenerationFailure:
            raise
        except Exception as e:
            raise EmbeddingGenerationFailure(f"{self.provider_name} embedding failed: {e}") from e
        return tuple(_normalize(raw, self._dimension, self.provider_name))

    def embed(self, text: str) -> list[float]:
        """Generate a unit-length embedding for text (blocking)."""
        return list(self._embed_cached(text))

    def dimension(self) -> int:
        return self._dimension

    def identity(self) -> tuple[str, str]:
        return self.provider_name, self.model

    def config(self) -> EmbeddingConfig:
        return EmbeddingConfig(
            embedding_provider=self.provider_name,
            embedding_model=self.model,
            embedding_dimension=self._dimension,
        )


class OllamaEmbeddingProvider(EmbeddingProvider):
    """Local embeddings served by Ollama."""

    provider_name = "ollama"
    default_model = "nomic-embed-text"
    default_dimension = 768

    def __init__(
        self,
        model: str | None = None,
        dimension: int | None = None,
        cache_size: int = 128,
        base_url: str = "http://localhost:11434",
        timeout: float = 30.0,
        probe_timeout: float = 2.0,
    ):
        super().__init__(model, dimension, cache_size)
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.probe_timeout = probe_timeout

    def is_available(self) -> bool:
        """True when Ollama answers and has the embedding model pulled."""
        try:
            response = requests.get(f"{self.base_url}/api/tags", timeout=self.probe_timeout)
            response.raise_for_status()
            models = response.json().get("models") or []
        except (requests.RequestException, ValueError):
            return False
        return any(self.model in (m.get("name") or "") for m in models)

    def _compute(self, text: str) -> Sequence[float]:
        response = requests.post(
            f"{self.base_url}/api/embeddings",
            json={"model": self.model, "prompt": text},
            timeout=self.timeout,
        )
        response.raise_for_status()
        return response.json().get("embedding", [])


def _get_api_key() -> str | None:
    """Get API key from environment or secrets file."""
    key = os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY")
    if key:
        return key
    secrets_path = Path.home() / ".secrets" / "GOOGLE_API_KEY"
    if secrets_path.exists():
        return secrets_path.read_text().strip() or None
    return None


class GoogleEmbeddingProvider(EmbeddingProvider):
    """Gemini embeddings via the google-genai SDK."""

    provider_name = "google"
    default_model = "gemini-embedding-001"
    default_dimension = 768
    task_type = "SEMANTIC_SIMILARITY"

    def __init__(
        self,
        model: str | None = None,
        dimension: int | None = None,
        cache_size: int = 128,
        timeout: float = 30.0,
    ):
        super().__init__(model, dimension, cache_size)
        self.timeout = timeout
        self._client: GenAIClient | None = None
        self._lock = threading.Lock()

    @staticmethod
    def has_api_key() -> bool:
        return _get_api_key() is not None

    def _get_client(self) -> GenAIClient:
        """Get or create the GenAI client (thread-safe)."""
        if self._client is None:
            with self._lock:
                if self._client is None:  # Double-check after acquiring lock
                    from google import genai
                    from google.genai import types

                    api_key = _get_api_key()
                    if api_key is None:
                        raise EmbeddingGenerationFailure(
                            "GOOGLE_API_KEY not found. Set environment variable or create ~/.secrets/GOOGLE_API_KEY"
                        )
                    self._client = genai.Client(
                        api_key=api_key,
                        http_options=types.HttpOptions(timeout=int(self.timeout * 1000)),
                    )
        return self._client

    def _compute(self, text: str) -> Sequence[float]:
        from google.genai import types

        response = self._get_client().models.embed_content(
            model=self.model,
            contents=text,
            config=types.EmbedContentConfig(
                task_type=self.task_type, output_dimensionality=self._dimension
            ),
        )
        if not response.embeddings:
            raise EmbeddingGenerationFailure("google returned no embeddings")
        return response.embeddings[0].values or []


_WORD_RE = re.compile(r"[a-z0-9]+")


class HashEmbeddingProvider(EmbeddingProvider):
    """Deterministic offline embeddings by feature hashing.

    Each lower-cased word contributes itself and its 4-character prefix,
    hashed to a signed bucket. Texts sharing words or word stems land
    close together; there is no semantic model behind it. Used for tests
    and air-gapped installs, and only when selected explicitly.
    """

    provider_name = "hash"
    default_model = "feature-hash-v1"
    default_dimension = 384
    prefix_length = 4

    def _features(self, text: str) -> set[str]:
        features: set[str] = set()
        for word in _WORD_RE.findall(text.lower()):
            features.add(word)
            features.add(word[: self.prefix_length])
        if not features and text.strip():
            features.add(text.strip())
        return features

    def _compute(self, text: str) -> Sequence[float]:
        vector = np.zeros(self._dimension, dtype=np.float64)
        for feature in self._features(text):
            digest = hashlib.sha256(feature.encode()).digest()
            bucket = int.from_bytes(digest[:8], "little") % self._dimension
            vector[bucket] += 1.0 if digest[8] & 1 else -1.0
        return vector


async def embed_text(provider: EmbeddingProvider, text: str) -> list[float]:
    """Generate an embedding without blocking the event loop."""
    return await asyncio.to_thread(provider.embed, text)


def create_embedding_provider(config: Config) -> EmbeddingProvider:
    """Build the configured provider; 'auto' prefers local Ollama, then Google."""
    common = {
        "model": config.embedding_model,
        "dimension": config.embedding_dim,
        "cache_size": config.embedding_cache_size,
    }
    choice = config.embedding_provider
    if choice == "hash":
        return HashEmbeddingProvider(**common)
    if choice == "google":
        return GoogleEmbeddingProvider(**common, timeout=config.request_timeout)

    ollama = OllamaEmbeddingProvider(
        **common,
        base_url=config.ollama_base_url,
        timeout=config.request_timeout,
        probe_timeout=config.probe_timeout,
    )
    if choice == "ollama":
        return ollama

    if ollama.is_available():
        log(f"Using Ollama with {ollama.model}")
        return ollama
    if GoogleEmbeddingProvider.has_api_key():
        google = GoogleEmbeddingProvider(**common, timeout=config.request_timeout)
        log(f"Ollama not available, using Google with {google.model}")
        return google
    raise EmbeddingGenerationFailure(
        f"No embedding provider available. Start Ollama and pull {ollama.model}, "
        "set GOOGLE_API_KEY, or set EMBEDDING_PROVIDER=hash for offline embeddings."
    )
