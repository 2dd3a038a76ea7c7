"""Tests for embedding providers and configuration."""

import numpy as np
import pytest
import requests

import embeddings
from config import Config
from embeddings import (
    EmbeddingProvider,
    GoogleEmbeddingProvider,
    HashEmbeddingProvider,
    OllamaEmbeddingProvider,
    create_embedding_provider,
    embed_text,
)
from errors import EmbeddingGenerationFailure


class StubProvider(EmbeddingProvider):
    provider_name = "stub"
    default_model = "stub-model"
    default_dimension = 4

    def __init__(self, output, **kwargs):
        super().__init__(**kwargs)
        self.output = output
        self.calls = 0

    def _compute(self, text):
        self.calls += 1
        if isinstance(self.output, Exception):
            raise self.output
        return self.output


class TestProviderContract:
    """Every provider returns unit vectors of the configured size or fails loudly."""

    def test_output_is_normalized(self):
        provider = StubProvider([3.0, 4.0, 0.0, 0.0])
        vector = provider.embed("text")
        assert vector == pytest.approx([0.6, 0.8, 0.0, 0.0])

    def test_wrong_dimension_fails(self):
        with pytest.raises(EmbeddingGenerationFailure, match="expected 4"):
            StubProvider([1.0, 2.0]).embed("text")

    def test_empty_output_fails(self):
        with pytest.raises(EmbeddingGenerationFailure):
            StubProvider([]).embed("text")

    def test_zero_vector_fails(self):
        with pytest.raises(EmbeddingGenerationFailure, match="zero vector"):
            StubProvider([0.0, 0.0, 0.0, 0.0]).embed("text")

    def test_non_finite_fails(self):
        with pytest.raises(EmbeddingGenerationFailure):
            StubProvider([1.0, float("nan"), 0.0, 0.0]).embed("text")

    def test_backend_error_is_wrapped(self):
        provider = StubProvider(ConnectionError("refused"))
        with pytest.raises(EmbeddingGenerationFailure, match="stub embedding failed: refused"):
            provider.embed("text")

    def test_results_are_cached_but_failures_are_not(self):
        provider = StubProvider(ConnectionError("down"))
        with pytest.raises(EmbeddingGenerationFailure):
            provider.embed("text")
        provider.output = [1.0, 0.0, 0.0, 0.0]
        provider.embed("text")
        provider.embed("text")
        assert provider.calls == 2

    def test_identity_and_config(self):
        provider = StubProvider([1.0, 0.0, 0.0, 0.0], model="custom", dimension=4)
        assert provider.identity() == ("stub", "custom")
        config = provider.config()
        assert config.embedding_provider == "stub"
        assert config.embedding_model == "custom"
        assert config.embedding_dimension == 4

    async def test_embed_text_runs_off_loop(self):
        vector = await embed_text(StubProvider([0.0, 2.0, 0.0, 0.0]), "text")
        assert vector == pytest.approx([0.0, 1.0, 0.0, 0.0])


class TestHashEmbeddings:
    def test_deterministic_and_unit_length(self):
        first = HashEmbeddingProvider(dimension=256).embed("Auth uses JWT")
        second = HashEmbeddingProvider(dimension=256).embed("Auth uses JWT")
        assert first == second
        assert len(first) == 256
        assert np.linalg.norm(first) == pytest.approx(1.0)

    def test_shared_word_stems_are_closer(self):
        provider = HashEmbeddingProvider(dimension=4096)
        query = np.array(provider.embed("authentication token handling"))
        auth = np.array(provider.embed("Auth uses JWT"))
        database = np.array(provider.embed("DB is Postgres"))
        assert np.dot(query, auth) > np.dot(query, database)

    def test_punctuation_only_text_still_embeds(self):
        assert len(HashEmbeddingProvider(dimension=64).embed("!!!")) == 64

    def test_empty_text_fails(self):
        with pytest.raises(EmbeddingGenerationFailure):
            HashEmbeddingProvider(dimension=64).embed("")


class FakeResponse:
    def __init__(self, payload, status=200):
        self.payload = payload
        self.status = status

    def raise_for_status(self):
        if self.status >= 400:
            raise requests.HTTPError(f"{self.status} error")

    def json(self):
        return self.payload


class TestOllama:
    def test_embed_posts_model_and_prompt(self, monkeypatch):
        captured = {}

        def fake_post(url, json, timeout):
            captured.update(url=url, json=json, timeout=timeout)
            return FakeResponse({"embedding": [1.0, 1.0] + [0.0] * 766})

        monkeypatch.setattr(embeddings.requests, "post", fake_post)
        provider = OllamaEmbeddingProvider(base_url="http://ollama:11434/", timeout=5)
        vector = provider.embed("hello")
        assert captured["url"] == "http://ollama:11434/api/embeddings"
        assert captured["json"] == {"model": "nomic-embed-text", "prompt": "hello"}
        assert captured["timeout"] == 5
        assert len(vector) == 768

    def test_http_error_fails_loudly(self, monkeypatch):
        monkeypatch.setattr(embeddings.requests, "post", lambda *a, **k: FakeResponse({}, status=500))
        with pytest.raises(EmbeddingGenerationFailure, match="ollama embedding failed"):
            OllamaEmbeddingProvider().embed("hello")

    def test_is_available_checks_model(self, monkeypatch):
        monkeypatch.setattr(
            embeddings.requests,
            "get",
            lambda *a, **k: FakeResponse({"models": [{"name": "nomic-embed-text:latest"}]}),
        )
        assert OllamaEmbeddingProvider().is_available()
        assert not OllamaEmbeddingProvider(model="mxbai-embed-large").is_available()

    def test_is_available_when_unreachable(self, monkeypatch):
        def refuse(*args, **kwargs):
            raise requests.ConnectionError("refused")

        monkeypatch.setattr(embeddings.requests, "get", refuse)
        assert not OllamaEmbeddingProvider().is_available()


class TestProviderSelection:
    @pytest.fixture(autouse=True)
    def no_api_key(self, monkeypatch, tmp_path):
        monkeypatch.delenv("GOOGLE_API_KEY", raising=False)
        monkeypatch.delenv("GEMINI_API_KEY", raising=False)
        monkeypatch.setattr(embeddings.Path, "home", lambda: tmp_path)

    def test_explicit_hash(self, tmp_path):
        provider = create_embedding_provider(Config(db_path=tmp_path, embedding_provider="hash"))
        assert isinstance(provider, HashEmbeddingProvider)
        assert provider.dimension() == 384

    def test_explicit_overrides(self, tmp_path):
        config = Config(db_path=tmp_path, embedding_provider="ollama", embedding_model="m", embedding_dim=12)
        provider = create_embedding_provider(config)
        assert isinstance(provider, OllamaEmbeddingProvider)
        assert provider.identity() == ("ollama", "m")
        assert provider.dimension() == 12

    def test_auto_prefers_ollama(self, tmp_path, monkeypatch):
        monkeypatch.setattr(OllamaEmbeddingProvider, "is_available", lambda self: True)
        provider = create_embedding_provider(Config(db_path=tmp_path, embedding_provider="auto"))
        assert isinstance(provider, OllamaEmbeddingProvider)

    def test_auto_falls_back_to_google_with_key(self, tmp_path, monkeypatch):
        monkeypatch.setattr(OllamaEmbeddingProvider, "is_available", lambda self: False)
        monkeypatch.setenv("GOOGLE_API_KEY", "test-key")
        provider = create_embedding_provider(Config(db_path=tmp_path, embedding_provider="auto"))
        assert isinstance(provider, GoogleEmbeddingProvider)

    def test_auto_without_any_backend_fails(self, tmp_path, monkeypatch):
        monkeypatch.setattr(OllamaEmbeddingProvider, "is_available", lambda self: False)
        with pytest.raises(EmbeddingGenerationFailure, match="No embedding provider available"):
            create_embedding_provider(Config(db_path=tmp_path, embedding_provider="auto"))

    def test_google_without_key_fails_on_use(self):
        with pytest.raises(EmbeddingGenerationFailure, match="GOOGLE_API_KEY not found"):
            GoogleEmbeddingProvider().embed("hello")


class TestConfig:
    def test_env_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("SEMANTIC_RECALL_DB_PATH", str(tmp_path / "db"))
        monkeypatch.setenv("EMBEDDING_PROVIDER", "HASH")
        monkeypatch.setenv("EMBEDDING_DIM", "128")
        config = Config()
        assert config.db_path == tmp_path / "db"
        assert config.embedding_provider == "hash"
        assert config.embedding_dim == 128

    def test_invalid_provider(self, tmp_path):
        with pytest.raises(ValueError, match="Invalid EMBEDDING_PROVIDER"):
            Config(db_path=tmp_path, embedding_provider="openai")

    def test_invalid_fts_weight(self, tmp_path):
        with pytest.raises(ValueError):
            Config(db_path=tmp_path, embedding_provider="hash", fts_weight=1.5)

    def test_invalid_dimension(self, tmp_path):
        with pytest.raises(ValueError):
            Config(db_path=tmp_path, embedding_provider="hash", embedding_dim=0)
