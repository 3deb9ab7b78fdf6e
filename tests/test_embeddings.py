"""
Tests for execution/case_assistant/embeddings.py

All provider clients are mocked.
"""

from unittest.mock import MagicMock

import pytest


def _openai_response(vectors):
    """Mimic openai embeddings.create() output (items may arrive out of order)."""
    items = [MagicMock(index=i, embedding=v) for i, v in enumerate(vectors)]
    return MagicMock(data=list(reversed(items)))


@pytest.fixture
def openai_client():
    client = MagicMock()
    api = client.with_options.return_value.embeddings

    def _create(model, input):
        return _openai_response([[float(len(text)), 1.0] for text in input])

    api.create.side_effect = _create
    return client


# ---------------------------------------------------------------------------
# EmbeddingConfig
# ---------------------------------------------------------------------------

class TestEmbeddingConfig:
    """Tests for EmbeddingConfig defaults."""

    def test_defaults(self):
        from execution.case_assistant.embeddings import EmbeddingConfig
        cfg = EmbeddingConfig()
        assert cfg.provider == "openai"
        assert cfg.model == "text-embedding-3-small"
        assert cfg.dimensions == 1536
        assert cfg.use_cache is True


# ---------------------------------------------------------------------------
# OpenAI provider
# ---------------------------------------------------------------------------

class TestOpenAIEmbeddingService:
    """Tests for the OpenAI-backed service."""

    def test_embed_documents_in_input_order(self, openai_client):
        from execution.case_assistant.embeddings import OpenAIEmbeddingService
        service = OpenAIEmbeddingService(client=openai_client)
        vectors = service.embed_documents(["a", "bbb", "cc"])
        assert [v[0] for v in vectors] == [1.0, 3.0, 2.0]

    def test_empty_input(self, openai_client):
        from execution.case_assistant.embeddings import OpenAIEmbeddingService
        service = OpenAIEmbeddingService(client=openai_client)
        assert service.embed_documents([]) == []
        openai_client.with_options.assert_not_called()

    def test_query_cached(self, openai_client):
        from execution.case_assistant.embeddings import OpenAIEmbeddingService
        service = OpenAIEmbeddingService(client=openai_client)
        first = service.embed_query("holiday schedule")
        second = service.embed_query("holiday schedule")
        assert first == second
        api = openai_client.with_options.return_value.embeddings
        assert api.create.call_count == 1

    def test_timeout_passed_to_client(self, openai_client):
        from execution.case_assistant.embeddings import EmbeddingConfig, OpenAIEmbeddingService
        service = OpenAIEmbeddingService(EmbeddingConfig(timeout=7.0), client=openai_client)
        service.embed_documents(["x"])
        openai_client.with_options.assert_called_with(timeout=7.0)

    def test_sdk_timeout_becomes_stage_timeout(self, openai_client):
        import httpx
        from openai import APITimeoutError
        from execution.case_assistant.embeddings import OpenAIEmbeddingService
        from execution.case_assistant.errors import StageTimeoutError

        api = openai_client.with_options.return_value.embeddings
        api.create.side_effect = APITimeoutError(request=httpx.Request("POST", "https://api.openai.com"))
        service = OpenAIEmbeddingService(client=openai_client)

        with pytest.raises(StageTimeoutError) as exc_info:
            service.embed_query("anything")
        assert exc_info.value.label == "embedding"

    def test_missing_key_fails_on_use(self, monkeypatch):
        from execution.case_assistant.embeddings import OpenAIEmbeddingService
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        service = OpenAIEmbeddingService()
        with pytest.raises(RuntimeError, match="OPENAI_API_KEY"):
            service.embed_query("x")

    def test_file_cache(self, openai_client, tmp_path):
        from execution.case_assistant.embeddings import EmbeddingConfig, OpenAIEmbeddingService
        config = EmbeddingConfig(cache_dir=str(tmp_path))
        OpenAIEmbeddingService(config, client=openai_client).embed_documents(["cached text"])

        fresh_client = MagicMock()
        vectors = OpenAIEmbeddingService(config, client=fresh_client).embed_documents(["cached text"])
        assert vectors == [[11.0, 1.0]]
        fresh_client.with_options.assert_not_called()


# ---------------------------------------------------------------------------
# Batching
# ---------------------------------------------------------------------------

class TestBatching:
    """Tests for _create_batches()."""

    def test_item_limit(self, openai_client):
        from execution.case_assistant.embeddings import EmbeddingConfig, OpenAIEmbeddingService
        service = OpenAIEmbeddingService(EmbeddingConfig(batch_size=2), client=openai_client)
        assert [len(b) for b in service._create_batches(["a", "b", "c", "d", "e"])] == [2, 2, 1]

    def test_token_limit(self, openai_client):
        from execution.case_assistant.embeddings import EmbeddingConfig, OpenAIEmbeddingService
        config = EmbeddingConfig(max_tokens_per_batch=10, chars_per_token=1.0)
        service = OpenAIEmbeddingService(config, client=openai_client)
        batches = service._create_batches(["x" * 6, "y" * 6, "z" * 3])
        assert [len(b) for b in batches] == [1, 2]


# ---------------------------------------------------------------------------
# Voyage provider and factory
# ---------------------------------------------------------------------------

class TestVoyageEmbeddingService:
    """Tests for the Voyage-backed service."""

    def test_input_type_passed(self):
        from execution.case_assistant.embeddings import VoyageEmbeddingService
        client = MagicMock()
        client.embed.return_value = MagicMock(embeddings=[[0.5, 0.5]])
        service = VoyageEmbeddingService(client=client)

        service.embed_query("custody")
        assert client.embed.call_args.kwargs["input_type"] == "query"

        service.embed_documents(["chunk"])
        assert client.embed.call_args.kwargs["input_type"] == "document"


class TestFactory:
    """Tests for get_embedding_service()."""

    def test_default_is_openai(self, openai_client):
        from execution.case_assistant.embeddings import OpenAIEmbeddingService, get_embedding_service
        service = get_embedding_service(openai_client=openai_client)
        assert isinstance(service, OpenAIEmbeddingService)
        assert service.dimensions == 1536

    def test_settings_select_voyage(self, monkeypatch):
        from execution.case_assistant.embeddings import VoyageEmbeddingService, get_embedding_service
        from execution.case_assistant.settings import AssistantSettings

        monkeypatch.delenv("VOYAGE_API_KEY", raising=False)
        settings = AssistantSettings(
            embedding_provider="voyage", embedding_model="voyage-law-2", embedding_dimensions=1024,
        )
        service = get_embedding_service(settings)
        assert isinstance(service, VoyageEmbeddingService)
        assert service.dimensions == 1024
        assert service.config.chars_per_token == 2.0
