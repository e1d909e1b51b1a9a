"""Tests for the embedding provider: env configuration, response handling, mock mode."""

from __future__ import annotations

from types import SimpleNamespace
from unittest import mock

from ingest_hub.embedding_provider import (
    EmbeddingConfig,
    EmbeddingProvider,
    _create_client,
    mock_embedding,
)


def _client(handler):
    return SimpleNamespace(embeddings=SimpleNamespace(create=handler))


def _item(index: int, vector):
    return SimpleNamespace(index=index, embedding=vector)


class TestEmbeddingConfig:
    def test_default_config_targets_local_lmstudio(self):
        config = EmbeddingConfig.from_env({})
        assert config.provider == "lmstudio"
        assert config.base_url == "http://localhost:1234/v1"
        assert config.api_key == "lm-studio"
        assert config.model == "text-embedding-nomic-embed-text-v1.5"
        assert config.timeout_s == 60.0
        assert config.mock_enabled is False

    def test_openrouter_config_carries_attribution_headers(self):
        config = EmbeddingConfig.from_env(
            {
                "AI_PROVIDER": "OpenRouter",
                "OPENROUTER_API_KEY": "sk-or-test",
                "OPENROUTER_EMBEDDING_MODEL": "openai/text-embedding-3-large",
                "OPENROUTER_REFERER": "https://hub.example.test",
                "OPENROUTER_TITLE": "Ingest Hub",
                "EMBEDDING_TIMEOUT_SECONDS": "15",
            }
        )
        assert config.provider == "openrouter"
        assert config.api_key == "sk-or-test"
        assert config.base_url == "https://openrouter.ai/api/v1"
        assert config.model == "openai/text-embedding-3-large"
        assert config.headers == {"HTTP-Referer": "https://hub.example.test", "X-Title": "Ingest Hub"}
        assert config.timeout_s == 15.0

    def test_invalid_numbers_fall_back_to_defaults(self):
        config = EmbeddingConfig.from_env({"EMBEDDING_TIMEOUT_SECONDS": "soon", "EMBEDDING_DIMENSIONS": "-4"})
        assert config.timeout_s == 60.0
        assert config.dimensions == 1


class TestEmbed:
    def test_vectors_are_returned_in_input_order(self):
        seen: dict = {}

        def _create(*, model, input):
            seen["model"] = model
            seen["input"] = input
            return SimpleNamespace(data=[_item(1, [0.2, 0.2]), _item(0, [0.1, 0.1])])

        provider = EmbeddingProvider(EmbeddingConfig(model="m"), client=_client(_create))

        assert provider.embed(["first", "second"]) == [[0.1, 0.1], [0.2, 0.2]]
        assert seen == {"model": "m", "input": ["first", "second"]}

    def test_request_failure_yields_empty_vectors(self):
        def _create(**kwargs):
            raise RuntimeError("401 Unauthorized")

        provider = EmbeddingProvider(EmbeddingConfig(), client=_client(_create))
        assert provider.embed(["a", "b"]) == [[], []]

    def test_count_mismatch_yields_empty_vectors(self):
        def _create(**kwargs):
            return SimpleNamespace(data=[_item(0, [0.5])])

        provider = EmbeddingProvider(EmbeddingConfig(), client=_client(_create))
        assert provider.embed(["a", "b"]) == [[], []]

    def test_response_without_vectors_yields_empty_vectors(self):
        def _create(**kwargs):
            return SimpleNamespace(data=[_item(0, None), _item(1, [])])

        provider = EmbeddingProvider(EmbeddingConfig(), client=_client(_create))
        assert provider.embed(["a", "b"]) == [[], []]

    def test_partial_response_keeps_usable_vectors(self):
        def _create(**kwargs):
            return SimpleNamespace(data=[_item(0, [1.0]), _item(1, None)])

        provider = EmbeddingProvider(EmbeddingConfig(), client=_client(_create))
        assert provider.embed(["a", "b"]) == [[1.0], []]

    def test_empty_input_skips_request(self):
        def _create(**kwargs):
            raise AssertionError("no request expected")

        assert EmbeddingProvider(EmbeddingConfig(), client=_client(_create)).embed([]) == []


class TestMockMode:
    def test_mock_vectors_are_deterministic_and_sized(self):
        provider = EmbeddingProvider(EmbeddingConfig(mock_enabled=True, dimensions=12))
        first = provider.embed(["same text", "other text"])
        second = provider.embed(["same text"])

        assert len(first[0]) == 12
        assert first[0] == second[0]
        assert first[0] != first[1]
        assert all(-1.0 <= value <= 1.0 for value in first[0])

    def test_mock_embedding_handles_widths_beyond_one_digest(self):
        assert len(mock_embedding("x", 20)) == 20


def test_create_client_passes_timeout_headers_and_no_sdk_retries():
    config = EmbeddingConfig(
        provider="openrouter",
        api_key="sk-or-test",
        base_url="https://openrouter.ai/api/v1",
        timeout_s=30.0,
        headers={"X-Title": "Ingest Hub"},
    )
    with mock.patch("openai.OpenAI") as openai_cls:
        _create_client(config)

    openai_cls.assert_called_once_with(
        api_key="sk-or-test",
        timeout=30.0,
        max_retries=0,
        base_url="https://openrouter.ai/api/v1",
        default_headers={"X-Title": "Ingest Hub"},
    )


def test_info_hides_key_and_reports_provider():
    info = EmbeddingProvider(EmbeddingConfig(provider="openrouter", api_key="secret")).info()
    assert info["provider"] == "openrouter"
    assert info["has_api_key"] is True
    assert "secret" not in str(info)
