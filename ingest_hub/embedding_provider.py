"""
Embedding provider over any OpenAI-compatible ``/embeddings`` endpoint.

Configuration via environment variables:
  AI_PROVIDER                 = lmstudio | openrouter          (default: lmstudio)
  AI_HOST                     = http://localhost:1234/v1       (lmstudio endpoint)
  EMBEDDING_MODEL             = text-embedding-nomic-embed-text-v1.5
  OPENROUTER_API_KEY          = sk-or-...
  OPENROUTER_BASE_URL         = https://openrouter.ai/api/v1
  OPENROUTER_EMBEDDING_MODEL  = openai/text-embedding-3-small
  OPENROUTER_REFERER          = sent as HTTP-Referer
  OPENROUTER_TITLE            = sent as X-Title
  EMBEDDING_TIMEOUT_SECONDS   = 60
  EMBEDDING_DIMENSIONS        = 1536                           (mock vector width)
  MOCK_EMBEDDINGS_ENABLED     = true                           (deterministic offline vectors)

``embed`` never raises. Any failure yields one empty vector per input text so
callers can count the attempt against each record.
"""

from __future__ import annotations

import hashlib
import logging
import os
import struct
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

PROVIDER_LMSTUDIO = "lmstudio"
PROVIDER_OPENROUTER = "openrouter"


def _env_bool(env: Mapping[str, str], name: str, *, default: bool) -> bool:
    raw = str(env.get(name, "")).strip().lower()
    if not raw:
        return default
    return raw in {"1", "true", "yes", "on"}


def _env_float(env: Mapping[str, str], name: str, *, default: float, minimum: float = 0.0) -> float:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return max(minimum, value)


def _env_int(env: Mapping[str, str], name: str, *, default: int, minimum: int = 0) -> int:
    raw = str(env.get(name, "")).strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return max(minimum, value)


@dataclass
class EmbeddingConfig:
    provider: str = PROVIDER_LMSTUDIO
    model: str = "text-embedding-nomic-embed-text-v1.5"
    api_key: str = ""
    base_url: str = "http://localhost:1234/v1"
    timeout_s: float = 60.0
    dimensions: int = 1536
    mock_enabled: bool = False
    headers: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> EmbeddingConfig:
        env = os.environ if environ is None else environ
        provider = str(env.get("AI_PROVIDER", PROVIDER_LMSTUDIO)).strip().lower() or PROVIDER_LMSTUDIO
        timeout_s = _env_float(env, "EMBEDDING_TIMEOUT_SECONDS", default=60.0, minimum=1.0)
        dimensions = _env_int(env, "EMBEDDING_DIMENSIONS", default=1536, minimum=1)
        mock_enabled = _env_bool(env, "MOCK_EMBEDDINGS_ENABLED", default=False)

        if provider == PROVIDER_OPENROUTER:
            headers: dict[str, str] = {}
            referer = str(env.get("OPENROUTER_REFERER", "")).strip()
            title = str(env.get("OPENROUTER_TITLE", "")).strip()
            if referer:
                headers["HTTP-Referer"] = referer
            if title:
                headers["X-Title"] = title
            return cls(
                provider=PROVIDER_OPENROUTER,
                model=str(env.get("OPENROUTER_EMBEDDING_MODEL", "openai/text-embedding-3-small")).strip(),
                api_key=str(env.get("OPENROUTER_API_KEY", "")).strip(),
                base_url=str(env.get("OPENROUTER_BASE_URL", "https://openrouter.ai/api/v1")).strip(),
                timeout_s=timeout_s,
                dimensions=dimensions,
                mock_enabled=mock_enabled,
                headers=headers,
            )

        return cls(
            provider=PROVIDER_LMSTUDIO,
            model=str(env.get("EMBEDDING_MODEL", "text-embedding-nomic-embed-text-v1.5")).strip(),
            api_key="lm-studio",
            base_url=str(env.get("AI_HOST", "http://localhost:1234/v1")).strip(),
            timeout_s=timeout_s,
            dimensions=dimensions,
            mock_enabled=mock_enabled,
        )


def _create_client(config: EmbeddingConfig):
    try:
        import openai
    except ImportError:
        raise RuntimeError("openai package is required. Install with: pip install openai")

    kwargs: dict[str, Any] = {
        "api_key": config.api_key or "not-set",
        "timeout": config.timeout_s,
        "max_retries": 0,
    }
    if config.base_url:
        kwargs["base_url"] = config.base_url
    if config.headers:
        kwargs["default_headers"] = dict(config.headers)
    return openai.OpenAI(**kwargs)


def mock_embedding(text: str, dimensions: int) -> list[float]:
    """Deterministic unit-range vector derived from the text digest."""
    values: list[float] = []
    counter = 0
    while len(values) < dimensions:
        digest = hashlib.sha256(f"{counter}:{text}".encode("utf-8")).digest()
        for (word,) in struct.iter_unpack(">I", digest):
            values.append(word / 0xFFFFFFFF * 2.0 - 1.0)
            if len(values) >= dimensions:
                break
        counter += 1
    return values


class EmbeddingProvider:
    def __init__(self, config: EmbeddingConfig | None = None, *, client: Any = None) -> None:
        self.config = config or EmbeddingConfig.from_env()
        self._client = client

    def _get_client(self):
        if self._client is None:
            self._client = _create_client(self.config)
        return self._client

    def embed(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        empty: list[list[float]] = [[] for _ in texts]
        if self.config.mock_enabled:
            return [mock_embedding(text, self.config.dimensions) for text in texts]

        try:
            response = self._get_client().embeddings.create(model=self.config.model, input=list(texts))
        except Exception as exc:
            logger.warning(
                "embedding request to %s failed (%s): %s",
                self.config.provider,
                type(exc).__name__,
                exc,
            )
            return empty

        data = list(getattr(response, "data", None) or [])
        if len(data) != len(texts):
            logger.warning("embedding count mismatch: sent %s texts, got %s vectors", len(texts), len(data))
            return empty

        ordered = sorted(data, key=lambda item: int(getattr(item, "index", 0) or 0))
        vectors: list[list[float]] = []
        for item in ordered:
            vector = getattr(item, "embedding", None)
            vectors.append([float(x) for x in vector] if isinstance(vector, list) and vector else [])
        if not any(vectors):
            logger.warning("embedding response from %s carried no usable vectors", self.config.provider)
            return empty
        return vectors

    def info(self) -> dict[str, Any]:
        """Current provider configuration, safe for logging."""
        return {
            "provider": self.config.provider,
            "model": self.config.model,
            "base_url": self.config.base_url or "(default)",
            "has_api_key": bool(self.config.api_key) and self.config.provider == PROVIDER_OPENROUTER,
            "timeout_s": self.config.timeout_s,
            "mock_enabled": self.config.mock_enabled,
        }
