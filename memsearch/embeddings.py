"""Embedding provider capability and the default OpenAI-compatible implementation."""

from __future__ import annotations

import math
from typing import Protocol, runtime_checkable

import structlog

from .errors import ConfigurationError, ProviderError
from .utils.retry import retry_with_backoff

logger = structlog.get_logger(__name__)


@runtime_checkable
class EmbeddingProvider(Protocol):
    """What the engine needs from an embedding backend.

    ``embed_batch`` must return one vector per input text, in input order,
    or raise; it never partially succeeds.
    """

    id: str
    model: str
    dimensions: int

    def embed_query(self, text: str) -> list[float]: ...

    def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


def l2_normalize(vector: list[float]) -> list[float]:
    magnitude = math.sqrt(sum(v * v for v in vector))
    if magnitude == 0:
        return vector
    return [v / magnitude for v in vector]


class OpenAIEmbeddingProvider:
    """Embedding provider using the OpenAI client.

    Works with any OpenAI-compatible endpoint (including Azure OpenAI's v1
    surface) via ``base_url`` or the standard environment variables:
        OPENAI_BASE_URL: e.g. https://YOUR-RESOURCE.openai.azure.com/openai/v1/
        OPENAI_API_KEY: API key.

    Rate limits, connection errors and 5xx responses are retried with
    exponential backoff; anything else surfaces as ProviderError.

    Args:
        model: The deployment/model name for embeddings.
        dimensions: Vector size requested from the model.
        api_key: Overrides OPENAI_API_KEY.
        base_url: Overrides OPENAI_BASE_URL.
        timeout: Per-request timeout in seconds.
        retries: Retries after the first attempt.
    """

    id = "openai"

    def __init__(
        self,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float = 30.0,
        retries: int = 3,
    ) -> None:
        import openai

        self.model = model
        self.dimensions = dimensions
        try:
            self._client = openai.OpenAI(
                api_key=api_key, base_url=base_url, timeout=timeout, max_retries=0
            )
        except openai.OpenAIError as e:
            raise ConfigurationError(f"cannot create OpenAI client: {e}") from e

        retrying = retry_with_backoff(
            retries=retries,
            exceptions=(
                openai.RateLimitError,
                openai.APIConnectionError,
                openai.InternalServerError,
            ),
        )
        self._create = retrying(self._client.embeddings.create)
        logger.info(f"embedding_provider_initialized provider=openai model={model} dimensions={dimensions}")

    def _embed(self, texts: list[str]) -> list[list[float]]:
        import openai

        try:
            resp = self._create(model=self.model, input=texts, dimensions=self.dimensions)
        except openai.OpenAIError as e:
            raise ProviderError(f"embedding request failed: {e}") from e
        data = sorted(resp.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise ProviderError(
                f"embedding response has {len(data)} vectors for {len(texts)} inputs"
            )
        return [l2_normalize(list(item.embedding)) for item in data]

    def embed_query(self, text: str) -> list[float]:
        """Get embedding for a single query text."""
        logger.debug(f"embed_query model={self.model}")
        return self._embed([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Get embeddings for multiple texts."""
        if not texts:
            return []
        logger.debug(f"embed_batch model={self.model} count={len(texts)}")
        return self._embed(list(texts))


def resolve_provider(name: str | None = None, **kwargs) -> EmbeddingProvider:
    """Build a provider by name. Only "openai" is built in."""
    if name is None or name == "openai":
        return OpenAIEmbeddingProvider(**kwargs)
    raise ConfigurationError(f"Unknown embedding provider: {name}")
