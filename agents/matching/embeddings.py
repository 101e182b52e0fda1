"""
Embedding Provider
Turns statement and topic text into vectors for similarity matching.
"""
import hashlib
from typing import Optional

import openai
import structlog
from tenacity import (
    retry,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from backend.core.config import settings

logger = structlog.get_logger().bind(agent="embedding_provider")

# Transient OpenAI failures worth retrying
RETRYABLE_ERRORS = (
    openai.APIConnectionError,
    openai.APITimeoutError,
    openai.RateLimitError,
)


class EmbeddingProvider:
    """
    Generates embeddings with OpenAI text-embedding-3-small.

    Embeddings are deterministic per text, so results are cached per
    provider instance keyed by a SHA-256 of the text. A provider lives for
    one search request, which keeps the cache request-scoped.
    """

    def __init__(
        self,
        client: Optional[openai.OpenAI] = None,
        model: Optional[str] = None,
        dimensions: Optional[int] = None,
    ):
        """
        Initialize embedding provider.

        Args:
            client: OpenAI client; built from settings when omitted.
            model: Embedding model name.
            dimensions: Output vector dimension.
        """
        self._openai_client = client
        self.embedding_model = model or settings.embedding_model
        self.embedding_dimensions = dimensions or settings.embedding_dimensions
        self._cache: dict[str, list[float]] = {}

    @property
    def openai_client(self) -> openai.OpenAI:
        """Lazy-loaded OpenAI client."""
        if self._openai_client is None:
            if not settings.openai_api_key:
                raise openai.OpenAIError("OpenAI API key not configured")
            self._openai_client = openai.OpenAI(api_key=settings.openai_api_key)
        return self._openai_client

    def _compute_text_hash(self, text: str) -> str:
        """
        Compute SHA-256 hash of text for cache lookups.

        Args:
            text: Text to hash.

        Returns:
            Hex digest of hash.
        """
        return hashlib.sha256(text.encode()).hexdigest()

    @retry(
        retry=retry_if_exception_type(RETRYABLE_ERRORS),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=1, min=1, max=8),
        reraise=True,
    )
    def _generate_embeddings(self, texts: list[str]) -> list[list[float]]:
        response = self.openai_client.embeddings.create(
            model=self.embedding_model,
            input=texts,
            dimensions=self.embedding_dimensions,
        )

        # Sort by index to ensure correct ordering
        sorted_data = sorted(response.data, key=lambda x: x.index)
        return [item.embedding for item in sorted_data]

    def embed(self, text: str) -> list[float]:
        """
        Embed a single text.

        Args:
            text: Text to embed.

        Returns:
            Embedding vector.

        Raises:
            openai.OpenAIError: If the API call fails after retries.
        """
        return self.embed_batch([text])[0]

    def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """
        Embed several texts, calling the API only for uncached ones.

        Args:
            texts: Texts to embed.

        Returns:
            Embedding vectors in input order.

        Raises:
            openai.OpenAIError: If the API call fails after retries.
        """
        if not texts:
            return []

        hashes = [self._compute_text_hash(t) for t in texts]
        missing = list(dict.fromkeys(h for h in hashes if h not in self._cache))

        if missing:
            by_hash = dict(zip(hashes, texts))
            try:
                embeddings = self._generate_embeddings([by_hash[h] for h in missing])
            except openai.OpenAIError as e:
                logger.error(
                    "embedding_generation_failed",
                    count=len(missing),
                    error=str(e),
                )
                raise

            self._cache.update(zip(missing, embeddings))
            logger.debug("embeddings_generated", count=len(missing))

        return [self._cache[h] for h in hashes]
