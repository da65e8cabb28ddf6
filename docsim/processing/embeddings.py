"""
Embedding Client
════════════════

Thin async wrapper over the OpenAI embeddings endpoint.

The client itself does not retry: the pipeline wraps every call in the
embeddings circuit breaker and EMBEDDING_POLICY, which classify
RateLimitError / APITimeoutError / 5xx as transient. What the client does
guarantee is shape: every vector it returns has exactly `dimensions` finite
floats, otherwise MalformedVectorError.

Model selection:
  text-embedding-3-small  → 1536 dims (default)
  text-embedding-3-large  → 3072 dims
"""

from __future__ import annotations

import logging
import math
import time
from typing import Sequence

from openai import AsyncOpenAI

from docsim.core.exceptions import MalformedVectorError

logger = logging.getLogger(__name__)

# text-embedding-3-* natively produce 1536 (small) / 3072 (large) dims
_NATIVE_DIMENSIONS = {"text-embedding-3-small": 1536, "text-embedding-3-large": 3072}


def validate_vector(vector: Sequence[float], dimensions: int) -> list[float]:
    """Return `vector` as a list of floats or raise MalformedVectorError."""
    if vector is None or len(vector) != dimensions:
        raise MalformedVectorError(
            f"Expected {dimensions} dimensions, got {0 if vector is None else len(vector)}",
            details={"expected": dimensions},
        )
    values = [float(v) for v in vector]
    if not all(math.isfinite(v) for v in values):
        raise MalformedVectorError("Vector contains non-finite values")
    return values


class OpenAIEmbeddingClient:
    """
    Usage:
        client = OpenAIEmbeddingClient(api_key=settings.openai_api_key)
        vector = await client.embed("chunk text")
    """

    def __init__(
        self,
        api_key:    str   = "",
        model:      str   = "text-embedding-3-small",
        dimensions: int   = 1536,
        timeout:    float = 30.0,
        client:     AsyncOpenAI | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        # max_retries=0: retries belong to the resilience layer
        self._client = client or AsyncOpenAI(api_key=api_key, timeout=timeout, max_retries=0)

    async def embed(self, text: str) -> list[float]:
        vectors = await self._call_openai([text])
        return vectors[0]

    async def _call_openai(self, texts: list[str]) -> list[list[float]]:
        t_api = time.monotonic()
        kwargs = {"model": self.model, "input": texts}
        if _NATIVE_DIMENSIONS.get(self.model) != self.dimensions:
            # dimensions param only works for text-embedding-3-* models
            kwargs["dimensions"] = self.dimensions
        response = await self._client.embeddings.create(**kwargs)

        data = sorted(response.data, key=lambda item: item.index)
        if len(data) != len(texts):
            raise MalformedVectorError(
                f"Embedding API returned {len(data)} vectors for {len(texts)} inputs",
            )

        logger.debug(
            "OpenAI embeddings | size=%d tokens=%s api_ms=%.0f",
            len(texts),
            response.usage.total_tokens if response.usage else "?",
            (time.monotonic() - t_api) * 1000,
        )
        return [validate_vector(item.embedding, self.dimensions) for item in data]

    async def close(self) -> None:
        await self._client.close()
