"""Embedding client for OpenAI-compatible ``/embeddings`` endpoints.

Texts are sent in batches; vectors come back in input order and are checked
against the configured dimension before anyone persists them.
"""

import asyncio
from typing import Any

import httpx

from ..core.config import get_settings_instance
from ..core.exceptions import EmbeddingProviderError
from ..core.logging import get_logger
from .retry import extract_provider_message, get_retry_delay, should_retry

logger = get_logger(__name__)


class EmbeddingClient:
    """Turn texts into fixed-dimension vectors via an embedding provider.

    Args:
        api_base: Provider base URL (``.../v1``).
        api_key: Bearer token; omitted from requests when empty.
        model: Embedding model name.
        dimension: Expected vector length, also requested from the provider.
        batch_size: Texts per request.
        timeout: Per-request timeout in seconds.
        max_attempts: Total attempts per batch, including the first.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).

    """

    def __init__(
        self,
        api_base: str,
        api_key: str | None,
        model: str,
        dimension: int,
        batch_size: int = 10,
        timeout: float = 30.0,
        max_attempts: int = 3,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.model = model
        self.dimension = dimension
        self.batch_size = batch_size
        self.max_attempts = max(1, max_attempts)

        headers = {"Content-Type": "application/json"}
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        self.client = httpx.AsyncClient(
            base_url=api_base.rstrip("/"),
            headers=headers,
            timeout=httpx.Timeout(timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings=None) -> "EmbeddingClient":
        settings = settings or get_settings_instance()
        return cls(
            api_base=settings.embedding_api_base,
            api_key=settings.embedding_api_key,
            model=settings.embedding_model,
            dimension=settings.embedding_dimension,
            batch_size=settings.embedding_batch_size,
            timeout=settings.embedding_timeout,
            max_attempts=settings.embedding_max_attempts,
        )

    async def aclose(self) -> None:
        await self.client.aclose()

    async def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed *texts*, returning one vector per text in the same order."""
        if not texts:
            return []

        vectors: list[list[float]] = []
        for offset in range(0, len(texts), self.batch_size):
            batch = texts[offset : offset + self.batch_size]
            vectors.extend(await self._embed_batch(batch))

        logger.debug(
            "Embedded texts",
            extra={"model": self.model, "texts": len(texts), "batches": -(-len(texts) // self.batch_size)},
        )
        return vectors

    async def embed_query(self, text: str) -> list[float]:
        vectors = await self.embed([text])
        return vectors[0]

    async def _embed_batch(self, batch: list[str]) -> list[list[float]]:
        payload = {
            "model": self.model,
            "input": batch,
            "dimensions": self.dimension,
            "encoding_format": "float",
        }
        attempt = 0
        while True:
            try:
                response = await self.client.post("/embeddings", json=payload)
                response.raise_for_status()
                body = response.json()
                break
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                if should_retry(status, attempt, self.max_attempts):
                    delay = get_retry_delay(attempt)
                    logger.warning(
                        "Retrying embedding request",
                        extra={"status": status, "attempt": attempt + 1, "max_attempts": self.max_attempts, "delay": delay},
                    )
                    attempt += 1
                    await asyncio.sleep(delay)
                    continue
                raise EmbeddingProviderError(
                    f"Embedding provider returned HTTP {status}: {extract_provider_message(e.response)}",
                    details={"status": status, "model": self.model},
                ) from e
            except httpx.TimeoutException as e:
                raise EmbeddingProviderError(
                    f"Embedding request timed out: {e}", details={"error_type": type(e).__name__}
                ) from e
            except httpx.HTTPError as e:
                raise EmbeddingProviderError(
                    f"Embedding request failed: {e}", details={"error_type": type(e).__name__}
                ) from e
            except ValueError as e:
                raise EmbeddingProviderError(f"Embedding provider returned invalid JSON: {e}") from e

        return self._parse_vectors(body, expected=len(batch))

    def _parse_vectors(self, body: Any, expected: int) -> list[list[float]]:
        data = body.get("data") if isinstance(body, dict) else None
        if not isinstance(data, list):
            raise EmbeddingProviderError("Embedding response is missing the 'data' list")
        if len(data) != expected:
            raise EmbeddingProviderError(
                f"Embedding provider returned {len(data)} vectors for {expected} inputs",
                details={"expected": expected, "received": len(data)},
            )

        try:
            # Providers may return items out of order; "index" is authoritative
            ordered = sorted(data, key=lambda item: item.get("index", 0))
            vectors = [[float(x) for x in item["embedding"]] for item in ordered]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise EmbeddingProviderError(f"Malformed embedding item: {e}") from e

        for vector in vectors:
            if len(vector) != self.dimension:
                raise EmbeddingProviderError(
                    f"Embedding dimension mismatch: expected {self.dimension}, got {len(vector)}",
                    details={"expected": self.dimension, "received": len(vector)},
                )
        return vectors


_embedding_client: EmbeddingClient | None = None


def get_embedding_client() -> EmbeddingClient:
    global _embedding_client  # noqa: PLW0603
    if _embedding_client is None:
        _embedding_client = EmbeddingClient.from_settings()
    return _embedding_client


async def close_embedding_client() -> None:
    global _embedding_client  # noqa: PLW0603
    if _embedding_client is not None:
        await _embedding_client.aclose()
        _embedding_client = None
