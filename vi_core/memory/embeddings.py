"""Embeddings for memory records and retrieval queries.

EmbeddingProvider calls the OpenAI embeddings endpoint over httpx. The
memory engine only depends on the Embedder shape, which is how tests
swap in a deterministic provider.

Vectors are checked against the configured dimensionality: the pgvector
columns are fixed-width, so a model/dimension mismatch has to surface
here rather than as an insert error later.
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx

logger = logging.getLogger(__name__)

# ~8k tokens; longer memory texts are cut rather than rejected by the API
MAX_INPUT_CHARS = 24000
MAX_BATCH = 256


class Embedder(Protocol):
    async def embed(self, text: str) -> list[float]: ...

    async def embed_batch(self, texts: list[str]) -> list[list[float]]: ...


def prepare_input(text: str) -> str:
    """Collapse newlines and cap length before sending text to the API."""
    cleaned = " ".join(text.split())
    return cleaned[:MAX_INPUT_CHARS] if cleaned else " "


class EmbeddingProvider:
    def __init__(
        self,
        api_key: str,
        model: str = "text-embedding-3-small",
        dimensions: int = 1536,
        base_url: str = "https://api.openai.com/v1",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.model = model
        self.dimensions = dimensions
        self._client = httpx.AsyncClient(
            base_url=base_url,
            headers={"Authorization": f"Bearer {api_key}"},
            timeout=httpx.Timeout(30.0, connect=10.0),
            transport=transport,
        )

    async def embed(self, text: str) -> list[float]:
        (vector,) = await self._request([prepare_input(text)])
        return vector

    async def embed_batch(self, texts: list[str]) -> list[list[float]]:
        """Embed many texts, MAX_BATCH per request, preserving input order."""
        vectors: list[list[float]] = []
        for start in range(0, len(texts), MAX_BATCH):
            chunk = [prepare_input(t) for t in texts[start : start + MAX_BATCH]]
            vectors.extend(await self._request(chunk))
        return vectors

    async def _request(self, inputs: list[str]) -> list[list[float]]:
        payload: dict[str, Any] = {
            "model": self.model,
            "input": inputs[0] if len(inputs) == 1 else inputs,
            "dimensions": self.dimensions,
        }
        response = await self._client.post("/embeddings", json=payload)
        response.raise_for_status()
        data = sorted(response.json()["data"], key=lambda item: item["index"])
        if len(data) != len(inputs):
            raise ValueError(f"Embedding count mismatch: sent {len(inputs)}, got {len(data)}")

        vectors = [item["embedding"] for item in data]
        for vector in vectors:
            if len(vector) != self.dimensions:
                raise ValueError(
                    f"{self.model} returned {len(vector)}-dim vectors, expected {self.dimensions}"
                )
        logger.debug("Embedded %d input(s) with %s", len(inputs), self.model)
        return vectors

    async def close(self) -> None:
        await self._client.aclose()
