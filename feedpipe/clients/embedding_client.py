"""
Embedding service client.

The embedding model is an external collaborator: a small HTTP service in
front of sentence-transformers (all-MiniLM-L6-v2, 384-dim).

Request:
  POST /embed   { "texts": ["...", ...] }
Response:
  { "embeddings": [[float, ...], ...] }

Unlike the ranking stage there is no heuristic substitute for an embedding,
so failures raise EmbeddingUnavailableError and callers pick their own
fallback (cold-start recall, re-index later).
"""
import logging
from typing import Optional

import httpx

from feedpipe.config import settings

logger = logging.getLogger(__name__)


class EmbeddingUnavailableError(RuntimeError):
    pass


class EmbeddingClient:
    def __init__(self, http: Optional[httpx.AsyncClient] = None) -> None:
        self._http = http

    async def start(self) -> None:
        self._http = httpx.AsyncClient(
            base_url=settings.embedding_service_url,
            timeout=settings.embedding_timeout_seconds,
        )

    async def stop(self) -> None:
        if self._http:
            await self._http.aclose()

    async def embed_many(self, texts: list[str]) -> list[list[float]]:
        if not texts:
            return []
        if self._http is None:
            raise EmbeddingUnavailableError("Embedding client not started")
        try:
            resp = await self._http.post("/embed", json={"texts": texts})
            resp.raise_for_status()
            vectors: list[list[float]] = resp.json()["embeddings"]
        except (httpx.HTTPError, KeyError, ValueError) as exc:
            raise EmbeddingUnavailableError(str(exc)) from exc

        if len(vectors) != len(texts):
            raise EmbeddingUnavailableError(
                f"expected {len(texts)} embeddings, got {len(vectors)}"
            )
        for vec in vectors:
            if len(vec) != settings.embedding_dimension:
                raise EmbeddingUnavailableError(
                    f"embedding dimension {len(vec)} != {settings.embedding_dimension}"
                )
        return vectors

    async def generate_embedding(self, text: str) -> list[float]:
        """Return the embedding for a single piece of text."""
        return (await self.embed_many([text]))[0]


# Singleton
embedding_client = EmbeddingClient()
