"""
Qdrant vector database client.

Collection layout:
  name    : posts  (settings.qdrant_collection)
  vector  : 384-dim float (embedding service output)
  payload : { user_id, board_id, created_at_ts }

Used by the recall stage (user interest vector → nearest posts) and by the
indexing job (post embeddings are written once and overwritten on edit).
"""
import logging
from dataclasses import dataclass
from typing import Optional

from qdrant_client import AsyncQdrantClient
from qdrant_client.models import (
    Distance,
    PointStruct,
    VectorParams,
)

from feedpipe.config import settings

logger = logging.getLogger(__name__)


@dataclass
class VectorHit:
    post_id: str
    score: float
    created_at_ts: float


class PostVectorIndex:
    def __init__(self, client: Optional[AsyncQdrantClient] = None) -> None:
        self._client = client

    async def start(self) -> None:
        self._client = AsyncQdrantClient(
            host=settings.qdrant_host,
            port=settings.qdrant_port,
            timeout=int(settings.recall_timeout_seconds) or 1,
        )
        await self.ensure_collection()

    async def stop(self) -> None:
        if self._client is not None:
            await self._client.close()

    @property
    def client(self) -> AsyncQdrantClient:
        if self._client is None:
            raise RuntimeError("Qdrant not initialised — call start() at startup")
        return self._client

    async def ensure_collection(self) -> None:
        existing = await self.client.get_collections()
        names = [c.name for c in existing.collections]
        if settings.qdrant_collection not in names:
            await self.client.create_collection(
                collection_name=settings.qdrant_collection,
                vectors_config=VectorParams(
                    size=settings.embedding_dimension,
                    distance=Distance.COSINE,
                ),
            )
            logger.info("Created Qdrant collection '%s'", settings.qdrant_collection)
        else:
            logger.info("Qdrant collection '%s' already exists", settings.qdrant_collection)

    async def upsert_post_vector(
        self,
        post_id: str,
        vector: list[float],
        payload: dict,
    ) -> None:
        """Store/overwrite a post embedding. Qdrant IDs must be UUID strings."""
        await self.client.upsert(
            collection_name=settings.qdrant_collection,
            points=[PointStruct(id=post_id, vector=vector, payload=payload)],
        )

    async def search(self, vector: list[float], limit: int) -> list[VectorHit]:
        """
        ANN search for posts similar to `vector`.
        Returns hits in Qdrant order (cosine similarity, highest first).
        """
        response = await self.client.query_points(
            collection_name=settings.qdrant_collection,
            query=vector,
            limit=limit,
            with_payload=["created_at_ts"],
        )
        return [
            VectorHit(
                post_id=str(p.id),
                score=float(p.score),
                created_at_ts=float((p.payload or {}).get("created_at_ts") or 0.0),
            )
            for p in response.points
        ]

    async def get_vectors(self, post_ids: list[str]) -> dict[str, list[float]]:
        """Fetch stored embeddings; ids without a vector are absent from the result."""
        if not post_ids:
            return {}
        records = await self.client.retrieve(
            collection_name=settings.qdrant_collection,
            ids=post_ids,
            with_vectors=True,
            with_payload=False,
        )
        return {str(r.id): list(r.vector) for r in records if r.vector is not None}


# Singleton
post_index = PostVectorIndex()
