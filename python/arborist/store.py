"""
Store - Qdrant vector store with one dense and one sparse named vector.

This is the only module that talks to qdrant-client. Each point carries a
summary payload, a cosine dense vector and a sparse lexical vector.
Calls are synchronous; HybridIndex runs them in a thread pool.
"""

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from qdrant_client import QdrantClient, models

from .config import get_config, IndexerConfig
from .errors import SystemicError, VectorStoreError
from .models import SparseVector, StoreHit


logger = logging.getLogger(__name__)


class QdrantVectorStore:
    """
    Upsert / search / fetch primitives over a single collection.

    Connects to qdrant_url, or to an embedded store when qdrant_path is set
    (":memory:" keeps everything in process, which the tests use).
    """

    def __init__(
        self,
        client: QdrantClient,
        collection_name: str = "file_data",
        dense_name: str = "dense",
        sparse_name: str = "sparse",
    ):
        self.client = client
        self.collection_name = collection_name
        self.dense_name = dense_name
        self.sparse_name = sparse_name
        self._ensured = False

    @classmethod
    def from_config(cls, config: IndexerConfig | None = None) -> "QdrantVectorStore":
        config = config or get_config()
        if config.qdrant_path == ":memory:":
            client = QdrantClient(location=":memory:")
        elif config.qdrant_path:
            client = QdrantClient(path=config.qdrant_path)
        else:
            client = QdrantClient(
                url=config.qdrant_url,
                api_key=config.qdrant_api_key,
                timeout=int(config.store_timeout),
            )
        return cls(
            client,
            collection_name=config.collection_name,
            dense_name=config.dense_vector_name,
            sparse_name=config.sparse_vector_name,
        )

    def ping(self) -> None:
        """Raise SystemicError when the store cannot be reached."""
        try:
            self.client.get_collections()
        except Exception as e:
            raise SystemicError(f"Vector store unreachable: {e}") from e

    def collection_exists(self) -> bool:
        if self._ensured:
            return True
        try:
            return bool(self.client.collection_exists(self.collection_name))
        except Exception as e:
            raise VectorStoreError(f"Cannot inspect collection {self.collection_name}: {e}") from e

    def ensure_collection(self, dimension: int) -> None:
        """Create the hybrid collection if it does not exist yet."""
        if self._ensured:
            return
        try:
            if self.client.collection_exists(self.collection_name):
                logger.debug(f"Collection '{self.collection_name}' already exists")
            else:
                self.client.create_collection(
                    collection_name=self.collection_name,
                    vectors_config={
                        self.dense_name: models.VectorParams(
                            size=dimension, distance=models.Distance.COSINE
                        ),
                    },
                    sparse_vectors_config={
                        self.sparse_name: models.SparseVectorParams(),
                    },
                )
                logger.info(
                    f"Created collection '{self.collection_name}' "
                    f"(dense={self.dense_name}[{dimension}], sparse={self.sparse_name})"
                )
        except Exception as e:
            raise SystemicError(f"Cannot prepare collection {self.collection_name}: {e}") from e
        self._ensured = True

    def upsert(
        self,
        point_id: str,
        payload: Dict[str, Any],
        dense: Sequence[float],
        sparse: SparseVector,
    ) -> None:
        """Insert or fully replace one point."""
        vector: Dict[str, Any] = {self.dense_name: list(dense)}
        if not sparse.is_empty:
            vector[self.sparse_name] = models.SparseVector(
                indices=list(sparse.indices), values=list(sparse.values)
            )
        try:
            self.client.upsert(
                collection_name=self.collection_name,
                points=[models.PointStruct(id=point_id, vector=vector, payload=payload)],
                wait=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Upsert of {point_id} failed: {e}") from e

    def search_dense(self, vector: Sequence[float], limit: int) -> List[StoreHit]:
        return self._query(list(vector), self.dense_name, limit)

    def search_sparse(self, sparse: SparseVector, limit: int) -> List[StoreHit]:
        if sparse.is_empty:
            return []
        query = models.SparseVector(indices=list(sparse.indices), values=list(sparse.values))
        return self._query(query, self.sparse_name, limit)

    def _query(self, query: Any, using: str, limit: int) -> List[StoreHit]:
        if not self.collection_exists():
            return []
        try:
            response = self.client.query_points(
                collection_name=self.collection_name,
                query=query,
                using=using,
                limit=limit,
                with_payload=True,
            )
        except Exception as e:
            raise VectorStoreError(f"{using} search failed: {e}") from e
        return [
            StoreHit(point_id=str(p.id), score=float(p.score), payload=dict(p.payload or {}))
            for p in response.points
        ]

    def fetch_payload(self, point_id: str) -> Optional[Dict[str, Any]]:
        if not self.collection_exists():
            return None
        try:
            records = self.client.retrieve(
                collection_name=self.collection_name,
                ids=[point_id],
                with_payload=True,
                with_vectors=False,
            )
        except Exception as e:
            raise VectorStoreError(f"Fetch of {point_id} failed: {e}") from e
        return dict(records[0].payload or {}) if records else None

    def delete(self, point_ids: Iterable[str]) -> None:
        ids = list(point_ids)
        if not ids or not self.collection_exists():
            return
        try:
            self.client.delete(
                collection_name=self.collection_name,
                points_selector=models.PointIdsList(points=ids),
                wait=True,
            )
        except Exception as e:
            raise VectorStoreError(f"Delete of {len(ids)} points failed: {e}") from e

    def count(self) -> int:
        if not self.collection_exists():
            return 0
        try:
            return self.client.count(collection_name=self.collection_name, exact=True).count
        except Exception as e:
            raise VectorStoreError(f"Count failed: {e}") from e

    def close(self) -> None:
        self.client.close()
