"""
Hybrid Index - Dense + sparse retrieval fused with reciprocal rank fusion.

Wraps QdrantVectorStore with the async interface the orchestrator and the
query path use. Store calls are blocking, so they run in a thread pool.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence

from .config import get_config, IndexerConfig
from .embedder import Embedder
from .errors import PolicyError, VectorStoreError
from .models import IndexEntry, SearchResult, StoreHit, point_id_for
from .store import QdrantVectorStore


logger = logging.getLogger(__name__)


def reciprocal_rank_fusion(
    lists: Sequence[Sequence[StoreHit]],
    k: int = 60,
) -> List[StoreHit]:
    """
    Fuse ranked hit lists.

    A point scores sum(1 / (rank + k)) over the lists it appears in, with
    1-based ranks. Equal scores are ordered by point id ascending so the
    output is deterministic. Only the first occurrence of a point within a
    single list counts.
    """
    scores: Dict[str, float] = {}
    payloads: Dict[str, Dict[str, Any]] = {}

    for hits in lists:
        seen = set()
        for rank, hit in enumerate(hits, start=1):
            if hit.point_id in seen:
                continue
            seen.add(hit.point_id)
            scores[hit.point_id] = scores.get(hit.point_id, 0.0) + 1.0 / (rank + k)
            if hit.point_id not in payloads and hit.payload:
                payloads[hit.point_id] = hit.payload

    ranked = sorted(scores.items(), key=lambda item: (-item[1], item[0]))
    return [
        StoreHit(point_id=point_id, score=score, payload=payloads.get(point_id, {}))
        for point_id, score in ranked
    ]


class HybridIndex:
    """
    Persist IndexEntries and answer natural-language queries.

    Usage:
        index = HybridIndex(store, embedder, config)
        await index.upsert(entry)
        results = await index.query("tax documents from 2023", top_k=5)
    """

    def __init__(
        self,
        store: QdrantVectorStore,
        embedder: Embedder,
        config: IndexerConfig | None = None,
    ):
        self.config = config or get_config()
        self.store = store
        self.embedder = embedder
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            # Embedded Qdrant keeps plain in-process state; serialise access to it.
            workers = 1 if self.config.qdrant_path else max(2, self.config.worker_concurrency)
            self._executor = ThreadPoolExecutor(
                max_workers=workers,
                thread_name_prefix="store",
            )
        return self._executor

    async def _run(self, fn, *args):
        loop = asyncio.get_running_loop()
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._get_executor(), fn, *args),
                timeout=self.config.store_timeout,
            )
        except asyncio.TimeoutError as e:
            raise VectorStoreError(
                f"Vector store call timed out after {self.config.store_timeout}s"
            ) from e

    async def upsert(self, entry: IndexEntry) -> None:
        """Insert or fully replace the point for entry.point_id."""
        await self._run(
            self.store.upsert, entry.point_id, entry.payload, entry.dense, entry.sparse
        )
        logger.debug(f"Upserted {entry.payload.get('path', entry.point_id)}")

    async def delete(self, point_ids: Iterable[str]) -> None:
        ids = list(point_ids)
        if ids:
            await self._run(self.store.delete, ids)
            logger.debug(f"Deleted {len(ids)} points")

    async def fetch_payload(self, path: Path | str) -> Optional[Dict[str, Any]]:
        """Stored payload for an absolute path, or None if it is not indexed."""
        return await self._run(self.store.fetch_payload, point_id_for(path))

    async def query(self, text: str, top_k: int | None = None) -> List[SearchResult]:
        """
        Rank indexed entries against a natural-language query.

        Raises:
            PolicyError: top_k < 1
        """
        top_k = self.config.top_k if top_k is None else top_k
        if top_k < 1:
            raise PolicyError(f"top_k must be >= 1, got {top_k}")

        vector = await self.embedder.aembed(text)
        fetch = top_k * self.config.overfetch_factor

        searches = [self._run(self.store.search_dense, vector.dense, fetch)]
        if not vector.sparse.is_empty:
            searches.append(self._run(self.store.search_sparse, vector.sparse, fetch))
        lists = await asyncio.gather(*searches)

        fused = reciprocal_rank_fusion(lists, k=self.config.rrf_k)[:top_k]
        logger.debug(
            f"Query '{text[:50]}': {sum(len(hits) for hits in lists)} candidates, "
            f"{len(fused)} returned"
        )

        return [
            SearchResult(
                path=str(hit.payload.get("path", "")),
                score=hit.score,
                summary=str(hit.payload.get("summary", "")),
                kind=str(hit.payload.get("kind", "file")),
                point_id=hit.point_id,
            )
            for hit in fused
        ]

    async def count(self) -> int:
        return await self._run(self.store.count)

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
