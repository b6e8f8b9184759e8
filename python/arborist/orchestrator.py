"""
Orchestrator - Main entry point for the indexing system.

Runs the pipeline for one root directory:
- Phase 1: Scan the tree (files + folder aggregates)
- Phase 2: xxHash file bytes, hash folder aggregates
- Phase 3: Staleness filter against the state cache (unchanged = free)
- Phase 4: Workers summarize -> embed -> upsert each stale entry
- Phase 5: Prune entries whose paths disappeared
"""

import asyncio
import logging
import time
from pathlib import Path
from typing import List, Optional, Tuple

from .config import get_config, IndexerConfig, ScanPolicy
from .embedder import Embedder
from .errors import (
    ErrorAction, NotFoundError, PerPathError, PolicyError, SystemicError, handle_error,
)
from .extractor import ContentExtractor
from .hasher import Hasher
from .hybrid import HybridIndex
from .llm import LlmClient, OllamaClient
from .models import (
    FileRecord, FolderAggregate, IndexEntry, IndexReport, SearchResult, Skipped, SkipReason,
)
from .scanner import Scanner
from .state import StateCache, STATUS_INDEXED, STATUS_SKIPPED
from .store import QdrantVectorStore
from .summarizer import Summarizer


logger = logging.getLogger(__name__)

# A stale entry waiting for the work phase; folders carry their aggregate.
WorkItem = Tuple[FileRecord, Optional[FolderAggregate]]


class Orchestrator:
    """
    Main orchestrator for the indexing system.

    Scanner -> Hasher -> StateCache filter -> Summarizer -> Embedder -> HybridIndex

    Every collaborator can be injected; anything not given is built from
    the config. Only SystemicError and PolicyError escape index(); every
    other failure is attributed to a path in the IndexReport.
    """

    def __init__(
        self,
        config: Optional[IndexerConfig] = None,
        *,
        scanner: Optional[Scanner] = None,
        hasher: Optional[Hasher] = None,
        extractor: Optional[ContentExtractor] = None,
        llm: Optional[LlmClient] = None,
        embedder: Optional[Embedder] = None,
        store: Optional[QdrantVectorStore] = None,
        cache: Optional[StateCache] = None,
        summarizer: Optional[Summarizer] = None,
        index: Optional[HybridIndex] = None,
    ):
        self.config = config or get_config()

        self._scanner = scanner or Scanner(self.config)
        self._hasher = hasher or Hasher(self.config)
        self._extractor = extractor or ContentExtractor(self.config)
        self._llm = llm or OllamaClient(self.config)
        self._embedder = embedder or Embedder(self.config)
        self._store = store or QdrantVectorStore.from_config(self.config)
        self._cache = cache or StateCache(self.config.state_path)
        self._summarizer = summarizer or Summarizer(self._extractor, self._llm, self.config)
        self._index = index or HybridIndex(self._store, self._embedder, self.config)
        self._cancel_event: Optional[asyncio.Event] = None

    @property
    def index_backend(self) -> HybridIndex:
        return self._index

    @property
    def cache(self) -> StateCache:
        return self._cache

    async def index(
        self,
        root: Path,
        policy: Optional[ScanPolicy] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> IndexReport:
        """
        Index (or re-index) everything under root.

        Args:
            root: Directory to index
            policy: Scan rules (default: derived from config)
            cancel_event: Set it to stop taking new work

        Returns:
            IndexReport with per-path failures and skips

        Raises:
            NotFoundError / PolicyError: invalid root, policy or config
            SystemicError: vector store, embedder or LLM unreachable
        """
        start_time = time.monotonic()
        self.config.validate()
        root = Path(root).expanduser()
        if not root.is_dir():
            raise NotFoundError(root)
        root = root.resolve()
        policy = (policy or self.config.scan_policy()).validate()

        self._cancel_event = cancel_event or asyncio.Event()
        report = IndexReport(root=root)

        await self._check_services()

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 1: SCAN
        # ═══════════════════════════════════════════════════════════════════
        logger.info(f"Phase 1/5: Scanning {root}...")
        scan_result = await self._scanner.scan(root, policy)
        report.scanned = scan_result.total

        broken_folders = [f for f in scan_result.folders if f.has_error]
        for aggregate in broken_folders:
            report.record_failure(aggregate.path, "scan", aggregate.error)

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 2: HASH
        # ═══════════════════════════════════════════════════════════════════
        phase_start = time.monotonic()
        logger.info(f"Phase 2/5: Hashing {len(scan_result.files)} files...")

        hashed_files, hash_failures = await self._hasher.hash_files(scan_result.files)
        for failure in hash_failures:
            report.record_failure(failure.path, failure.stage, failure.reason)

        items: List[WorkItem] = [(record, None) for record in hashed_files]
        for aggregate in scan_result.folders:
            if aggregate.has_error:
                continue
            record = aggregate.as_record().with_hash(self._hasher.hash_folder(aggregate))
            items.append((record, aggregate))

        logger.info(f"Phase 2 complete in {time.monotonic() - phase_start:.1f}s")

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 3: STALENESS FILTER
        # ═══════════════════════════════════════════════════════════════════
        stale: List[WorkItem] = []
        for record, aggregate in items:
            if self._cache.is_current(record.path, record.content_hash):
                report.record_skip(Skipped(record.path, SkipReason.UNCHANGED))
            else:
                stale.append((record, aggregate))

        logger.info(
            f"Phase 3/5: {len(stale)} stale, {report.unchanged} unchanged"
        )

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 4: SUMMARIZE -> EMBED -> UPSERT
        # ═══════════════════════════════════════════════════════════════════
        if stale:
            await self._prepare_embeddings()
            if any(agg is None and self._summarizer.needs_llm(rec) for rec, agg in stale):
                await self._llm.ping()

            phase_start = time.monotonic()
            logger.info(
                f"Phase 4/5: Indexing {len(stale)} entries "
                f"with {self.config.worker_concurrency} workers..."
            )
            await self._run_workers(stale, report)
            logger.info(f"Phase 4 complete in {time.monotonic() - phase_start:.1f}s")
        else:
            logger.info("Phase 4/5: Skipped (nothing stale)")

        # ═══════════════════════════════════════════════════════════════════
        # PHASE 5: PRUNE
        # ═══════════════════════════════════════════════════════════════════
        if self.config.prune_missing and not report.cancelled:
            seen = {str(record.path) for record in scan_result.files}
            seen.update(str(aggregate.path) for aggregate in scan_result.folders)
            await self._prune(root, seen, [f.path for f in broken_folders], report)
        else:
            logger.info("Phase 5/5: Skipped (pruning disabled or run cancelled)")

        report.duration_seconds = time.monotonic() - start_time
        logger.info(f"Indexing complete: {report}")
        return report

    async def _check_services(self) -> None:
        """Fail fast when the vector store is unreachable."""
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._store.ping)

    async def _prepare_embeddings(self) -> None:
        """
        Load the embedding model and make sure the collection exists.

        Only runs when there is stale work, so an unchanged tree never loads
        the model.
        """
        loop = asyncio.get_running_loop()
        try:
            dimension = await loop.run_in_executor(None, lambda: self._embedder.dimension)
        except PerPathError as e:
            raise SystemicError(f"Embedding model unavailable: {e}") from e
        await loop.run_in_executor(None, self._store.ensure_collection, dimension)

    async def _run_workers(self, stale: List[WorkItem], report: IndexReport) -> None:
        queue: asyncio.Queue = asyncio.Queue()
        for item in stale:
            queue.put_nowait(item)

        cancel_event = self._cancel_event
        workers = [
            asyncio.create_task(self._worker(queue, cancel_event, report))
            for _ in range(min(self.config.worker_concurrency, len(stale)))
        ]
        try:
            await asyncio.gather(*workers)
        except BaseException:
            # Let the other workers finish their in-flight item, then re-raise.
            cancel_event.set()
            await asyncio.gather(*workers, return_exceptions=True)
            raise

        if cancel_event.is_set():
            report.cancelled = True
            report.pending = queue.qsize()
            logger.warning(f"Indexing cancelled with {report.pending} entries pending")

    async def _worker(
        self,
        queue: asyncio.Queue,
        cancel_event: asyncio.Event,
        report: IndexReport,
    ) -> None:
        while not cancel_event.is_set():
            try:
                record, aggregate = queue.get_nowait()
            except asyncio.QueueEmpty:
                return
            try:
                await self._process(record, aggregate, report)
            except (SystemicError, PolicyError):
                raise
            except PerPathError as e:
                handle_error(e, record.path, e.stage)
                report.record_failure(record.path, e.stage, str(e))
                await self._retire(record)
            except Exception as e:
                if handle_error(e, record.path, "index") is ErrorAction.ABORT:
                    raise
                report.record_failure(record.path, "index", f"{type(e).__name__}: {e}")
                await self._retire(record)

    async def _process(
        self,
        record: FileRecord,
        aggregate: Optional[FolderAggregate],
        report: IndexReport,
    ) -> None:
        """Summarize, embed and upsert one entry; the cache is written last."""
        if aggregate is not None:
            summary = self._summarizer.summarize_folder(aggregate, record.content_hash)
        else:
            result = await self._summarizer.summarize(record)
            if isinstance(result, Skipped):
                await self._handle_skip(record, result, report)
                return
            summary = result

        vector = await self._embedder.aembed(summary.text, record.path)
        entry = IndexEntry.build(summary, vector, record)
        await self._index.upsert(entry)

        self._cache.mark_indexed(record.path, record.content_hash, entry.point_id, record.kind.value)
        report.record_success()

    async def _handle_skip(self, record: FileRecord, skipped: Skipped, report: IndexReport) -> None:
        logger.debug(f"Skipped {skipped}")
        report.record_skip(skipped)
        if not skipped.cacheable:
            await self._retire(record)
            return

        previous = self._cache.get(record.path)
        if previous is not None and previous.point_id:
            # The file used to be indexed but no longer qualifies.
            await self._index.delete([previous.point_id])
        self._cache.mark_skipped(record.path, record.content_hash, record.kind.value)

    async def _retire(self, record: FileRecord) -> None:
        """
        Forget an entry whose current content could not be indexed.

        The stored summary describes content that no longer exists, so its
        point is deleted and the cache entry dropped; the next run retries.
        """
        previous = self._cache.get(record.path)
        if previous is None:
            return
        if previous.point_id:
            try:
                await self._index.delete([previous.point_id])
            except PerPathError as e:
                handle_error(e, record.path, "retire")
                return
        self._cache.remove([record.path])
        logger.debug(f"Retired outdated entry for {record.path}")

    async def _prune(
        self,
        root: Path,
        seen: set,
        unreadable: List[Path],
        report: IndexReport,
    ) -> None:
        """Remove cached entries under root that the scan no longer found."""
        missing = [
            entry for entry in self._cache.paths_under(root)
            if entry.path not in seen
            and not any(_is_within(Path(entry.path), folder) for folder in unreadable)
        ]
        if not missing:
            logger.info("Phase 5/5: Nothing to prune")
            return

        logger.info(f"Phase 5/5: Pruning {len(missing)} missing entries...")
        try:
            await self._index.delete([e.point_id for e in missing if e.point_id])
        except PerPathError as e:
            handle_error(e, root, "prune")
            report.record_failure(root, "prune", str(e))
            return
        report.removed = self._cache.remove(e.path for e in missing)

    async def search(self, query: str, top_k: Optional[int] = None) -> List[SearchResult]:
        """Hybrid search over everything indexed so far."""
        return await self._index.query(query, top_k)

    def cancel(self) -> None:
        """Stop the current run after in-flight entries finish."""
        if self._cancel_event is not None:
            self._cancel_event.set()

    async def status(self) -> dict:
        """Cache and collection counts."""
        return {
            "state_path": str(self._cache.db_path),
            "collection": self._store.collection_name,
            "cached": self._cache.count(),
            "indexed": self._cache.count(STATUS_INDEXED),
            "skipped": self._cache.count(STATUS_SKIPPED),
            "points": await self._index.count(),
        }

    async def aclose(self):
        """Clean up resources."""
        self._hasher.close()
        self._extractor.close()
        self._embedder.close()
        self._index.close()
        self._store.close()
        self._cache.close()
        await self._llm.aclose()


def _is_within(path: Path, folder: Path) -> bool:
    try:
        path.relative_to(folder)
        return True
    except ValueError:
        return False


async def run_index(
    root: Path,
    config: Optional[IndexerConfig] = None,
) -> IndexReport:
    """
    Convenience function to index one directory.

    Usage:
        report = await run_index(Path.home() / "Documents")
        print(report)
    """
    orchestrator = Orchestrator(config)
    try:
        return await orchestrator.index(root)
    finally:
        await orchestrator.aclose()
