"""
Hasher - Fast content hashing using xxHash.

Uses xxHash instead of SHA256 for much faster hashing. Hashes raw file
bytes only; text extraction is handled separately by the extractor, and
only for files whose hash says they changed.
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import List, Tuple

import xxhash

from .config import get_config, IndexerConfig
from .errors import handle_error
from .models import FileRecord, FolderAggregate, PathFailure


logger = logging.getLogger(__name__)

BLOCK_SIZE = 65536


class Hasher:
    """
    Fast content hasher using xxHash.

    File hashes are computed in a thread pool; folder hashes are computed
    from the aggregate's own fields, so a folder is stale exactly when its
    synthesized description would change.
    """

    def __init__(self, config: IndexerConfig | None = None):
        self.config = config or get_config()
        self._executor: ThreadPoolExecutor | None = None

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.hasher_concurrency,
                thread_name_prefix="hasher"
            )
        return self._executor

    async def hash_files(
        self,
        records: List[FileRecord],
    ) -> Tuple[List[FileRecord], List[PathFailure]]:
        """
        Hash multiple files in parallel.

        Args:
            records: Scanned file records (without hashes)

        Returns:
            (records with content_hash set, failures for unreadable files)
        """
        if not records:
            return [], []

        loop = asyncio.get_running_loop()
        executor = self._get_executor()

        tasks = [
            loop.run_in_executor(executor, self.compute_hash, record.path)
            for record in records
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        hashed: List[FileRecord] = []
        failures: List[PathFailure] = []
        for record, result in zip(records, results):
            if isinstance(result, BaseException):
                handle_error(result, record.path, "hash_file")
                failures.append(PathFailure(
                    path=record.path,
                    stage="hash",
                    reason=f"{type(result).__name__}: {result}",
                ))
            else:
                hashed.append(record.with_hash(result))

        logger.info(f"Hashed {len(hashed)} files ({len(failures)} unreadable)")
        return hashed, failures

    def compute_hash(self, path: Path) -> str:
        """Compute the xxh64 digest of a file's bytes (runs in thread pool)."""
        hasher = xxhash.xxh64()

        # Read in 64KB chunks for memory efficiency
        with open(path, "rb") as f:
            while chunk := f.read(BLOCK_SIZE):
                hasher.update(chunk)

        return hasher.hexdigest()

    def hash_folder(self, aggregate: FolderAggregate) -> str:
        """Hash the fields a folder description is built from."""
        hasher = xxhash.xxh64()
        parts = [
            str(aggregate.path),
            str(aggregate.file_count),
            str(aggregate.folder_count),
            str(aggregate.total_size),
            aggregate.error or "",
        ]
        parts.extend(f"{ext}={count}" for ext, count in sorted(aggregate.extension_counts.items()))
        parts.extend(str(child) for child in aggregate.children)
        hasher.update("\n".join(parts).encode("utf-8", errors="surrogateescape"))
        return hasher.hexdigest()

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None


async def hash_files(
    records: List[FileRecord],
    config: IndexerConfig | None = None,
) -> Tuple[List[FileRecord], List[PathFailure]]:
    """
    Convenience function to hash files.

    Usage:
        hashed, failures = await hash_files(scan_result.files)
        print(f"{len(hashed)} hashed, {len(failures)} unreadable")
    """
    hasher = Hasher(config)
    try:
        return await hasher.hash_files(records)
    finally:
        hasher.close()
