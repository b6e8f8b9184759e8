"""
Scanner - Deterministic file system traversal.

Walks one root depth-first with os.scandir, applying the ScanPolicy, and
builds folder aggregates bottom-up from the files beneath them. The walk
itself is sequential (it is cheap and order-sensitive) and runs in a worker
thread so the event loop stays responsive.
"""

import asyncio
import logging
import os
import time
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List

from .config import get_config, IndexerConfig, ScanPolicy
from .errors import handle_error, NotFoundError
from .models import FileRecord, FolderAggregate, ScanResult


logger = logging.getLogger(__name__)

# OS clutter that never carries content
SYSTEM_FILES = {".DS_Store", "Thumbs.db", "desktop.ini"}


@dataclass
class _WalkState:
    files: List[FileRecord] = field(default_factory=list)
    folders: List[FolderAggregate] = field(default_factory=list)
    errors: int = 0


class Scanner:
    """
    File system scanner.

    Produces a FileRecord for every included file and a FolderAggregate for
    every visited directory. Unreadable directories are flagged, never fatal.
    """

    def __init__(self, config: IndexerConfig | None = None):
        self.config = config or get_config()

    async def scan(self, root: Path, policy: ScanPolicy | None = None) -> ScanResult:
        """
        Scan a directory tree.

        Args:
            root: Directory to scan; must exist
            policy: Inclusion rules (default: derived from config)

        Returns:
            ScanResult with files and folders sorted by path

        Raises:
            NotFoundError: root is missing or not a directory
        """
        root = Path(root).expanduser()
        if not root.is_dir():
            raise NotFoundError(root)
        root = root.resolve()
        policy = (policy or self.config.scan_policy()).validate()

        start_time = time.monotonic()
        loop = asyncio.get_running_loop()
        state = await loop.run_in_executor(None, self.walk, root, policy)

        duration = time.monotonic() - start_time
        logger.info(
            f"Scanned {len(state.files)} files in {len(state.folders)} folders "
            f"({state.errors} errors) in {duration:.1f}s"
        )

        return ScanResult(
            root=root,
            files=sorted(state.files, key=lambda r: str(r.path)),
            folders=sorted(state.folders, key=lambda f: str(f.path)),
            error_count=state.errors,
            duration_seconds=duration,
        )

    def walk(self, root: Path, policy: ScanPolicy) -> _WalkState:
        """Synchronous walk (runs in a worker thread)."""
        state = _WalkState()
        self._scan_directory(root, 0, policy, state)
        return state

    def _scan_directory(
        self,
        directory: Path,
        depth: int,
        policy: ScanPolicy,
        state: _WalkState,
    ) -> FolderAggregate:
        """Recursively scan one directory and return its aggregate."""
        aggregate = FolderAggregate(path=directory)

        try:
            aggregate.mtime = datetime.fromtimestamp(
                os.stat(directory, follow_symlinks=False).st_mtime
            )
            with os.scandir(directory) as it:
                entries = sorted(it, key=lambda e: e.name)
        except OSError as e:
            handle_error(e, directory, "scan_directory")
            aggregate.error = f"{type(e).__name__}: {e.strerror or e}"
            state.errors += 1
            state.folders.append(aggregate)
            return aggregate

        for entry in entries:
            if self._is_hidden(entry.name, policy):
                continue
            try:
                if entry.is_symlink():
                    logger.debug(f"Not following symlink: {entry.path}")
                    continue

                if entry.is_dir(follow_symlinks=False):
                    if entry.name in policy.excluded_names:
                        continue
                    child_path = Path(entry.path)
                    aggregate.children.append(child_path)
                    if policy.max_depth is not None and depth + 1 > policy.max_depth:
                        continue
                    child = self._scan_directory(child_path, depth + 1, policy, state)
                    aggregate.absorb(child)

                elif entry.is_file(follow_symlinks=False):
                    if self._should_skip_file(entry.name, policy):
                        continue
                    stat = entry.stat(follow_symlinks=False)
                    record = FileRecord.from_stat(
                        path=Path(entry.path),
                        mtime=stat.st_mtime,
                        size=stat.st_size,
                        max_file_bytes=policy.max_file_bytes,
                    )
                    state.files.append(record)
                    aggregate.children.append(record.path)
                    aggregate.add_file(record)

            except OSError as e:
                handle_error(e, Path(entry.path), "scan_entry")
                state.errors += 1
                continue

        state.folders.append(aggregate)
        return aggregate

    def _is_hidden(self, name: str, policy: ScanPolicy) -> bool:
        return policy.skip_hidden and name.startswith(".")

    def _should_skip_file(self, name: str, policy: ScanPolicy) -> bool:
        """Check if a file should be left out of the scan entirely."""
        if name in SYSTEM_FILES:
            return True

        ext = Path(name).suffix.lower()
        return ext in policy.skip_extensions


async def scan_directory(
    root: Path,
    policy: ScanPolicy | None = None,
    config: IndexerConfig | None = None,
) -> ScanResult:
    """
    Convenience function to scan a directory.

    Usage:
        result = await scan_directory(Path.home() / "Documents")
        for record in result.files:
            print(record.path)
    """
    scanner = Scanner(config)
    return await scanner.scan(root, policy)
