"""
Data Models - Type definitions for the indexing pipeline.

These dataclasses represent the data flowing through the pipeline stages,
ensuring type safety and clear interfaces between modules.
"""

import math
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional


# Fixed namespace so point ids are identical across runs and machines.
POINT_NAMESPACE = uuid.UUID("6f1c8a52-3c1e-4f1a-9a57-2b7d3c0e8a10")


def point_id_for(path: Path | str) -> str:
    """Deterministic point identifier for an absolute path."""
    return str(uuid.uuid5(POINT_NAMESPACE, str(path)))


class EntryKind(Enum):
    """Type of scanned entry."""
    FILE = "file"
    FOLDER = "folder"


class SkipReason(Enum):
    """Why a record was not summarized (not an error)."""
    DIRECTORY = "directory"
    TOO_LARGE = "too_large"
    NO_EXTRACTOR = "no_extractor"
    EXTRACTION_FAILED = "extraction_failed"
    EMPTY_CONTENT = "empty_content"
    UNCHANGED = "unchanged"


@dataclass(frozen=True)
class FileRecord:
    """
    Basic entry information from the scanner.

    This is the lightest-weight representation, containing only
    what we get from stat() without reading file content. The content
    hash is attached later by the Hasher via with_hash().
    """
    path: Path
    kind: EntryKind
    size: int
    mtime: datetime
    extension: str = ""
    content_hash: Optional[str] = None
    summarizable: bool = True

    @property
    def name(self) -> str:
        return self.path.name

    @classmethod
    def from_stat(
        cls,
        path: Path,
        mtime: float,
        size: int,
        max_file_bytes: Optional[int] = None,
    ) -> "FileRecord":
        """Create a file record from a path and stat result."""
        return cls(
            path=path,
            kind=EntryKind.FILE,
            size=size,
            mtime=datetime.fromtimestamp(mtime),
            extension=path.suffix.lower(),
            summarizable=max_file_bytes is None or size <= max_file_bytes,
        )

    def with_hash(self, content_hash: str) -> "FileRecord":
        return replace(self, content_hash=content_hash)


@dataclass
class FolderAggregate:
    """Folder statistics derived from the records beneath it."""
    path: Path
    file_count: int = 0
    folder_count: int = 0
    total_size: int = 0
    extension_counts: Dict[str, int] = field(default_factory=dict)
    children: List[Path] = field(default_factory=list)
    mtime: Optional[datetime] = None
    error: Optional[str] = None

    @property
    def name(self) -> str:
        return self.path.name or str(self.path)

    @property
    def has_error(self) -> bool:
        return self.error is not None

    def absorb(self, child: "FolderAggregate") -> None:
        """Fold a sub-folder's totals into this one."""
        self.folder_count += 1 + child.folder_count
        self.file_count += child.file_count
        self.total_size += child.total_size
        for ext, count in child.extension_counts.items():
            self.extension_counts[ext] = self.extension_counts.get(ext, 0) + count

    def add_file(self, record: FileRecord) -> None:
        self.file_count += 1
        self.total_size += record.size
        ext = record.extension or "(none)"
        self.extension_counts[ext] = self.extension_counts.get(ext, 0) + 1

    def top_extensions(self, limit: int = 5) -> List[tuple]:
        """Extensions by descending count, ties broken alphabetically."""
        ranked = sorted(self.extension_counts.items(), key=lambda kv: (-kv[1], kv[0]))
        return ranked[:limit]

    def as_record(self) -> FileRecord:
        """The FileRecord that stands for this folder in the pipeline."""
        return FileRecord(
            path=self.path,
            kind=EntryKind.FOLDER,
            size=self.total_size,
            mtime=self.mtime or datetime.fromtimestamp(0),
        )


@dataclass
class ScanResult:
    """Result of scanning a directory tree."""
    root: Path
    files: List[FileRecord]
    folders: List[FolderAggregate]
    error_count: int = 0
    duration_seconds: float = 0.0

    @property
    def total(self) -> int:
        return len(self.files) + len(self.folders)


@dataclass
class Summary:
    """
    A generated description of one file or folder.

    Valid only while source_hash matches the record's current hash.
    """
    path: Path
    text: str
    source_hash: str
    kind: EntryKind = EntryKind.FILE
    generated_at: datetime = field(default_factory=datetime.now)


@dataclass
class Skipped:
    """A record that was deliberately not summarized."""
    path: Path
    reason: SkipReason
    detail: str = ""

    @property
    def cacheable(self) -> bool:
        """Extraction failures may be temporary, so they are retried next run."""
        return self.reason is not SkipReason.EXTRACTION_FAILED

    def __str__(self) -> str:
        suffix = f" ({self.detail})" if self.detail else ""
        return f"{self.path}: {self.reason.value}{suffix}"


@dataclass
class SparseVector:
    """Mapping from term index to non-negative weight."""
    indices: List[int] = field(default_factory=list)
    values: List[float] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.indices

    def as_dict(self) -> Dict[int, float]:
        return dict(zip(self.indices, self.values))

    def dot(self, other: "SparseVector") -> float:
        mine = self.as_dict()
        return math.fsum(mine[i] * v for i, v in zip(other.indices, other.values) if i in mine)


@dataclass
class DualVector:
    """Dense and sparse embeddings of the same text."""
    path: Path
    dense: List[float]
    sparse: SparseVector


@dataclass
class IndexEntry:
    """The persisted unit in the vector store."""
    point_id: str
    payload: Dict[str, Any]
    dense: List[float]
    sparse: SparseVector

    @classmethod
    def build(cls, summary: Summary, vector: DualVector, record: FileRecord) -> "IndexEntry":
        return cls(
            point_id=point_id_for(record.path),
            payload={
                "path": str(record.path),
                "name": record.name,
                "kind": record.kind.value,
                "summary": summary.text,
                "content_hash": summary.source_hash,
                "size": record.size,
                "extension": record.extension,
                "indexed_at": int(datetime.now().timestamp()),
            },
            dense=vector.dense,
            sparse=vector.sparse,
        )


@dataclass
class StoreHit:
    """One ranked hit from the vector store."""
    point_id: str
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)


@dataclass
class SearchResult:
    """One fused query result."""
    path: str
    score: float
    summary: str
    kind: str = EntryKind.FILE.value
    point_id: str = ""


@dataclass
class PathFailure:
    """A failure attributed to a single path."""
    path: Path
    stage: str
    reason: str

    def __str__(self) -> str:
        return f"{self.path} [{self.stage}]: {self.reason}"


@dataclass
class IndexReport:
    """Statistics from an indexing run."""
    root: Optional[Path] = None
    scanned: int = 0
    skipped: int = 0
    unchanged: int = 0     # Subset of skipped: cache hit
    summarized: int = 0
    failed: int = 0
    removed: int = 0       # Points pruned because the path disappeared
    pending: int = 0       # Never started because of cancellation
    cancelled: bool = False
    failures: List[PathFailure] = field(default_factory=list)
    skips: List[Skipped] = field(default_factory=list)
    duration_seconds: float = 0.0

    def record_skip(self, skipped: Skipped) -> None:
        self.skipped += 1
        if skipped.reason is SkipReason.UNCHANGED:
            self.unchanged += 1
        self.skips.append(skipped)

    def record_failure(self, path: Path, stage: str, reason: str) -> None:
        self.failed += 1
        self.failures.append(PathFailure(path=path, stage=stage, reason=reason))

    def record_success(self) -> None:
        self.summarized += 1

    @property
    def ok(self) -> bool:
        return self.failed == 0 and not self.cancelled

    def __str__(self) -> str:
        text = (
            f"Scanned {self.scanned} entries: "
            f"{self.summarized} summarized, "
            f"{self.skipped} skipped ({self.unchanged} unchanged), "
            f"{self.failed} failed, "
            f"{self.removed} removed "
            f"in {self.duration_seconds:.1f}s"
        )
        if self.cancelled:
            text += f" [cancelled, {self.pending} pending]"
        return text
