"""
Summarizer - Natural-language descriptions of files and folders.

Files: extract text, truncate it to a fixed budget, ask the LLM (with
retry and exponential backoff on transient failures).
Folders: describe the aggregate directly, no LLM call needed.
"""

import logging
from pathlib import Path
from typing import Union

from .config import get_config, IndexerConfig, SYSTEM_PROMPT
from .errors import (
    ExtractionError, LlmRejectedError, SummarizationError, TransientError, retry_async,
)
from .extractor import ContentExtractor
from .llm import LlmClient
from .models import EntryKind, FileRecord, FolderAggregate, Skipped, SkipReason, Summary


logger = logging.getLogger(__name__)

TRUNCATION_MARKER = "\n[... truncated ...]"


def truncate_text(text: str, limit: int) -> str:
    """Keep the head of text and mark the cut, staying within limit chars."""
    if len(text) <= limit:
        return text
    if limit <= len(TRUNCATION_MARKER):
        return text[:limit]
    return text[:limit - len(TRUNCATION_MARKER)] + TRUNCATION_MARKER


def format_size(size: int) -> str:
    """Human-readable byte count."""
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{int(value)} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{value:.1f} TB"


def describe_folder(aggregate: FolderAggregate, sample: int = 8) -> str:
    """Synthesize a folder summary from its aggregate fields."""
    parts = [
        f"Folder '{aggregate.name}' at {aggregate.path}.",
        f"It contains {aggregate.file_count} files in {aggregate.folder_count} subfolders, "
        f"{format_size(aggregate.total_size)} in total.",
    ]
    top = aggregate.top_extensions()
    if top:
        kinds = ", ".join(f"{ext} ({count})" for ext, count in top)
        parts.append(f"Most common file types: {kinds}.")
    if aggregate.children:
        names = [child.name for child in aggregate.children[:sample]]
        more = len(aggregate.children) - len(names)
        listing = ", ".join(names) + (f" and {more} more" if more > 0 else "")
        parts.append(f"Entries include: {listing}.")
    if aggregate.has_error:
        parts.append(f"The folder could not be read completely ({aggregate.error}).")
    return " ".join(parts)


class Summarizer:
    """
    Produces a Summary or a Skipped reason for each record.

    Skips are not errors. Hard failures raise SummarizationError.
    """

    def __init__(
        self,
        extractor: ContentExtractor,
        llm: LlmClient,
        config: IndexerConfig | None = None,
    ):
        self.config = config or get_config()
        self.extractor = extractor
        self.llm = llm
        self.system_prompt = SYSTEM_PROMPT

    def needs_llm(self, record: FileRecord) -> bool:
        """True when summarizing this record will call the LLM."""
        return (
            record.kind is EntryKind.FILE
            and record.summarizable
            and self.extractor.supports(record.extension)
        )

    async def summarize(self, record: FileRecord) -> Union[Summary, Skipped]:
        """
        Summarize one file.

        Raises:
            SummarizationError: the LLM rejected the request or retries ran out
        """
        if record.kind is EntryKind.FOLDER:
            return Skipped(record.path, SkipReason.DIRECTORY)
        if not record.summarizable:
            return Skipped(record.path, SkipReason.TOO_LARGE, f"{record.size} bytes")
        if not self.extractor.supports(record.extension):
            return Skipped(record.path, SkipReason.NO_EXTRACTOR, record.extension or "(none)")

        try:
            text = await self.extractor.extract_async(record.path)
        except ExtractionError as e:
            logger.debug(f"Extraction failed for {record.path}: {e}")
            return Skipped(record.path, SkipReason.EXTRACTION_FAILED, e.kind.value)

        if not text.strip():
            return Skipped(record.path, SkipReason.EMPTY_CONTENT)

        prompt = self.build_prompt(record.path, text)
        summary_text = await self._complete(record.path, prompt)

        logger.debug(f"Summarized {record.path} ({len(summary_text)} chars)")
        return Summary(
            path=record.path,
            text=summary_text,
            source_hash=record.content_hash or "",
            kind=EntryKind.FILE,
        )

    def summarize_folder(self, aggregate: FolderAggregate, content_hash: str) -> Summary:
        """Describe a folder from its aggregate; never calls the LLM."""
        return Summary(
            path=aggregate.path,
            text=describe_folder(aggregate),
            source_hash=content_hash,
            kind=EntryKind.FOLDER,
        )

    def build_prompt(self, path: Path, text: str) -> str:
        content = truncate_text(text.strip(), self.config.max_prompt_chars)
        return self.config.prompt_template.format(
            name=path.name,
            path=str(path),
            content=content,
        )

    async def _complete(self, path: Path, prompt: str) -> str:
        attempts = self.config.llm_max_attempts
        try:
            result = await retry_async(
                lambda: self.llm.complete(prompt, system=self.system_prompt),
                attempts=attempts,
                base_delay=self.config.retry_base_delay,
                max_delay=self.config.retry_max_delay,
                timeout=self.config.llm_timeout,
                label=str(path),
            )
        except LlmRejectedError as e:
            raise SummarizationError(str(e), path) from e
        except (TransientError, TimeoutError) as e:
            raise SummarizationError(
                f"gave up after {attempts} attempts: {e or type(e).__name__}",
                path,
                transient=True,
            ) from e

        if not result or not result.strip():
            raise SummarizationError("LLM returned an empty summary", path)
        return result.strip()
