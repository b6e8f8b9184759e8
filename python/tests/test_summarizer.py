"""
Summarizer Tests - Skip rules, truncation, retry and folder descriptions.
"""

from datetime import datetime
from pathlib import Path

import pytest

from arborist.errors import LlmRejectedError, LlmTransientError, SummarizationError
from arborist.extractor import ContentExtractor
from arborist.hasher import Hasher
from arborist.models import EntryKind, FileRecord, FolderAggregate, Skipped, SkipReason, Summary
from arborist.summarizer import (
    TRUNCATION_MARKER, Summarizer, describe_folder, format_size, truncate_text,
)

from conftest import FakeLlm


def _record(path: Path, max_file_bytes=None) -> FileRecord:
    stat = path.stat()
    record = FileRecord.from_stat(path, stat.st_mtime, stat.st_size, max_file_bytes)
    return record.with_hash(Hasher().compute_hash(path))


@pytest.fixture
def make_summarizer(test_config):
    created = []

    def factory(llm: FakeLlm) -> Summarizer:
        extractor = ContentExtractor(test_config)
        created.append(extractor)
        return Summarizer(extractor, llm, test_config)

    yield factory
    for extractor in created:
        extractor.close()


class TestTruncation:

    def test_short_text_unchanged(self):
        assert truncate_text("hello", 100) == "hello"

    def test_long_text_marked(self):
        text = "x" * 500
        result = truncate_text(text, 100)

        assert len(result) == 100
        assert result.endswith(TRUNCATION_MARKER)

    def test_tiny_limit(self):
        assert truncate_text("abcdef", 3) == "abc"

    def test_prompt_respects_budget(self, test_config, temp_dir, make_summarizer):
        test_config.max_prompt_chars = 50
        summarizer = make_summarizer(FakeLlm())
        prompt = summarizer.build_prompt(temp_dir / "notes.txt", "word " * 1000)

        content = prompt.split("File contents:\n", 1)[1]
        assert len(content) == 50
        assert "notes.txt" in prompt


class TestSummarize:

    @pytest.mark.asyncio
    async def test_summarizes_text_file(self, sample_files, make_summarizer):
        llm = FakeLlm()
        record = _record(sample_files["md"])

        result = await make_summarizer(llm).summarize(record)

        assert isinstance(result, Summary)
        assert result.source_hash == record.content_hash
        assert result.kind is EntryKind.FILE
        assert "gardening" in result.text
        assert llm.calls == 1

    @pytest.mark.asyncio
    async def test_no_extractor_is_skipped(self, sample_files, make_summarizer):
        llm = FakeLlm()
        result = await make_summarizer(llm).summarize(_record(sample_files["blob"]))

        assert isinstance(result, Skipped)
        assert result.reason is SkipReason.NO_EXTRACTOR
        assert result.cacheable
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_too_large_is_skipped(self, sample_files, make_summarizer):
        llm = FakeLlm()
        result = await make_summarizer(llm).summarize(_record(sample_files["txt"], max_file_bytes=5))

        assert result.reason is SkipReason.TOO_LARGE
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_empty_file_is_skipped(self, temp_dir, make_summarizer):
        path = temp_dir / "empty.txt"
        path.write_text("   \n\n")
        llm = FakeLlm()

        result = await make_summarizer(llm).summarize(_record(path))

        assert result.reason is SkipReason.EMPTY_CONTENT
        assert llm.calls == 0

    @pytest.mark.asyncio
    async def test_extraction_failure_is_not_cacheable(self, temp_dir, make_summarizer):
        path = temp_dir / "broken.docx"
        path.write_bytes(b"garbage")

        result = await make_summarizer(FakeLlm()).summarize(_record(path))

        assert result.reason is SkipReason.EXTRACTION_FAILED
        assert result.detail == "corrupt"
        assert not result.cacheable

    @pytest.mark.asyncio
    async def test_folder_record_is_skipped(self, temp_dir, make_summarizer):
        record = FolderAggregate(path=temp_dir).as_record()

        result = await make_summarizer(FakeLlm()).summarize(record)

        assert result.reason is SkipReason.DIRECTORY

    @pytest.mark.asyncio
    async def test_retries_transient_failures(self, sample_files, make_summarizer):
        """Two transient failures then success: three calls, one summary."""
        llm = FakeLlm(script=[LlmTransientError("busy"), LlmTransientError("busy")])

        result = await make_summarizer(llm).summarize(_record(sample_files["txt"]))

        assert isinstance(result, Summary)
        assert llm.calls == 3

    @pytest.mark.asyncio
    async def test_gives_up_after_ceiling(self, sample_files, make_summarizer):
        llm = FakeLlm(script=[LlmTransientError("busy")] * 5)

        with pytest.raises(SummarizationError) as exc_info:
            await make_summarizer(llm).summarize(_record(sample_files["txt"]))

        assert exc_info.value.transient
        assert exc_info.value.stage == "summarize"
        assert exc_info.value.path == sample_files["txt"]
        assert llm.calls == 3

    @pytest.mark.asyncio
    async def test_rejection_is_not_retried(self, sample_files, make_summarizer):
        llm = FakeLlm(script=[LlmRejectedError("model not found")])

        with pytest.raises(SummarizationError) as exc_info:
            await make_summarizer(llm).summarize(_record(sample_files["txt"]))

        assert not exc_info.value.transient
        assert llm.calls == 1


class TestFolderDescription:

    def test_describe_folder(self, temp_dir):
        aggregate = FolderAggregate(
            path=temp_dir / "taxes",
            file_count=3,
            folder_count=1,
            total_size=2048,
            extension_counts={".pdf": 2, ".txt": 1},
            children=[temp_dir / "taxes" / "2023", temp_dir / "taxes" / "w2.pdf"],
        )

        text = describe_folder(aggregate)

        assert text.startswith(f"Folder 'taxes' at {temp_dir / 'taxes'}.")
        assert "3 files in 1 subfolders" in text
        assert "2.0 KB" in text
        assert ".pdf (2), .txt (1)" in text
        assert "2023, w2.pdf" in text

    def test_describe_folder_samples_children(self, temp_dir):
        children = [temp_dir / f"file{i}.txt" for i in range(12)]
        aggregate = FolderAggregate(path=temp_dir, file_count=12, children=children)

        assert "and 4 more" in describe_folder(aggregate, sample=8)

    def test_describe_flagged_folder(self, temp_dir):
        aggregate = FolderAggregate(path=temp_dir, error="PermissionError: Permission denied")

        assert "could not be read completely" in describe_folder(aggregate)

    def test_summarize_folder_uses_no_llm(self, temp_dir, make_summarizer):
        llm = FakeLlm()
        aggregate = FolderAggregate(path=temp_dir, mtime=datetime.now())

        summary = make_summarizer(llm).summarize_folder(aggregate, "abc123")

        assert summary.kind is EntryKind.FOLDER
        assert summary.source_hash == "abc123"
        assert llm.calls == 0

    @pytest.mark.parametrize("size, expected", [
        (0, "0 B"),
        (1023, "1023 B"),
        (1536, "1.5 KB"),
        (5 * 1024 * 1024, "5.0 MB"),
    ])
    def test_format_size(self, size, expected):
        assert format_size(size) == expected
