"""
Extractor - Text extraction from various file formats.

Uses the pdftotext CLI for PDFs when available (much faster than pypdf),
python-docx for Word documents, python-pptx for slide decks, openpyxl for
spreadsheets and a plain decode for text and source files. Each format
lives behind a BaseExtractor; ContentExtractor routes a path to the
extractor registered for its extension.
"""

import asyncio
import logging
import shutil
import subprocess
from abc import ABC, abstractmethod
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Dict, Iterable, Optional, Set

import openpyxl
from docx import Document
from pptx import Presentation
from pypdf import PdfReader

from .config import get_config, IndexerConfig
from .errors import ExtractionError, ExtractionFailure


logger = logging.getLogger(__name__)


# Check for pdftotext availability at module load
_PDFTOTEXT_AVAILABLE = shutil.which("pdftotext") is not None
if not _PDFTOTEXT_AVAILABLE:
    logger.debug("pdftotext not found; PDF extraction will use pypdf")


class BaseExtractor(ABC):
    """
    Base class for all format extractors.

    To add a new format:
    1. Create a class extending BaseExtractor
    2. Implement supported_extensions and extract
    3. Pass it to ContentExtractor (or add it to default_extractors)
    """

    @property
    @abstractmethod
    def supported_extensions(self) -> Set[str]:
        """File extensions this extractor handles, including the dot."""
        pass

    @abstractmethod
    def read(self, path: Path) -> str:
        """Return the text of the file; may raise any parser error."""
        pass

    def extract(self, path: Path) -> str:
        """
        Extract plain text, translating failures into ExtractionError.

        Missing or inaccessible files are UNREADABLE; anything the parser
        chokes on is CORRUPT.
        """
        try:
            return self.read(path)
        except ExtractionError:
            raise
        except OSError as e:
            raise ExtractionError(ExtractionFailure.UNREADABLE, path, str(e)) from e
        except Exception as e:
            raise ExtractionError(
                ExtractionFailure.CORRUPT, path, f"{type(e).__name__}: {e}"
            ) from e


class PdfExtractor(BaseExtractor):
    """Extracts text from PDF using pdftotext (fast) or pypdf (fallback)."""

    timeout: float = 30.0

    @property
    def supported_extensions(self) -> Set[str]:
        return {".pdf"}

    def read(self, path: Path) -> str:
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        if _PDFTOTEXT_AVAILABLE:
            text = self._read_cli(path)
            if text is not None:
                return text
        return self._read_pypdf(path)

    def _read_cli(self, path: Path) -> Optional[str]:
        """Extract PDF text using the pdftotext CLI; None means use pypdf."""
        try:
            result = subprocess.run(
                ["pdftotext", "-layout", "-nopgbrk", str(path), "-"],
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"pdftotext timeout for {path.name}")
            return None
        if result.returncode != 0:
            logger.debug(f"pdftotext failed for {path.name}: {result.stderr.strip()}")
            return None
        return result.stdout.strip()

    def _read_pypdf(self, path: Path) -> str:
        reader = PdfReader(str(path))
        text_parts = []
        for page in reader.pages:
            if text := page.extract_text():
                text_parts.append(text)
        return "\n".join(text_parts)


class DocxExtractor(BaseExtractor):
    """Extracts paragraph text from Word documents."""

    @property
    def supported_extensions(self) -> Set[str]:
        return {".docx"}

    def read(self, path: Path) -> str:
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        doc = Document(str(path))
        return "\n".join(p.text for p in doc.paragraphs if p.text)


class PptxExtractor(BaseExtractor):
    """Extracts the text frames of every slide, in slide order."""

    @property
    def supported_extensions(self) -> Set[str]:
        return {".pptx"}

    def read(self, path: Path) -> str:
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        prs = Presentation(str(path))
        parts = []
        for slide in prs.slides:
            for shape in slide.shapes:
                if shape.has_text_frame and shape.text_frame.text:
                    parts.append(shape.text_frame.text)
        return "\n".join(parts)


class XlsxExtractor(BaseExtractor):
    """
    Extracts cell values sheet by sheet.

    Each row becomes one tab-separated line under a "# Sheet: <title>"
    header. Reading stops after max_cells non-empty cells.
    """

    max_cells: int = 5000

    @property
    def supported_extensions(self) -> Set[str]:
        return {".xlsx"}

    def read(self, path: Path) -> str:
        if not path.is_file():
            raise FileNotFoundError(f"No such file: {path}")
        wb = openpyxl.load_workbook(str(path), read_only=True, data_only=True)
        lines = []
        remaining = self.max_cells
        try:
            for ws in wb.worksheets:
                if remaining <= 0:
                    break
                lines.append(f"# Sheet: {ws.title}")
                for row in ws.iter_rows(values_only=True):
                    cells = [str(v) for v in row if v is not None and str(v).strip()]
                    if not cells:
                        continue
                    cells = cells[:remaining]
                    lines.append("\t".join(cells))
                    remaining -= len(cells)
                    if remaining <= 0:
                        break
        finally:
            wb.close()
        return "\n".join(lines)


class PlainTextExtractor(BaseExtractor):
    """Reads text, markup, data and source files."""

    extensions = {
        # Documents and markup
        ".txt", ".md", ".markdown", ".rst", ".org", ".tex", ".bib",
        ".html", ".htm", ".xml", ".csv", ".tsv", ".log",
        # Data and config
        ".json", ".yaml", ".yml", ".toml", ".ini", ".cfg", ".conf",
        # Code
        ".py", ".js", ".ts", ".tsx", ".jsx", ".css", ".scss",
        ".sh", ".bash", ".zsh", ".sql", ".r", ".swift",
        ".java", ".c", ".cpp", ".h", ".hpp", ".go", ".rs", ".rb", ".kt",
    }

    @property
    def supported_extensions(self) -> Set[str]:
        return self.extensions

    def read(self, path: Path) -> str:
        data = path.read_bytes()
        if b"\x00" in data[:8192]:
            raise ExtractionError(ExtractionFailure.CORRUPT, path, "binary content")
        return data.decode("utf-8", errors="replace")


def default_extractors() -> list:
    return [
        PdfExtractor(), DocxExtractor(), PptxExtractor(), XlsxExtractor(), PlainTextExtractor(),
    ]


class ContentExtractor:
    """
    Routes a path to the extractor registered for its extension.

    Blocking parsers run in a bounded thread pool via extract_async().
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        extractors: Iterable[BaseExtractor] | None = None,
    ):
        self.config = config or get_config()
        self._registry: Dict[str, BaseExtractor] = {}
        self._executor: ThreadPoolExecutor | None = None
        for extractor in extractors if extractors is not None else default_extractors():
            self.register(extractor)

    def register(self, extractor: BaseExtractor) -> None:
        """Register an extractor; later registrations win per extension."""
        for ext in extractor.supported_extensions:
            self._registry[ext.lower()] = extractor

    def supports(self, extension: str) -> bool:
        return extension.lower() in self._registry

    @property
    def extensions(self) -> Set[str]:
        return set(self._registry)

    def extract(self, path: Path) -> str:
        """
        Extract plain text from a file.

        Raises:
            ExtractionError: unsupported_type, corrupt or unreadable
        """
        path = Path(path)
        extractor = self._registry.get(path.suffix.lower())
        if extractor is None:
            raise ExtractionError(ExtractionFailure.UNSUPPORTED_TYPE, path)
        text = extractor.extract(path)
        logger.debug(f"Extracted {len(text)} chars from {path.name}")
        return text

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.config.extractor_concurrency,
                thread_name_prefix="extractor"
            )
        return self._executor

    async def extract_async(self, path: Path) -> str:
        """
        Run extract() in the extractor thread pool.

        A parse that outlasts extract_timeout is reported as UNREADABLE; the
        worker thread finishes in the background.
        """
        loop = asyncio.get_running_loop()
        timeout = self.config.extract_timeout
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._get_executor(), self.extract, path),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise ExtractionError(
                ExtractionFailure.UNREADABLE, Path(path), f"timed out after {timeout}s"
            ) from e

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
