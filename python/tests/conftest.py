"""
Test Configuration - Shared fixtures for arborist tests.

Uses pytest fixtures to create isolated test environments: a temporary
tree, a throwaway state directory, an in-memory Qdrant collection, and
fakes for the LLM and the dense embedding model.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Callable, Generator, List, Optional

import numpy as np
import pytest
import pytest_asyncio
from qdrant_client import QdrantClient

from arborist.config import IndexerConfig, set_config
from arborist.embedder import Embedder, term_index, tokenize
from arborist.errors import SystemicError
from arborist.llm import LlmClient
from arborist.orchestrator import Orchestrator
from arborist.state import StateCache
from arborist.store import QdrantVectorStore


class FakeLlm(LlmClient):
    """
    Scriptable stand-in for the Ollama client.

    `script` holds exceptions raised by the first calls, in order; after it
    runs out every call succeeds. `fail_for` returns an exception to raise
    for a given prompt (or None), for failures tied to one file. With a
    `delay` each call sleeps, and `peak_in_flight` records how many calls
    overlapped at most.
    """

    def __init__(
        self,
        script: Optional[List[BaseException]] = None,
        fail_for: Optional[Callable[[str], Optional[BaseException]]] = None,
    ):
        self.script = list(script or [])
        self.fail_for = fail_for
        self.calls = 0
        self.prompts: List[str] = []
        self.reachable = True
        self.delay = 0.0
        self.in_flight = 0
        self.peak_in_flight = 0

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        self.calls += 1
        self.prompts.append(prompt)
        if self.delay:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            try:
                await asyncio.sleep(self.delay)
            finally:
                self.in_flight -= 1
        if self.script:
            raise self.script.pop(0)
        if self.fail_for is not None:
            error = self.fail_for(prompt)
            if error is not None:
                raise error
        content = prompt.split("File contents:\n", 1)[-1]
        return f"Summary: {' '.join(content.split())[:200]}"

    async def ping(self) -> None:
        if not self.reachable:
            raise SystemicError("LLM service unreachable")


class FakeDenseModel:
    """Deterministic bag-of-words encoder with the SentenceTransformer surface we use."""

    def __init__(self, dimension: int = 32):
        self.dimension = dimension
        self.calls = 0
        self.texts: List[str] = []

    def get_sentence_embedding_dimension(self) -> int:
        return self.dimension

    def encode(self, batch, convert_to_numpy=True, normalize_embeddings=True, show_progress_bar=False):
        self.calls += 1
        self.texts.extend(batch)
        out = np.zeros((len(batch), self.dimension), dtype=np.float32)
        for i, text in enumerate(batch):
            for token in tokenize(text) or ["empty"]:
                out[i, term_index(token) % self.dimension] += 1.0
            out[i] /= np.linalg.norm(out[i])
        return out


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files."""
    tmp = tempfile.mkdtemp(prefix="arborist_test_")
    # Resolve to handle macOS /var -> /private/var symlink
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def state_dir() -> Generator[Path, None, None]:
    """Keeps the state database out of the tree being indexed."""
    tmp = tempfile.mkdtemp(prefix="arborist_state_")
    resolved = Path(tmp).resolve()
    yield resolved
    shutil.rmtree(str(resolved), ignore_errors=True)


@pytest.fixture
def test_config(state_dir: Path) -> Generator[IndexerConfig, None, None]:
    """Create an isolated test configuration."""
    config = IndexerConfig(
        state_path=state_dir / "state.db",
        qdrant_path=":memory:",
        collection_name="test_files",
        worker_concurrency=2,
        hasher_concurrency=3,
        extractor_concurrency=2,
        embedder_batch_size=4,
        llm_max_attempts=3,
        retry_base_delay=0.001,
        retry_max_delay=0.004,
        llm_timeout=5.0,
    )
    set_config(config)
    yield config
    set_config(None)


@pytest.fixture
def sample_files(temp_dir: Path) -> dict[str, Path]:
    """Create sample files for testing."""
    files = {}

    # Text file
    txt = temp_dir / "sample.txt"
    txt.write_text("This is a sample text file.\nIt has multiple lines.\nFor testing purposes.")
    files["txt"] = txt

    # Markdown file
    md = temp_dir / "readme.md"
    md.write_text("# Test Readme\n\nThis is a markdown file about gardening.\n\n## Tomatoes\n\nWater daily.")
    files["md"] = md

    # Python file
    py = temp_dir / "script.py"
    py.write_text('"""A sample Python script."""\n\ndef hello():\n    print("Hello, world!")\n')
    files["py"] = py

    # Nested file
    nested_dir = temp_dir / "subdir" / "nested"
    nested_dir.mkdir(parents=True)
    nested = nested_dir / "deep.txt"
    nested.write_text("A deeply nested file about invoices.")
    files["nested"] = nested

    # Hidden file (should be skipped)
    hidden = temp_dir / ".hidden"
    hidden.write_text("This should be skipped.")
    files["hidden"] = hidden

    # Node modules dir (should be skipped)
    node_modules = temp_dir / "node_modules"
    node_modules.mkdir()
    (node_modules / "package.json").write_text('{"name": "test"}')
    files["node_modules"] = node_modules / "package.json"

    # No extractor for this one
    blob = temp_dir / "image.raw"
    blob.write_bytes(b"\x89RAW\x00\x01\x02")
    files["blob"] = blob

    return files


@pytest.fixture
def fake_llm() -> FakeLlm:
    return FakeLlm()


@pytest.fixture
def fake_model() -> FakeDenseModel:
    return FakeDenseModel()


@pytest.fixture
def embedder(test_config, fake_model) -> Generator[Embedder, None, None]:
    e = Embedder(test_config, model=fake_model)
    yield e
    e.close()


@pytest.fixture
def store() -> Generator[QdrantVectorStore, None, None]:
    """In-memory Qdrant collection."""
    s = QdrantVectorStore(QdrantClient(location=":memory:"), collection_name="test_files")
    yield s
    s.close()


@pytest.fixture
def cache(state_dir: Path) -> Generator[StateCache, None, None]:
    c = StateCache(state_dir / "cache.db")
    yield c
    c.close()


def make_orchestrator(
    config: IndexerConfig,
    llm: LlmClient,
    model: FakeDenseModel,
    **components,
) -> Orchestrator:
    """Orchestrator wired to fakes, an in-memory store and an on-disk cache."""
    parts = dict(
        embedder=Embedder(config, model=model),
        store=QdrantVectorStore(
            QdrantClient(location=":memory:"), collection_name=config.collection_name
        ),
        cache=StateCache(config.state_path),
    )
    parts.update(components)
    return Orchestrator(config, llm=llm, **parts)


@pytest_asyncio.fixture
async def orchestrator(test_config, fake_llm, fake_model):
    o = make_orchestrator(test_config, fake_llm, fake_model)
    yield o
    await o.aclose()
