"""
Arborist - Summarize a directory tree with a local LLM and search it.

Modules:
    - config: Centralized configuration (defaults, TOML, environment)
    - scanner: File system traversal with folder aggregates
    - hasher: xxHash content hashing (staleness detection)
    - extractor: Text extraction (pdftotext CLI, pypdf, docx, plain text)
    - llm: Ollama completion client
    - summarizer: File and folder summaries
    - embedder: Dense (sentence-transformers) + sparse (lexical) vectors
    - store: Qdrant collection with named dense and sparse vectors
    - hybrid: Hybrid query with reciprocal rank fusion
    - state: SQLite staleness cache
    - orchestrator: Main entry point

Flow:
    Scan → Hash (xxHash) → Filter (state cache) → Summarize → Embed → Upsert

Usage:
    from arborist import Orchestrator

    orchestrator = Orchestrator()
    report = await orchestrator.index(Path.home() / "Documents")
    results = await orchestrator.search("quarterly tax receipts")
"""

from .orchestrator import Orchestrator, run_index

__all__ = ["Orchestrator", "run_index"]
