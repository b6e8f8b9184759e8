"""
Indexing Configuration - Centralized settings for Arborist.

Settings come from dataclass defaults, an optional TOML file
(~/.config/arborist/config.toml) and ARBORIST_* environment variables,
in that order of precedence (env wins). All paths are resolved to
absolute paths for reliability.
"""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Optional, Set

from .errors import PolicyError


DEFAULT_CONFIG_PATH = Path.home() / ".config" / "arborist" / "config.toml"

DEFAULT_PROMPT_TEMPLATE = (
    "Summarize the contents of the file '{name}' in two or three sentences. "
    "Describe what it is about and what it is for.\n\n"
    "File contents:\n{content}"
)

SYSTEM_PROMPT = "You are a helpful assistant who summarizes file contents."


@dataclass
class ScanPolicy:
    """Inclusion/exclusion rules applied while walking a tree."""

    skip_hidden: bool = True
    excluded_names: Set[str] = field(default_factory=set)
    skip_extensions: Set[str] = field(default_factory=set)
    max_file_bytes: Optional[int] = None
    max_depth: Optional[int] = None

    def validate(self) -> "ScanPolicy":
        if self.max_file_bytes is not None and self.max_file_bytes < 0:
            raise PolicyError(f"max_file_bytes must be >= 0, got {self.max_file_bytes}")
        if self.max_depth is not None and self.max_depth < 0:
            raise PolicyError(f"max_depth must be >= 0, got {self.max_depth}")
        self.skip_extensions = {_normalize_extension(e) for e in self.skip_extensions}
        return self


def _normalize_extension(ext: str) -> str:
    ext = ext.strip().lower()
    return ext if ext.startswith(".") else f".{ext}"


@dataclass
class IndexerConfig:
    """
    Configuration for the indexing system.

    State defaults to the ~/.arborist directory.
    Concurrency limits are tuned for a local LLM and a local Qdrant.
    """

    # --- Paths ---
    state_path: Path = field(default_factory=lambda: Path.home() / ".arborist" / "state.db")

    # --- Vector store ---
    qdrant_url: str = "http://localhost:6333"
    qdrant_api_key: Optional[str] = None
    qdrant_path: Optional[str] = None   # embedded store (":memory:" or a directory)
    collection_name: str = "file_data"
    dense_vector_name: str = "dense"
    sparse_vector_name: str = "sparse"
    store_timeout: float = 30.0

    # --- Embedding ---
    dense_model: str = "all-MiniLM-L6-v2"
    use_onnx: bool = False
    embedder_batch_size: int = 64
    embed_timeout: float = 60.0

    # --- LLM ---
    llm_url: str = "http://localhost:11434"
    llm_model: str = "gemma2:2b"
    llm_timeout: float = 120.0
    llm_max_attempts: int = 3
    retry_base_delay: float = 0.5
    retry_max_delay: float = 8.0
    max_prompt_chars: int = 6000
    prompt_template: str = DEFAULT_PROMPT_TEMPLATE

    # --- Concurrency Limits ---
    worker_concurrency: int = 4      # summarize -> embed -> upsert workers
    hasher_concurrency: int = 16     # Parallel xxHash operations
    extractor_concurrency: int = 8   # Parallel text extraction (pdftotext, etc.)
    extract_timeout: float = 60.0    # Per-file parse limit

    # --- Skip Patterns ---
    skip_hidden: bool = True
    skip_dirs: Set[str] = field(default_factory=lambda: {
        # Version control
        ".git", ".svn", ".hg",
        # Dependencies
        "node_modules", "__pycache__", ".venv", "venv",
        # Build outputs
        "build", "dist", "target", ".next",
        # IDE/Editor
        ".idea", ".vscode",
        # Cache
        ".cache", ".mypy_cache", ".pytest_cache",
        "downloaded-torrents",
    })
    skip_extensions: Set[str] = field(default_factory=lambda: {
        ".lock", ".lockb", ".pyc", ".o",
    })
    max_file_bytes: Optional[int] = 50 * 1024 * 1024
    max_depth: Optional[int] = 10

    # --- Query ---
    top_k: int = 5
    overfetch_factor: int = 4
    rrf_k: int = 60

    # --- Pipeline ---
    prune_missing: bool = True

    def __post_init__(self):
        """Ensure paths are absolute and the state directory exists."""
        self.state_path = Path(self.state_path).expanduser().resolve()
        self.state_path.parent.mkdir(parents=True, exist_ok=True)

    def validate(self) -> "IndexerConfig":
        """Reject settings the pipeline cannot run with."""
        positive = (
            "worker_concurrency", "hasher_concurrency", "extractor_concurrency",
            "embedder_batch_size", "llm_max_attempts", "max_prompt_chars",
            "top_k", "overfetch_factor",
        )
        for name in positive:
            value = getattr(self, name)
            if value < 1:
                raise PolicyError(f"{name} must be >= 1, got {value}")
        if self.rrf_k < 0:
            raise PolicyError(f"rrf_k must be >= 0, got {self.rrf_k}")
        for name in ("llm_timeout", "store_timeout", "extract_timeout", "embed_timeout"):
            if getattr(self, name) <= 0:
                raise PolicyError(f"{name} must be positive, got {getattr(self, name)}")
        if "{content}" not in self.prompt_template:
            raise PolicyError("prompt_template must contain a {content} placeholder")
        try:
            self.prompt_template.format(name="", path="", content="")
        except (KeyError, IndexError, ValueError) as e:
            raise PolicyError(
                f"prompt_template may only use {{name}}, {{path}} and {{content}} "
                f"(double literal braces): {type(e).__name__}: {e}"
            ) from e
        return self

    def scan_policy(self) -> ScanPolicy:
        """Build the ScanPolicy described by this config."""
        return ScanPolicy(
            skip_hidden=self.skip_hidden,
            excluded_names=set(self.skip_dirs),
            skip_extensions=set(self.skip_extensions),
            max_file_bytes=self.max_file_bytes,
            max_depth=self.max_depth,
        ).validate()

    @classmethod
    def from_toml(cls, path: Path) -> "IndexerConfig":
        """
        Create config from a TOML file.

        Keys may sit at the top level or inside the [scan], [llm],
        [embedding], [store], [query] and [pipeline] tables; table names are
        only for grouping.
        """
        try:
            with open(path, "rb") as f:
                data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            raise PolicyError(f"Cannot read config file {path}: {e}") from e

        flat: dict = {}
        for key, value in data.items():
            if isinstance(value, dict):
                flat.update(value)
            else:
                flat[key] = value

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(flat) - known)
        if unknown:
            raise PolicyError(f"Unknown config keys in {path}: {', '.join(unknown)}")

        for key in ("skip_dirs", "skip_extensions"):
            if key in flat:
                flat[key] = set(flat[key])
        return cls(**flat)

    @classmethod
    def from_env(cls, base: "IndexerConfig | None" = None) -> "IndexerConfig":
        """
        Create config from environment variables.

        Supported env vars:
            ARBORIST_STATE_PATH: Path to the staleness cache database
            QDRANT_URL / QDRANT_API_KEY: Vector store endpoint
            ARBORIST_QDRANT_PATH: Embedded Qdrant location
            ARBORIST_COLLECTION: Collection name
            ARBORIST_LLM_URL / ARBORIST_LLM_MODEL: Ollama endpoint and model
            ARBORIST_DENSE_MODEL: sentence-transformers model name
            ARBORIST_WORKERS: Parallel summarize/embed/upsert workers
            ARBORIST_TOP_K: Default number of query results
        """
        config = base or cls()

        if state_path := os.environ.get("ARBORIST_STATE_PATH"):
            config.state_path = Path(state_path)

        if url := os.environ.get("QDRANT_URL"):
            config.qdrant_url = url

        if api_key := os.environ.get("QDRANT_API_KEY"):
            config.qdrant_api_key = api_key

        if qdrant_path := os.environ.get("ARBORIST_QDRANT_PATH"):
            config.qdrant_path = qdrant_path

        if collection := os.environ.get("ARBORIST_COLLECTION"):
            config.collection_name = collection

        if llm_url := os.environ.get("ARBORIST_LLM_URL"):
            config.llm_url = llm_url

        if llm_model := os.environ.get("ARBORIST_LLM_MODEL"):
            config.llm_model = llm_model

        if dense_model := os.environ.get("ARBORIST_DENSE_MODEL"):
            config.dense_model = dense_model

        try:
            if workers := os.environ.get("ARBORIST_WORKERS"):
                config.worker_concurrency = int(workers)

            if top_k := os.environ.get("ARBORIST_TOP_K"):
                config.top_k = int(top_k)
        except ValueError as e:
            raise PolicyError(f"Invalid integer in environment: {e}") from e

        config.__post_init__()
        return config

    @classmethod
    def load(cls, config_path: Path | None = None) -> "IndexerConfig":
        """
        Load configuration from a file (explicit path or the default
        location when it exists), then apply environment overrides.
        """
        if config_path is not None:
            base = cls.from_toml(Path(config_path).expanduser())
        elif DEFAULT_CONFIG_PATH.exists():
            base = cls.from_toml(DEFAULT_CONFIG_PATH)
        else:
            base = cls()
        return cls.from_env(base).validate()


# Singleton default config
_default_config: IndexerConfig | None = None


def get_config() -> IndexerConfig:
    """Get the default configuration (singleton)."""
    global _default_config
    if _default_config is None:
        _default_config = IndexerConfig.load()
    return _default_config


def set_config(config: IndexerConfig | None) -> None:
    """Override the default configuration (for testing)."""
    global _default_config
    _default_config = config
