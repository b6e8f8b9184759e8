"""
Embedder - Dense and sparse vectors for summaries and queries.

Dense vectors come from a sentence-transformers model (lazy-loaded, ONNX
backend when enabled and available). Sparse vectors are lexical term
weights over hashed tokens, so exact names and identifiers in a query can
match summaries even when the dense model misses them.
"""

import asyncio
import logging
import math
import re
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import xxhash

from .config import get_config, IndexerConfig
from .errors import EmbeddingServiceError
from .models import DualVector, SparseVector


logger = logging.getLogger(__name__)

_WORD_RE = re.compile(r"[A-Za-z0-9]+")
_CAMEL_RE = re.compile(r"[A-Z]+(?=[A-Z][a-z])|[A-Z]?[a-z]+|[A-Z]+|\d+")

STOPWORDS = {
    "a", "an", "and", "are", "as", "at", "be", "by", "for", "from", "has",
    "in", "is", "it", "its", "of", "on", "or", "that", "the", "this", "to",
    "was", "were", "with", "which", "file", "contains",
}


def tokenize(text: str) -> List[str]:
    """
    Lower-cased lexical tokens.

    Identifiers are split on camelCase and digit boundaries (underscores
    already separate words); the joined form is kept as well so exact
    identifiers still match.
    """
    tokens: List[str] = []
    for word in _WORD_RE.findall(text):
        lowered = word.lower()
        parts = [p.lower() for p in _CAMEL_RE.findall(word)]
        if len(parts) > 1:
            tokens.append(lowered)
            tokens.extend(parts)
        else:
            tokens.append(lowered)
    return [t for t in tokens if len(t) > 1 and t not in STOPWORDS]


def term_index(token: str) -> int:
    """Stable 31-bit term index for a token."""
    return xxhash.xxh32_intdigest(token.encode("utf-8")) & 0x7FFFFFFF


def sparse_encode(text: str) -> SparseVector:
    """Sublinear term-frequency weights (1 + ln tf) over hashed tokens."""
    weights: Dict[int, float] = {}
    for token, tf in Counter(tokenize(text)).items():
        idx = term_index(token)
        weights[idx] = weights.get(idx, 0.0) + 1.0 + math.log(tf)
    indices = sorted(weights)
    return SparseVector(indices=indices, values=[weights[i] for i in indices])


class Embedder:
    """
    Batch embedding generator.

    Features:
    - Lazy model loading (device picked from cuda / mps / cpu)
    - Optional ONNX Runtime backend
    - Batch processing with per-text result correspondence
    - Dense and sparse halves always computed from the same text
    """

    def __init__(
        self,
        config: IndexerConfig | None = None,
        model: Any = None,
    ):
        self.config = config or get_config()
        self._model = model
        self._dimension: Optional[int] = None
        self._executor: ThreadPoolExecutor | None = None

    def _get_model(self):
        """Lazy-load the embedding model."""
        if self._model is None:
            try:
                from sentence_transformers import SentenceTransformer
                import torch
            except ImportError as e:
                raise EmbeddingServiceError(f"Embedding backend not installed: {e}") from e

            device = "cpu"
            if torch.cuda.is_available():
                device = "cuda"
            elif torch.backends.mps.is_available():
                device = "mps"

            backend = "torch"
            if self.config.use_onnx:
                try:
                    import onnxruntime  # noqa: F401
                    backend = "onnx"
                except ImportError:
                    logger.warning(
                        "onnxruntime not installed. Using PyTorch. "
                        "Install with: pip install onnxruntime"
                    )

            try:
                self._model = SentenceTransformer(
                    self.config.dense_model,
                    device=device,
                    backend=backend,
                )
            except Exception as e:
                raise EmbeddingServiceError(
                    f"Cannot load embedding model {self.config.dense_model}: {e}"
                ) from e
            logger.info(f"Loaded {backend} model {self.config.dense_model} on {device}")
        return self._model

    @property
    def dimension(self) -> int:
        """Get embedding dimension (loads model if needed)."""
        if self._dimension is None:
            self._dimension = int(self._get_model().get_sentence_embedding_dimension())
        return self._dimension

    def embed_dense(self, texts: Sequence[str]) -> np.ndarray:
        """
        Embed multiple texts in batches.

        Returns:
            NumPy array of shape (len(texts), dimension), L2-normalised
        """
        if not texts:
            return np.zeros((0, self.dimension), dtype=np.float32)

        model = self._get_model()
        batch_size = self.config.embedder_batch_size
        all_embeddings = []

        try:
            for i in range(0, len(texts), batch_size):
                batch = list(texts[i:i + batch_size])
                embeddings = model.encode(
                    batch,
                    convert_to_numpy=True,
                    normalize_embeddings=True,  # Better for cosine similarity
                    show_progress_bar=False,
                )
                all_embeddings.append(np.asarray(embeddings, dtype=np.float32))
        except Exception as e:
            raise EmbeddingServiceError(f"Dense embedding failed: {e}") from e

        result = np.vstack(all_embeddings)
        if result.shape[0] != len(texts):
            raise EmbeddingServiceError(
                f"Embedding backend returned {result.shape[0]} vectors for {len(texts)} texts"
            )
        return result

    def embed_sparse(self, text: str) -> SparseVector:
        return sparse_encode(text)

    def embed_many(
        self,
        texts: Sequence[str],
        paths: Sequence[Path],
    ) -> List[DualVector]:
        """Embed texts in one batch; result i belongs to texts[i]."""
        if len(texts) != len(paths):
            raise ValueError("texts and paths must have the same length")
        dense = self.embed_dense(texts)
        return [
            DualVector(path=path, dense=row.tolist(), sparse=self.embed_sparse(text))
            for text, path, row in zip(texts, paths, dense)
        ]

    def embed(self, text: str, path: Path | str = "") -> DualVector:
        """Embed a single text."""
        return self.embed_many([text], [Path(path)])[0]

    def _get_executor(self) -> ThreadPoolExecutor:
        # One thread: the model is shared and inference is already batched.
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="embedder")
        return self._executor

    async def aembed_many(self, texts: Sequence[str], paths: Sequence[Path]) -> List[DualVector]:
        """embed_many() in the embedder thread, bounded by embed_timeout."""
        loop = asyncio.get_running_loop()
        timeout = self.config.embed_timeout
        try:
            return await asyncio.wait_for(
                loop.run_in_executor(self._get_executor(), self.embed_many, texts, paths),
                timeout=timeout,
            )
        except asyncio.TimeoutError as e:
            raise EmbeddingServiceError(f"Embedding timed out after {timeout}s") from e

    async def aembed(self, text: str, path: Path | str = "") -> DualVector:
        return (await self.aembed_many([text], [Path(path)]))[0]

    def close(self):
        """Shutdown the thread pool."""
        if self._executor:
            self._executor.shutdown(wait=False)
            self._executor = None
