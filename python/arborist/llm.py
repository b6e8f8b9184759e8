"""
LLM - Completion client for the summarizer.

Talks to an Ollama server over HTTP. Failures are classified so the
summarizer can tell what is worth retrying: timeouts, connection errors,
HTTP 429 and 5xx are transient; other rejections are not.
"""

import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx

from .config import get_config, IndexerConfig
from .errors import LlmRejectedError, LlmTransientError, SystemicError


logger = logging.getLogger(__name__)


class LlmClient(ABC):
    """Minimal completion interface the pipeline depends on."""

    @abstractmethod
    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        """
        Return the model's completion for prompt.

        Raises:
            LlmTransientError: worth retrying
            LlmRejectedError: the request itself was refused
        """
        pass

    async def ping(self) -> None:
        """Raise SystemicError when the service is unreachable."""
        return None

    async def aclose(self) -> None:
        return None


class OllamaClient(LlmClient):
    """Ollama /api/generate client (non-streaming)."""

    def __init__(
        self,
        config: IndexerConfig | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config or get_config()
        self.model = self.config.llm_model
        self._client = client or httpx.AsyncClient(
            base_url=self.config.llm_url,
            timeout=self.config.llm_timeout,
        )

    async def complete(self, prompt: str, system: Optional[str] = None) -> str:
        body = {"model": self.model, "prompt": prompt, "stream": False}
        if system:
            body["system"] = system

        try:
            resp = await self._client.post("/api/generate", json=body)
        except httpx.TimeoutException as e:
            raise LlmTransientError(f"LLM request timed out: {e}") from e
        except httpx.TransportError as e:
            raise LlmTransientError(f"LLM connection failed: {e}") from e

        if resp.status_code == 429 or resp.status_code >= 500:
            raise LlmTransientError(f"LLM returned HTTP {resp.status_code}")
        if resp.status_code >= 400:
            raise LlmRejectedError(
                f"LLM rejected request (HTTP {resp.status_code}): {resp.text[:200]}"
            )

        try:
            data = resp.json()
        except ValueError as e:
            raise LlmRejectedError(f"LLM returned invalid JSON: {e}") from e

        response = data.get("response") if isinstance(data, dict) else None
        if not isinstance(response, str):
            raise LlmRejectedError("LLM response has no 'response' field")
        return response.strip()

    async def ping(self) -> None:
        """Check the server answers /api/tags."""
        try:
            resp = await self._client.get("/api/tags", timeout=5.0)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise SystemicError(
                f"LLM service unreachable at {self.config.llm_url}: {e}"
            ) from e
        logger.debug(f"LLM service reachable at {self.config.llm_url} (model={self.model})")

    async def aclose(self) -> None:
        await self._client.aclose()
