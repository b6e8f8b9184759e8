"""
Errors - Exception taxonomy, handling policies and retry with backoff.

Every failure is classified once here; the orchestrator decides from the
class alone whether to abort the run or record it against a path. Retrying
is left to retry_async, whose ceiling comes from the caller's config.

Taxonomy:
    SystemicError  - a collaborator is unreachable; aborts the run
    PolicyError    - invalid root or configuration; fatal at the call
    TransientError - timeout / rate limit; retried, then demoted
    PerPathError   - scoped to one path; recorded in the IndexReport
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum, auto
from pathlib import Path
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar


logger = logging.getLogger(__name__)

T = TypeVar("T")


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()    # Record against this path, continue processing
    ABORT = auto()   # Stop the entire pipeline


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{file}: {error}"


class ArboristError(Exception):
    """Base exception for indexing errors."""
    pass


class SystemicError(ArboristError):
    """A collaborator (vector store, LLM) is unreachable."""
    pass


class PolicyError(ArboristError):
    """Invalid root path or configuration."""
    pass


class NotFoundError(PolicyError):
    """Scan root does not exist or is not a directory."""
    def __init__(self, path: Path):
        self.path = path
        super().__init__(f"Not a directory: {path}")


class TransientError(ArboristError):
    """Timeout or rate limiting; worth retrying."""
    pass


class LlmTransientError(TransientError):
    """LLM endpoint timed out, throttled or returned a server error."""
    pass


class LlmRejectedError(ArboristError):
    """LLM endpoint refused the request; retrying will not help."""
    pass


class PerPathError(ArboristError):
    """Failure scoped to a single path."""
    stage = "index"

    def __init__(self, message: str, path: Optional[Path] = None):
        self.path = path
        super().__init__(message)


class ExtractionFailure(Enum):
    """Why text could not be extracted from a file."""
    UNSUPPORTED_TYPE = "unsupported_type"
    CORRUPT = "corrupt"
    UNREADABLE = "unreadable"


class ExtractionError(PerPathError):
    """Text extraction failed."""
    stage = "extract"

    def __init__(self, kind: ExtractionFailure, path: Path, detail: str = ""):
        self.kind = kind
        self.detail = detail
        message = f"{kind.value}: {path}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message, path)


class SummarizationError(PerPathError):
    """The LLM could not produce a summary."""
    stage = "summarize"

    def __init__(self, message: str, path: Optional[Path] = None, transient: bool = False):
        self.transient = transient
        super().__init__(message, path)


class EmbeddingServiceError(PerPathError):
    """The embedding backend is unavailable or failed."""
    stage = "embed"


class VectorStoreError(PerPathError):
    """A vector store operation failed."""
    stage = "upsert"


# Error type to policy mapping (first match wins, so subclasses go first)
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    SystemicError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Service unavailable: {error}"
    ),
    PolicyError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Invalid configuration: {error}"
    ),
    TransientError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.INFO,
        message_template="Transient failure for {file}: {error}"
    ),
    asyncio.TimeoutError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.INFO,
        message_template="Timed out: {file}"
    ),
    ExtractionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot extract text from {file}: {error}"
    ),
    PerPathError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="{file}: {error}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Permission denied: {file}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="File not found (possibly deleted): {file}"
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="Cannot decode file (binary?): {file}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="OS error reading file: {file} - {error}"
    ),
}


def get_policy(error: BaseException) -> ErrorPolicy:
    """Look up the policy for this error type (or its base classes)."""
    for error_type, policy in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            return policy
    return ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.ERROR,
        message_template="Unexpected error: {file} - {error}"
    )


def handle_error(
    error: BaseException,
    file_path: Optional[Path] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        file_path: Path to the file being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (SKIP or ABORT)
    """
    policy = get_policy(error)

    file_str = str(file_path) if file_path else "<unknown>"
    message = policy.message_template.format(file=file_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action


async def retry_async(
    fn: Callable[[], Awaitable[T]],
    *,
    attempts: int,
    base_delay: float,
    max_delay: float,
    timeout: Optional[float] = None,
    retry_on: Tuple[Type[BaseException], ...] = (TransientError, asyncio.TimeoutError),
    label: str = "",
) -> T:
    """
    Await fn() until it succeeds, retrying transient failures.

    The delay before retry n (1-based) is base_delay * 2**(n-1), capped at
    max_delay. Each attempt is bounded by timeout; a timeout counts as a
    transient failure. The last transient error is re-raised once the
    attempt ceiling is reached; any other exception propagates immediately.
    """
    attempt = 0
    while True:
        attempt += 1
        try:
            if timeout is None:
                return await fn()
            return await asyncio.wait_for(fn(), timeout=timeout)
        except retry_on as e:
            if attempt >= attempts:
                raise
            delay = min(max_delay, base_delay * (2 ** (attempt - 1)))
            handle_error(e, Path(label) if label else None, f"retry {attempt}/{attempts}")
            await asyncio.sleep(delay)
