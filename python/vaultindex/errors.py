"""
Error Handling - Centralized error policies and custom exceptions.

Every failure an indexing job can raise is mapped to one of two actions:
RETRY (transient: network, timeout, rate limit, 5xx) or FAIL (terminal:
bad credentials, malformed input, missing document). The Work Queue asks
this module what to do; it never inspects exceptions itself.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an indexing job fails."""
    RETRY = auto()   # Back off and put the item back in the queue
    FAIL = auto()    # Move the item to the failure ledger


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{key}: {error}"


class IndexingError(Exception):
    """Base exception for indexing errors."""
    retryable: bool = False


class TransientError(IndexingError):
    """Failure expected to go away on retry."""
    retryable = True


class TerminalError(IndexingError):
    """Failure that will not resolve without outside intervention."""
    retryable = False


class EmptyContentError(TerminalError):
    """Document has no indexable text after extraction."""
    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Document has no extractable text: {key}")


class EmbeddingProviderError(IndexingError):
    """Embedding provider answered with an error status."""
    def __init__(self, status_code: int, message: str = ""):
        self.status_code = status_code
        self.retryable = status_code == 429 or status_code >= 500
        detail = f": {message}" if message else ""
        super().__init__(f"Embedding provider error {status_code}{detail}")


class EmbeddingTimeoutError(TransientError):
    """Embedding request did not finish within the configured timeout."""
    def __init__(self, timeout_seconds: float):
        self.timeout_seconds = timeout_seconds
        super().__init__(f"Embedding request timed out after {timeout_seconds}s")


class ProviderNetworkError(TransientError):
    """Connection-level failure talking to the embedding provider."""
    pass


class MalformedResponseError(TerminalError):
    """Embedding provider returned a body we cannot use."""
    pass


class DimensionMismatchError(IndexingError, ValueError):
    """Vector length differs from the index dimension."""
    def __init__(self, expected: int, actual: int, key: Optional[str] = None):
        self.expected = expected
        self.actual = actual
        self.key = key
        where = f" for {key}" if key else ""
        super().__init__(
            f"Vector dimension mismatch{where}: expected {expected}, got {actual}"
        )


class SnapshotFormatError(IndexingError, ValueError):
    """Persisted snapshot cannot be restored by this version."""
    pass


# Error type to policy mapping, checked in order
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    DimensionMismatchError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.ERROR,
        message_template="Invariant violation: {key} - {error}"
    ),
    EmptyContentError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.INFO,
        message_template="Nothing to index: {key}"
    ),
    FileNotFoundError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.DEBUG,
        message_template="Document not found (possibly deleted): {key}"
    ),
    PermissionError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.WARNING,
        message_template="Permission denied: {key}"
    ),
    IsADirectoryError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.DEBUG,
        message_template="Expected document, got directory: {key}"
    ),
    UnicodeDecodeError: ErrorPolicy(
        action=ErrorAction.FAIL,
        log_level=logging.DEBUG,
        message_template="Cannot decode document (binary?): {key}"
    ),
    TimeoutError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Timed out: {key} - {error}"
    ),
    asyncio.TimeoutError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="Timed out: {key} - {error}"
    ),
    OSError: ErrorPolicy(
        action=ErrorAction.RETRY,
        log_level=logging.WARNING,
        message_template="I/O error: {key} - {error}"
    ),
}

_RETRY_POLICY = ErrorPolicy(
    action=ErrorAction.RETRY,
    log_level=logging.WARNING,
    message_template="Transient failure: {key} - {error}"
)

_FAIL_POLICY = ErrorPolicy(
    action=ErrorAction.FAIL,
    log_level=logging.ERROR,
    message_template="Failed: {key} - {error}"
)

# Messages from collaborators that only hand us a generic exception
_TRANSIENT_MESSAGE = re.compile(
    r"\b(429|50[0234])\b|too many requests|rate limit|timeout|timed out|network|connection",
    re.IGNORECASE,
)


def _policy_for(error: BaseException) -> ErrorPolicy:
    # Our own exceptions carry their classification
    if isinstance(error, IndexingError):
        for error_type, policy in ERROR_POLICIES.items():
            if issubclass(error_type, IndexingError) and isinstance(error, error_type):
                return policy
        return _RETRY_POLICY if error.retryable else _FAIL_POLICY

    for error_type, policy in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            return policy

    if _TRANSIENT_MESSAGE.search(str(error)):
        return _RETRY_POLICY
    return _FAIL_POLICY


def classify_error(error: BaseException) -> ErrorAction:
    """Return RETRY or FAIL for an exception without logging it."""
    return _policy_for(error).action


def handle_error(
    error: BaseException,
    key: Optional[str] = None,
    context: str = ""
) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        key: Document key being processed (if applicable)
        context: Additional context for logging

    Returns:
        The action to take (RETRY or FAIL)
    """
    policy = _policy_for(error)

    key_str = key if key else "<unknown>"
    message = policy.message_template.format(key=key_str, error=str(error))
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)

    return policy.action


def format_error(error: BaseException) -> str:
    """Short human-readable message for the failure ledger."""
    message = str(error)
    if not message:
        return type(error).__name__
    return message
