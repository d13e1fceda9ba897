"""
Error Handling - Exception taxonomy and error policies.

Workflow errors (data source, model load, embedding, index) abort the
workflow that raised them and are surfaced through IndexStatus.error.
Query errors are routine and go straight back to the caller.
"""

import logging
from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional


logger = logging.getLogger(__name__)


class ErrorAction(Enum):
    """What to do when an error occurs."""
    SKIP = auto()    # Skip this item, continue processing
    ABORT = auto()   # Stop the running workflow


class NoteSearchError(Exception):
    """Base exception for the search engine."""
    pass


class DataSourceError(NoteSearchError):
    """The note database could not be opened or read."""
    pass


class ModelLoadError(NoteSearchError):
    """The embedding model could not be initialized."""
    pass


class ModelUnavailableError(ModelLoadError):
    """Model weights could not be fetched (offline first run, disk full...)."""
    pass


class EmbeddingError(NoteSearchError):
    """Error during embedding generation."""
    pass


class VectorIndexError(NoteSearchError):
    """Base class for vector index failures."""
    pass


class CapacityExceededError(VectorIndexError):
    """Insertion would exceed the index's preallocated capacity."""

    def __init__(self, capacity: int, requested: int):
        self.capacity = capacity
        self.requested = requested
        super().__init__(
            f"index capacity {capacity} exceeded (need {requested} slots)"
        )


class InvalidDimensionError(VectorIndexError):
    """Vector length does not match the index dimension."""

    def __init__(self, expected: int, actual: int):
        self.expected = expected
        self.actual = actual
        super().__init__(f"expected {expected}-dim vectors, got {actual}")


class CorruptIndexFileError(VectorIndexError):
    """Persisted index file is truncated or not an index."""
    pass


class IndexPersistenceError(VectorIndexError):
    """OS-level failure reading or writing the index file."""
    pass


class QueryError(NoteSearchError):
    """Expected, non-fatal query failure."""
    pass


class NotReadyError(QueryError):
    def __init__(self, message: str = "index_not_ready"):
        super().__init__(message)


class ModelNotLoadedError(QueryError):
    def __init__(self, message: str = "model_not_loaded"):
        super().__init__(message)


class NoteNotFoundError(QueryError):
    def __init__(self, note_id: str):
        self.note_id = note_id
        super().__init__(f"note_not_found: {note_id}")


@dataclass
class ErrorPolicy:
    """Policy for handling a specific error type."""
    action: ErrorAction
    log_level: int
    message_template: str = "{error}"


# Error type to policy mapping. Subclasses must precede their bases.
ERROR_POLICIES: dict[type, ErrorPolicy] = {
    DataSourceError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Failed to read note database: {error}",
    ),
    ModelUnavailableError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Embedding model unavailable: {error}",
    ),
    ModelLoadError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Failed to load embedding model: {error}",
    ),
    EmbeddingError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Embedding failed: {error}",
    ),
    CorruptIndexFileError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.WARNING,
        message_template="Saved index is corrupt: {error}",
    ),
    IndexPersistenceError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Failed to persist index: {error}",
    ),
    VectorIndexError: ErrorPolicy(
        action=ErrorAction.ABORT,
        log_level=logging.ERROR,
        message_template="Search index error: {error}",
    ),
    QueryError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.DEBUG,
        message_template="{error}",
    ),
    ValueError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Skipping malformed row: {error}",
    ),
    TypeError: ErrorPolicy(
        action=ErrorAction.SKIP,
        log_level=logging.WARNING,
        message_template="Skipping malformed row: {error}",
    ),
}

_DEFAULT_POLICY = ErrorPolicy(
    action=ErrorAction.ABORT,
    log_level=logging.ERROR,
    message_template="Unexpected error: {error}",
)


def _policy_for(error: Exception) -> ErrorPolicy:
    for error_type, policy in ERROR_POLICIES.items():
        if isinstance(error, error_type):
            return policy
    return _DEFAULT_POLICY


def describe_error(error: Exception) -> str:
    """Human-readable message for IndexStatus.error."""
    return _policy_for(error).message_template.format(error=str(error))


def handle_error(error: Exception, context: Optional[str] = None) -> ErrorAction:
    """
    Handle an error according to the defined policies.

    Args:
        error: The exception that occurred
        context: Workflow or stage name for logging

    Returns:
        The action to take (SKIP or ABORT)
    """
    policy = _policy_for(error)
    message = describe_error(error)
    if context:
        message = f"[{context}] {message}"

    logger.log(policy.log_level, message)
    return policy.action
