"""Exception taxonomy for the notes chat pipeline."""
from typing import Optional


class NoteChatError(Exception):
    """Base class for all pipeline errors."""


class UpstreamError(NoteChatError):
    """LLM or embedding provider unreachable, rejected the credential, or rate limited."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        retryable: bool = True,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retryable = retryable


class IndexUnavailableError(NoteChatError):
    """The vector store could not be reached or read."""

    retryable = True


class CollectionNotFoundError(IndexUnavailableError):
    """The named collection has never been built."""

    retryable = False

    def __init__(self, name: str):
        super().__init__(f"Collection not found: {name}. Run a reindex first.")
        self.name = name


class DimensionMismatchError(NoteChatError):
    """A vector's length disagrees with the collection's dimensionality."""

    def __init__(self, expected: int, actual: int):
        super().__init__(
            f"Embedding dimension mismatch: expected {expected}, got {actual}"
        )
        self.expected = expected
        self.actual = actual


class PartialIndexFailure(NoteChatError):
    """One or more documents failed during a reindex."""

    def __init__(self, stats):
        super().__init__(
            f"{stats.failed} document(s) failed to index "
            f"({stats.processed} processed, {stats.skipped} skipped)"
        )
        self.stats = stats


class StreamInterrupted(NoteChatError):
    """The answer stream ended abnormally after tokens had been emitted."""

    def __init__(self, partial_answer: str, message: str = "Answer stream interrupted"):
        super().__init__(message)
        self.partial_answer = partial_answer


class SessionClosedError(NoteChatError):
    """The chat session was closed and accepts no more input."""
