"""
Error taxonomy for the retrieval core.

Every error carries enough context (origin, chunk id, offsets, store
location) for a caller to localise the failure without reading internals.

    RagCoreError
      +-- ChunkingError               recoverable, per document
      +-- EmbeddingProviderError      retried while transient, then fatal for the batch
      +-- EmbedderNotConfiguredError  programming error
      +-- IndexNotBuiltError          fatal, caller-visible
      +-- UnsupportedStoreVersionError
      +-- StoreConfigError
      +-- StoreReadOnlyError
      +-- InvalidFilterError          fatal for that query only
      +-- OperationTimeoutError       also a builtin TimeoutError
"""
from __future__ import annotations

from typing import Any, Optional


class RagCoreError(Exception):
    """Base class for every error raised by ragcore."""


class ChunkingError(RagCoreError):
    """A document could not be split into chunks (e.g. unterminated code fence)."""

    def __init__(
        self,
        message: str,
        origin: Optional[str] = None,
        offset: Optional[int] = None,
        end_offset: Optional[int] = None,
    ) -> None:
        self.origin = origin
        self.offset = offset
        self.end_offset = end_offset
        where = []
        if origin is not None:
            where.append(f"origin={origin!r}")
        if offset is not None:
            span = f"{offset}" if end_offset is None else f"{offset}-{end_offset}"
            where.append(f"offset={span}")
        suffix = f" ({', '.join(where)})" if where else ""
        super().__init__(f"{message}{suffix}")


class EmbeddingProviderError(RagCoreError):
    """The embedding provider failed (network, rate limit, auth, bad output)."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        transient: bool = False,
        batch_start: Optional[int] = None,
        batch_end: Optional[int] = None,
        attempts: int = 0,
    ) -> None:
        self.provider = provider
        self.transient = transient
        self.batch_start = batch_start
        self.batch_end = batch_end
        self.attempts = attempts
        self.message = message
        super().__init__(message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.provider:
            parts.append(f"provider={self.provider}")
        if self.batch_start is not None:
            parts.append(f"texts[{self.batch_start}:{self.batch_end}]")
        if self.attempts:
            parts.append(f"attempts={self.attempts}")
        return " | ".join(parts)


class EmbedderNotConfiguredError(RagCoreError, RuntimeError):
    """An operation needs an embedding provider but the store has none."""


class IndexNotBuiltError(RagCoreError):
    """The store was queried before build_index() ever ran."""

    def __init__(self, location: Any) -> None:
        self.location = location
        super().__init__(
            f"No index has been built for store {location}. Call build_index() first."
        )


class UnsupportedStoreVersionError(RagCoreError):
    """The persisted store (or index manifest) uses an incompatible layout."""

    def __init__(self, location: Any, found: Any, supported: Any) -> None:
        self.location = location
        self.found = found
        self.supported = supported
        super().__init__(
            f"Unsupported store format at {location}: found version {found!r}, "
            f"this build reads version {supported!r}"
        )


class StoreConfigError(RagCoreError):
    """The store's immutable configuration conflicts with what the caller passed."""


class StoreReadOnlyError(RagCoreError):
    """A write was attempted on a store opened read-only."""


class InvalidFilterError(RagCoreError, ValueError):
    """A retrieval filter expression is unknown or malformed."""

    def __init__(self, message: str, expression: Any = None) -> None:
        self.expression = expression
        suffix = f": {expression!r}" if expression is not None else ""
        super().__init__(f"{message}{suffix}")


class OperationTimeoutError(RagCoreError, TimeoutError):
    """An embedding or index-build operation exceeded its timeout."""

    def __init__(self, operation: str, timeout: float) -> None:
        self.operation = operation
        self.timeout = timeout
        super().__init__(f"{operation} did not finish within {timeout:.1f}s")
