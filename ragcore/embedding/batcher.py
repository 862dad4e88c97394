"""
Embedding Batcher
------------------
Runs an EmbeddingProvider over many texts with:
  - Batching (config.batch_size texts per provider call)
  - A bounded worker pool (config.max_workers concurrent calls)
  - Retry with exponential backoff via tenacity, for transient failures only
  - Response validation (one finite vector per text, one fixed dimension)
  - An overall timeout, after which OperationTimeoutError is raised

Completed batches are handed to `on_batch` in the calling thread as they
finish, so the store can persist progress even if a later batch fails.
"""
from __future__ import annotations

import threading
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from typing import Callable, Optional, Sequence

import numpy as np
from langsmith import traceable
from loguru import logger
from tenacity import (
    RetryCallState,
    Retrying,
    retry_if_exception,
    stop_after_attempt,
    stop_after_delay,
    wait_exponential,
)

from ragcore.config import EmbeddingConfig
from ragcore.embedding.embedder import EmbeddingProvider
from ragcore.errors import EmbeddingProviderError, OperationTimeoutError

BatchCallback = Callable[[int, np.ndarray], None]


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, EmbeddingProviderError) and exc.transient


def _log_retry(state: RetryCallState) -> None:
    exc = state.outcome.exception() if state.outcome else None
    sleep = state.next_action.sleep if state.next_action else 0.0
    logger.warning(
        f"[Embedder] Attempt {state.attempt_number} failed ({exc}); retrying in {sleep:.1f}s"
    )


class EmbeddingBatcher:
    """
    Concurrent, retrying front-end for an EmbeddingProvider.

    Args:
        provider:  The embedding backend.
        config:    Batch size, worker count, retry budget and timeout.
        dimension: Expected vector length, if already known (e.g. recorded
                   in store metadata). Learned from the first batch otherwise.
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        config: Optional[EmbeddingConfig] = None,
        dimension: Optional[int] = None,
    ) -> None:
        self.provider = provider
        self.config = config or EmbeddingConfig()
        self.dimension = dimension if dimension is not None else provider.dimensions
        self.total_api_calls = 0
        self.total_texts = 0
        self._calls_lock = threading.Lock()

    # --- Public API -------------------------------------------------------------

    @traceable(name="embed_texts", run_type="embedding")
    def embed(
        self,
        texts: Sequence[str],
        on_batch: Optional[BatchCallback] = None,
        timeout: Optional[float] = None,
    ) -> np.ndarray:
        """
        Embed `texts` and return an (N, dim) float32 array in input order.

        Raises:
            EmbeddingProviderError: a batch failed after the retry budget.
            OperationTimeoutError:  the whole call exceeded `timeout`
                                    (defaults to config.timeout).
        """
        timeout = self.config.timeout if timeout is None else timeout
        texts = list(texts)
        if not texts:
            return np.empty((0, self.dimension or 0), dtype=np.float32)

        size = self.config.batch_size
        batches = [(i, texts[i: i + size]) for i in range(0, len(texts), size)]
        deadline = None if timeout is None else time.monotonic() + timeout
        results: dict[int, np.ndarray] = {}

        executor = ThreadPoolExecutor(
            max_workers=min(self.config.max_workers, len(batches)),
            thread_name_prefix="ragcore-embed",
        )
        try:
            pending = {
                executor.submit(self._embed_batch, start, batch, deadline): start
                for start, batch in batches
            }
            while pending:
                remaining = None if deadline is None else deadline - time.monotonic()
                if remaining is not None and remaining <= 0:
                    raise OperationTimeoutError("Embedding", timeout)
                done, _ = wait(pending, timeout=remaining, return_when=FIRST_COMPLETED)
                if not done:
                    raise OperationTimeoutError("Embedding", timeout)
                for fut in sorted(done, key=lambda f: pending[f]):
                    start = pending.pop(fut)
                    vectors = fut.result()
                    self._check_dimension(vectors, start)
                    results[start] = vectors
                    if on_batch is not None:
                        on_batch(start, vectors)
        finally:
            executor.shutdown(wait=False, cancel_futures=True)

        self.total_texts += len(texts)
        return np.vstack([results[start] for start, _ in batches]).astype(np.float32)

    def embed_query(self, text: str, timeout: Optional[float] = None) -> np.ndarray:
        """Embed a single query string. Returns a (dim,) float32 array."""
        return self.embed([text], timeout=timeout)[0]

    # --- Internals --------------------------------------------------------------

    def _embed_batch(
        self, start: int, texts: list[str], deadline: Optional[float]
    ) -> np.ndarray:
        stop = stop_after_attempt(self.config.max_attempts)
        if deadline is not None:
            stop = stop | stop_after_delay(max(0.0, deadline - time.monotonic()))
        retryer = Retrying(
            stop=stop,
            wait=wait_exponential(
                multiplier=self.config.backoff_min,
                min=self.config.backoff_min,
                max=self.config.backoff_max,
            ),
            retry=retry_if_exception(_is_transient),
            before_sleep=_log_retry,
            reraise=True,
        )

        attempts = 0
        began = time.perf_counter()
        try:
            for attempt in retryer:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    with self._calls_lock:
                        self.total_api_calls += 1
                    raw = self.provider.embed(texts)
        except EmbeddingProviderError as exc:
            exc.batch_start = start
            exc.batch_end = start + len(texts)
            exc.attempts = attempts
            exc.provider = exc.provider or self.provider.name
            logger.error(f"[Embedder] Giving up on batch: {exc}")
            raise

        vectors = self._validate(raw, start, len(texts))
        logger.debug(
            f"[Embedder] Batch texts[{start}:{start + len(texts)}] | "
            f"{attempts} attempt(s) | {time.perf_counter() - began:.2f}s"
        )
        return vectors

    def _validate(self, raw: Sequence[Sequence[float]], start: int, n: int) -> np.ndarray:
        def fail(msg: str) -> EmbeddingProviderError:
            return EmbeddingProviderError(
                msg, provider=self.provider.name, batch_start=start, batch_end=start + n
            )

        if len(raw) != n:
            raise fail(f"Provider returned {len(raw)} vectors for {n} texts")
        try:
            matrix = np.asarray(raw, dtype=np.float32)
        except ValueError as exc:
            raise fail(f"Provider returned ragged vectors: {exc}") from exc
        if matrix.ndim != 2 or matrix.shape[1] == 0:
            raise fail(f"Provider returned malformed vectors of shape {matrix.shape}")
        if not np.all(np.isfinite(matrix)):
            raise fail("Provider returned non-finite values")
        return matrix

    def _check_dimension(self, vectors: np.ndarray, start: int) -> None:
        dim = int(vectors.shape[1])
        if self.dimension is None:
            self.dimension = dim
        elif dim != self.dimension:
            raise EmbeddingProviderError(
                f"Provider returned {dim}-dim vectors, expected {self.dimension}",
                provider=self.provider.name,
                batch_start=start,
                batch_end=start + len(vectors),
            )
