"""
Embedding providers
--------------------
A provider maps a batch of texts to fixed-dimension float vectors:

    provider.embed(["text a", "text b"]) -> [[...], [...]]

Concrete providers:
  - OpenAIEmbedder    hosted API (text-embedding-3-small by default)
  - OllamaEmbedder    local model server over HTTP
  - HashingEmbedder   deterministic, offline feature hashing
  - CallableEmbedder  wraps any user function

Each provider describes itself with spec(), a JSON-serialisable dict the
store records at creation time and uses to rebuild the provider on connect.
Failures surface as EmbeddingProviderError with `transient` set when a retry
may succeed (rate limits, timeouts, 5xx).
"""
from __future__ import annotations

import hashlib
import os
import re
import unicodedata
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Sequence

import httpx
import numpy as np
import openai
from loguru import logger
from openai import OpenAI

from ragcore.errors import EmbeddingProviderError

OPENAI_MODEL = "text-embedding-3-small"
OPENAI_DIMENSIONS = 1536
OLLAMA_MODEL = "nomic-embed-text"
OLLAMA_HOST = "http://localhost:11434"
HASHING_DIMENSIONS = 256


class EmbeddingProvider(ABC):
    """Interface every embedding backend implements."""

    name: str = "provider"

    @property
    @abstractmethod
    def dimensions(self) -> Optional[int]:
        """Vector length, or None when only known after the first call."""

    @abstractmethod
    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        """Embed a batch. Must return one vector per input text, in order."""

    @abstractmethod
    def spec(self) -> dict[str, Any]:
        """Immutable identity recorded in store metadata."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.spec()})"


# --- Hosted: OpenAI -------------------------------------------------------------

class OpenAIEmbedder(EmbeddingProvider):
    """
    OpenAI embeddings API.

    Rate limits, connection problems, timeouts and 5xx responses are
    transient; authentication and bad requests are not.
    """

    name = "openai"

    def __init__(
        self,
        model: str = OPENAI_MODEL,
        dimensions: Optional[int] = None,
        api_key: Optional[str] = None,
        timeout: float = 60.0,
    ) -> None:
        self.model = model
        self._dimensions = dimensions
        self._api_key = api_key
        self._timeout = timeout
        self._client: Optional[OpenAI] = None

    def _get_client(self) -> OpenAI:
        # Created lazily so a keyword-only session never needs an API key
        if self._client is None:
            try:
                self._client = OpenAI(
                    api_key=self._api_key or os.getenv("OPENAI_API_KEY"),
                    timeout=self._timeout,
                    max_retries=0,  # retries are handled by EmbeddingBatcher
                )
            except openai.OpenAIError as exc:
                raise EmbeddingProviderError(str(exc), provider=self.name) from exc
        return self._client

    @property
    def dimensions(self) -> Optional[int]:
        if self._dimensions is not None:
            return self._dimensions
        return OPENAI_DIMENSIONS if self.model == OPENAI_MODEL else None

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        # The API rejects empty strings
        safe_texts = [t if t.strip() else " " for t in texts]
        kwargs: dict[str, Any] = {"model": self.model, "input": safe_texts}
        if self._dimensions is not None:
            kwargs["dimensions"] = self._dimensions
        try:
            response = self._get_client().embeddings.create(**kwargs)
        except (
            openai.RateLimitError,
            openai.APIConnectionError,
            openai.APITimeoutError,
            openai.InternalServerError,
        ) as exc:
            raise EmbeddingProviderError(str(exc), provider=self.name, transient=True) from exc
        except openai.OpenAIError as exc:
            raise EmbeddingProviderError(str(exc), provider=self.name, transient=False) from exc

        logger.debug(
            f"[Embedder] openai | {len(texts)} texts | {response.usage.total_tokens} tokens"
        )
        return [item.embedding for item in sorted(response.data, key=lambda x: x.index)]

    def spec(self) -> dict[str, Any]:
        return {"provider": self.name, "model": self.model, "dimensions": self._dimensions}


# --- Local: Ollama --------------------------------------------------------------

class OllamaEmbedder(EmbeddingProvider):
    """Local Ollama server, /api/embed endpoint (batched input)."""

    name = "ollama"

    def __init__(
        self,
        model: str = OLLAMA_MODEL,
        host: Optional[str] = None,
        timeout: float = 120.0,
        dimensions: Optional[int] = None,
    ) -> None:
        self.model = model
        self.host = (host or os.getenv("OLLAMA_HOST", OLLAMA_HOST)).rstrip("/")
        if not re.match(r"^https?://", self.host):
            self.host = "http://" + self.host
        self.timeout = timeout
        self._dimensions = dimensions

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            r = httpx.post(
                f"{self.host}/api/embed",
                json={"model": self.model, "input": list(texts)},
                timeout=self.timeout,
            )
            r.raise_for_status()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise EmbeddingProviderError(
                f"Ollama returned HTTP {status}",
                provider=self.name,
                transient=status == 429 or status >= 500,
            ) from exc
        except httpx.TransportError as exc:
            raise EmbeddingProviderError(str(exc), provider=self.name, transient=True) from exc

        data = r.json() or {}
        embeddings = data.get("embeddings")
        if not isinstance(embeddings, list):
            raise EmbeddingProviderError(
                "Ollama response has no 'embeddings' list", provider=self.name
            )
        return embeddings

    def spec(self) -> dict[str, Any]:
        return {"provider": self.name, "model": self.model, "dimensions": self._dimensions}


# --- Offline: feature hashing ---------------------------------------------------

_TOKEN_RE = re.compile(r"[^\W_]+")


class HashingEmbedder(EmbeddingProvider):
    """
    Deterministic bag-of-words feature hashing (signed, L2-normalised).

    No model download and no network, so the same text always gives the same
    vector on every machine. Texts that share words get similar vectors.
    """

    name = "hashing"

    def __init__(self, dimensions: int = HASHING_DIMENSIONS) -> None:
        if dimensions <= 0:
            raise ValueError("dimensions must be positive")
        self._dimensions = dimensions

    @property
    def dimensions(self) -> int:
        return self._dimensions

    def _vector(self, text: str) -> np.ndarray:
        vec = np.zeros(self._dimensions, dtype=np.float32)
        for token in _TOKEN_RE.findall(unicodedata.normalize("NFKC", text).casefold()):
            digest = hashlib.blake2b(token.encode("utf-8"), digest_size=8).digest()
            h = int.from_bytes(digest, "little")
            sign = 1.0 if (h >> 63) & 1 == 0 else -1.0
            vec[h % self._dimensions] += sign
        norm = np.linalg.norm(vec)
        if norm > 0:
            vec /= norm
        return vec

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        return [self._vector(t).tolist() for t in texts]

    def spec(self) -> dict[str, Any]:
        return {"provider": self.name, "dimensions": self._dimensions}


# --- Arbitrary callables ----------------------------------------------------------

class CallableEmbedder(EmbeddingProvider):
    """
    Adapts a plain function `fn(texts) -> vectors`.

    Exceptions from the function are treated as transient, since nothing is
    known about their cause. A callable cannot be rebuilt from metadata, so a
    store created with one must be reconnected with an equal `name`.
    """

    name = "callable"

    def __init__(
        self,
        fn: Callable[[Sequence[str]], Sequence[Sequence[float]]],
        name: str,
        dimensions: Optional[int] = None,
    ) -> None:
        self._fn = fn
        self.callable_name = name
        self._dimensions = dimensions

    @property
    def dimensions(self) -> Optional[int]:
        return self._dimensions

    def embed(self, texts: Sequence[str]) -> list[list[float]]:
        try:
            out = self._fn(list(texts))
        except EmbeddingProviderError:
            raise
        except Exception as exc:
            raise EmbeddingProviderError(
                f"{type(exc).__name__}: {exc}", provider=self.callable_name, transient=True
            ) from exc
        return [list(map(float, v)) for v in out]

    def spec(self) -> dict[str, Any]:
        return {"provider": self.name, "name": self.callable_name, "dimensions": self._dimensions}


# --- Registry -------------------------------------------------------------------

def embedder_from_spec(spec: dict[str, Any]) -> EmbeddingProvider:
    """Rebuild a provider from the spec recorded in store metadata."""
    provider = spec.get("provider")
    if provider == "openai":
        return OpenAIEmbedder(model=spec.get("model") or OPENAI_MODEL, dimensions=spec.get("dimensions"))
    if provider == "ollama":
        return OllamaEmbedder(model=spec.get("model") or OLLAMA_MODEL, dimensions=spec.get("dimensions"))
    if provider == "hashing":
        return HashingEmbedder(dimensions=spec.get("dimensions") or HASHING_DIMENSIONS)
    if provider == "callable":
        raise ValueError(
            f"Embedder {spec.get('name')!r} wraps a Python callable and cannot be "
            "rebuilt from metadata; pass it explicitly when connecting"
        )
    raise ValueError(f"Unknown embedding provider in spec: {spec!r}")


def embedder_from_config(provider: str, model: Optional[str] = None, dimensions: Optional[int] = None) -> EmbeddingProvider:
    """Build a provider from CLI / YAML settings."""
    spec: dict[str, Any] = {"provider": provider, "model": model, "dimensions": dimensions}
    return embedder_from_spec(spec)
