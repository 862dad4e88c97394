import threading
import time

import pytest

from ragcore.config import ChunkerConfig, EmbeddingConfig, IndexConfig
from ragcore.embedding.embedder import CallableEmbedder, HashingEmbedder
from ragcore.errors import EmbeddingProviderError
from ragcore.schemas import Document
from ragcore.store.store import Store

# Offline, deterministic, no retries slowed down by backoff
FAST_EMBEDDING = EmbeddingConfig(
    provider="hashing", batch_size=4, max_workers=2, max_attempts=3,
    backoff_min=0.0, backoff_max=0.0, timeout=30.0,
)


class FlakyEmbedder(CallableEmbedder):
    """HashingEmbedder that fails transiently for its first `failures` calls."""

    def __init__(self, failures: int, dimensions: int = 64, transient: bool = True):
        self.inner = HashingEmbedder(dimensions)
        self.failures = failures
        self.transient = transient
        self.calls = 0
        self._lock = threading.Lock()
        super().__init__(self._embed, name="flaky", dimensions=dimensions)

    def _embed(self, texts):
        with self._lock:
            self.calls += 1
            fail = self.calls <= self.failures
        if fail:
            raise EmbeddingProviderError("simulated outage", provider="flaky", transient=self.transient)
        return self.inner.embed(texts)


class SlowEmbedder(CallableEmbedder):
    def __init__(self, delay: float, dimensions: int = 64):
        self.inner = HashingEmbedder(dimensions)
        self.delay = delay
        super().__init__(self._embed, name="slow", dimensions=dimensions)

    def _embed(self, texts):
        time.sleep(self.delay)
        return self.inner.embed(texts)


@pytest.fixture
def embedder():
    return HashingEmbedder(dimensions=64)


@pytest.fixture
def make_store(tmp_path, embedder):
    opened = []

    def _make(name="store", emb=embedder, target=200, overlap=0.25, **kwargs):
        store = Store.create(
            tmp_path / name,
            emb,
            chunker_config=ChunkerConfig(target_chunk_size=target, overlap_ratio=overlap),
            embedding_config=kwargs.pop("embedding_config", FAST_EMBEDDING),
            index_config=kwargs.pop("index_config", IndexConfig(vector_mode="exact")),
            **kwargs,
        )
        opened.append(store)
        return store

    yield _make
    for s in opened:
        s.close()


@pytest.fixture
def store(make_store):
    return make_store()


@pytest.fixture
def corpus():
    return [
        Document(
            origin="guide/quarto.md",
            full_text=(
                "# Quarto\n\n"
                "Quarto supports YAML front matter for document options.\n\n"
                "## Rendering\n\n"
                "Render a document to HTML or PDF from the command line."
            ),
        ),
        Document(
            origin="guide/cooking.md",
            full_text=(
                "# Cooking\n\n"
                "Boil the pasta in salted water until tender.\n\n"
                "## Sauce\n\n"
                "Simmer tomatoes with garlic and olive oil."
            ),
        ),
        Document(
            origin="guide/gardening.md",
            full_text=(
                "# Gardening\n\n"
                "Plant tulip bulbs in autumn before the ground freezes.\n\n"
                "Water seedlings early in the morning."
            ),
        ),
    ]


@pytest.fixture
def indexed_store(store, corpus):
    for doc in corpus:
        store.insert(doc)
    store.build_index()
    return store
