import sqlite3
import threading

import pytest

from ragcore.embedding.embedder import CallableEmbedder, HashingEmbedder
from ragcore.errors import (
    ChunkingError,
    EmbedderNotConfiguredError,
    EmbeddingProviderError,
    IndexNotBuiltError,
    OperationTimeoutError,
    StoreConfigError,
    StoreReadOnlyError,
    UnsupportedStoreVersionError,
)
from ragcore.schemas import Chunk, Document
from ragcore.store.store import Store

from conftest import FlakyEmbedder


def test_create_insert_build_and_reconnect(store, corpus):
    for doc in corpus:
        stored = store.insert(doc)
        assert stored.doc_id is not None
    snap = store.build_index()
    assert snap.generation == 1
    assert len(snap.records) == store.stats()["chunks"]
    location = store.location
    store.close()

    with Store.connect(location) as again:
        assert isinstance(again.embedder, HashingEmbedder)
        assert again.snapshot().generation == 1
        result = again.inspect("YAML front matter", method="bm25", top_k=1)
        assert result[0].origin == "guide/quarto.md"
        stats = again.stats()
        assert stats["documents"] == 3
        assert stats["pending_chunks"] == 0
        assert stats["format_version"] == 1


def test_create_refuses_to_clobber(tmp_path, embedder, store):
    with pytest.raises(FileExistsError):
        Store.create(store.location, embedder)
    store.insert(Document(origin="a.md", full_text="Some text."))
    store.close()

    fresh = Store.create(store.location, embedder, overwrite=True)
    assert fresh.stats()["documents"] == 0
    fresh.close()


def test_connect_missing_store(tmp_path):
    with pytest.raises(FileNotFoundError):
        Store.connect(tmp_path / "nowhere")


def test_unsupported_version(store):
    location = store.location
    store.close()
    conn = sqlite3.connect(location / "store.db")
    with conn:
        conn.execute("UPDATE meta SET value = '99' WHERE key = 'format_version'")
    conn.close()

    with pytest.raises(UnsupportedStoreVersionError) as info:
        Store.connect(location)
    assert info.value.found == 99


def test_embedder_is_immutable_configuration(store):
    location = store.location
    store.close()
    with pytest.raises(StoreConfigError):
        Store.connect(location, embedder=HashingEmbedder(dimensions=32))


def test_callable_embedder_must_be_passed_again(make_store):
    fn = HashingEmbedder(16).embed
    store = make_store(emb=CallableEmbedder(fn, name="local-fn", dimensions=16))
    location = store.location
    store.close()

    with pytest.raises(StoreConfigError):
        Store.connect(location)
    with Store.connect(location, embedder=CallableEmbedder(fn, name="local-fn", dimensions=16)) as again:
        assert again.embedder.spec()["name"] == "local-fn"


def test_query_before_build(store, corpus):
    store.insert(corpus[0])
    with pytest.raises(IndexNotBuiltError):
        store.inspect("anything")


def test_inserts_are_invisible_until_rebuilt(indexed_store):
    indexed_store.insert(Document(origin="zoo.md", full_text="The zebra sleeps in the shade."))
    assert len(indexed_store.inspect("zebra", method="bm25")) == 0

    indexed_store.build_index()
    result = indexed_store.inspect("zebra", method="bm25")
    assert [r.origin for r in result] == ["zoo.md"]


def test_rebuild_publishes_a_new_generation(indexed_store):
    first = indexed_store.snapshot().generation
    second = indexed_store.build_index().generation
    assert second == first + 1
    gens = sorted(p.name for p in (indexed_store.location / "index").iterdir())
    assert gens == [f"gen-{second:06d}"]


def test_unchanged_reinsert_is_a_no_op(store, corpus):
    first = store.insert(corpus[0])
    before = store.stats()["chunks"]
    again = store.insert(corpus[0])
    assert again.doc_id == first.doc_id
    assert store.stats()["chunks"] == before
    assert store.contains(corpus[0])


def test_replace_supersedes_earlier_version(store):
    store.insert(Document(origin="doc.md", full_text="Old wording about apples."))
    newer = store.insert(Document(origin="doc.md", full_text="New wording about pears."), replace=True)
    assert store.stats()["documents"] == 1
    chunks = store.get_chunks(doc_id=newer.doc_id)
    assert [c.text for c in chunks] == ["New wording about pears."]


def test_ids_never_go_backwards(store):
    a = store.insert(Document(origin="a.md", full_text="First document."))
    a_ids = [c.chunk_id for c in store.get_chunks(doc_id=a.doc_id)]
    assert store.delete_document("a.md") == 1
    b = store.insert(Document(origin="b.md", full_text="Second document."))
    b_ids = [c.chunk_id for c in store.get_chunks(doc_id=b.doc_id)]
    assert b.doc_id > a.doc_id
    assert min(b_ids) > max(a_ids)


def test_deleted_documents_leave_the_index_on_rebuild(indexed_store):
    assert indexed_store.delete_document("guide/quarto.md") == 1
    indexed_store.build_index()
    result = indexed_store.inspect("Quarto YAML", method="bm25")
    assert "guide/quarto.md" not in [r.origin for r in result]


def test_failed_embedding_leaves_pending_chunks(make_store, corpus):
    flaky = FlakyEmbedder(failures=1000)
    store = make_store(emb=flaky)
    with pytest.raises(EmbeddingProviderError):
        store.insert(corpus[0])
    stats = store.stats()
    assert stats["chunks"] > 0
    assert stats["pending_chunks"] == stats["chunks"]

    snap = store.build_index()
    assert len(snap.records) == 0

    flaky.failures = 0
    assert store.embed_pending() == stats["chunks"]
    assert store.stats()["pending_chunks"] == 0
    assert len(store.build_index().records) == stats["chunks"]


def test_mismatched_chunks_are_rejected(store):
    doc = Document(origin="doc.md", full_text="Alpha beta gamma.")
    bad = Chunk(origin="doc.md", text="beta", start_offset=0, end_offset=4)
    with pytest.raises(ChunkingError):
        store.insert(doc, chunks=[bad])
    assert store.stats()["documents"] == 0


def test_precomputed_chunks_are_stored_verbatim(store):
    doc = Document(origin="doc.md", full_text="Alpha beta gamma.")
    given = [
        Chunk(origin="doc.md", text="Alpha beta", start_offset=0, end_offset=10, heading_path=["X"]),
        Chunk(origin="doc.md", text="gamma.", start_offset=11, end_offset=17),
    ]
    stored = store.insert(doc, chunks=given)
    chunks = store.get_chunks(doc_id=stored.doc_id, include_embeddings=True)
    assert [(c.text, c.heading_path) for c in chunks] == [("Alpha beta", ["X"]), ("gamma.", [])]
    assert all(len(c.embedding) == 64 for c in chunks)


def test_malformed_document_is_rejected_whole(store):
    with pytest.raises(ChunkingError):
        store.insert(Document(origin="broken.md", full_text="```\nnever closed"))
    assert store.stats()["documents"] == 0


def test_read_only_store(indexed_store):
    location = indexed_store.location
    indexed_store.close()
    with Store.connect(location, read_only=True) as ro:
        assert len(ro.inspect("pasta", method="bm25")) >= 1
        with pytest.raises(StoreReadOnlyError):
            ro.insert(Document(origin="new.md", full_text="More text."))
        with pytest.raises(StoreReadOnlyError):
            ro.build_index()


def test_keyword_only_store_cannot_insert(tmp_path):
    with Store.create(tmp_path / "kw", None) as store:
        with pytest.raises(EmbedderNotConfiguredError):
            store.insert(Document(origin="a.md", full_text="text"))


def test_build_timeout_keeps_previous_index(indexed_store):
    before = indexed_store.snapshot()
    with pytest.raises(OperationTimeoutError):
        indexed_store.build_index(timeout=1e-9)
    assert indexed_store.snapshot() is before


def test_documents_round_trip(store):
    assert not store.is_indexed
    stored = store.insert(Document(origin="notes.md", full_text="# Notes\n\nKeep it short."))
    doc = store.get_document(stored.doc_id)
    assert doc.full_text == "# Notes\n\nKeep it short."
    assert doc.checksum == stored.checksum
    assert store.get_document(stored.doc_id + 100) is None
    store.build_index()
    assert store.is_indexed


def test_concurrent_writers_builder_and_reader(indexed_store):
    store = indexed_store
    snapshots = [set(store.snapshot().records)]
    results: list[list[int]] = []
    errors: list[BaseException] = []
    writers_done = threading.Event()

    docs = [
        Document(origin=f"w{w}/note-{i}.md", full_text=f"# Note {i}\n\nZebra sighting {w}-{i} near the river.")
        for w in range(3)
        for i in range(10)
    ]
    expected_chunks = store.stats()["chunks"] + sum(len(store.chunker.chunk_document(d)) for d in docs)

    def guarded(fn):
        def run():
            try:
                fn()
            except BaseException as exc:
                errors.append(exc)
        return run

    def writer(w):
        for doc in docs[w * 10:(w + 1) * 10]:
            store.insert(doc)

    def builder():
        while not writers_done.is_set():
            snapshots.append(set(store.build_index().records))

    def reader():
        while not writers_done.is_set():
            for method in ("bm25", "hybrid"):
                results.append(store.inspect("zebra river", top_k=5, method=method).chunk_ids)

    writers = [threading.Thread(target=guarded(lambda w=w: writer(w))) for w in range(3)]
    others = [threading.Thread(target=guarded(builder)), threading.Thread(target=guarded(reader))]
    for t in writers + others:
        t.start()
    for t in writers:
        t.join(timeout=60)
    writers_done.set()
    for t in others:
        t.join(timeout=60)

    assert errors == []
    stats = store.stats()
    assert stats["documents"] == 33
    assert stats["chunks"] == expected_chunks
    assert stats["pending_chunks"] == 0
    assert len(store.build_index().records) == expected_chunks
    for ids in results:
        assert any(set(ids) <= snap for snap in snapshots)
