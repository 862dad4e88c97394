"""
Core Pydantic schemas for the retrieval core.

Documents and chunks flow through chunking, embedding, persistence and
retrieval as these models, so every retrieved passage can be traced back to
its origin and exact character span.
"""
from __future__ import annotations

import hashlib
from typing import Any, Iterator, Literal, Optional

from pydantic import BaseModel, Field, computed_field

RetrievalMethod = Literal["hybrid", "vss", "bm25"]


# --- Documents & Chunks -------------------------------------------------------

class Document(BaseModel):
    """
    A normalized (markdown) source document.

    `doc_id` is assigned by the store on insert; documents are never mutated
    afterwards.
    """

    origin: str                          # URI or path
    full_text: str
    doc_id: Optional[int] = None

    @computed_field
    @property
    def checksum(self) -> str:
        """SHA-256 of full_text - used to detect re-insertion of identical content."""
        return hashlib.sha256(self.full_text.encode("utf-8")).hexdigest()

    @computed_field
    @property
    def char_count(self) -> int:
        return len(self.full_text)


class Chunk(BaseModel):
    """
    A contiguous, word-aligned span of a Document plus its structural context.

    Provenance (`origin`) is copied from the parent document so retrieval
    never needs a join to cite a passage.
    """

    # Identity (assigned by the store)
    chunk_id: Optional[int] = None
    doc_id: Optional[int] = None

    # Content
    origin: str
    text: str
    start_offset: int
    end_offset: int
    heading_path: list[str] = Field(default_factory=list)   # root-first
    exceeds_target: bool = False

    # Vector (None until embedded)
    embedding: Optional[list[float]] = None

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset

    def metadata(self) -> dict[str, Any]:
        """Fields visible to retrieval filters."""
        return {
            "chunk_id": self.chunk_id,
            "doc_id": self.doc_id,
            "origin": self.origin,
            "heading_path": list(self.heading_path),
            "start_offset": self.start_offset,
            "end_offset": self.end_offset,
            "text": self.text,
        }


# --- Retrieval results --------------------------------------------------------

class RetrievedChunk(BaseModel):
    """One ranked retrieval hit."""

    chunk_id: int
    score: float
    text: str
    heading_path: list[str] = Field(default_factory=list)
    origin: str
    doc_id: int
    start_offset: int
    end_offset: int

    # Component scores (None when the chunk was not returned by that index)
    vss_score: Optional[float] = None
    bm25_score: Optional[float] = None


class QueryResult(BaseModel):
    """
    Ordered retrieval output, ranked by descending score with ties broken by
    ascending chunk_id. Plain data with no hidden state, so it serialises
    directly into tool-call responses.
    """

    query: str
    method: RetrievalMethod
    top_k: int
    results: list[RetrievedChunk] = Field(default_factory=list)

    def __len__(self) -> int:
        return len(self.results)

    def __iter__(self) -> Iterator[RetrievedChunk]:  # type: ignore[override]
        return iter(self.results)

    def __getitem__(self, idx: int) -> RetrievedChunk:
        return self.results[idx]

    @property
    def chunk_ids(self) -> list[int]:
        return [r.chunk_id for r in self.results]

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json")


# --- Ingest bookkeeping -------------------------------------------------------

class IngestFailure(BaseModel):
    origin: str
    error: str
    offset: Optional[int] = None


class IngestReport(BaseModel):
    """Summary of a batch ingest. Failed documents are skipped, not fatal."""

    documents_inserted: int = 0
    documents_skipped: int = 0
    chunks_inserted: int = 0
    failures: list[IngestFailure] = Field(default_factory=list)
