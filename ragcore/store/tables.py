"""
Persisted store layout
-----------------------
<location>/store.db (SQLite):

    meta(key, value)            JSON-encoded values: format_version, created_at,
                                embedder, embedding_dim, chunker,
                                index_generation, index_built_at
    documents(doc_id, origin, full_text, checksum, created_at)
    chunks(chunk_id, doc_id, text, start_offset, end_offset,
           heading_path, exceeds_target, embedding)

`embedding` is a float32 BLOB, NULL while the chunk is pending. `chunk_id`
and `doc_id` are AUTOINCREMENT, so ids only ever grow, even after deletes.

<location>/index/gen-<n>/ holds the index artifacts of build generation n;
meta.index_generation names the live one.
"""
from __future__ import annotations

import sqlite3
from pathlib import Path
from typing import Any, Optional

import numpy as np
import orjson

from ragcore.errors import UnsupportedStoreVersionError
from ragcore.schemas import Chunk

STORE_FORMAT_VERSION = 1
INDEX_FORMAT_VERSION = 1

DB_FILE = "store.db"
INDEX_DIR = "index"
MANIFEST_FILE = "index_manifest.json"

SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key   TEXT PRIMARY KEY,
    value TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS documents (
    doc_id     INTEGER PRIMARY KEY AUTOINCREMENT,
    origin     TEXT NOT NULL,
    full_text  TEXT NOT NULL,
    checksum   TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_documents_origin ON documents(origin);

CREATE TABLE IF NOT EXISTS chunks (
    chunk_id       INTEGER PRIMARY KEY AUTOINCREMENT,
    doc_id         INTEGER NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    text           TEXT NOT NULL,
    start_offset   INTEGER NOT NULL,
    end_offset     INTEGER NOT NULL,
    heading_path   TEXT NOT NULL,
    exceeds_target INTEGER NOT NULL DEFAULT 0,
    embedding      BLOB
);
CREATE INDEX IF NOT EXISTS idx_chunks_doc ON chunks(doc_id);
"""

CHUNK_COLUMNS = (
    "c.chunk_id, c.doc_id, d.origin, c.text, c.start_offset, c.end_offset, "
    "c.heading_path, c.exceeds_target"
)


# --- Connections ----------------------------------------------------------------

def connect_db(path: Path, read_only: bool = False) -> sqlite3.Connection:
    if read_only:
        conn = sqlite3.connect(f"file:{path}?mode=ro", uri=True, check_same_thread=False)
    else:
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.execute("PRAGMA journal_mode=WAL;")
    conn.execute("PRAGMA foreign_keys=ON;")
    return conn


# --- Meta -----------------------------------------------------------------------

def read_meta(conn: sqlite3.Connection, location: Any) -> dict[str, Any]:
    """Read the meta table; a database without one is not a store we can read."""
    try:
        rows = conn.execute("SELECT key, value FROM meta").fetchall()
    except sqlite3.DatabaseError as exc:
        raise UnsupportedStoreVersionError(location, None, STORE_FORMAT_VERSION) from exc
    return {key: orjson.loads(value) for key, value in rows}


def write_meta(conn: sqlite3.Connection, key: str, value: Any) -> None:
    conn.execute(
        "INSERT INTO meta(key, value) VALUES (?, ?) "
        "ON CONFLICT(key) DO UPDATE SET value = excluded.value",
        (key, orjson.dumps(value).decode("utf-8")),
    )


def check_version(meta: dict[str, Any], location: Any) -> None:
    found = meta.get("format_version")
    if found != STORE_FORMAT_VERSION:
        raise UnsupportedStoreVersionError(location, found, STORE_FORMAT_VERSION)


# --- Codecs ---------------------------------------------------------------------

def encode_vector(vector: Any) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def decode_vector(blob: Optional[bytes]) -> Optional[np.ndarray]:
    if blob is None:
        return None
    return np.frombuffer(blob, dtype=np.float32)


def encode_path(path: list[str]) -> str:
    return orjson.dumps(list(path)).decode("utf-8")


def row_to_chunk(row: tuple, embedding: Optional[bytes] = None) -> Chunk:
    """Build a Chunk from a CHUNK_COLUMNS row (plus an optional embedding blob)."""
    chunk_id, doc_id, origin, text, start, end, heading_path, exceeds = row
    vector = decode_vector(embedding)
    return Chunk(
        chunk_id=chunk_id,
        doc_id=doc_id,
        origin=origin,
        text=text,
        start_offset=start,
        end_offset=end,
        heading_path=orjson.loads(heading_path),
        exceeds_target=bool(exceeds),
        embedding=vector.tolist() if vector is not None else None,
    )
