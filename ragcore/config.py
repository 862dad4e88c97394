"""
Configuration models.

Every section has working defaults, so an absent or partial YAML file is
fine. Provider credentials come from the environment (loaded from `.env` by
python-dotenv), never from the YAML file.
"""
from __future__ import annotations

from pathlib import Path
from typing import Literal, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, field_validator, model_validator


class ChunkerConfig(BaseModel):
    target_chunk_size: int = Field(1600, gt=0)          # characters
    overlap_ratio: float = Field(0.5, ge=0.0, lt=1.0)
    boundary_heading_levels: set[int] = Field(default_factory=set)

    @field_validator("boundary_heading_levels")
    @classmethod
    def _levels_in_range(cls, v: set[int]) -> set[int]:
        bad = sorted(lvl for lvl in v if not 1 <= lvl <= 6)
        if bad:
            raise ValueError(f"heading levels must be between 1 and 6, got {bad}")
        return v


class EmbeddingConfig(BaseModel):
    provider: Literal["openai", "ollama", "hashing"] = "openai"
    model: Optional[str] = None
    dimensions: Optional[int] = None
    batch_size: int = Field(64, gt=0)
    max_workers: int = Field(4, gt=0)
    max_attempts: int = Field(5, gt=0)
    backoff_min: float = Field(1.0, ge=0.0)              # seconds
    backoff_max: float = Field(30.0, ge=0.0)
    timeout: Optional[float] = Field(300.0, gt=0.0)      # whole embed call, seconds


class IndexConfig(BaseModel):
    vector_mode: Literal["auto", "exact", "hnsw"] = "auto"
    exact_threshold: int = Field(20_000, ge=0)           # auto -> exact below this size
    hnsw_m: int = Field(32, gt=1)
    hnsw_ef_construction: int = Field(200, gt=0)
    hnsw_ef_search: int = Field(128, gt=0)
    bm25_k1: float = Field(1.2, ge=0.0)
    bm25_b: float = Field(0.75, ge=0.0, le=1.0)
    stem: bool = True
    stopwords: Optional[list[str]] = None                # None -> built-in English list
    build_timeout: Optional[float] = Field(None, gt=0.0)


class RetrievalConfig(BaseModel):
    top_k: int = Field(5, gt=0)
    fan_out: int = Field(4, ge=1)
    fusion: Literal["rrf", "weighted"] = "rrf"
    rrf_k: int = Field(60, gt=0)
    vss_weight: float = Field(0.7, ge=0.0)
    bm25_weight: float = Field(0.3, ge=0.0)

    @model_validator(mode="after")
    def _weights_not_both_zero(self) -> "RetrievalConfig":
        if self.vss_weight == 0 and self.bm25_weight == 0:
            raise ValueError("vss_weight and bm25_weight cannot both be 0")
        return self


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: Optional[str] = None


class RagConfig(BaseModel):
    chunking: ChunkerConfig = Field(default_factory=ChunkerConfig)
    embedding: EmbeddingConfig = Field(default_factory=EmbeddingConfig)
    index: IndexConfig = Field(default_factory=IndexConfig)
    retrieval: RetrievalConfig = Field(default_factory=RetrievalConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)


def load_config(path: str | Path | None = None) -> RagConfig:
    """Load a RagConfig from YAML. A missing path yields the defaults."""
    load_dotenv()
    if path is None:
        return RagConfig()
    p = Path(path)
    if not p.exists():
        return RagConfig()
    with open(p, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return RagConfig(**raw)
