"""
Keyword Index (BM25)
---------------------
Inverted-index keyword search over chunk text.

Preprocessing (Tokenizer): NFKC-normalise and casefold, split on anything
that is not a Unicode letter or digit, drop stopwords, Porter-stem (nltk).
Corpus statistics (per-term document frequency, per-chunk term frequency,
chunk length, average chunk length) come from rank_bm25's BM25 base class;
scoring uses

    idf(t)      = ln(1 + (N - df(t) + 0.5) / (df(t) + 0.5))
    score(c, q) = sum over distinct t in q present in c of
                  idf(t) * tf * (k1 + 1) / (tf + k1 * (1 - b + b * len(c) / avglen))

This idf never goes negative, so a term present in one chunk of two still
scores above zero (BM25Okapi's idf would give it 0). Chunks sharing no term
with the query are left out of the ranking entirely.

Persistence: bm25_corpus.json holds the chunk ids and their token lists;
loading re-derives the statistics without re-tokenizing.
"""
from __future__ import annotations

import math
import re
import unicodedata
from pathlib import Path
from typing import Collection, Iterable, Optional, Sequence

from loguru import logger
from nltk.stem.porter import PorterStemmer
from rank_bm25 import BM25

from ragcore.utils.helpers import load_json, save_json

CORPUS_FILE = "bm25_corpus.json"

# Unicode letters and digits; underscores split words.
_WORD_RE = re.compile(r"[^\W_]+")

ENGLISH_STOPWORDS = frozenset(
    """
    a about above after again against all am an and any are as at be because been
    before being below between both but by can could did do does doing down during
    each few for from further had has have having he her here hers herself him
    himself his how i if in into is it its itself just me more most my myself no nor
    not now of off on once only or other our ours ourselves out over own same she
    should so some such than that the their theirs them themselves then there these
    they this those through to too under until up very was we were what when where
    which while who whom why will with would you your yours yourself yourselves
    """.split()
)


def normalize_text(text: str) -> str:
    return unicodedata.normalize("NFKC", text).casefold()


class Tokenizer:
    """NFKC + casefold -> alphanumeric tokens -> stopword filter -> Porter stem."""

    def __init__(self, stopwords: Optional[Iterable[str]] = None, stem: bool = True) -> None:
        self.stopwords = frozenset(ENGLISH_STOPWORDS if stopwords is None else (normalize_text(w) for w in stopwords))
        self.stem = stem
        self._stemmer = PorterStemmer() if stem else None
        self._cache: dict[str, str] = {}

    def _stem(self, word: str) -> str:
        stemmed = self._cache.get(word)
        if stemmed is None:
            stemmed = self._stemmer.stem(word) if self._stemmer else word
            self._cache[word] = stemmed
        return stemmed

    def __call__(self, text: str) -> list[str]:
        return [
            self._stem(w)
            for w in _WORD_RE.findall(normalize_text(text))
            if w not in self.stopwords
        ]


class _LuceneBM25(BM25):
    """rank_bm25 corpus statistics with the non-negative (Lucene) idf."""

    def __init__(self, corpus: list[list[str]], k1: float = 1.2, b: float = 0.75) -> None:
        self.k1 = k1
        self.b = b
        self.df: dict[str, int] = {}
        super().__init__(corpus)
        # term -> [(row, tf)], so scoring only touches chunks containing the term
        self.postings: dict[str, list[tuple[int, int]]] = {}
        for row, freqs in enumerate(self.doc_freqs):
            for term, tf in freqs.items():
                self.postings.setdefault(term, []).append((row, tf))

    def _calc_idf(self, nd: dict[str, int]) -> None:
        self.df = dict(nd)
        for term, freq in nd.items():
            self.idf[term] = math.log(1.0 + (self.corpus_size - freq + 0.5) / (freq + 0.5))

    def score_terms(self, terms: Iterable[str]) -> dict[int, float]:
        scores: dict[int, float] = {}
        avgdl = self.avgdl or 1.0
        for term in terms:
            idf = self.idf.get(term)
            if idf is None:
                continue
            for row, tf in self.postings[term]:
                norm = 1.0 - self.b + self.b * self.doc_len[row] / avgdl
                scores[row] = scores.get(row, 0.0) + idf * tf * (self.k1 + 1.0) / (tf + self.k1 * norm)
        return scores


class KeywordIndex:
    """
    BM25 keyword index over a fixed chunk set.

    Build with KeywordIndex.build(); query with query().
    """

    def __init__(
        self,
        chunk_ids: list[int],
        corpus_tokens: list[list[str]],
        tokenizer: Optional[Tokenizer] = None,
        k1: float = 1.2,
        b: float = 0.75,
    ) -> None:
        if len(chunk_ids) != len(corpus_tokens):
            raise ValueError(
                f"Mismatch: {len(chunk_ids)} chunk ids vs {len(corpus_tokens)} token lists"
            )
        self.chunk_ids = list(chunk_ids)
        self.corpus_tokens = corpus_tokens
        self.tokenizer = tokenizer or Tokenizer()
        self.k1 = k1
        self.b = b
        # rank_bm25 divides by the corpus size, so an empty corpus has no scorer
        self._bm25: Optional[_LuceneBM25] = (
            _LuceneBM25(corpus_tokens, k1=k1, b=b) if corpus_tokens else None
        )

    @classmethod
    def build(
        cls,
        chunk_ids: Sequence[int],
        texts: Sequence[str],
        tokenizer: Optional[Tokenizer] = None,
        k1: float = 1.2,
        b: float = 0.75,
    ) -> "KeywordIndex":
        tokenizer = tokenizer or Tokenizer()
        corpus = [tokenizer(t) for t in texts]
        index = cls(list(chunk_ids), corpus, tokenizer=tokenizer, k1=k1, b=b)
        logger.info(
            f"[KeywordIndex] Built BM25 index | {len(corpus)} chunks | "
            f"{index.vocabulary_size} terms | avg length {index.average_length:.1f}"
        )
        return index

    def __len__(self) -> int:
        return len(self.chunk_ids)

    @property
    def vocabulary_size(self) -> int:
        return len(self._bm25.df) if self._bm25 else 0

    @property
    def average_length(self) -> float:
        return float(self._bm25.avgdl) if self._bm25 else 0.0

    def document_frequency(self, term: str) -> int:
        """Number of chunks containing the (already normalised) term."""
        return self._bm25.df.get(term, 0) if self._bm25 else 0

    # --- Search ---------------------------------------------------------------

    def query(
        self,
        text: str,
        k: int,
        allowed: Optional[Collection[int]] = None,
    ) -> list[tuple[int, float]]:
        """
        Return up to k (chunk_id, bm25_score) pairs, score descending, ties by
        chunk_id ascending. Only chunks sharing at least one term appear.
        """
        if k <= 0 or self._bm25 is None:
            return []
        terms = list(dict.fromkeys(self.tokenizer(text)))
        if not terms:
            return []

        scores = self._bm25.score_terms(terms)
        hits = [
            (self.chunk_ids[row], score)
            for row, score in scores.items()
            if allowed is None or self.chunk_ids[row] in allowed
        ]
        hits.sort(key=lambda h: (-h[1], h[0]))
        return hits[:k]

    # --- Persistence ----------------------------------------------------------

    def save(self, index_dir: Path) -> None:
        save_json(
            {"chunk_ids": self.chunk_ids, "tokens": self.corpus_tokens},
            index_dir / CORPUS_FILE,
        )
        logger.debug(f"[KeywordIndex] Saved BM25 corpus ({len(self)} chunks) -> {index_dir}")

    @classmethod
    def load(
        cls,
        index_dir: Path,
        tokenizer: Optional[Tokenizer] = None,
        k1: float = 1.2,
        b: float = 0.75,
    ) -> "KeywordIndex":
        raw = load_json(index_dir / CORPUS_FILE)
        logger.debug(f"[KeywordIndex] Loaded BM25 corpus ({len(raw['chunk_ids'])} chunks) <- {index_dir}")
        return cls(raw["chunk_ids"], raw["tokens"], tokenizer=tokenizer, k1=k1, b=b)
