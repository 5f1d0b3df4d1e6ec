"""
Search-index collaborator interface and an in-memory reference index.

The scoring engine only needs two things from a search index:

    create_scorer(atomic) -> ConditionScorer
    list_all_documents()  -> ordered document IDs

`InMemoryIndex` implements both on top of a sparse term-document matrix with
Lucene-style BM25 (k1=0.9, b=0.4), which is enough to run queries end to end
and to test the pipeline without a search engine.

Usage:
    from cqql_ranking.index import InMemoryIndex

    index = InMemoryIndex({"d1": "the quick brown fox", "d2": {"title": "eagle"}})
    scorer = index.create_scorer(Atomic(AtomicKind.MATCH, "fox"))
    scorer.score_documents(index.list_all_documents())  # {"d1": 0.28...}
"""

from __future__ import annotations

import logging
import re
from collections import Counter
from collections.abc import Mapping, Sequence
from typing import TYPE_CHECKING, Protocol, Union

import numpy as np
from scipy.sparse import csr_matrix, lil_matrix

from cqql_ranking.config import DEFAULT_B, DEFAULT_K1
from cqql_ranking.occurrence import Atomic, AtomicKind

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

# Field searched by clauses that do not name one
ALL_FIELD = "_all"

# Field that plain-text documents are stored under
DEFAULT_FIELD = "body"

EPSILON = 1e-9


# =============================================================================
# Collaborator protocols
# =============================================================================


class ConditionScorer(Protocol):
    """Scores one atomic condition against a batch of documents."""

    def score_documents(self, doc_ids: Sequence[str]) -> Mapping[str, float]:
        """Relevance per matching document; non-matching documents may be absent."""
        ...


class SearchIndex(Protocol):
    """What the scoring engine consumes from the host search index."""

    def create_scorer(self, atomic: Atomic) -> ConditionScorer: ...

    def list_all_documents(self) -> Sequence[str]: ...


# =============================================================================
# Tokenization and corpus statistics
# =============================================================================


def tokenize(text: str) -> list[str]:
    """Lowercase word tokens."""
    return re.findall(r"\w+", text.lower())


class Corpus:
    """
    Tokenized documents with pre-computed BM25 statistics.

    Holds a CSR term-document frequency matrix (vocab_size, N), document
    frequencies, Lucene IDF values, per-document length norms and posting
    lists (term ID -> sorted document indices).

    Args:
        documents: Tokenized documents.
        ids: Document IDs, parallel to `documents` (defaults to positions).
        b: Length normalization strength.
    """

    def __init__(
        self,
        documents: list[list[str]],
        ids: list[str] | None = None,
        b: float = DEFAULT_B,
    ):
        self.documents = documents
        self.ids = ids if ids is not None else [str(i) for i in range(len(documents))]
        if len(self.ids) != len(documents):
            raise ValueError(f"Got {len(self.ids)} IDs for {len(documents)} documents")
        self._id_to_idx = {doc_id: i for i, doc_id in enumerate(self.ids)}

        self.N = len(documents)
        self.doc_lengths = np.array([len(d) for d in documents], dtype=np.float64)
        self.avgdl = float(np.mean(self.doc_lengths)) if self.N > 0 else 1.0

        self._vocab: dict[str, int] = {}
        for doc in documents:
            for term in doc:
                if term not in self._vocab:
                    self._vocab[term] = len(self._vocab)
        self.vocab_size = len(self._vocab)

        tf_matrix_lil = lil_matrix((self.vocab_size, self.N), dtype=np.float64)
        postings: dict[int, list[int]] = {}
        self._df = np.zeros(self.vocab_size, dtype=np.float64)
        for doc_idx, doc in enumerate(documents):
            for term, count in Counter(doc).items():
                term_id = self._vocab[term]
                tf_matrix_lil[term_id, doc_idx] = count
                postings.setdefault(term_id, []).append(doc_idx)
                self._df[term_id] += 1

        self.tf_matrix = csr_matrix(tf_matrix_lil)
        self._posting_lists: dict[int, NDArray[np.int64]] = {
            term_id: np.array(doc_ids, dtype=np.int64) for term_id, doc_ids in postings.items()
        }

        # Lucene IDF, always non-negative
        self.idf_array = np.log(1.0 + (self.N - self._df + 0.5) / (self._df + 0.5))
        self.norm_array = 1.0 - b + b * (self.doc_lengths / max(self.avgdl, 1.0))

    def __len__(self) -> int:
        return self.N

    def get_term_id(self, term: str) -> int | None:
        """Term ID (None if not in vocabulary)."""
        return self._vocab.get(term)

    def get_df(self, term: str) -> int:
        term_id = self._vocab.get(term)
        return 0 if term_id is None else int(self._df[term_id])

    def get_posting_list(self, term: str) -> NDArray[np.int64]:
        """Indices of documents containing the term."""
        term_id = self._vocab.get(term)
        if term_id is None:
            return np.array([], dtype=np.int64)
        return self._posting_lists.get(term_id, np.array([], dtype=np.int64))

    def id_to_idx(self, ids: Sequence[str]) -> list[int]:
        """Indices of the given IDs, skipping unknown ones."""
        return [self._id_to_idx[doc_id] for doc_id in ids if doc_id in self._id_to_idx]


# =============================================================================
# BM25
# =============================================================================


class BM25:
    """
    Lucene BM25 over a `Corpus`.

    Per query term: idf * tf / (tf + k1 * norm), summed over the distinct
    query terms. Only documents in the terms' posting lists are scored.
    """

    def __init__(self, corpus: Corpus, k1: float = DEFAULT_K1):
        self.corpus = corpus
        self.k1 = k1

    def score(self, query: list[str]) -> NDArray[np.float64]:
        """Scores for every document in the corpus (0 where nothing matches)."""
        scores = np.zeros(self.corpus.N, dtype=np.float64)
        term_ids = []
        for term in dict.fromkeys(query):
            term_id = self.corpus.get_term_id(term)
            if term_id is not None:
                term_ids.append(term_id)
        if not term_ids:
            return scores

        candidates = np.unique(
            np.concatenate([self.corpus._posting_lists[term_id] for term_id in term_ids])
        )
        # (num_terms, num_candidates)
        tf_rows = self.corpus.tf_matrix[term_ids, :][:, candidates].toarray()
        idf_values = self.corpus.idf_array[term_ids][:, np.newaxis]
        norms = self.corpus.norm_array[candidates]
        saturated = tf_rows / (tf_rows + self.k1 * norms + EPSILON)
        scores[candidates] = np.sum(idf_values * saturated, axis=0)
        return scores

    def rank(
        self, query: list[str], top_k: int | None = None
    ) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
        """Document indices and scores in descending score order."""
        return select_top_k(self.score(query), top_k)


def select_top_k(
    scores: NDArray[np.float64],
    top_k: int | None,
) -> tuple[NDArray[np.int64], NDArray[np.float64]]:
    """
    Indices and scores of the top-k entries, highest first.

    Uses np.argpartition when k < n, a full sort otherwise. Ties keep
    index order.
    """
    n = len(scores)
    if top_k is not None and top_k < n:
        if top_k <= 0:
            return np.array([], dtype=np.int64), np.array([], dtype=np.float64)
        top = np.argpartition(-scores, top_k - 1)[:top_k]
        ordered = top[np.lexsort((top, -scores[top]))]
    else:
        ordered = np.argsort(-scores, kind="stable")
    ordered = ordered.astype(np.int64)
    return ordered, scores[ordered]


# =============================================================================
# In-memory index
# =============================================================================


class _BM25Scorer:
    def __init__(self, bm25: BM25, query: list[str]):
        self.bm25 = bm25
        self.query = query

    def score_documents(self, doc_ids: Sequence[str]) -> dict[str, float]:
        corpus = self.bm25.corpus
        scores = self.bm25.score(self.query)
        return {
            doc_id: float(scores[idx])
            for doc_id, idx in zip(doc_ids, (corpus._id_to_idx.get(d) for d in doc_ids))
            if idx is not None and scores[idx] > 0
        }


class _ConstantScorer:
    def __init__(self, ids: Sequence[str], value: float):
        self.ids = set(ids)
        self.value = value

    def score_documents(self, doc_ids: Sequence[str]) -> dict[str, float]:
        if self.value <= 0:
            return {}
        return {doc_id: self.value for doc_id in doc_ids if doc_id in self.ids}


Document = Union[str, Mapping[str, str]]


class InMemoryIndex:
    """
    Reference `SearchIndex` over a small in-memory document collection.

    Each field gets its own corpus; an extra `_all` corpus holds the
    concatenation of all fields and serves clauses without a field.
    `match` analyzes its value with `tokenize`; `term` looks up the raw
    value as a single token.

    Args:
        documents: Mapping of document ID to text, or to a mapping of
            field name to text. Plain text is stored under `body`.
        k1: BM25 term-frequency saturation.
        b: BM25 length normalization.
    """

    def __init__(
        self,
        documents: Mapping[str, Document],
        k1: float = DEFAULT_K1,
        b: float = DEFAULT_B,
    ):
        self.ids = list(documents)
        fields: dict[str, list[list[str]]] = {}
        all_tokens: list[list[str]] = []
        for position, doc_id in enumerate(self.ids):
            document = documents[doc_id]
            if isinstance(document, str):
                document = {DEFAULT_FIELD: document}
            tokens_for_doc: list[str] = []
            for field_name, text in document.items():
                tokens = tokenize(text)
                column = fields.setdefault(field_name, [[] for _ in range(position)])
                column.append(tokens)
                tokens_for_doc.extend(tokens)
            for column in fields.values():
                if len(column) < position + 1:
                    column.append([])
            all_tokens.append(tokens_for_doc)

        self.k1 = k1
        self.b = b
        self._bm25 = {
            name: BM25(Corpus(column, self.ids, b=b), k1=k1) for name, column in fields.items()
        }
        self._bm25[ALL_FIELD] = BM25(Corpus(all_tokens, self.ids, b=b), k1=k1)
        logger.debug("Indexed %d documents over fields %s", len(self.ids), sorted(fields))

    def __len__(self) -> int:
        return len(self.ids)

    @property
    def fields(self) -> list[str]:
        return [name for name in self._bm25 if name != ALL_FIELD]

    def list_all_documents(self) -> list[str]:
        return list(self.ids)

    def create_scorer(self, atomic: Atomic) -> ConditionScorer:
        if atomic.kind is AtomicKind.MATCH_ALL:
            return _ConstantScorer(self.ids, 1.0)
        if atomic.kind is AtomicKind.MATCH_NONE:
            return _ConstantScorer(self.ids, 0.0)

        bm25 = self._bm25.get(atomic.field if atomic.field is not None else ALL_FIELD)
        if bm25 is None:
            # Unknown field: nothing matches
            return _ConstantScorer(self.ids, 0.0)
        if atomic.kind is AtomicKind.TERM:
            return _BM25Scorer(bm25, [atomic.value])
        return _BM25Scorer(bm25, tokenize(atomic.value))


__all__ = [
    "ALL_FIELD",
    "DEFAULT_FIELD",
    "ConditionScorer",
    "SearchIndex",
    "tokenize",
    "Corpus",
    "BM25",
    "select_top_k",
    "InMemoryIndex",
]
