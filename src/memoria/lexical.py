# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
BM25 keyword index over chunks.

Keeps the token list of every chunk so single chunks can be added or
removed cheaply. bm25s cannot add documents to an existing index, so the
retriever is rebuilt from the token store on the first query after a
change. Tokenization goes through bm25s.tokenize (lower-case, \\w\\w+
tokens, English stopwords) on every path, so a chunk scores the same
whether it arrived via rebuild_all() or add_or_replace().
"""
import threading
from typing import Iterable, Optional

import bm25s

from .documents import Chunk, parent_of

STOPWORDS = "en"
BM25_METHOD = "lucene"


def tokenize(text: str) -> list[str]:
    if not text or not text.strip():
        return []
    tokens = bm25s.tokenize(
        [text], stopwords=STOPWORDS, return_ids=False, show_progress=False,
    )[0]
    return [t for t in tokens if t]


def lexical_text(chunk: Chunk) -> str:
    """Text a chunk is indexed under: parent title, heading path, content."""
    parts = [chunk.parent_title, *chunk.heading_path, chunk.content]
    return "\n".join(p for p in parts if p)


class _Retriever:
    """A built bm25s index plus the chunk id of every corpus row."""

    def __init__(self, tokens: dict[str, list[str]], k1: float, b: float):
        # Chunks without tokens cannot match anything; leave them out of the corpus
        self.ids = [cid for cid, toks in tokens.items() if toks]
        self.vocab = {t for cid in self.ids for t in tokens[cid]}
        self.bm25: Optional[bm25s.BM25] = None
        if self.ids:
            self.bm25 = bm25s.BM25(k1=k1, b=b, method=BM25_METHOD)
            self.bm25.index([tokens[cid] for cid in self.ids], show_progress=False)

    def score(self, terms: list[str]) -> dict[str, float]:
        terms = [t for t in terms if t in self.vocab]
        if self.bm25 is None or not terms:
            return {}
        # bm25s requires k <= corpus size
        results, scores = self.bm25.retrieve(
            [terms], k=len(self.ids), show_progress=False,
        )
        hits: dict[str, float] = {}
        for i in range(results.shape[1]):
            idx = int(results[0, i])
            score = float(scores[0, i])
            if 0 <= idx < len(self.ids) and score > 0:
                hits[self.ids[idx]] = score
        return hits


class LexicalIndex:
    def __init__(self, k1: float = 1.2, b: float = 0.75):
        self.k1 = k1
        self.b = b
        self._lock = threading.RLock()
        self._tokens: dict[str, list[str]] = {}
        self._by_parent: dict[Optional[str], set[str]] = {}
        self._retriever: Optional[_Retriever] = None

    def __len__(self) -> int:
        with self._lock:
            return len(self._tokens)

    def __contains__(self, chunk_id: str) -> bool:
        with self._lock:
            return chunk_id in self._tokens

    def chunk_ids(self) -> set[str]:
        with self._lock:
            return set(self._tokens)

    def ids_for_parent(self, parent_id: str) -> set[str]:
        with self._lock:
            return set(self._by_parent.get(parent_id, ()))

    def add_or_replace(self, chunk: Chunk):
        tokens = tokenize(lexical_text(chunk))
        with self._lock:
            self._tokens[chunk.id] = tokens
            self._by_parent.setdefault(parent_of(chunk.id), set()).add(chunk.id)
            self._retriever = None

    def remove(self, chunk_id: str) -> bool:
        with self._lock:
            if self._tokens.pop(chunk_id, None) is None:
                return False
            parent = parent_of(chunk_id)
            ids = self._by_parent.get(parent)
            if ids is not None:
                ids.discard(chunk_id)
                if not ids:
                    del self._by_parent[parent]
            self._retriever = None
            return True

    def rebuild_all(self, chunks: Iterable[Chunk]) -> int:
        """Build a fresh index off to the side, then swap it in."""
        tokens = {chunk.id: tokenize(lexical_text(chunk)) for chunk in chunks}
        by_parent: dict[Optional[str], set[str]] = {}
        for cid in tokens:
            by_parent.setdefault(parent_of(cid), set()).add(cid)
        retriever = _Retriever(tokens, self.k1, self.b)
        with self._lock:
            self._tokens = tokens
            self._by_parent = by_parent
            self._retriever = retriever
        return len(tokens)

    def clear(self):
        with self._lock:
            self._tokens = {}
            self._by_parent = {}
            self._retriever = None

    def _current_retriever(self) -> _Retriever:
        with self._lock:
            if self._retriever is None:
                self._retriever = _Retriever(self._tokens, self.k1, self.b)
            return self._retriever

    def score(self, query: str) -> dict[str, float]:
        """BM25 score per chunk for the query; only chunks scoring > 0."""
        terms = tokenize(query)
        if not terms:
            return {}
        return self._current_retriever().score(list(dict.fromkeys(terms)))

    def top(self, query: str, k: int) -> list[tuple[str, float]]:
        scores = self.score(query)
        ranked = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
        return ranked[:k] if k > 0 else ranked
