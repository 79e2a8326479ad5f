# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Vector store: chunk id -> embedding, backed by a ChromaDB collection
(cosine space). Vectors are computed by our providers and passed in
explicitly; the collection has no embedding function of its own.

A chunk is MISSING from register() until set() stores its vector.
MISSING chunks are skipped by similarity() but stay searchable
lexically.
"""
import threading
from enum import Enum
from pathlib import Path
from typing import Iterable, Optional, Sequence, Union

import chromadb

from .documents import parent_of


class EmbeddingState(str, Enum):
    MISSING = "missing"
    VECTORIZED = "vectorized"
    ABSENT = "absent"


class VectorStore:
    def __init__(
        self,
        path: Union[str, Path, None] = None,
        collection_name: str = "memoria_chunks",
        client=None,
    ):
        if client is None:
            if path is None:
                raise ValueError("VectorStore needs a path or a chroma client")
            client = chromadb.PersistentClient(path=str(path))
        self.chroma = client
        self._collection_name = collection_name
        self._lock = threading.RLock()
        self._missing: set[str] = set()
        self._vectorized: set[str] = set()
        self._by_parent: dict[Optional[str], set[str]] = {}
        self._init_collection()

    def _init_collection(self):
        self.collection = self.chroma.get_or_create_collection(
            self._collection_name,
            embedding_function=None,
            metadata={"hnsw:space": "cosine"},
        )
        try:
            self._vectorized = set(self.collection.get(include=[])["ids"])
        except Exception as e:
            print(f"Warning: could not read stored vectors: {e}")
            self._vectorized = set()
        self._by_parent = {}
        for cid in self._vectorized:
            self._track(cid)

    def _track(self, chunk_id: str):
        self._by_parent.setdefault(parent_of(chunk_id), set()).add(chunk_id)

    def _untrack(self, chunk_id: str):
        parent = parent_of(chunk_id)
        ids = self._by_parent.get(parent)
        if ids is not None:
            ids.discard(chunk_id)
            if not ids:
                del self._by_parent[parent]

    # ── State ────────────────────────────────────────

    def __contains__(self, chunk_id: str) -> bool:
        with self._lock:
            return chunk_id in self._missing or chunk_id in self._vectorized

    def state(self, chunk_id: str) -> EmbeddingState:
        with self._lock:
            if chunk_id in self._vectorized:
                return EmbeddingState.VECTORIZED
            if chunk_id in self._missing:
                return EmbeddingState.MISSING
            return EmbeddingState.ABSENT

    def chunk_ids(self) -> set[str]:
        with self._lock:
            return self._missing | self._vectorized

    def ids_for_parent(self, parent_id: str) -> set[str]:
        with self._lock:
            return set(self._by_parent.get(parent_id, ()))

    def vectorized_ids(self) -> set[str]:
        with self._lock:
            return set(self._vectorized)

    def get_missing_ids(self) -> list[str]:
        with self._lock:
            return sorted(self._missing)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._missing) + len(self._vectorized)

    @property
    def missing_count(self) -> int:
        with self._lock:
            return len(self._missing)

    # ── Mutations ────────────────────────────────────

    def register(self, chunk_id: str):
        """Mark a chunk MISSING, dropping any vector it had."""
        with self._lock:
            if chunk_id in self._vectorized:
                self.collection.delete(ids=[chunk_id])
                self._vectorized.discard(chunk_id)
            self._missing.add(chunk_id)
            self._track(chunk_id)

    def set(self, chunk_id: str, vector: Sequence[float]) -> bool:
        """Store a vector. Returns False (and stores nothing) for
        chunks that are not registered any more."""
        with self._lock:
            if chunk_id not in self._missing and chunk_id not in self._vectorized:
                return False
            self.collection.upsert(ids=[chunk_id], embeddings=[[float(x) for x in vector]])
            self._missing.discard(chunk_id)
            self._vectorized.add(chunk_id)
            return True

    def remove(self, chunk_id: str) -> bool:
        with self._lock:
            found = chunk_id in self._missing or chunk_id in self._vectorized
            if chunk_id in self._vectorized:
                self.collection.delete(ids=[chunk_id])
            self._missing.discard(chunk_id)
            self._vectorized.discard(chunk_id)
            self._untrack(chunk_id)
            return found

    def remove_many(self, chunk_ids: Iterable[str]) -> int:
        ids = list(chunk_ids)
        with self._lock:
            stored = [cid for cid in ids if cid in self._vectorized]
            for i in range(0, len(stored), 5000):
                self.collection.delete(ids=stored[i : i + 5000])
            removed = 0
            for cid in ids:
                if cid in self._missing or cid in self._vectorized:
                    removed += 1
                self._missing.discard(cid)
                self._vectorized.discard(cid)
                self._untrack(cid)
            return removed

    def rebuild_all(self, chunk_ids: Iterable[str]):
        """Drop every vector and register all given chunks as MISSING."""
        with self._lock:
            try:
                self.chroma.delete_collection(self._collection_name)
            except Exception:
                pass
            self.collection = self.chroma.get_or_create_collection(
                self._collection_name,
                embedding_function=None,
                metadata={"hnsw:space": "cosine"},
            )
            self._vectorized = set()
            self._missing = set(chunk_ids)
            self._by_parent = {}
            for cid in self._missing:
                self._track(cid)

    # ── Reads ────────────────────────────────────────

    def get_vector(self, chunk_id: str) -> Optional[list[float]]:
        with self._lock:
            if chunk_id not in self._vectorized:
                return None
            collection = self.collection
        result = collection.get(ids=[chunk_id], include=["embeddings"])
        embs = result.get("embeddings")
        if embs is None or len(embs) == 0:
            return None
        return [float(x) for x in embs[0]]

    def similarity(self, query_vector: Sequence[float], top_k: Optional[int] = None) -> dict[str, float]:
        """Cosine similarity of the query against vectorized chunks only."""
        with self._lock:
            n = len(self._vectorized)
            collection = self.collection
        if n == 0 or not query_vector:
            return {}
        k = min(top_k, n) if top_k else n
        try:
            results = collection.query(
                query_embeddings=[[float(x) for x in query_vector]],
                n_results=k,
                include=["distances"],
            )
        except Exception as e:
            print(f"Vector search error: {e}")
            return {}
        if not results["ids"] or not results["ids"][0]:
            return {}
        with self._lock:
            live = set(self._vectorized)
        return {
            cid: 1.0 - float(dist)
            for cid, dist in zip(results["ids"][0], results["distances"][0])
            if cid in live
        }
