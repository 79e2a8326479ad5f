# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
The current chunk set, grouped by parent. Source of truth for rebuilds
and for hydrating search results. Persisted as one JSON file.
"""
import json
import threading
from pathlib import Path
from typing import Iterable, Optional, Union

from .documents import Chunk, DocumentKind


class ChunkStore:
    def __init__(self, path: Union[str, Path, None] = None):
        self._path = Path(path) if path else None
        self._lock = threading.RLock()
        self._chunks: dict[str, Chunk] = {}
        self._by_parent: dict[str, list[str]] = {}
        self._load()

    # ── Persistence ──────────────────────────────────

    def _load(self):
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text())
        except Exception as e:
            print(f"Warning: could not read chunk store {self._path}: {e}")
            return
        for item in data.get("chunks", []):
            chunk = Chunk.from_dict(item)
            self._chunks[chunk.id] = chunk
            self._by_parent.setdefault(chunk.parent_id, []).append(chunk.id)

    def _save(self):
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_suffix(".tmp")
        tmp.write_text(json.dumps({
            "chunks": [c.to_dict() for c in self._chunks.values()],
        }))
        tmp.replace(self._path)

    # ── Reads ────────────────────────────────────────

    def __len__(self) -> int:
        with self._lock:
            return len(self._chunks)

    def __contains__(self, chunk_id: str) -> bool:
        with self._lock:
            return chunk_id in self._chunks

    def get(self, chunk_id: str) -> Optional[Chunk]:
        with self._lock:
            return self._chunks.get(chunk_id)

    def get_many(self, chunk_ids: Iterable[str]) -> dict[str, Chunk]:
        with self._lock:
            return {cid: self._chunks[cid] for cid in chunk_ids if cid in self._chunks}

    def for_parent(self, parent_id: str) -> list[Chunk]:
        with self._lock:
            return [self._chunks[cid] for cid in self._by_parent.get(parent_id, [])]

    def ids_for_parent(self, parent_id: str) -> list[str]:
        with self._lock:
            return list(self._by_parent.get(parent_id, []))

    def parent_ids(self, kind: Optional[DocumentKind] = None) -> list[str]:
        with self._lock:
            if kind is None:
                return list(self._by_parent)
            return [
                pid for pid, ids in self._by_parent.items()
                if ids and self._chunks[ids[0]].kind == kind
            ]

    def all_chunks(self) -> list[Chunk]:
        with self._lock:
            return list(self._chunks.values())

    def all_ids(self) -> set[str]:
        with self._lock:
            return set(self._chunks)

    # ── Mutations ────────────────────────────────────

    def replace_parent(self, parent_id: str, chunks: list[Chunk]) -> list[Chunk]:
        """Swap in the new chunk list for a parent; returns the old one."""
        with self._lock:
            old = self.for_parent(parent_id)
            for chunk in old:
                self._chunks.pop(chunk.id, None)
            if chunks:
                for chunk in chunks:
                    self._chunks[chunk.id] = chunk
                self._by_parent[parent_id] = [c.id for c in chunks]
            else:
                self._by_parent.pop(parent_id, None)
            self._save()
            return old

    def remove_parent(self, parent_id: str) -> list[str]:
        return [c.id for c in self.replace_parent(parent_id, [])]

    def clear(self, kind: Optional[DocumentKind] = None) -> list[str]:
        with self._lock:
            removed: list[str] = []
            for pid in self.parent_ids(kind):
                ids = self._by_parent.pop(pid, [])
                for cid in ids:
                    self._chunks.pop(cid, None)
                removed.extend(ids)
            self._save()
            return removed
