# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Hybrid query: BM25 candidates + vector candidates, each list normalized
on its own, merged with a weighted sum, then hydrated from the chunk store.

  hybrid = w * lexical_norm + (1 - w) * semantic_norm

A chunk found by only one signal gets 0 for the other.
Ties: hybrid desc, raw lexical desc, chunk id asc.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

from .chunkstore import ChunkStore
from .config import Config
from .documents import DocumentKind
from .errors import ConfigurationError, ProviderError
from .lexical import LexicalIndex
from .vectors import VectorStore


@dataclass
class HybridRankedChunk:
    chunk_id: str
    parent_id: str
    kind: DocumentKind
    content: str
    hybrid_score: float
    lexical_score: float = 0.0
    semantic_score: float = 0.0
    normalized_lexical_score: float = 0.0
    normalized_semantic_score: float = 0.0
    parent_title: str = ""
    heading_path: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    source_url: Optional[str] = None
    role: Optional[str] = None
    timestamp: Optional[int] = None
    turn_index: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "chunk_id": self.chunk_id,
            "parent_id": self.parent_id,
            "kind": self.kind.value,
            "content": self.content,
            "hybrid_score": round(self.hybrid_score, 6),
            "lexical_score": round(self.lexical_score, 6),
            "semantic_score": round(self.semantic_score, 6),
            "normalized_lexical_score": round(self.normalized_lexical_score, 6),
            "normalized_semantic_score": round(self.normalized_semantic_score, 6),
            "parent_title": self.parent_title,
            "heading_path": list(self.heading_path),
            "tags": list(self.tags),
            "source_url": self.source_url,
            "role": self.role,
            "timestamp": self.timestamp,
            "turn_index": self.turn_index,
        }


def normalize_minmax(scores: dict[str, float]) -> dict[str, float]:
    if not scores:
        return {}
    lo = min(scores.values())
    hi = max(scores.values())
    if hi == lo:
        # Single candidate or all equal: full credit if it scored at all
        value = 1.0 if hi > 0 else 0.0
        return {cid: value for cid in scores}
    span = hi - lo
    return {cid: (s - lo) / span for cid, s in scores.items()}


def normalize_rank(scores: dict[str, float]) -> dict[str, float]:
    """Best = 1.0, decreasing linearly by rank; equal scores share a rank."""
    if not scores:
        return {}
    n = len(scores)
    ordered = sorted(scores.items(), key=lambda x: (-x[1], x[0]))
    result: dict[str, float] = {}
    rank = 0
    prev: Optional[float] = None
    for i, (cid, s) in enumerate(ordered):
        if s != prev:
            rank = i
            prev = s
        result[cid] = (n - rank) / n
    return result


NORMALIZERS: dict[str, Callable[[dict[str, float]], dict[str, float]]] = {
    "minmax": normalize_minmax,
    "rank": normalize_rank,
}


class HybridQueryEngine:
    def __init__(
        self,
        config: Config,
        chunk_store: ChunkStore,
        lexical: LexicalIndex,
        vectors: VectorStore,
        embed_query: Callable[[str], list[float]],
        on_orphan: Callable[[str], None] | None = None,
    ):
        if config.score_normalization not in NORMALIZERS:
            raise ConfigurationError(
                f"Unknown score normalization '{config.score_normalization}' "
                f"(use one of: {', '.join(NORMALIZERS)})"
            )
        self.config = config
        self.chunk_store = chunk_store
        self.lexical = lexical
        self.vectors = vectors
        self._embed_query = embed_query
        self._on_orphan = on_orphan

    def _semantic_scores(self, query: str) -> Optional[dict[str, float]]:
        """None when the query could not be embedded."""
        if self.vectors.count == 0 or not self.vectors.vectorized_ids():
            return {}
        try:
            query_vector = self._embed_query(query)
        except (ConfigurationError, ProviderError) as e:
            print(f"Warning: semantic search unavailable, using keyword results only: {e}")
            return None
        hits = self.vectors.similarity(query_vector, top_k=self.config.semantic_candidates)
        return {
            cid: s for cid, s in hits.items()
            if s >= self.config.semantic_threshold
        }

    def search(self, query: str, top_k: Optional[int] = None) -> list[HybridRankedChunk]:
        return self.search_ex(query, top_k)[0]

    def search_ex(self, query: str, top_k: Optional[int] = None) -> tuple[list[HybridRankedChunk], bool]:
        """Like search(), also reporting whether it fell back to keywords only."""
        if not query or not query.strip():
            return [], False
        k = top_k if top_k is not None else self.config.default_top_k
        if k <= 0 or len(self.chunk_store) == 0:
            return [], False

        lexical_only = False
        lexical = dict(self.lexical.top(query, self.config.lexical_candidates))
        semantic = self._semantic_scores(query)
        if semantic is None:
            lexical_only = True
            semantic = {}

        normalize = NORMALIZERS[self.config.score_normalization]
        lex_norm = normalize(lexical)
        sem_norm = normalize(semantic)
        w = self.config.lexical_weight

        ranked: list[HybridRankedChunk] = []
        for cid in set(lexical) | set(semantic):
            chunk = self.chunk_store.get(cid)
            if chunk is None:
                if self._on_orphan:
                    self._on_orphan(cid)
                continue
            ln = lex_norm.get(cid, 0.0)
            sn = sem_norm.get(cid, 0.0)
            ranked.append(HybridRankedChunk(
                chunk_id=cid,
                parent_id=chunk.parent_id,
                kind=chunk.kind,
                content=chunk.content,
                hybrid_score=w * ln + (1 - w) * sn,
                lexical_score=lexical.get(cid, 0.0),
                semantic_score=semantic.get(cid, 0.0),
                normalized_lexical_score=ln,
                normalized_semantic_score=sn,
                parent_title=chunk.parent_title,
                heading_path=list(chunk.heading_path),
                tags=list(chunk.tags),
                source_url=chunk.source_url,
                role=chunk.role,
                timestamp=chunk.timestamp,
                turn_index=chunk.turn_index,
            ))

        ranked.sort(key=lambda r: (-r.hybrid_score, -r.lexical_score, r.chunk_id))
        return ranked[:k], lexical_only


def _format_time(ts: int) -> str:
    # Chat timestamps are epoch milliseconds; accept seconds too
    seconds = ts / 1000 if ts > 10**11 else ts
    return datetime.fromtimestamp(seconds, tz=timezone.utc).strftime("%Y-%m-%d %H:%M UTC")


def format_results_for_llm(results: list[HybridRankedChunk]) -> dict:
    """Group results by parent into footnoted context blocks.

    Returns {"prompt_context": str, "sources": str}.
    """
    if not results:
        return {
            "prompt_context": "No relevant search results found to provide context.",
            "sources": "",
        }

    groups: dict[str, list[HybridRankedChunk]] = {}
    for r in results:
        groups.setdefault(r.parent_id, []).append(r)

    lines = [
        "Use the following search results to answer. Cite sources using footnotes "
        "(e.g., [^1]) where appropriate. Place the footnotes at the end of your response.",
        "",
    ]
    sources = ["### Sources"]
    for num, (parent_id, chunks) in enumerate(groups.items(), start=1):
        lines.append(f"### [Content Source [^{num}]]")
        for r in chunks:
            if r.kind == DocumentKind.CHAT and r.role and r.timestamp:
                lines.append(f"(Role: {r.role}, Time: {_format_time(r.timestamp)})")
            lines.append(r.content)
            lines.append("")

        first = chunks[0]
        label = "Note" if first.kind == DocumentKind.NOTE else "Chat"
        entry = f'[^{num}]: {label}: "{first.parent_title or "Untitled"}"'
        if first.kind == DocumentKind.NOTE and first.source_url:
            entry += f" (URL: {first.source_url})"
        sources.append(entry)

    return {
        "prompt_context": "\n".join(lines).strip(),
        "sources": "\n".join(sources),
    }
