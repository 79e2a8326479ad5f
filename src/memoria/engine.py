# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
KnowledgeEngine – wires chunker, indexes, coordinator and query engine
from a Config and exposes the host message contract:

  {"type": "RebuildLexicalIndex"}        -> {"success": bool, ...report}
  {"type": "RebuildAllEmbeddings"}       -> {"success": bool, ...report}
  {"type": "UpdateMissingEmbeddings"}    -> {"success": bool, ...report}
  {"type": "Search", "query", "top_k"}   -> {"success": true, "results": [...]}

Engine errors never escape the message methods; they come back as
{"success": false, "error": "..."}.
"""
from pathlib import Path
from typing import Callable, Optional, Union

from .chunker import Chunker
from .chunkstore import ChunkStore
from .config import Config
from .coordinator import IndexCoordinator, IndexUpdate
from .documents import Document, DocumentKind
from .errors import MemoriaError
from .health import HealthTracker
from .lexical import LexicalIndex
from .metadata import MetadataStore
from .providers import EmbeddingModelConfig, EmbeddingProvider, create_provider
from .search import HybridQueryEngine, format_results_for_llm
from .vectors import VectorStore

CHUNKS_FILENAME = "chunks.json"
METADATA_FILENAME = "index_meta.json"


class KnowledgeEngine:
    def __init__(
        self,
        config: Config,
        provider_factory: Callable[[EmbeddingModelConfig], EmbeddingProvider] | None = None,
        health: HealthTracker | None = None,
        chroma_client=None,
    ):
        self.config = config
        self.health = health or HealthTracker()
        self._provider_factory = provider_factory or (
            lambda model: create_provider(model, timeout=config.embedding_timeout)
        )

        data = Path(config.data_path)
        self.chunk_store = ChunkStore(data / CHUNKS_FILENAME)
        self.metadata = MetadataStore(
            data / METADATA_FILENAME,
            default_model=config.default_embedding_model(),
        )
        self.lexical = LexicalIndex(k1=config.bm25_k1, b=config.bm25_b)
        self.vectors = VectorStore(
            path=config.vectorstore_dir,
            collection_name=config.collection_name,
            client=chroma_client,
        )
        self.coordinator = IndexCoordinator(
            config,
            chunk_store=self.chunk_store,
            lexical=self.lexical,
            vectors=self.vectors,
            metadata=self.metadata,
            chunker=Chunker.from_config(config),
            provider_factory=self._provider_factory,
            health=self.health,
        )
        self.query_engine = HybridQueryEngine(
            config,
            chunk_store=self.chunk_store,
            lexical=self.lexical,
            vectors=self.vectors,
            embed_query=self.coordinator.embed_query,
            on_orphan=self.coordinator.drop_orphan,
        )
        self.coordinator.reconcile()

    # ── Document events ──────────────────────────────

    def on_document_saved(self, doc: Document) -> IndexUpdate:
        return self.coordinator.on_document_saved(doc)

    def on_document_deleted(self, parent_id: str) -> IndexUpdate:
        return self.coordinator.on_document_deleted(parent_id)

    def on_all_documents_deleted(self, kind: Optional[DocumentKind] = None) -> list[str]:
        return self.coordinator.on_all_documents_deleted(kind)

    # ── Message contract ─────────────────────────────

    def _run(self, operation: Callable) -> dict:
        try:
            return operation().to_dict()
        except MemoriaError as e:
            return {"success": False, "error": str(e)}
        except Exception as e:
            print(f"Warning: {getattr(operation, '__name__', 'maintenance')} failed: {e}")
            return {"success": False, "error": f"{type(e).__name__}: {e}"}

    def rebuild_lexical_index(self) -> dict:
        return self._run(self.coordinator.rebuild_lexical_index)

    def rebuild_all_embeddings(self) -> dict:
        return self._run(self.coordinator.rebuild_all_embeddings)

    def update_missing_embeddings(self) -> dict:
        return self._run(self.coordinator.update_missing_embeddings)

    def search(self, query: str, top_k: Optional[int] = None, surface: str = "engine") -> dict:
        try:
            results, lexical_only = self.query_engine.search_ex(query, top_k)
        except MemoriaError as e:
            return {"success": False, "error": str(e)}
        if query and query.strip():
            self.health.record_search(surface, hit=bool(results), lexical_only=lexical_only)
        return {
            "success": True,
            "results": [r.to_dict() for r in results],
            "lexical_only": lexical_only,
        }

    def search_context(self, query: str, top_k: Optional[int] = None, surface: str = "engine") -> dict:
        """Search and format the hits as footnoted LLM context."""
        try:
            results, lexical_only = self.query_engine.search_ex(query, top_k)
        except MemoriaError as e:
            return {"success": False, "error": str(e)}
        if query and query.strip():
            self.health.record_search(surface, hit=bool(results), lexical_only=lexical_only)
        return {"success": True, "count": len(results), **format_results_for_llm(results)}

    def handle_message(self, message: dict) -> dict:
        kind = message.get("type")
        if kind == "RebuildLexicalIndex":
            return self.rebuild_lexical_index()
        if kind == "RebuildAllEmbeddings":
            return self.rebuild_all_embeddings()
        if kind == "UpdateMissingEmbeddings":
            return self.update_missing_embeddings()
        if kind == "Search":
            top_k = message.get("top_k", message.get("topK"))
            return self.search(message.get("query") or "", top_k)
        return {"success": False, "error": f"Unknown message type: {kind!r}"}

    # ── Model / status ───────────────────────────────

    def set_embedding_model(
        self, model: Union[EmbeddingModelConfig, dict, None], rebuild: bool = True,
    ) -> dict:
        try:
            if isinstance(model, dict):
                model = EmbeddingModelConfig.model_validate(model)
            if model is not None:
                # Fail fast on unknown providers / missing endpoints
                self._provider_factory(model).close()
            thread = self.coordinator.set_embedding_model(model, rebuild=rebuild)
        except MemoriaError as e:
            return {"success": False, "error": str(e)}
        except ValueError as e:
            return {"success": False, "error": f"Invalid embedding model: {e}"}
        return {
            "success": True,
            "model": model.to_safe_dict() if model else None,
            "rebuild_started": thread is not None,
            "missing": self.vectors.missing_count,
        }

    def status(self) -> dict:
        return {
            "success": True,
            **self.coordinator.status(),
            "health": self.health.status,
        }

    def flush(self, timeout: Optional[float] = None):
        self.coordinator.flush(timeout)

    def close(self):
        self.coordinator.close()
