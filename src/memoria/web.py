# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Web API (FastAPI) – document events from the host's note/chat stores,
maintenance triggers, status and test search.
Runs in a background thread alongside the MCP server.

All state (config, engine, scheduler) is injected via create_web_app().
"""
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from .config import LOCAL_MODELS, Config
from .documents import ChatTurn, Conversation, DocumentKind, Note
from .engine import KnowledgeEngine
from .errors import ConfigurationError, MaintenanceInProgress, MemoriaError
from .health import HealthTracker
from .providers import HOSTED_PROVIDERS, LOCAL_SERVERS, EmbeddingModelConfig, ProviderKind
from .scheduler import MaintenanceScheduler


class NoteIn(BaseModel):
    id: str = Field(min_length=1)
    content: str = ""
    title: str = ""
    url: Optional[str] = None
    tags: list[str] = []
    updated_at: Optional[int] = None


class TurnIn(BaseModel):
    role: str
    content: str = ""
    timestamp: int = 0


class ConversationIn(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    turns: list[TurnIn] = []
    updated_at: Optional[int] = None


class SearchRequest(BaseModel):
    query: str
    top_k: Optional[int] = None
    format: str = "results"


class ModelUpdate(BaseModel):
    kind: ProviderKind
    name: str = ""
    model: str
    endpoint: str = ""
    api_key: str = ""
    rebuild: bool = True


def _maintenance(operation) -> dict:
    """Run a coordinator maintenance call, mapping engine errors to HTTP."""
    try:
        return operation().to_dict()
    except MaintenanceInProgress as e:
        raise HTTPException(status_code=409, detail=str(e))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except MemoriaError as e:
        raise HTTPException(status_code=500, detail=str(e))


def create_web_app(
    config: Config,
    engine: KnowledgeEngine,
    scheduler: MaintenanceScheduler | None = None,
    health: HealthTracker | None = None,
) -> FastAPI:
    """Factory: returns a FastAPI app that shares state with the MCP server."""

    health = health or engine.health
    coordinator = engine.coordinator

    app = FastAPI(
        title="Memoria",
        description="Hybrid retrieval engine for personal notes and chat history",
    )

    # ── Health ───────────────────────────────────────

    @app.get("/health")
    async def health_check():
        from . import __version__
        status = health.status
        return {
            "status": "ok" if health.is_healthy else "degraded",
            "version": __version__,
            "state": coordinator.state.value,
            "chunks": len(engine.chunk_store),
            "missing_embeddings": engine.vectors.missing_count,
            "last_maintenance_at": status.get("last_maintenance_at"),
            "last_maintenance_ok": status.get("last_maintenance_ok"),
            "scheduler_running": bool(scheduler and scheduler.running),
        }

    @app.get("/api/health")
    async def health_detail():
        return health.status

    @app.get("/api/status")
    async def get_status():
        return engine.status()

    @app.get("/api/config")
    async def get_config():
        return {
            "config": config.to_safe_dict(),
            "local_models": LOCAL_MODELS,
            "local_servers": LOCAL_SERVERS,
            "hosted_providers": sorted(HOSTED_PROVIDERS),
        }

    # ── Maintenance ──────────────────────────────────

    @app.post("/api/index/lexical/rebuild")
    def rebuild_lexical():
        return _maintenance(coordinator.rebuild_lexical_index)

    @app.post("/api/index/embeddings/rebuild")
    def rebuild_embeddings():
        return _maintenance(coordinator.rebuild_all_embeddings)

    @app.post("/api/index/embeddings/update-missing")
    def update_missing():
        return _maintenance(coordinator.update_missing_embeddings)

    @app.get("/api/model")
    async def get_model():
        model = engine.metadata.active_model
        return {"model": model.to_safe_dict() if model else None}

    @app.post("/api/model")
    def set_model(update: ModelUpdate):
        model = EmbeddingModelConfig(**update.model_dump(exclude={"rebuild"}))
        result = engine.set_embedding_model(model, rebuild=update.rebuild)
        if not result["success"]:
            raise HTTPException(status_code=400, detail=result["error"])
        return result

    @app.delete("/api/model")
    def clear_model():
        return engine.set_embedding_model(None)

    # ── Search ───────────────────────────────────────

    @app.post("/api/search")
    def search(req: SearchRequest):
        if req.format == "llm":
            result = engine.search_context(req.query, req.top_k, surface="web")
        else:
            result = engine.search(req.query, req.top_k, surface="web")
        if not result["success"]:
            raise HTTPException(status_code=400, detail=result["error"])
        return {"query": req.query, **result}

    # ── Document events ──────────────────────────────

    @app.put("/api/notes")
    @app.post("/api/notes")
    def save_note(note: NoteIn):
        update = engine.on_document_saved(Note(**note.model_dump()))
        return {"status": "success", **update.to_dict()}

    @app.put("/api/conversations")
    @app.post("/api/conversations")
    def save_conversation(conv: ConversationIn):
        doc = Conversation(
            id=conv.id,
            title=conv.title,
            turns=[ChatTurn(**t.model_dump()) for t in conv.turns],
            updated_at=conv.updated_at,
        )
        update = engine.on_document_saved(doc)
        return {"status": "success", **update.to_dict()}

    @app.delete("/api/documents/{parent_id}")
    def delete_document(parent_id: str):
        update = engine.on_document_deleted(parent_id)
        return {"status": "success", **update.to_dict()}

    @app.delete("/api/documents")
    def delete_all_documents(kind: Optional[DocumentKind] = None):
        removed = engine.on_all_documents_deleted(kind)
        return {"status": "success", "removed": len(removed)}

    return app
