# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Central configuration – configurable via:
1. Environment variables (MEMORIA_ prefix)
2. .env file
3. Host UI (writes to <data_path>/config.json)
"""
import json
from pathlib import Path
from typing import Literal, Optional

from pydantic_settings import BaseSettings, SettingsConfigDict

from .providers import EmbeddingModelConfig, ProviderKind

CONFIG_FILENAME = "config.json"


class Config(BaseSettings):
    model_config = SettingsConfigDict(
        env_prefix="MEMORIA_", env_file=".env", extra="ignore",
    )

    # ── Storage ──────────────────────────────────
    data_path: str = "/data"
    vectorstore_path: str = ""
    collection_name: str = "memoria_chunks"

    # ── Embeddings (default active model) ────────
    embedding_provider_kind: Literal[
        "local_model", "local_server", "hosted_api", "custom",
    ] = "local_model"
    embedding_provider_name: str = "sentence-transformers"
    embedding_model: str = "all-MiniLM-L6-v2"
    embedding_endpoint: str = ""
    embedding_api_key: str = ""
    embedding_timeout: float = 60.0

    # ── Embedding worker pool ────────────────────
    embedding_concurrency: int = 3
    embedding_batch_size: int = 8
    embedding_max_retries: int = 2
    embedding_retry_backoff: float = 2.0
    auto_embed_on_save: bool = True

    # ── Chunking ─────────────────────────────────
    chunk_max_chars: int = 1500
    chunk_target_chars: int = 500
    chunk_min_chars: int = 50
    chunk_overlap: int = 50

    # ── Lexical (BM25) ───────────────────────────
    bm25_k1: float = 1.2
    bm25_b: float = 0.75

    # ── Hybrid search ────────────────────────────
    lexical_weight: float = 0.5
    score_normalization: Literal["minmax", "rank"] = "minmax"
    lexical_candidates: int = 50
    semantic_candidates: int = 20
    semantic_threshold: float = 0.1
    default_top_k: int = 10

    # ── Background maintenance ───────────────────
    maintenance_interval: int = 0

    # ── Server / Transport ───────────────────────
    transport: Literal["stdio", "sse"] = "sse"
    sse_port: int = 8081
    web_host: str = "127.0.0.1"
    web_port: int = 8080

    @property
    def config_file(self) -> Path:
        return Path(self.data_path) / CONFIG_FILENAME

    @property
    def vectorstore_dir(self) -> Path:
        if self.vectorstore_path:
            return Path(self.vectorstore_path)
        return Path(self.data_path) / "vectorstore"

    def default_embedding_model(self) -> Optional[EmbeddingModelConfig]:
        """Model descriptor from settings; None if no model is named."""
        if not self.embedding_model.strip():
            return None
        return EmbeddingModelConfig(
            kind=ProviderKind(self.embedding_provider_kind),
            name=self.embedding_provider_name,
            model=self.embedding_model,
            endpoint=self.embedding_endpoint,
            api_key=self.embedding_api_key,
        )

    @classmethod
    def load(cls, **overrides) -> "Config":
        """Load config: ENV -> .env -> config.json (UI overrides)."""
        config = cls(**overrides)

        if config.config_file.exists():
            try:
                saved = json.loads(config.config_file.read_text())
                for key, value in saved.items():
                    if key in overrides:
                        continue
                    if hasattr(config, key) and value != "":
                        setattr(config, key, value)
            except Exception as e:
                print(f"Warning: Config file error: {e}")

        return config

    def save(self):
        """Persist current config for the host UI."""
        self.config_file.parent.mkdir(parents=True, exist_ok=True)
        self.config_file.write_text(
            json.dumps(self.model_dump(), indent=2, default=str)
        )

    def to_safe_dict(self) -> dict:
        """Config without secrets (for UI display)."""
        d = self.model_dump()
        if d.get("embedding_api_key"):
            d["embedding_api_key"] = d["embedding_api_key"][:8] + "..."
        return d


LOCAL_MODELS = [
    {
        "id": "all-MiniLM-L6-v2",
        "name": "MiniLM-L6 v2",
        "dim": 384,
        "ram": "~90MB",
        "lang": "EN",
        "desc": "Fast, low RAM, good default",
    },
    {
        "id": "all-mpnet-base-v2",
        "name": "MPNet Base v2",
        "dim": 768,
        "ram": "~420MB",
        "lang": "EN",
        "desc": "Sentence-Transformers standard",
    },
    {
        "id": "BAAI/bge-base-en-v1.5",
        "name": "BGE Base EN v1.5",
        "dim": 768,
        "ram": "~420MB",
        "lang": "EN",
        "desc": "Best value for English",
    },
    {
        "id": "intfloat/multilingual-e5-base",
        "name": "Multilingual E5 Base",
        "dim": 768,
        "ram": "~1.1GB",
        "lang": "Multi",
        "desc": "Good for mixed-language notes",
    },
    {
        "id": "BAAI/bge-m3",
        "name": "BGE-M3",
        "dim": 1024,
        "ram": "~2.2GB",
        "lang": "Multi",
        "desc": "Best multilingual model",
    },
]
