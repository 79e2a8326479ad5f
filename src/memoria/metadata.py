# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Index metadata: last rebuild/update timestamps and the active embedding
model. Persisted so the host can show "last rebuilt: …" after a restart.
A failed run replaces its timestamp with an "error: …" marker.
"""
import json
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Literal, Optional, Union

from pydantic import BaseModel

from .providers import EmbeddingModelConfig

ERROR_PREFIX = "error: "

TimestampField = Literal["bm25_last_rebuild", "embeddings_last_rebuild", "embeddings_last_update"]


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class IndexMetadata(BaseModel):
    bm25_last_rebuild: Optional[str] = None
    embeddings_last_rebuild: Optional[str] = None
    embeddings_last_update: Optional[str] = None
    embedding_model: Optional[EmbeddingModelConfig] = None

    def to_safe_dict(self) -> dict:
        d = self.model_dump(mode="json", exclude={"embedding_model"})
        d["embedding_model"] = self.embedding_model.to_safe_dict() if self.embedding_model else None
        return d


def is_error_marker(value: Optional[str]) -> bool:
    return bool(value) and value.startswith(ERROR_PREFIX)


class MetadataStore:
    def __init__(
        self,
        path: Union[str, Path, None] = None,
        default_model: Optional[EmbeddingModelConfig] = None,
    ):
        self._path = Path(path) if path else None
        self._lock = threading.Lock()
        self._meta = self._load() or IndexMetadata(embedding_model=default_model)

    def _load(self) -> Optional[IndexMetadata]:
        if self._path is None or not self._path.exists():
            return None
        try:
            return IndexMetadata.model_validate_json(self._path.read_text())
        except Exception as e:
            print(f"Warning: could not read index metadata {self._path}: {e}")
            return None

    def _save(self):
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._path.write_text(json.dumps(self._meta.model_dump(mode="json"), indent=2))

    @property
    def metadata(self) -> IndexMetadata:
        with self._lock:
            return self._meta.model_copy(deep=True)

    @property
    def active_model(self) -> Optional[EmbeddingModelConfig]:
        with self._lock:
            return self._meta.embedding_model

    def set_active_model(self, model: Optional[EmbeddingModelConfig]):
        with self._lock:
            self._meta.embedding_model = model
            self._save()

    def mark(self, field: TimestampField, timestamp: Optional[str] = None) -> str:
        value = timestamp or now_iso()
        with self._lock:
            setattr(self._meta, field, value)
            self._save()
        return value

    def mark_error(self, field: TimestampField, message: str) -> str:
        value = f"{ERROR_PREFIX}{message}"
        with self._lock:
            setattr(self._meta, field, value)
            self._save()
        return value
