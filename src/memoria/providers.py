# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Embedding providers – one uniform embed()/embed_batch() over several backends.

  LOCAL_MODEL   in-process sentence-transformers model
  LOCAL_SERVER  Ollama / LM Studio (OpenAI-compatible /v1/embeddings)
  HOSTED_API    openai, groq, openrouter (OpenAI-compatible), gemini
  CUSTOM        any OpenAI-compatible endpoint

The variant is picked once by create_provider(). Providers never retry;
retry and back-off belong to the IndexCoordinator.
"""
import threading
from abc import ABC, abstractmethod
from enum import Enum
from typing import Optional, Sequence

import httpx
from pydantic import BaseModel

from .errors import (
    ConfigurationError, NoActiveEmbeddingModel, ProviderError,
    ProviderMalformedResponse, ProviderRateLimited, ProviderUnauthenticated,
    ProviderUnreachable,
)

DEFAULT_TIMEOUT = 60.0

LOCAL_SERVERS = {
    "ollama": "http://localhost:11434",
    "lmstudio": "http://localhost:1234",
}

HOSTED_PROVIDERS = {
    "openai": "https://api.openai.com/v1/embeddings",
    "groq": "https://api.groq.com/openai/v1/embeddings",
    "openrouter": "https://openrouter.ai/api/v1/embeddings",
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
}


class ProviderKind(str, Enum):
    LOCAL_MODEL = "local_model"
    LOCAL_SERVER = "local_server"
    HOSTED_API = "hosted_api"
    CUSTOM = "custom"


class EmbeddingModelConfig(BaseModel):
    """The active embedding model: who computes vectors, and with what."""

    kind: ProviderKind
    name: str = ""
    model: str
    endpoint: str = ""
    api_key: str = ""

    @property
    def label(self) -> str:
        return f"{self.name or self.kind.value}/{self.model}"

    def same_model(self, other: Optional["EmbeddingModelConfig"]) -> bool:
        """True if vectors produced by `other` are valid for this model.
        A rotated credential does not invalidate vectors."""
        if other is None:
            return False
        return (
            self.kind == other.kind
            and self.name == other.name
            and self.model == other.model
            and self.endpoint.rstrip("/") == other.endpoint.rstrip("/")
        )

    def to_safe_dict(self) -> dict:
        d = self.model_dump(mode="json")
        if d.get("api_key"):
            d["api_key"] = "***set***"
        return d


class EmbeddingProvider(ABC):
    def __init__(self, model_config: EmbeddingModelConfig):
        self.model_config = model_config

    @property
    def name(self) -> str:
        return self.model_config.name or self.model_config.kind.value

    def embed(self, text: str) -> list[float]:
        return self.embed_batch([text])[0]

    @abstractmethod
    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        ...

    def close(self):
        pass

    def _check_vectors(self, vectors, expected: int) -> list[list[float]]:
        """Validate shape: `expected` non-empty float vectors of one dimension."""
        if not isinstance(vectors, list) or len(vectors) != expected:
            got = len(vectors) if isinstance(vectors, list) else type(vectors).__name__
            raise ProviderMalformedResponse(
                f"{self.name} returned {got} embeddings for {expected} inputs", self.name,
            )
        out: list[list[float]] = []
        dim = None
        for vec in vectors:
            try:
                floats = [float(x) for x in vec]
            except (TypeError, ValueError) as e:
                raise ProviderMalformedResponse(
                    f"{self.name} returned a non-numeric embedding: {e}", self.name,
                ) from e
            if not floats:
                raise ProviderMalformedResponse(f"{self.name} returned an empty embedding", self.name)
            if dim is None:
                dim = len(floats)
            elif len(floats) != dim:
                raise ProviderMalformedResponse(
                    f"{self.name} returned mixed dimensions ({dim} vs {len(floats)})", self.name,
                )
            out.append(floats)
        return out


# ── In-process model ─────────────────────────────────

class LocalModelProvider(EmbeddingProvider):
    """sentence-transformers model loaded into this process (lazy)."""

    def __init__(self, model_config: EmbeddingModelConfig):
        super().__init__(model_config)
        self._ef = None
        self._lock = threading.Lock()

    def _get_ef(self):
        with self._lock:
            if self._ef is None:
                from chromadb.utils import embedding_functions
                try:
                    self._ef = embedding_functions.SentenceTransformerEmbeddingFunction(
                        model_name=self.model_config.model
                    )
                except Exception as e:
                    raise ProviderUnreachable(
                        f"Failed to load local model '{self.model_config.model}': {e}", self.name,
                    ) from e
            return self._ef

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        ef = self._get_ef()
        try:
            vectors = ef(list(texts))
        except Exception as e:
            raise ProviderUnreachable(f"Local model failed: {e}", self.name) from e
        return self._check_vectors([list(v) for v in vectors], len(texts))


# ── HTTP providers ───────────────────────────────────

def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


def _error_detail(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        return response.text[:200]
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            return str(err.get("message", "Unknown error"))
        if err:
            return str(err)
    return "Unknown error"


class HttpEmbeddingProvider(EmbeddingProvider):
    def __init__(
        self,
        model_config: EmbeddingModelConfig,
        client: Optional[httpx.Client] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        super().__init__(model_config)
        self.timeout = timeout
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    def close(self):
        if self._owns_client:
            self._client.close()

    def _post(self, url: str, payload: dict, headers: dict) -> dict:
        try:
            response = self._client.post(url, json=payload, headers=headers, timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise ProviderUnreachable(
                f"{self.name} embedding request timed out after {self.timeout:g} seconds", self.name,
            ) from e
        except httpx.TransportError as e:
            raise ProviderUnreachable(f"{self.name} unreachable: {e}", self.name) from e

        status = response.status_code
        if status in (401, 403):
            raise ProviderUnauthenticated(
                f"{self.name} rejected the credential ({status}): {_error_detail(response)}", self.name,
            )
        if status == 429:
            raise ProviderRateLimited(
                f"{self.name} rate limit hit: {_error_detail(response)}",
                self.name,
                retry_after=_parse_retry_after(response.headers.get("retry-after")),
            )
        if status >= 500:
            raise ProviderUnreachable(
                f"{self.name} server error ({status}): {_error_detail(response)}", self.name,
            )
        if status >= 400:
            raise ProviderError(
                f"Failed to get embedding from {self.name} ({status}): {_error_detail(response)}",
                self.name,
            )
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderMalformedResponse(f"{self.name} returned invalid JSON", self.name) from e
        if not isinstance(data, dict):
            raise ProviderMalformedResponse(f"{self.name} returned unexpected JSON", self.name)
        return data


class OpenAICompatibleProvider(HttpEmbeddingProvider):
    requires_api_key = False

    @property
    def url(self) -> str:
        endpoint = self.model_config.endpoint.rstrip("/")
        if not endpoint:
            raise ConfigurationError(f"No endpoint configured for {self.name}")
        if endpoint.endswith("/embeddings"):
            return endpoint
        return f"{endpoint}/v1/embeddings"

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        api_key = self.model_config.api_key
        if self.requires_api_key and not api_key:
            raise ProviderUnauthenticated(f"{self.name} API key not found", self.name)
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        return headers

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        headers = self._headers()
        data = self._post(self.url, {"input": list(texts), "model": self.model_config.model}, headers)
        items = data.get("data")
        if not isinstance(items, list):
            raise ProviderMalformedResponse(f"{self.name} response has no 'data' list", self.name)
        try:
            if all(isinstance(i, dict) and "index" in i for i in items):
                items = sorted(items, key=lambda i: i["index"])
            vectors = [i["embedding"] for i in items]
        except (KeyError, TypeError) as e:
            raise ProviderMalformedResponse(f"{self.name} response missing embeddings: {e}", self.name) from e
        return self._check_vectors(vectors, len(texts))


class LocalServerProvider(OpenAICompatibleProvider):
    """Ollama / LM Studio on this machine; no credential."""

    @property
    def url(self) -> str:
        endpoint = self.model_config.endpoint or LOCAL_SERVERS.get(self.model_config.name, "")
        if not endpoint:
            raise ConfigurationError(f"{self.name} URL is not configured")
        return f"{endpoint.rstrip('/')}/v1/embeddings"

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}


class HostedAPIProvider(OpenAICompatibleProvider):
    requires_api_key = True

    @property
    def url(self) -> str:
        return self.model_config.endpoint or HOSTED_PROVIDERS[self.model_config.name]


class GeminiProvider(HttpEmbeddingProvider):
    @property
    def _model_path(self) -> str:
        model = self.model_config.model
        return model if model.startswith("models/") else f"models/{model}"

    @property
    def _base(self) -> str:
        return (self.model_config.endpoint or HOSTED_PROVIDERS["gemini"]).rstrip("/")

    def _headers(self) -> dict:
        if not self.model_config.api_key:
            raise ProviderUnauthenticated("Gemini API key not found", self.name)
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.model_config.api_key,
        }

    def embed(self, text: str) -> list[float]:
        headers = self._headers()
        data = self._post(
            f"{self._base}/{self._model_path}:embedContent",
            {"content": {"parts": [{"text": text}]}},
            headers,
        )
        try:
            vector = data["embedding"]["values"]
        except (KeyError, TypeError) as e:
            raise ProviderMalformedResponse(f"Gemini response missing embedding: {e}", self.name) from e
        return self._check_vectors([vector], 1)[0]

    def embed_batch(self, texts: Sequence[str]) -> list[list[float]]:
        if not texts:
            return []
        headers = self._headers()
        requests = [
            {"model": self._model_path, "content": {"parts": [{"text": t}]}}
            for t in texts
        ]
        data = self._post(
            f"{self._base}/{self._model_path}:batchEmbedContents",
            {"requests": requests},
            headers,
        )
        try:
            vectors = [e["values"] for e in data["embeddings"]]
        except (KeyError, TypeError) as e:
            raise ProviderMalformedResponse(f"Gemini response missing embeddings: {e}", self.name) from e
        return self._check_vectors(vectors, len(texts))


class CustomEndpointProvider(OpenAICompatibleProvider):
    pass


def create_provider(
    model_config: Optional[EmbeddingModelConfig],
    client: Optional[httpx.Client] = None,
    timeout: float = DEFAULT_TIMEOUT,
) -> EmbeddingProvider:
    """Pick the provider class for the active model."""
    if model_config is None or not model_config.model.strip():
        raise NoActiveEmbeddingModel()

    kind = model_config.kind
    if kind is ProviderKind.LOCAL_MODEL:
        return LocalModelProvider(model_config)
    if kind is ProviderKind.LOCAL_SERVER:
        return LocalServerProvider(model_config, client=client, timeout=timeout)
    if kind is ProviderKind.HOSTED_API:
        if model_config.name == "gemini":
            return GeminiProvider(model_config, client=client, timeout=timeout)
        if model_config.name in HOSTED_PROVIDERS:
            return HostedAPIProvider(model_config, client=client, timeout=timeout)
        raise ConfigurationError(f"Unsupported hosted embedding provider: '{model_config.name}'")
    if kind is ProviderKind.CUSTOM:
        if not model_config.endpoint:
            raise ConfigurationError(f"Custom endpoint '{model_config.name}' has no URL")
        return CustomEndpointProvider(model_config, client=client, timeout=timeout)
    raise ConfigurationError(f"Unsupported embedding provider kind: {kind}")
