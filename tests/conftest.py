import hashlib
import math
import re
import threading
import time

import pytest

from memoria.config import Config
from memoria.engine import KnowledgeEngine
from memoria.errors import (
    ProviderMalformedResponse, ProviderRateLimited, ProviderUnauthenticated,
    ProviderUnreachable,
)
from memoria.health import HealthTracker
from memoria.providers import (
    EmbeddingModelConfig, EmbeddingProvider, ProviderKind, create_provider,
)

FAKE_DIM = 64

_WORD_RE = re.compile(r"\w+")


def fake_vector(text: str, salt: str = "", dim: int = FAKE_DIM) -> list[float]:
    """Hashed bag of words: texts sharing words get a high cosine."""
    vec = [0.0] * dim
    for word in _WORD_RE.findall(text.lower()):
        h = int(hashlib.md5(f"{salt}:{word}".encode()).hexdigest(), 16)
        vec[h % dim] += 1.0
    vec[-1] += 0.01
    norm = math.sqrt(sum(x * x for x in vec))
    return [x / norm for x in vec]


class FakeBackend:
    """Shared switchboard for every FakeProvider built by the factory."""

    def __init__(self):
        self.lock = threading.Lock()
        self.calls: list[tuple[str, list[str]]] = []
        self.rate_limited: set[str] = set()
        self.malformed: set[str] = set()
        self.dims: list[int] = []
        self.unauthenticated = False
        self.unreachable = False
        self.delay = 0.0
        self.gate: threading.Event | None = None
        self.created: list[str] = []

    def factory(self, model: EmbeddingModelConfig) -> "FakeProvider":
        # Same configuration checks as the real dispatch, no network
        create_provider(model).close()
        with self.lock:
            self.created.append(model.model)
        return FakeProvider(model, self)

    @property
    def texts_embedded(self) -> list[str]:
        with self.lock:
            return [t for _, texts in self.calls for t in texts]


class FakeProvider(EmbeddingProvider):
    def __init__(self, model_config: EmbeddingModelConfig, backend: FakeBackend):
        super().__init__(model_config)
        self.backend = backend

    def embed_batch(self, texts):
        b = self.backend
        with b.lock:
            b.calls.append((self.model_config.model, list(texts)))
        if b.gate is not None:
            b.gate.wait(10)
        if b.delay:
            time.sleep(b.delay)
        if b.unauthenticated:
            raise ProviderUnauthenticated("invalid API key", provider="fake")
        if b.unreachable:
            raise ProviderUnreachable("connection refused", provider="fake")
        for t in texts:
            if any(marker in t for marker in b.rate_limited):
                raise ProviderRateLimited("too many requests", provider="fake", retry_after=0)
            if any(marker in t for marker in b.malformed):
                raise ProviderMalformedResponse("undecodable embedding", provider="fake")
        with b.lock:
            dim = b.dims.pop(0) if b.dims else FAKE_DIM
        return [fake_vector(t, self.model_config.model, dim=dim) for t in texts]


def fake_model(model: str = "fake-embed-v1") -> EmbeddingModelConfig:
    return EmbeddingModelConfig(
        kind=ProviderKind.CUSTOM, name="fake", model=model, endpoint="http://fake.local",
    )


@pytest.fixture
def config(tmp_path):
    """Config pointing at tmp paths with a fake default model."""
    return Config(
        data_path=str(tmp_path / "data"),
        vectorstore_path=str(tmp_path / "vectorstore"),
        embedding_provider_kind="custom",
        embedding_provider_name="fake",
        embedding_model="fake-embed-v1",
        embedding_endpoint="http://fake.local",
        embedding_concurrency=2,
        embedding_batch_size=4,
        embedding_max_retries=1,
        embedding_retry_backoff=0.0,
        maintenance_interval=0,
    )


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def health():
    return HealthTracker()


@pytest.fixture
def engine(config, backend, health):
    eng = KnowledgeEngine(config, provider_factory=backend.factory, health=health)
    yield eng
    eng.close()
