# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Error taxonomy.

Provider errors are recoverable (retry later, chunks stay MISSING).
Configuration errors and unresolved index inconsistencies fail the
current operation and are reported to the caller.
"""


class MemoriaError(Exception):
    """Base class for all engine errors."""


# ── Embedding providers ──────────────────────────────

class ProviderError(MemoriaError):
    """An embedding provider call failed."""

    def __init__(self, message: str, provider: str = ""):
        super().__init__(message)
        self.provider = provider


class ProviderUnauthenticated(ProviderError):
    pass


class ProviderRateLimited(ProviderError):
    def __init__(self, message: str, provider: str = "", retry_after: float | None = None):
        super().__init__(message, provider)
        self.retry_after = retry_after


class ProviderUnreachable(ProviderError):
    pass


class ProviderMalformedResponse(ProviderError):
    pass


# ── Configuration / index state ──────────────────────

class ConfigurationError(MemoriaError):
    """The engine is not configured well enough to run the operation."""


class NoActiveEmbeddingModel(ConfigurationError):
    def __init__(self, message: str = "No active embedding model configured"):
        super().__init__(message)


class IndexInconsistency(MemoriaError):
    """A chunk id is present in one index but not the other."""

    def __init__(self, parent_id: str, chunk_ids: list[str], detail: str = ""):
        self.parent_id = parent_id
        self.chunk_ids = list(chunk_ids)
        msg = f"Index inconsistency for parent '{parent_id}': {len(self.chunk_ids)} chunk(s) out of sync"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class MaintenanceInProgress(MemoriaError):
    def __init__(self, running: str):
        self.running = running
        super().__init__(f"Maintenance already in progress: {running}")
