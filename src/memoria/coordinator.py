# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
IndexCoordinator – the only writer of index state.

Document events -> Chunker -> ChunkStore + LexicalIndex + VectorStore.
Embeddings are computed by a bounded thread pool; a generation counter
invalidates in-flight work when the active embedding model changes.

States:
  IDLE -> REBUILDING        rebuild lexical / rebuild embeddings / model change
  IDLE -> UPDATING_MISSING  fill missing embeddings
  *    -> IDLE              on completion (timestamp recorded)
  *    -> ERROR             unrecoverable failure (timestamp = "error: …")

At most one rebuild-class operation runs at a time; a second request is
rejected with MaintenanceInProgress.
"""
import threading
import time
import uuid
from concurrent.futures import CancelledError, Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Callable, Optional

from .chunker import Chunker, embedding_text
from .chunkstore import ChunkStore
from .config import Config
from .documents import (
    Chunk, Document, DocumentKind, content_hash, parent_of, parse_chunk_id,
)
from .errors import (
    ConfigurationError, IndexInconsistency, MaintenanceInProgress,
    NoActiveEmbeddingModel, ProviderError, ProviderMalformedResponse,
    ProviderRateLimited, ProviderUnauthenticated, ProviderUnreachable,
)
from .health import HealthTracker
from .lexical import LexicalIndex
from .metadata import MetadataStore
from .providers import EmbeddingModelConfig, EmbeddingProvider, create_provider
from .vectors import EmbeddingState, VectorStore

MAX_RECORDED_FAILURES = 50


class CoordinatorState(str, Enum):
    IDLE = "idle"
    REBUILDING = "rebuilding"
    UPDATING_MISSING = "updating_missing"
    ERROR = "error"


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def fingerprint(chunk: Chunk) -> str:
    """Identity of the text a vector was computed from."""
    return content_hash(embedding_text(chunk))


@dataclass
class BatchOutcome:
    embedded: int = 0
    failed: int = 0
    skipped: int = 0
    discarded: int = 0
    failures: list[dict] = field(default_factory=list)
    by_kind: dict[str, dict[str, int]] = field(default_factory=dict)

    def _count(self, key: str, chunk_id: str, n: int = 1):
        parsed = parse_chunk_id(chunk_id)
        kind = parsed["kind"].value if parsed else "unknown"
        counts = self.by_kind.setdefault(kind, {"embedded": 0, "failed": 0})
        counts[key] += n

    def record_embedded(self, chunk_id: str):
        self.embedded += 1
        self._count("embedded", chunk_id)

    def fail(self, chunk_ids: list[str], error: Exception):
        self.failed += len(chunk_ids)
        for cid in chunk_ids:
            self._count("failed", cid)
            if len(self.failures) < MAX_RECORDED_FAILURES:
                self.failures.append({
                    "chunk_id": cid,
                    "error": type(error).__name__,
                    "message": str(error),
                })

    def absorb(self, other: "BatchOutcome"):
        self.embedded += other.embedded
        self.failed += other.failed
        self.skipped += other.skipped
        self.discarded += other.discarded
        for kind, counts in other.by_kind.items():
            mine = self.by_kind.setdefault(kind, {"embedded": 0, "failed": 0})
            for key, n in counts.items():
                mine[key] += n
        room = MAX_RECORDED_FAILURES - len(self.failures)
        if room > 0:
            self.failures.extend(other.failures[:room])


@dataclass
class MaintenanceReport:
    operation: str
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    status: str = "running"
    total: int = 0
    outcome: BatchOutcome = field(default_factory=BatchOutcome)
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.status == "complete"

    def complete(self):
        self.status = "complete"
        self.finished_at = _now()

    def fail(self, error: Exception):
        self.status = "failed"
        self.error = str(error)
        self.finished_at = _now()

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "operation": self.operation,
            "status": self.status,
            "success": self.success,
            "total": self.total,
            "embedded": self.outcome.embedded,
            "failed": self.outcome.failed,
            "skipped": self.outcome.skipped,
            "discarded": self.outcome.discarded,
            "warnings": self.outcome.failed + self.outcome.skipped,
            "by_kind": {k: dict(v) for k, v in self.outcome.by_kind.items()},
            "failures": list(self.outcome.failures),
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "error": self.error,
        }


@dataclass
class IndexUpdate:
    parent_id: str
    added: list[str] = field(default_factory=list)
    removed: list[str] = field(default_factory=list)
    unchanged: list[str] = field(default_factory=list)
    future: Optional[Future] = field(default=None, repr=False)

    @property
    def chunk_ids(self) -> list[str]:
        return self.added + self.unchanged

    def to_dict(self) -> dict:
        return {
            "parent_id": self.parent_id,
            "added": list(self.added),
            "removed": list(self.removed),
            "unchanged": list(self.unchanged),
            "embedding_scheduled": self.future is not None,
        }


class IndexCoordinator:
    def __init__(
        self,
        config: Config,
        chunk_store: ChunkStore,
        lexical: LexicalIndex,
        vectors: VectorStore,
        metadata: MetadataStore,
        chunker: Optional[Chunker] = None,
        provider_factory: Callable[[EmbeddingModelConfig], EmbeddingProvider] = None,
        health: HealthTracker | None = None,
    ):
        self.config = config
        self.chunk_store = chunk_store
        self.lexical = lexical
        self.vectors = vectors
        self.metadata = metadata
        self.chunker = chunker or Chunker.from_config(config)
        self.health = health
        self._provider_factory = provider_factory or (
            lambda model: create_provider(model, timeout=config.embedding_timeout)
        )

        self._index_lock = threading.RLock()
        self._maintenance_lock = threading.Lock()
        self._state_lock = threading.Lock()
        self._state = CoordinatorState.IDLE
        self._running: Optional[str] = None
        self._generation = 0

        self._provider: Optional[EmbeddingProvider] = None
        self._provider_generation = -1
        self._provider_lock = threading.Lock()

        self._backoff_until = 0.0
        self._backoff_lock = threading.Lock()
        self._closed = threading.Event()

        self._pool = ThreadPoolExecutor(
            max_workers=max(1, config.embedding_concurrency),
            thread_name_prefix="memoria-embed",
        )
        self._pending: set[Future] = set()
        self._pending_lock = threading.Lock()
        self._swap_thread: Optional[threading.Thread] = None
        self.last_report: Optional[MaintenanceReport] = None

    # ── State ────────────────────────────────────────

    @property
    def state(self) -> CoordinatorState:
        with self._state_lock:
            return self._state

    @property
    def generation(self) -> int:
        return self._generation

    def _set_state(self, state: CoordinatorState, running: Optional[str] = None):
        with self._state_lock:
            self._state = state
            self._running = running

    def _begin(self, operation: str, state: CoordinatorState, blocking: bool = False) -> MaintenanceReport:
        if not self._maintenance_lock.acquire(blocking=blocking):
            with self._state_lock:
                running = self._running or self._state.value
            raise MaintenanceInProgress(running)
        self._set_state(state, operation)
        return MaintenanceReport(operation=operation)

    def _end(self, report: MaintenanceReport):
        if report.status == "running":
            report.complete()
        self._set_state(CoordinatorState.IDLE if report.success else CoordinatorState.ERROR)
        self.last_report = report
        self._maintenance_lock.release()
        if self.health:
            self.health.record_maintenance(report.to_dict())
        o = report.outcome
        print(
            f"{report.operation}: {report.status} – {o.embedded} embedded, "
            f"{o.failed} failed, {o.skipped} skipped, {o.discarded} discarded"
            + (f" ({report.error})" if report.error else "")
        )

    # ── Providers ────────────────────────────────────

    def _get_provider(self) -> EmbeddingProvider:
        with self._provider_lock:
            if self._provider is not None and self._provider_generation == self._generation:
                return self._provider
            model = self.metadata.active_model
            if model is None:
                raise NoActiveEmbeddingModel()
            if self._provider is not None:
                self._provider.close()
            self._provider = self._provider_factory(model)
            self._provider_generation = self._generation
            return self._provider

    def _reset_provider(self):
        with self._provider_lock:
            if self._provider is not None:
                self._provider.close()
            self._provider = None
            self._provider_generation = -1

    def embed_query(self, text: str) -> list[float]:
        """Embed a search query with the active provider (no retries)."""
        return self._get_provider().embed(text)

    # ── Document events ──────────────────────────────

    def on_document_saved(self, doc: Document) -> IndexUpdate:
        """Re-chunk, diff against the stored chunk set, update both indexes,
        and schedule embedding of new/changed chunks (does not wait)."""
        new_chunks = self.chunker.chunk(doc).chunks

        with self._index_lock:
            old = {c.id: c for c in self.chunk_store.for_parent(doc.id)}
            new_ids = {c.id for c in new_chunks}
            stale = [cid for cid in old if cid not in new_ids]
            changed: list[str] = []
            unchanged: list[str] = []
            for chunk in new_chunks:
                prev = old.get(chunk.id)
                if prev is not None and fingerprint(prev) == fingerprint(chunk):
                    unchanged.append(chunk.id)
                else:
                    changed.append(chunk.id)

            self.chunk_store.replace_parent(doc.id, new_chunks)
            for cid in stale:
                self.lexical.remove(cid)
                self.vectors.remove(cid)
            for chunk in new_chunks:
                self.lexical.add_or_replace(chunk)
            for cid in changed:
                self.vectors.register(cid)
            for cid in unchanged:
                if cid not in self.vectors:
                    self.vectors.register(cid)
            self._verify_or_resync(doc.id)
            generation = self._generation

        update = IndexUpdate(parent_id=doc.id, added=changed, removed=stale, unchanged=unchanged)
        if changed and self.config.auto_embed_on_save and self.metadata.active_model is not None:
            update.future = self._submit(self._embed_ids, list(changed), generation)
        if self.health:
            self.health.record_document_event("saved", doc.kind.value)
        return update

    def on_document_deleted(self, parent_id: str) -> IndexUpdate:
        with self._index_lock:
            removed = self.chunk_store.remove_parent(parent_id)
            for cid in removed:
                self.lexical.remove(cid)
            self.vectors.remove_many(removed)
            self._verify_or_resync(parent_id)
        if self.health:
            self.health.record_document_event("deleted")
        return IndexUpdate(parent_id=parent_id, removed=removed)

    def on_all_documents_deleted(self, kind: Optional[DocumentKind] = None) -> list[str]:
        with self._index_lock:
            removed = self.chunk_store.clear(kind)
            if kind is None:
                self.lexical.clear()
                self.vectors.rebuild_all([])
            else:
                for cid in removed:
                    self.lexical.remove(cid)
                self.vectors.remove_many(removed)
        if self.health:
            self.health.record_document_event("deleted_all", kind.value if kind else None)
        print(f"Removed {len(removed)} chunks ({kind.value if kind else 'all documents'})")
        return removed

    # ── Consistency ──────────────────────────────────

    def verify_parent(self, parent_id: str):
        """Raise IndexInconsistency if either index disagrees with the
        chunk store about this parent."""
        with self._index_lock:
            expected = set(self.chunk_store.ids_for_parent(parent_id))
            problems = [
                cid for cid in sorted(expected)
                if cid not in self.lexical or cid not in self.vectors
            ]
            indexed = self.lexical.ids_for_parent(parent_id) | self.vectors.ids_for_parent(parent_id)
            orphans = sorted(cid for cid in indexed - expected if cid not in self.chunk_store)
        if problems or orphans:
            raise IndexInconsistency(
                parent_id, problems + orphans,
                f"{len(problems)} unindexed, {len(orphans)} orphaned",
            )

    def resync_parent(self, parent_id: str):
        """Force both indexes to match the stored chunks of one parent."""
        with self._index_lock:
            chunks = self.chunk_store.for_parent(parent_id)
            expected = {c.id for c in chunks}
            indexed = self.lexical.ids_for_parent(parent_id) | self.vectors.ids_for_parent(parent_id)
            for cid in indexed - expected:
                if cid not in self.chunk_store:
                    self.lexical.remove(cid)
                    self.vectors.remove(cid)
            for chunk in chunks:
                self.lexical.add_or_replace(chunk)
                if chunk.id not in self.vectors:
                    self.vectors.register(chunk.id)

    def _verify_or_resync(self, parent_id: str):
        try:
            self.verify_parent(parent_id)
        except IndexInconsistency as e:
            print(f"Warning: {e} – re-syncing")
            self.resync_parent(parent_id)
            self.verify_parent(parent_id)

    def drop_orphan(self, chunk_id: str):
        """A search hit pointed at a chunk the store does not know."""
        parent_id = parent_of(chunk_id)
        with self._index_lock:
            if chunk_id in self.chunk_store:
                return
            if parent_id is not None:
                self._verify_or_resync(parent_id)
            self.lexical.remove(chunk_id)
            self.vectors.remove(chunk_id)

    def reconcile(self) -> dict:
        """Align both indexes with the chunk store (start-up)."""
        with self._index_lock:
            chunks = self.chunk_store.all_chunks()
            stored = {c.id for c in chunks}
            self.lexical.rebuild_all(chunks)
            orphans = self.vectors.chunk_ids() - stored
            self.vectors.remove_many(orphans)
            registered = 0
            for cid in sorted(stored):
                if cid not in self.vectors:
                    self.vectors.register(cid)
                    registered += 1
        result = {
            "chunks": len(stored),
            "orphans_removed": len(orphans),
            "registered_missing": registered,
            "missing": self.vectors.missing_count,
        }
        print(
            f"Reconciled indexes: {len(stored)} chunks, {len(orphans)} orphaned vectors removed, "
            f"{self.vectors.missing_count} awaiting embeddings"
        )
        return result

    # ── Maintenance ──────────────────────────────────

    def rebuild_lexical_index(self) -> MaintenanceReport:
        report = self._begin("rebuild_lexical", CoordinatorState.REBUILDING)
        try:
            with self._index_lock:
                report.total = self.lexical.rebuild_all(self.chunk_store.all_chunks())
            self.metadata.mark("bm25_last_rebuild")
        except Exception as e:
            self.metadata.mark_error("bm25_last_rebuild", str(e))
            report.fail(e)
            raise
        finally:
            self._end(report)
        return report

    def rebuild_all_embeddings(self) -> MaintenanceReport:
        report = self._begin("rebuild_embeddings", CoordinatorState.REBUILDING)
        try:
            self._rebuild_embeddings(report)
        finally:
            self._end(report)
        return report

    def _rebuild_embeddings(self, report: MaintenanceReport):
        try:
            self._get_provider()
            with self._index_lock:
                generation = self._generation
                ids = [c.id for c in self.chunk_store.all_chunks()]
                self.vectors.rebuild_all(ids)
            self._run_cycle(ids, generation, report)
            if generation == self._generation:
                self.metadata.mark("embeddings_last_rebuild")
        except Exception as e:
            self.metadata.mark_error("embeddings_last_rebuild", str(e))
            report.fail(e)
            raise

    def update_missing_embeddings(self) -> MaintenanceReport:
        report = self._begin("update_missing", CoordinatorState.UPDATING_MISSING)
        try:
            self._get_provider()
            with self._index_lock:
                generation = self._generation
                missing = self.vectors.get_missing_ids()
                orphans = [cid for cid in missing if cid not in self.chunk_store]
                if orphans:
                    self.vectors.remove_many(orphans)
                ids = [cid for cid in missing if cid in self.chunk_store]
            self._run_cycle(ids, generation, report)
            if generation == self._generation:
                self.metadata.mark("embeddings_last_update")
        except Exception as e:
            self.metadata.mark_error("embeddings_last_update", str(e))
            report.fail(e)
            raise
        finally:
            self._end(report)
        return report

    def set_embedding_model(
        self, model: Optional[EmbeddingModelConfig], rebuild: bool = True,
    ) -> Optional[threading.Thread]:
        """Switch the active model. Every vector becomes MISSING; the
        lexical index is untouched. In-flight embedding work for the old
        model is discarded. A full rebuild starts in the background."""
        current = self.metadata.active_model
        if model is not None and model.same_model(current):
            self.metadata.set_active_model(model)
            self._reset_provider()
            return None

        with self._index_lock:
            self._generation += 1
            generation = self._generation
            self.metadata.set_active_model(model)
            self._reset_provider()
            self.vectors.rebuild_all(self.chunk_store.all_ids())
        print(
            f"Embedding model changed: {current.label if current else 'none'} -> "
            f"{model.label if model else 'none'} – all vectors marked missing"
        )
        if model is None or not rebuild:
            return None

        t = threading.Thread(
            target=self._rebuild_after_model_change, args=(generation,),
            daemon=True, name="memoria-model-swap",
        )
        self._swap_thread = t
        t.start()
        return t

    def _rebuild_after_model_change(self, generation: int):
        report = self._begin("rebuild_embeddings", CoordinatorState.REBUILDING, blocking=True)
        try:
            if generation != self._generation or self._closed.is_set():
                report.status = "superseded"
                report.finished_at = _now()
                return
            self._rebuild_embeddings(report)
        except Exception as e:
            print(f"Warning: Model swap rebuild failed: {e}")
        finally:
            if report.status == "superseded":
                self._set_state(CoordinatorState.IDLE)
                self._maintenance_lock.release()
            else:
                self._end(report)

    # ── Embedding work ───────────────────────────────

    def _submit(self, fn, *args) -> Future:
        fut = self._pool.submit(fn, *args)
        with self._pending_lock:
            self._pending.add(fut)
        fut.add_done_callback(self._forget)
        return fut

    def _forget(self, fut: Future):
        with self._pending_lock:
            self._pending.discard(fut)

    def flush(self, timeout: Optional[float] = None):
        """Wait for scheduled save-time embedding tasks."""
        deadline = None if timeout is None else time.monotonic() + timeout
        while True:
            with self._pending_lock:
                pending = list(self._pending)
            if not pending:
                return
            for fut in pending:
                remaining = None if deadline is None else max(0.0, deadline - time.monotonic())
                fut.result(timeout=remaining)

    def _batches(self, ids: list[str]) -> list[list[str]]:
        size = max(1, self.config.embedding_batch_size)
        return [ids[i : i + size] for i in range(0, len(ids), size)]

    def _run_cycle(self, ids: list[str], generation: int, report: MaintenanceReport):
        report.total = len(ids)
        abort = threading.Event()
        futures = [
            (batch, self._submit(self._embed_batch, batch, generation, abort))
            for batch in self._batches(ids)
        ]
        for batch, fut in futures:
            try:
                report.outcome.absorb(fut.result())
            except CancelledError:
                # pool shut down underneath us (close())
                report.outcome.skipped += len(batch)
            except Exception as e:
                print(f"Warning: embedding batch failed unexpectedly: {e}")
                report.outcome.fail(batch, e)

    def _embed_ids(self, ids: list[str], generation: int) -> BatchOutcome:
        """Save-time task: embed a parent's new chunks batch by batch."""
        outcome = BatchOutcome()
        abort = threading.Event()
        for batch in self._batches(ids):
            outcome.absorb(self._embed_batch(batch, generation, abort))
        if outcome.failed:
            print(f"Warning: {outcome.failed} chunk(s) left missing after save-time embedding")
        return outcome

    def _embed_batch(self, chunk_ids: list[str], generation: int, abort: threading.Event) -> BatchOutcome:
        outcome = BatchOutcome()
        if generation != self._generation:
            outcome.discarded += len(chunk_ids)
            return outcome
        if abort.is_set() or self._closed.is_set():
            outcome.skipped += len(chunk_ids)
            return outcome

        stored = self.chunk_store.get_many(chunk_ids)
        chunks = [stored[cid] for cid in chunk_ids if cid in stored]
        outcome.discarded += len(chunk_ids) - len(chunks)
        if not chunks:
            return outcome
        ids = [c.id for c in chunks]
        texts = [embedding_text(c) for c in chunks]
        prints = [fingerprint(c) for c in chunks]

        try:
            vectors = self._embed_with_retries(texts)
        except ProviderUnauthenticated as e:
            abort.set()
            outcome.fail(ids, e)
            return outcome
        except (ProviderRateLimited, ProviderUnreachable, ProviderMalformedResponse) as e:
            if len(ids) == 1 or self._closed.is_set():
                outcome.fail(ids, e)
                return outcome
            # Isolate the offending chunks: embed the rest one by one
            for cid in ids:
                outcome.absorb(self._embed_batch([cid], generation, abort))
            return outcome
        except (ProviderError, ConfigurationError) as e:
            outcome.fail(ids, e)
            return outcome

        with self._index_lock:
            if generation != self._generation:
                outcome.discarded += len(ids)
                return outcome
            for cid, fp, vector in zip(ids, prints, vectors):
                current = self.chunk_store.get(cid)
                if current is None or fingerprint(current) != fp:
                    outcome.discarded += 1
                    continue
                try:
                    stored = self.vectors.set(cid, vector)
                except Exception as e:
                    print(f"Warning: could not store vector for {cid}: {e}")
                    outcome.fail([cid], e)
                    continue
                if stored:
                    outcome.record_embedded(cid)
                else:
                    outcome.discarded += 1
        return outcome

    def _embed_with_retries(self, texts: list[str]) -> list[list[float]]:
        """One provider call, retried on rate limits and outages."""
        attempt = 0
        while True:
            self._wait_backoff()
            try:
                return self._get_provider().embed_batch(texts)
            except (ProviderRateLimited, ProviderUnreachable) as e:
                if attempt >= self.config.embedding_max_retries or self._closed.is_set():
                    raise
                delay = self.config.embedding_retry_backoff * (2 ** attempt)
                if isinstance(e, ProviderRateLimited):
                    if e.retry_after is not None:
                        delay = e.retry_after
                    self._push_backoff(delay)
                else:
                    self._closed.wait(delay)
                attempt += 1

    def _push_backoff(self, delay: float):
        with self._backoff_lock:
            self._backoff_until = max(self._backoff_until, time.monotonic() + delay)

    def _wait_backoff(self):
        with self._backoff_lock:
            remaining = self._backoff_until - time.monotonic()
        if remaining > 0:
            self._closed.wait(remaining)

    # ── Status ───────────────────────────────────────

    def status(self) -> dict:
        with self._state_lock:
            state = self._state.value
            running = self._running
        return {
            "state": state,
            "running": running,
            "generation": self._generation,
            "chunks": len(self.chunk_store),
            "lexical_chunks": len(self.lexical),
            "vectorized": len(self.vectors.vectorized_ids()),
            "missing": self.vectors.missing_count,
            "metadata": self.metadata.metadata.to_safe_dict(),
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    def embedding_state(self, chunk_id: str) -> EmbeddingState:
        return self.vectors.state(chunk_id)

    def close(self):
        self._closed.set()
        self._pool.shutdown(wait=True, cancel_futures=True)
        if self._swap_thread is not None:
            self._swap_thread.join(timeout=5)
        self._reset_provider()
