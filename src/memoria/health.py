# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Centralized health/status tracker – shared across coordinator, scheduler,
web API and MCP server. Thread-safe, no external dependencies.
"""
import threading
from datetime import datetime, timezone


class HealthTracker:
    def __init__(self):
        self._lock = threading.Lock()
        self._data = {
            "started_at": datetime.now(timezone.utc).isoformat(),

            "last_maintenance_at": None,
            "last_maintenance_op": None,
            "last_maintenance_ok": True,
            "last_maintenance_error": None,
            "last_maintenance_embedded": 0,
            "last_maintenance_failed": 0,
            "maintenance_runs": 0,

            "documents_saved": 0,
            "documents_deleted": 0,
            "last_document_at": None,

            "searches_total": 0,
            "searches_hits": 0,
            "searches_misses": 0,
            "searches_lexical_only": 0,
            "searches_by_surface": {
                "engine": 0,
                "web": 0,
                "mcp": 0,
            },
            "last_search_at": None,

            "last_scheduler_run_at": None,
            "last_scheduler_error": None,
        }

    def record_maintenance(self, report: dict):
        with self._lock:
            self._data["last_maintenance_at"] = report.get("finished_at") or datetime.now(timezone.utc).isoformat()
            self._data["last_maintenance_op"] = report.get("operation")
            self._data["last_maintenance_ok"] = bool(report.get("success"))
            self._data["last_maintenance_error"] = report.get("error")
            self._data["last_maintenance_embedded"] = report.get("embedded", 0)
            self._data["last_maintenance_failed"] = report.get("failed", 0)
            self._data["maintenance_runs"] += 1

    def record_document_event(self, event: str, kind: str | None = None):
        with self._lock:
            if event == "saved":
                self._data["documents_saved"] += 1
            else:
                self._data["documents_deleted"] += 1
            self._data["last_document_at"] = datetime.now(timezone.utc).isoformat()

    def record_search(self, surface: str, hit: bool, lexical_only: bool = False):
        with self._lock:
            self._data["searches_total"] += 1
            if hit:
                self._data["searches_hits"] += 1
            else:
                self._data["searches_misses"] += 1
            if lexical_only:
                self._data["searches_lexical_only"] += 1
            by_surface = self._data["searches_by_surface"]
            if surface in by_surface:
                by_surface[surface] += 1
            self._data["last_search_at"] = datetime.now(timezone.utc).isoformat()

    def record_scheduler_run(self, error: str | None = None):
        with self._lock:
            self._data["last_scheduler_run_at"] = datetime.now(timezone.utc).isoformat()
            self._data["last_scheduler_error"] = error

    @property
    def status(self) -> dict:
        with self._lock:
            return dict(self._data)

    @property
    def is_healthy(self) -> bool:
        with self._lock:
            return self._data["last_maintenance_ok"]
