# Memoria – Hybrid retrieval engine for personal notes and chat history
# Copyright (c) 2026 4rce.com Digital Technologies GmbH.
# Use of this software is governed by the Business Source License 1.1. See LICENSE.md.

"""
Maintenance scheduler – periodically fills missing embeddings.
Runs as a background daemon thread.

Chunks stay MISSING when a provider was down or rate-limited at save
time; this loop picks them up again without a user-triggered run.
"""
import threading

from .config import Config
from .coordinator import IndexCoordinator
from .errors import MaintenanceInProgress, MemoriaError
from .health import HealthTracker


class MaintenanceScheduler:
    def __init__(
        self,
        config: Config,
        coordinator: IndexCoordinator,
        health: HealthTracker | None = None,
    ):
        self.config = config
        self.coordinator = coordinator
        self.health = health
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self) -> dict | None:
        """One maintenance pass. Returns the report, or None if skipped."""
        if self.coordinator.vectors.missing_count == 0:
            if self.health:
                self.health.record_scheduler_run()
            return None
        if self.coordinator.metadata.active_model is None:
            return None
        try:
            report = self.coordinator.update_missing_embeddings()
        except MaintenanceInProgress:
            return None
        except MemoriaError as e:
            if self.health:
                self.health.record_scheduler_run(error=str(e))
            print(f"Warning: Scheduled embedding update failed: {e}")
            return None
        if self.health:
            self.health.record_scheduler_run()
        return report.to_dict()

    def start(self):
        if self.config.maintenance_interval <= 0:
            print("Maintenance interval = 0, scheduler disabled")
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, daemon=True, name="memoria-scheduler")
        self._thread.start()
        print(f"Maintenance scheduler started (every {self.config.maintenance_interval}s)")

    def stop(self):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=5)

    def _loop(self):
        while not self._stop.wait(self.config.maintenance_interval):
            try:
                self.run_once()
            except Exception as e:
                if self.health:
                    self.health.record_scheduler_run(error=str(e))
                print(f"Warning: Maintenance error: {e}")
