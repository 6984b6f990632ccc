from __future__ import annotations

import logging
import threading
from typing import Optional

from routine_sync.config_manager import ConfigManager
from routine_sync.sync_engine import SyncOrchestrator

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, orchestrator: SyncOrchestrator, config_manager: ConfigManager) -> None:
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()

    @property
    def is_alive(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.is_alive:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="routine-sync-scheduler", daemon=True)
        self._thread.start()
        logger.info("sync scheduler started")

    def stop(self) -> None:
        self._stop_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        logger.info("sync scheduler stopped")

    def _loop(self) -> None:
        # One run at startup so the mirror and instances are fresh.
        self.orchestrator.run_once(trigger="startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            if self._stop_event.wait(timeout=interval_seconds):
                break
            self.orchestrator.run_once(trigger="scheduled")
