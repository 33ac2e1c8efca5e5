from __future__ import annotations

import logging
import threading
from typing import Optional

from coursetally.config_manager import ConfigManager
from coursetally.refresh import RefreshOrchestrator


logger = logging.getLogger(__name__)


class RefreshScheduler:
    def __init__(self, orchestrator: RefreshOrchestrator, config_manager: ConfigManager) -> None:
        self.orchestrator = orchestrator
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="coursetally-refresh-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        config = self.config_manager.load()
        view = self.orchestrator.controller.view
        offset = view.offset if view is not None else config.week.default_offset
        report = self.orchestrator.refresh(offset, force=trigger == "manual")
        logger.debug("%s refresh finished (ok=%s)", trigger, report.ok)

    def _loop(self) -> None:
        # Load the default week at startup so the view is populated quickly.
        self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.refresh.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            if not manual and not config.refresh.enabled:
                continue
            self._run("manual" if manual else "scheduled")
