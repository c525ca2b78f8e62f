from __future__ import annotations

import logging
import threading
from typing import Callable, Optional

from wayfarer.config_manager import ConfigManager
from wayfarer.errors import SyncError, SyncInProgress
from wayfarer.models import SyncResult
from wayfarer.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(
        self,
        sync_engine: SyncEngine,
        config_manager: ConfigManager,
        on_sync_complete: Callable[[SyncResult], None] | None = None,
    ) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self.on_sync_complete = on_sync_complete
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="wayfarer-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def run_once(self, trigger: str) -> SyncResult | None:
        try:
            result = self.sync_engine.sync_configured_window(trigger=trigger)
        except SyncInProgress:
            logger.info("Skipping %s sync: another sync is running", trigger)
            return None
        except SyncError as exc:
            # Already recorded in the run history; the loop keeps going.
            logger.warning("%s sync failed: %s", trigger, exc)
            return None
        except Exception:
            logger.exception("%s sync crashed", trigger)
            return None
        if self.on_sync_complete is not None:
            self.on_sync_complete(result)
        return result

    def _loop(self) -> None:
        self.run_once("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(30, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self.run_once("manual" if manual else "scheduled")
