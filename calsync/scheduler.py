from __future__ import annotations

import logging
import threading
from typing import Optional

from calsync.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    """Runs the engine on a daemon thread.

    One run happens at startup. After that a run starts whenever the
    configured interval elapses or ``trigger_manual`` is called. The
    interval is asked from the engine before every wait, so config edits
    apply from the next cycle.
    """

    def __init__(self, sync_engine: SyncEngine) -> None:
        self.sync_engine = sync_engine
        self._thread: Optional[threading.Thread] = None
        self._wake = threading.Event()
        self._stopping = False
        self._manual_pending = False

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = False
        self._thread = threading.Thread(target=self._run, name="calsync-scheduler", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        self._stopping = True
        self._wake.set()
        if self._thread:
            self._thread.join(timeout=timeout)

    def trigger_manual(self) -> None:
        self._manual_pending = True
        self._wake.set()

    def _next_trigger(self) -> str | None:
        self._wake.wait(timeout=self.sync_engine.interval_seconds())
        self._wake.clear()
        if self._stopping:
            return None
        if self._manual_pending:
            self._manual_pending = False
            return "manual"
        return "scheduled"

    def _run(self) -> None:
        trigger: str | None = "startup"
        while trigger is not None:
            result = self.sync_engine.run_once(trigger=trigger)
            logger.info("%s run finished: %s", trigger, result.status)
            trigger = self._next_trigger()
