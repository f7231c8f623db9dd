"""
Pause gate for background jobs.

Vendor-fallback batches share the vendor quota with background jobs such
as the scheduled series sync. While any such batch runs, the gate is
closed and background jobs skip their cycle. Pauses are reference counted
so overlapping batches reopen the gate only when the last one finishes.
"""

import logging
import time
from typing import Any, Dict, List

logger = logging.getLogger(__name__)


class BackgroundJobGate:
    def __init__(self):
        self._holders: List[str] = []
        self._paused_since: float = 0.0
        self._skipped: Dict[str, int] = {}

    @property
    def paused(self) -> bool:
        return bool(self._holders)

    def pause(self, reason: str) -> None:
        if not self._holders:
            self._paused_since = time.time()
            logger.info("background jobs paused: %s", reason)
        self._holders.append(reason)

    def resume(self, reason: str) -> None:
        if reason in self._holders:
            self._holders.remove(reason)
        else:
            logger.warning("resume for unknown pause holder %s", reason)
        if not self._holders:
            logger.info("background jobs resumed after %.1fs", time.time() - self._paused_since)

    def should_skip(self, job_name: str) -> bool:
        if not self._holders:
            return False
        self._skipped[job_name] = self._skipped.get(job_name, 0) + 1
        logger.debug("skipping %s while paused by %s", job_name, self._holders)
        return True

    def status(self) -> Dict[str, Any]:
        return {
            "paused": self.paused,
            "holders": list(self._holders),
            "paused_for_seconds": round(time.time() - self._paused_since, 1) if self.paused else 0.0,
            "skipped": dict(self._skipped),
        }
