"""
Background Scheduling
=====================

- `PeriodicJob`: runs a function every N seconds on a daemon thread. If a
  tick fires while the previous run is still going, that tick is skipped
  (counted and logged), so runs never overlap.
- `RequestGate`: generation counter for polling clients. Only the newest
  fetch may apply its result; superseded results are dropped.
- Job factories for the deadline poll and the stale-case cleanup.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

from .cases import CaseService
from .config import Settings, get_settings
from .db.session import new_session
from .notifications import sync_deadline_notifications

logger = logging.getLogger(__name__)


class PeriodicJob:
    """Repeating, cancellable timer with overlap protection."""

    def __init__(self, name: str, interval: float, func: Callable[[], None]):
        self.name = name
        self.interval = interval
        self.func = func
        self.runs = 0
        self.skipped = 0
        self.failures = 0
        self._running = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def tick(self) -> bool:
        """
        Run once unless a run is already in progress.

        Returns True if the function ran. Errors are logged and counted; the
        job keeps its schedule.
        """
        if not self._running.acquire(blocking=False):
            self.skipped += 1
            logger.warning(f"Job {self.name}: previous run still in progress, skipping tick")
            return False
        try:
            self.func()
            self.runs += 1
        except Exception:
            self.failures += 1
            logger.exception(f"Job {self.name} failed")
        finally:
            self._running.release()
        return True

    def _loop(self) -> None:
        while not self._stop.wait(self.interval):
            # Each tick gets its own thread so a slow run shows up as skipped ticks
            threading.Thread(target=self.tick, name=f"{self.name}-tick", daemon=True).start()

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name=self.name, daemon=True)
        self._thread.start()
        logger.info(f"Job {self.name} scheduled every {self.interval}s")

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info(f"Job {self.name} stopped")


class RequestGate:
    """
    Latest-request-wins guard.

        token = gate.begin()
        data = fetch()
        gate.apply_if_current(token, lambda: store(data))
    """

    def __init__(self):
        self._generation = 0
        self._lock = threading.Lock()

    def begin(self) -> int:
        with self._lock:
            self._generation += 1
            return self._generation

    def is_current(self, token: int) -> bool:
        with self._lock:
            return token == self._generation

    def apply_if_current(self, token: int, apply: Callable[[], None]) -> bool:
        """Run `apply` only if no newer request has begun. Returns whether it ran."""
        with self._lock:
            if token != self._generation:
                return False
            apply()
            return True


# =============================================================================
# SERVICE JOBS
# =============================================================================

def poll_deadlines(settings: Optional[Settings] = None) -> int:
    settings = settings or get_settings()
    db = new_session()
    try:
        created = sync_deadline_notifications(db, soon_hours=settings.deadline_soon_hours)
        return len(created)
    finally:
        db.close()


def cleanup_stale_cases(settings: Optional[Settings] = None) -> List[str]:
    """Purge cases stuck past `stale_case_max_hours`. Returns purged case ids."""
    settings = settings or get_settings()
    db = new_session()
    try:
        service = CaseService(db)
        stale = [c.case_id for c in service.find_stale_cases(settings.stale_case_max_hours)]
        for case_id in stale:
            service.purge_case(case_id)
        if stale:
            logger.warning(f"Auto-cleaned {len(stale)} stale case(s): {','.join(stale)}")
        return stale
    finally:
        db.close()


def build_jobs(settings: Optional[Settings] = None) -> Dict[str, PeriodicJob]:
    settings = settings or get_settings()
    jobs = {
        "deadline-poll": PeriodicJob(
            "deadline-poll",
            settings.deadline_poll_interval_seconds,
            lambda: poll_deadlines(settings),
        ),
    }
    if settings.stale_case_cleanup_enabled:
        jobs["stale-cleanup"] = PeriodicJob(
            "stale-cleanup",
            settings.stale_cleanup_interval_seconds,
            lambda: cleanup_stale_cases(settings),
        )
    return jobs
