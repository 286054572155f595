"""Daily backup schedule: run at fixed local times, never two runs at once."""

from __future__ import annotations

import logging
import threading
from datetime import datetime, time, timedelta
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)


def parse_times(values: list[str]) -> list[time]:
    """Parse ``HH:MM`` strings, sorted and de-duplicated."""
    parsed: set[time] = set()
    for value in values:
        hours, sep, minutes = value.strip().partition(":")
        if not sep or not hours.isdigit() or not minutes.isdigit():
            raise ValueError(f"Invalid schedule time (expected HH:MM): {value!r}")
        hour, minute = int(hours), int(minutes)
        if not (0 <= hour < 24 and 0 <= minute < 60):
            raise ValueError(f"Invalid schedule time (expected HH:MM): {value!r}")
        parsed.add(time(hour, minute))
    return sorted(parsed)


def next_run(times: list[time], now: datetime) -> datetime:
    """The first scheduled moment strictly after ``now``."""
    if not times:
        raise ValueError("No schedule times configured")
    for offset in (0, 1):
        day = now.date() + timedelta(days=offset)
        for at in times:
            candidate = datetime.combine(day, at, tzinfo=now.tzinfo)
            if candidate > now:
                return candidate
    raise AssertionError("unreachable")


class BackupScheduler:
    """Runs ``job`` at each configured time of day until stopped."""

    def __init__(
        self,
        times: list[str],
        job: Callable[[], object],
        *,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.times = parse_times(times)
        self._job = job
        self._clock = clock
        self._stop = threading.Event()
        self._running = threading.Lock()
        self._workers: list[threading.Thread] = []

    def trigger(self) -> bool:
        """Run the job now unless a run is already in progress."""
        if not self._running.acquire(blocking=False):
            logger.warning("Scheduled backup skipped: previous run still in progress")
            return False
        try:
            self._job()
        except Exception:
            logger.exception("Scheduled backup raised")
        finally:
            self._running.release()
        return True

    def run_forever(self) -> None:
        """Sleep until each scheduled time and run the job; returns after :meth:`stop`.

        A backup that is still running when the loop ends is waited for before
        returning, including when the wait is interrupted by KeyboardInterrupt.
        """
        logger.info(
            "Scheduler started with %d time(s): %s",
            len(self.times),
            ", ".join(t.strftime("%H:%M") for t in self.times),
        )
        try:
            while not self._stop.is_set():
                now = self._clock()
                scheduled = next_run(self.times, now)
                logger.info(
                    "Next backup at %s", scheduled.isoformat(sep=" ", timespec="minutes")
                )
                if self._stop.wait((scheduled - now).total_seconds()):
                    break
                worker = threading.Thread(target=self.trigger, name="scheduled-backup", daemon=True)
                worker.start()
                self._workers = [w for w in self._workers if w.is_alive()]
                self._workers.append(worker)
        finally:
            self._stop.set()
            self._join_workers()
        logger.info("Scheduler stopped")

    def _join_workers(self) -> None:
        current = threading.current_thread()
        for worker in self._workers:
            if worker is not current and worker.is_alive():
                logger.info("Waiting for the running backup to finish")
                worker.join()
        self._workers = []

    def stop(self) -> None:
        self._stop.set()
