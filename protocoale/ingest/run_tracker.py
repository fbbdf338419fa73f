"""
Scraper run lifecycle and counters.

State machine:

    pending -> running -> completed
                       -> failed

Counter updates come from worker threads; they are applied and persisted
under one lock so the stored row always reflects a consistent snapshot.
"""

import copy
import logging
import threading
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional, Union

from protocoale.db.base import ProtocolStore
from protocoale.errors import InvalidRunTransition, PersistenceFailure
from protocoale.models import Outcome, RunStatus, ScraperRun

logger = logging.getLogger(__name__)


_ALLOWED_TRANSITIONS = {
    RunStatus.PENDING: {RunStatus.RUNNING},
    RunStatus.RUNNING: {RunStatus.COMPLETED, RunStatus.FAILED},
    RunStatus.COMPLETED: set(),
    RunStatus.FAILED: set(),
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class RunTracker:
    """
    Track one execution of the ingestion pipeline.

    Usage:
        tracker = RunTracker(store)
        tracker.start()
        tracker.record_found()
        tracker.record_outcome(Outcome.CREATED)
        tracker.complete()
    """

    def __init__(
        self,
        store: ProtocolStore,
        run_id: Optional[str] = None,
        clock: Callable[[], datetime] = _utcnow,
        persist_progress: bool = True,
    ):
        self.store = store
        self.clock = clock
        self.persist_progress = persist_progress
        self._lock = threading.Lock()
        self._run = ScraperRun(id=run_id or uuid.uuid4().hex)
        self._listed = 0
        self._unchanged = 0
        self._skipped = 0

    @property
    def run_id(self) -> str:
        return self._run.id

    @property
    def status(self) -> RunStatus:
        with self._lock:
            return self._run.status

    def snapshot(self) -> ScraperRun:
        """Copy of the current run state."""
        with self._lock:
            return copy.deepcopy(self._run)

    def _transition(self, target: RunStatus) -> None:
        current = self._run.status
        if target not in _ALLOWED_TRANSITIONS[current]:
            raise InvalidRunTransition(
                f"Run {self._run.id}: cannot move from {current.value} to {target.value}"
            )
        self._run.status = target

    def _require_running(self) -> None:
        if self._run.status is not RunStatus.RUNNING:
            raise InvalidRunTransition(
                f"Run {self._run.id} is {self._run.status.value}, counters are frozen"
            )

    def _persist(self, insert: bool = False) -> None:
        try:
            if insert:
                self.store.insert_run(copy.deepcopy(self._run))
            else:
                self.store.update_run(copy.deepcopy(self._run))
        except PersistenceFailure:
            raise
        except Exception as e:
            raise PersistenceFailure(f"Failed to record run {self._run.id}: {e}") from e

    def _summary(self) -> dict:
        return {
            "listed": self._listed,
            "found": self._run.protocols_found,
            "added": self._run.protocols_added,
            "updated": self._run.protocols_updated,
            "unchanged": self._unchanged,
            "failed": self._run.protocols_failed,
            "skipped": self._skipped,
        }

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> ScraperRun:
        """Move pending -> running and insert the run row with zero counts."""
        with self._lock:
            self._transition(RunStatus.RUNNING)
            self._run.started_at = self.clock()
            self._persist(insert=True)
            logger.info(f"Run {self._run.id} started")
            return copy.deepcopy(self._run)

    def complete(self) -> ScraperRun:
        """Move running -> completed; sets completed_at."""
        with self._lock:
            self._transition(RunStatus.COMPLETED)
            self._run.completed_at = self.clock()
            self._run.summary = self._summary()
            try:
                self._persist()
            except PersistenceFailure:
                # Still running as far as the store knows, so it can be failed
                self._run.status = RunStatus.RUNNING
                self._run.completed_at = None
                raise
            logger.info(
                f"Run {self._run.id} completed: {self._run.protocols_found} found, "
                f"{self._run.protocols_added} added, {self._run.protocols_updated} updated, "
                f"{self._run.protocols_failed} failed"
            )
            return copy.deepcopy(self._run)

    def fail(self, error: Union[str, BaseException]) -> ScraperRun:
        """Move running -> failed, keeping the counts accumulated so far."""
        with self._lock:
            self._transition(RunStatus.FAILED)
            self._run.completed_at = self.clock()
            self._run.error_log = str(error)
            self._run.summary = self._summary()
            logger.critical(f"Run {self._run.id} failed: {error}")
            self._persist()
            return copy.deepcopy(self._run)

    # =========================================================================
    # Counters
    # =========================================================================

    def record_listed(self, count: int) -> None:
        with self._lock:
            self._require_running()
            self._listed = count

    def record_found(self) -> None:
        """A document was fetched successfully."""
        with self._lock:
            self._require_running()
            self._run.protocols_found += 1
            if self.persist_progress:
                self._persist()

    def record_outcome(self, outcome: Outcome) -> None:
        with self._lock:
            self._require_running()
            if outcome is Outcome.CREATED:
                self._run.protocols_added += 1
            elif outcome is Outcome.UPDATED:
                self._run.protocols_updated += 1
            else:
                self._unchanged += 1
                return
            if self.persist_progress:
                self._persist()

    def record_failure(self) -> None:
        """A document could not be fetched or was aborted before its write."""
        with self._lock:
            self._require_running()
            self._run.protocols_failed += 1
            if self.persist_progress:
                self._persist()

    def record_skipped(self) -> None:
        """A listed document was never started because the run aborted."""
        with self._lock:
            self._require_running()
            self._skipped += 1
