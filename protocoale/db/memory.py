"""
In-process store.

Transactions stage their writes on private copies and publish them under a
single lock on commit, so readers never observe a half-applied update and a
failed transaction leaves no trace. Used by tests and `ingest-dir --dry-run`.
"""

import copy
import logging
import threading
from contextlib import contextmanager
from typing import Any, Iterator, Optional

from protocoale.config import config
from protocoale.db.base import ProtocolStore, StoreTransaction
from protocoale.models import (
    ImageRow,
    ProtocolDetail,
    ProtocolRow,
    ScraperRun,
    SectionRow,
    StoreStats,
    VersionRow,
)

logger = logging.getLogger(__name__)


class MemoryTransaction(StoreTransaction):
    """Staged writes for one code; published by MemoryStore on commit."""

    def __init__(self, store: "MemoryStore", code: str):
        self.store = store
        self.code = code
        self.protocol: Optional[ProtocolRow] = None
        self.is_new = False
        self.sections: Optional[list[SectionRow]] = None
        self.images: Optional[list[ImageRow]] = None
        self.new_versions: list[VersionRow] = []

    def _exists(self) -> bool:
        return self.protocol is not None or self.code in self.store._protocols

    def latest_version(self) -> Optional[VersionRow]:
        if self.new_versions:
            return copy.deepcopy(self.new_versions[-1])
        with self.store._lock:
            versions = self.store._versions.get(self.code)
            return copy.deepcopy(versions[-1]) if versions else None

    def insert_protocol(self, row: ProtocolRow) -> None:
        if row.code != self.code:
            raise ValueError(f"Row code {row.code} does not match transaction code {self.code}")
        if self._exists():
            raise ValueError(f"Protocol {self.code} already exists")
        self.protocol = copy.deepcopy(row)
        self.is_new = True

    def update_protocol(self, row: ProtocolRow) -> None:
        if row.code != self.code:
            raise ValueError(f"Row code {row.code} does not match transaction code {self.code}")
        if not self._exists():
            raise ValueError(f"Protocol {self.code} does not exist")
        previous = self.protocol or self.store._protocols[self.code]
        self.protocol = copy.deepcopy(row)
        self.protocol.created_at = previous.created_at

    def replace_sections(self, sections: list[SectionRow]) -> None:
        self.sections = [copy.deepcopy(s) for s in sorted(sections, key=lambda s: s.order)]

    def replace_images(self, images: list[ImageRow]) -> None:
        self.images = [copy.deepcopy(i) for i in sorted(images, key=lambda i: i.position)]

    def append_version(self, version: VersionRow) -> None:
        latest = self.latest_version()
        expected = latest.version_number + 1 if latest else 1
        if version.version_number != expected:
            raise ValueError(
                f"Version {version.version_number} for {self.code} breaks the sequence "
                f"(expected {expected})"
            )
        self.new_versions.append(copy.deepcopy(version))


class MemoryStore(ProtocolStore):
    """
    Dictionary-backed ProtocolStore.

    Usage:
        store = MemoryStore()
        pipeline = IngestPipeline(fetcher, store, ...)
        detail = store.get_protocol("N030C")
    """

    def __init__(self):
        self._lock = threading.RLock()
        self._protocols: dict[str, ProtocolRow] = {}
        self._sections: dict[str, list[SectionRow]] = {}
        self._images: dict[str, list[ImageRow]] = {}
        self._versions: dict[str, list[VersionRow]] = {}
        self._runs: dict[str, ScraperRun] = {}

    @contextmanager
    def transaction(self, code: str) -> Iterator[MemoryTransaction]:
        txn = MemoryTransaction(self, code)
        yield txn
        # Only reached when the block raised nothing
        self._commit(txn)

    def _commit(self, txn: MemoryTransaction) -> None:
        with self._lock:
            if txn.is_new and txn.code in self._protocols:
                raise ValueError(f"Protocol {txn.code} was created concurrently")
            if txn.protocol is not None:
                self._protocols[txn.code] = txn.protocol
            if txn.sections is not None:
                self._sections[txn.code] = txn.sections
            if txn.images is not None:
                self._images[txn.code] = txn.images
            if txn.new_versions:
                self._versions.setdefault(txn.code, []).extend(txn.new_versions)

    # =========================================================================
    # Runs
    # =========================================================================

    def insert_run(self, run: ScraperRun) -> None:
        with self._lock:
            if run.id in self._runs:
                raise ValueError(f"Run {run.id} already exists")
            self._runs[run.id] = copy.deepcopy(run)

    def update_run(self, run: ScraperRun) -> None:
        with self._lock:
            if run.id not in self._runs:
                raise ValueError(f"Run {run.id} does not exist")
            self._runs[run.id] = copy.deepcopy(run)

    def get_run(self, run_id: str) -> Optional[ScraperRun]:
        with self._lock:
            run = self._runs.get(run_id)
            return copy.deepcopy(run) if run else None

    # =========================================================================
    # Reads
    # =========================================================================

    def get_protocol(self, code: str, versions: Optional[int] = None) -> Optional[ProtocolDetail]:
        limit = config.RECENT_VERSIONS if versions is None else versions
        with self._lock:
            row = self._protocols.get(code)
            if row is None:
                return None
            history = self._versions.get(code, [])
            recent = sorted(history, key=lambda v: v.version_number, reverse=True)[:limit]
            return copy.deepcopy(
                ProtocolDetail(
                    protocol=row,
                    sections=sorted(self._sections.get(code, []), key=lambda s: s.order),
                    images=sorted(self._images.get(code, []), key=lambda i: i.position),
                    versions=recent,
                )
            )

    def all_versions(self, code: str) -> list[VersionRow]:
        """Full history of a code, oldest first."""
        with self._lock:
            return copy.deepcopy(self._versions.get(code, []))

    def get_stats(self, recent_runs: Optional[int] = None) -> StoreStats:
        limit = config.RECENT_RUNS if recent_runs is None else recent_runs
        with self._lock:
            protocols = list(self._protocols.values())
            runs = sorted(
                self._runs.values(),
                key=lambda r: r.started_at.timestamp() if r.started_at else 0.0,
                reverse=True,
            )

            category_counts: dict[str, int] = {}
            for p in protocols:
                for category in set(p.categories):
                    category_counts[category] = category_counts.get(category, 0) + 1

            dates = [p.last_update_date for p in protocols if p.last_update_date]
            last_update = max(dates) if dates else None
            if last_update is None and runs:
                last_update = runs[0].completed_at or runs[0].started_at

            return StoreStats(
                total_protocols=len(protocols),
                last_update=last_update,
                category_counts=dict(sorted(category_counts.items(), key=lambda kv: (-kv[1], kv[0]))),
                recent_runs=copy.deepcopy(runs[:limit]),
            )

    def check_health(self) -> dict[str, Any]:
        with self._lock:
            return {
                "status": "healthy",
                "backend": "memory",
                "protocols": len(self._protocols),
                "runs": len(self._runs),
            }
