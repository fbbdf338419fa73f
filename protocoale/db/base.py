"""
Store interface for Protocoale.

A store persists protocols, their ordered sections and images, the append-only
version history and scraper runs. All writes for one protocol code happen
inside a single transaction(code) block: leaving the block normally commits,
leaving it with an exception rolls everything back and re-raises.

Implementations:
- PostgresStore (protocoale.db.postgres): durable, the default
- MemoryStore (protocoale.db.memory): in-process, for tests and dry runs
"""

from abc import ABC, abstractmethod
from contextlib import AbstractContextManager
from typing import Any, Optional

from protocoale.models import (
    ImageRow,
    ProtocolDetail,
    ProtocolRow,
    ScraperRun,
    SectionRow,
    StoreStats,
    VersionRow,
)


class StoreTransaction(ABC):
    """Write operations for a single protocol code, applied atomically."""

    code: str

    @abstractmethod
    def latest_version(self) -> Optional[VersionRow]:
        """Most recent committed (or staged) version of this code, if any."""

    @abstractmethod
    def insert_protocol(self, row: ProtocolRow) -> None:
        ...

    @abstractmethod
    def update_protocol(self, row: ProtocolRow) -> None:
        """Overwrite the current fields; the code never changes."""

    @abstractmethod
    def replace_sections(self, sections: list[SectionRow]) -> None:
        ...

    @abstractmethod
    def replace_images(self, images: list[ImageRow]) -> None:
        ...

    @abstractmethod
    def append_version(self, version: VersionRow) -> None:
        """Append a version; its number must be exactly latest + 1."""


class ProtocolStore(ABC):
    """Durable store handle, passed explicitly into pipeline components."""

    @abstractmethod
    def transaction(self, code: str) -> AbstractContextManager[StoreTransaction]:
        """Open an atomic write unit for one protocol code."""

    # =========================================================================
    # Runs
    # =========================================================================

    @abstractmethod
    def insert_run(self, run: ScraperRun) -> None:
        ...

    @abstractmethod
    def update_run(self, run: ScraperRun) -> None:
        """Persist status, counters, completion time and summary of a run."""

    # =========================================================================
    # Reads
    # =========================================================================

    @abstractmethod
    def get_protocol(self, code: str, versions: Optional[int] = None) -> Optional[ProtocolDetail]:
        """
        Protocol with sections by order, images by position and the most
        recent versions by number descending. None if the code is unknown.

        Raises:
            StoreUnavailable: If the read fails
        """

    @abstractmethod
    def get_stats(self, recent_runs: Optional[int] = None) -> StoreStats:
        ...

    @abstractmethod
    def check_health(self) -> dict[str, Any]:
        ...

    def close(self) -> None:
        pass
