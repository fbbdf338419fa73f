"""
Change detection and version recording.

For each protocol code VersionManager compares the fingerprint of the new
content with the fingerprint stored on the latest committed version:

- no version yet       -> create protocol, sections, images and version 1
- same fingerprint     -> no write at all
- other fingerprint    -> append version k+1, overwrite the current fields,
                          replace sections and images wholesale

All writes for a code happen inside one store transaction while holding the
code's in-process lock; the Postgres store additionally takes an advisory
lock, so version numbers stay dense under concurrent runs.
"""

import logging
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Iterator, Optional

from protocoale.db.base import ProtocolStore
from protocoale.errors import PersistenceFailure
from protocoale.ingest.doc_identity import get_fingerprint
from protocoale.models import (
    ImageRow,
    Outcome,
    ProtocolContent,
    ProtocolRow,
    SectionRow,
    VersionRow,
)

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One mutex per key, created on demand and dropped when unused.

    Usage:
        locks = KeyedLock()
        with locks.hold("N030C"):
            ...
    """

    def __init__(self):
        self._guard = threading.Lock()
        # key -> [lock, number of holders and waiters]
        self._entries: dict[str, list] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            entry = self._entries.get(key)
            if entry is None:
                entry = self._entries[key] = [threading.Lock(), 0]
            entry[1] += 1

        entry[0].acquire()
        try:
            yield
        finally:
            entry[0].release()
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._entries[key]

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class VersionManager:
    """
    Apply extracted protocol content to a store.

    Usage:
        manager = VersionManager(store)
        outcome = manager.apply("N030C", content)
    """

    def __init__(
        self,
        store: ProtocolStore,
        locks: Optional[KeyedLock] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.locks = locks or KeyedLock()
        self.clock = clock

    def apply(self, code: str, content: ProtocolContent) -> Outcome:
        """
        Create, update or leave unchanged the protocol identified by code.

        Raises:
            PersistenceFailure: If any store write fails; nothing is committed
        """
        outcome, _ = self.apply_versioned(code, content)
        return outcome

    def apply_versioned(self, code: str, content: ProtocolContent) -> tuple[Outcome, int]:
        """Same as apply(), also returning the current version number."""
        if content.code != code:
            raise ValueError(f"Content for {content.code} applied under code {code}")

        fingerprint = get_fingerprint(content.title, content.raw_text)

        with self.locks.hold(code):
            try:
                with self.store.transaction(code) as txn:
                    latest = txn.latest_version()

                    if latest is not None and latest.fingerprint == fingerprint:
                        logger.debug(f"{code}: unchanged at version {latest.version_number}")
                        return Outcome.UNCHANGED, latest.version_number

                    now = self.clock()
                    row = self._protocol_row(content, now)
                    version_number = latest.version_number + 1 if latest else 1

                    if latest is None:
                        txn.insert_protocol(row)
                    else:
                        txn.update_protocol(row)

                    txn.replace_sections(
                        [SectionRow(order=s.order, heading=s.heading, body=s.body, kind=s.kind)
                         for s in content.sections]
                    )
                    txn.replace_images(
                        [ImageRow(position=i.position, image_url=i.blob_ref, page_number=i.page_number,
                                  width=i.width, height=i.height)
                         for i in content.images]
                    )
                    txn.append_version(
                        VersionRow(
                            version_number=version_number,
                            title=content.title,
                            raw_text=content.raw_text,
                            fingerprint=fingerprint,
                            recorded_at=now,
                            official_pdf_url=content.official_pdf_url,
                        )
                    )

            except PersistenceFailure:
                raise
            except Exception as e:
                raise PersistenceFailure(f"{code}: write rolled back: {e}", code=code) from e

        if latest is None:
            logger.info(f"{code}: created (version 1)")
            return Outcome.CREATED, version_number

        logger.info(f"{code}: updated to version {version_number}")
        return Outcome.UPDATED, version_number

    @staticmethod
    def _protocol_row(content: ProtocolContent, now: datetime) -> ProtocolRow:
        return ProtocolRow(
            code=content.code,
            title=content.title,
            raw_text=content.raw_text,
            dci=content.dci,
            specialty_code=content.specialty_code,
            official_pdf_url=content.official_pdf_url,
            stored_pdf_url=content.stored_pdf_url,
            categories=sorted(set(content.categories)),
            extraction_quality=content.extraction_quality,
            last_update_date=content.last_update_date or now,
            created_at=now,
            updated_at=now,
        )
