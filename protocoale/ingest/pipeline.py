"""
Main ingestion pipeline for Protocoale.

Orchestrates: listing → fetch → extraction → title normalization →
section splitting → versioned write, with one scraper run tracking it all.

Each document is an independent unit of work on a bounded thread pool.
Per-document problems (fetch failures, partial extraction) are recorded and
the run moves on; a persistence failure aborts the run: queued documents are
cancelled, in-flight documents skip their write and the run is marked failed.
"""

import logging
import threading
import time
from concurrent.futures import CancelledError, ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Optional

from protocoale.config import config
from protocoale.db.base import ProtocolStore
from protocoale.errors import ListingFailure, PersistenceFailure
from protocoale.ingest.doc_identity import specialty_from_code
from protocoale.ingest.drug_names import expand_drug_names
from protocoale.ingest.extractor import PDFExtractor
from protocoale.ingest.fetcher import DirectoryFetcher, Fetcher
from protocoale.ingest.run_tracker import RunTracker
from protocoale.ingest.sections import SectionSplitter
from protocoale.ingest.title_normalizer import TitleNormalizer
from protocoale.ingest.versioning import VersionManager
from protocoale.models import (
    DocumentRef,
    DocumentStatus,
    ExtractionResult,
    IngestResult,
    Outcome,
    ProtocolContent,
    ScraperRun,
)
from protocoale.storage import LocalBlobStore

logger = logging.getLogger(__name__)


_OUTCOME_STATUS = {
    Outcome.CREATED: DocumentStatus.CREATED,
    Outcome.UPDATED: DocumentStatus.UPDATED,
    Outcome.UNCHANGED: DocumentStatus.UNCHANGED,
}


@dataclass
class BatchIngestResult:
    """Result of one scraper run."""

    run: ScraperRun
    results: list[IngestResult] = field(default_factory=list)
    elapsed_seconds: float = 0.0
    error: Optional[str] = None

    @property
    def total(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def count(self, status: DocumentStatus) -> int:
        return sum(1 for r in self.results if r.status is status)


class IngestPipeline:
    """
    Main ingestion pipeline for Protocoale.

    Usage:
        store = PostgresStore()
        with CNASFetcher() as fetcher:
            pipeline = IngestPipeline(fetcher, store)
            result = pipeline.run()

        print(result.run.status, result.run.protocols_added)
    """

    def __init__(
        self,
        fetcher: Fetcher,
        store: ProtocolStore,
        extractor: Optional[PDFExtractor] = None,
        title_normalizer: Optional[TitleNormalizer] = None,
        splitter: Optional[SectionSplitter] = None,
        version_manager: Optional[VersionManager] = None,
        pdf_store: Optional[LocalBlobStore] = None,
        max_workers: Optional[int] = None,
        progress_callback: Optional[Callable[[int, int, IngestResult], None]] = None,
    ):
        """
        Initialize the ingestion pipeline.

        Args:
            fetcher: Document source
            store: Store receiving protocols and run records
            extractor: PDF extractor (default: images kept as content hashes only)
            title_normalizer: Title cleanup (default: config.MIN_TITLE_LENGTH)
            splitter: Section splitter (default heading rules)
            version_manager: Change detection over the same store
            pdf_store: Where source PDFs are archived; None skips archiving
            max_workers: Worker threads (default: config.NUM_WORKERS)
            progress_callback: Optional callback(processed, total, result)
        """
        self.fetcher = fetcher
        self.store = store
        self.extractor = extractor or PDFExtractor()
        self.title_normalizer = title_normalizer or TitleNormalizer()
        self.splitter = splitter or SectionSplitter()
        self.version_manager = version_manager or VersionManager(store)
        self.pdf_store = pdf_store
        self.max_workers = max_workers or config.NUM_WORKERS
        self.progress_callback = progress_callback

        self._abort = threading.Event()

    # =========================================================================
    # Run
    # =========================================================================

    def run(self) -> BatchIngestResult:
        """
        Execute one scraper run over everything the fetcher lists.

        Returns:
            BatchIngestResult; run.status is completed or failed

        Raises:
            PersistenceFailure: If the run row itself cannot be written
        """
        start_time = time.time()
        self._abort.clear()

        tracker = RunTracker(self.store)
        tracker.start()

        try:
            refs = self.fetcher.list()
            tracker.record_listed(len(refs))
        except Exception as e:
            if isinstance(e, ListingFailure):
                logger.error(f"Listing failed: {e}")
            else:
                logger.exception(f"Unexpected error while listing: {e}")
            run = self._fail(tracker, e)
            return BatchIngestResult(run=run, elapsed_seconds=time.time() - start_time, error=str(e))

        logger.info(f"Run {tracker.run_id}: processing {len(refs)} documents with {self.max_workers} workers")

        results = []
        fatal: Optional[Exception] = None

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            future_to_ref = {
                executor.submit(self.ingest_document, ref, tracker): ref
                for ref in refs
            }

            try:
                for future in as_completed(future_to_ref):
                    ref = future_to_ref[future]

                    try:
                        result = future.result()
                    except CancelledError:
                        tracker.record_skipped()
                        result = IngestResult(code=ref.code, status=DocumentStatus.ABORTED, error="cancelled")
                    except PersistenceFailure as e:
                        if fatal is None:
                            fatal = e
                            self._abort_pending(tracker, future_to_ref, e)
                        tracker.record_failure()
                        result = IngestResult(code=ref.code, status=DocumentStatus.ABORTED, error=str(e))
                    except Exception as e:
                        logger.error(f"Worker exception for {ref.code}: {e}")
                        tracker.record_failure()
                        result = IngestResult(
                            code=ref.code,
                            status=DocumentStatus.FAILED,
                            error=f"Worker exception: {e}",
                        )

                    results.append(result)
                    if self.progress_callback:
                        self.progress_callback(len(results), len(refs), result)
            except Exception as e:
                # A run counter update failed while draining
                if fatal is None:
                    fatal = e
                    self._abort_pending(tracker, future_to_ref, e)

        elapsed = time.time() - start_time

        if fatal is None:
            try:
                run = tracker.complete()
                return BatchIngestResult(run=run, results=results, elapsed_seconds=elapsed)
            except PersistenceFailure as e:
                fatal = e

        run = self._fail(tracker, fatal)
        return BatchIngestResult(run=run, results=results, elapsed_seconds=elapsed, error=str(fatal))

    def _abort_pending(self, tracker: RunTracker, future_to_ref: dict, error: Exception) -> None:
        logger.critical(f"Aborting run {tracker.run_id}: {error}")
        self._abort.set()
        for pending in future_to_ref:
            pending.cancel()

    def _fail(self, tracker: RunTracker, error: Exception) -> ScraperRun:
        try:
            return tracker.fail(error)
        except PersistenceFailure as e:
            logger.critical(f"Run {tracker.run_id} could not be recorded as failed: {e}")
            return tracker.snapshot()

    # =========================================================================
    # Single document
    # =========================================================================

    def ingest_document(self, ref: DocumentRef, tracker: RunTracker) -> IngestResult:
        """
        Fetch, extract, normalize, split and apply one document.

        Runs on a worker thread. Returns a tagged IngestResult for every
        per-document outcome; only PersistenceFailure escapes.
        """
        start_time = time.time()

        if self._abort.is_set():
            tracker.record_skipped()
            return IngestResult(code=ref.code, status=DocumentStatus.ABORTED, error="run aborted before fetch")

        fetched = self.fetcher.fetch(ref)
        if not fetched.ok:
            tracker.record_failure()
            return IngestResult(
                code=ref.code,
                status=DocumentStatus.FETCH_FAILED,
                title=ref.title or "",
                error=str(fetched.failure),
                elapsed_seconds=time.time() - start_time,
            )

        tracker.record_found()

        extraction = self.extractor.extract(fetched.content)
        if extraction.partial:
            logger.warning(f"{ref.code}: partial extraction ({'; '.join(extraction.errors)})")

        stored_pdf_url = self._archive_pdf(ref, fetched.content)
        content = self.build_content(ref, extraction, stored_pdf_url)

        if self._abort.is_set():
            tracker.record_failure()
            return IngestResult(
                code=ref.code,
                status=DocumentStatus.ABORTED,
                title=content.title,
                partial=extraction.partial,
                error="run aborted before write",
                elapsed_seconds=time.time() - start_time,
            )

        outcome, version_number = self.version_manager.apply_versioned(ref.code, content)
        tracker.record_outcome(outcome)

        return IngestResult(
            code=ref.code,
            status=_OUTCOME_STATUS[outcome],
            title=content.title,
            version_number=version_number,
            partial=extraction.partial,
            elapsed_seconds=time.time() - start_time,
        )

    def _archive_pdf(self, ref: DocumentRef, content: bytes) -> Optional[str]:
        if self.pdf_store is None:
            return None
        try:
            return self.pdf_store.put(content, "pdf")
        except OSError as e:
            raise PersistenceFailure(f"{ref.code}: cannot archive PDF: {e}", code=ref.code) from e

    def build_content(
        self,
        ref: DocumentRef,
        extraction: ExtractionResult,
        stored_pdf_url: Optional[str] = None,
    ) -> ProtocolContent:
        """
        Assemble what VersionManager stores from a reference and its extraction.

        The title prefers the PDF header line, then the listing title, then
        the code itself.
        """
        raw_title = extraction.title_hint or ref.title or ref.code
        title = self.title_normalizer.normalize(raw_title, extraction.raw_text, code=ref.code) or ref.code

        return ProtocolContent(
            code=ref.code,
            title=title,
            raw_text=extraction.raw_text,
            sections=self.splitter.split(extraction.raw_text),
            images=list(extraction.images),
            dci=expand_drug_names(extraction.dci),
            specialty_code=extraction.specialty_code_hint or specialty_from_code(ref.code),
            categories=list(extraction.categories),
            official_pdf_url=ref.location,
            stored_pdf_url=stored_pdf_url,
            extraction_quality=extraction.quality,
            last_update_date=ref.last_modified,
        )


def ingest_directory(directory: Path, store: ProtocolStore, **kwargs) -> BatchIngestResult:
    """
    Convenience function to run the pipeline over a directory of PDFs.

    Args:
        directory: Directory containing protocol PDFs
        store: Target store
        **kwargs: Arguments passed to IngestPipeline

    Returns:
        BatchIngestResult
    """
    pipeline = IngestPipeline(DirectoryFetcher(directory), store, **kwargs)
    return pipeline.run()
