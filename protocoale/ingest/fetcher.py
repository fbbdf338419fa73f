"""
Source document fetchers.

A fetcher enumerates candidate documents (list) and downloads one document's
bytes (fetch). Listing failures are fatal to a run and raise ListingFailure;
fetch failures are returned inside the FetchResult so the run can continue.

Implementations:
- CNASFetcher: scrapes the CNAS therapeutic protocol listing over HTTP
- DirectoryFetcher: local directory of PDFs (offline ingestion, tests)
"""

from __future__ import annotations

import hashlib
import logging
import re
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import unquote, urljoin, urlparse

import httpx
from bs4 import BeautifulSoup
from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

from protocoale.config import config
from protocoale.errors import FetchFailure, ListingFailure
from protocoale.ingest.doc_identity import (
    find_protocol_code,
    generate_protocol_code,
    is_protocol_code,
    normalize_code,
)
from protocoale.models import DocumentRef, FetchResult

logger = logging.getLogger(__name__)

_ROW_DATE = re.compile(r"\b(\d{1,2})[./](\d{1,2})[./](\d{4})\b")


def is_retryable(exc: BaseException) -> bool:
    """Network errors, timeouts and HTTP 5xx are transient; everything else is final."""
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code >= 500
    # UnsupportedProtocol, LocalProtocolError and friends will not fix themselves
    return isinstance(exc, (httpx.TimeoutException, httpx.NetworkError, httpx.RemoteProtocolError))


def fallback_code(title: str, identity: str) -> str:
    """Generated code for a document without one; titles like "-" fall back to identity."""
    try:
        return generate_protocol_code(title)
    except ValueError:
        return "AUTO" + hashlib.sha256(identity.encode("utf-8")).hexdigest()[:8].upper()


def _parse_row_date(text: str) -> Optional[datetime]:
    """Parse a dd.mm.yyyy date from listing row text."""
    match = _ROW_DATE.search(text or "")
    if not match:
        return None
    day, month, year = (int(g) for g in match.groups())
    try:
        return datetime(year, month, day, tzinfo=timezone.utc)
    except ValueError:
        return None


def _describe(exc: BaseException) -> str:
    if isinstance(exc, httpx.HTTPStatusError):
        return f"HTTP {exc.response.status_code}"
    if isinstance(exc, httpx.TimeoutException):
        return f"timeout ({type(exc).__name__})"
    return f"{type(exc).__name__}: {exc}"


class Fetcher(ABC):
    """Interface for document sources."""

    @abstractmethod
    def list(self) -> list[DocumentRef]:
        """Enumerate candidate documents. Raises ListingFailure."""

    @abstractmethod
    def fetch(self, ref: DocumentRef) -> FetchResult:
        """Download one document. Never raises for per-document failures."""

    def close(self):
        pass

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


class CNASFetcher(Fetcher):
    """
    Fetch therapeutic protocols from the CNAS listing page.

    Usage:
        with CNASFetcher() as fetcher:
            for ref in fetcher.list():
                result = fetcher.fetch(ref)

    Tests inject an httpx.Client built on httpx.MockTransport.
    """

    def __init__(
        self,
        listing_url: Optional[str] = None,
        client: Optional[httpx.Client] = None,
        max_attempts: Optional[int] = None,
        backoff_base: Optional[float] = None,
        timeout: Optional[float] = None,
    ):
        self.listing_url = listing_url or config.CNAS_PROTOCOLS_URL
        self.max_attempts = max_attempts if max_attempts is not None else config.FETCH_MAX_ATTEMPTS
        backoff_base = backoff_base if backoff_base is not None else config.FETCH_BACKOFF_BASE

        self._owns_client = client is None
        self.client = client or httpx.Client(
            timeout=timeout if timeout is not None else config.FETCH_TIMEOUT,
            headers={"User-Agent": config.USER_AGENT},
            follow_redirects=True,
        )

        self._retrying = Retrying(
            retry=retry_if_exception(is_retryable),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=backoff_base, max=30),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )

    def close(self):
        if self._owns_client:
            self.client.close()

    def _get(self, url: str) -> httpx.Response:
        response = self.client.get(url)
        response.raise_for_status()
        return response

    # =========================================================================
    # Listing
    # =========================================================================

    def list(self) -> list[DocumentRef]:
        try:
            response = self._retrying.copy()(self._get, self.listing_url)
        except httpx.HTTPError as e:
            raise ListingFailure(f"Cannot enumerate {self.listing_url}: {_describe(e)}") from e

        refs = self.parse_listing(response.text, base_url=str(response.url))
        logger.info(f"Listed {len(refs)} protocol documents from {self.listing_url}")
        return refs

    def parse_listing(self, html: str, base_url: Optional[str] = None) -> list[DocumentRef]:
        """
        Extract PDF references from listing HTML.

        Codes come from the link text, then the enclosing table row, then the
        file name. References without a recognizable code get a generated one.
        Duplicate codes keep the first reference.
        """
        base_url = base_url or self.listing_url
        soup = BeautifulSoup(html, "html.parser")

        refs = []
        seen_codes = set()
        seen_locations = set()

        for anchor in soup.find_all("a", href=True):
            location = urljoin(base_url, anchor["href"].strip())
            filename = unquote(PurePosixPath(urlparse(location).path).name)
            if not filename.lower().endswith(".pdf") or location in seen_locations:
                continue
            seen_locations.add(location)

            link_text = anchor.get_text(" ", strip=True)
            row = anchor.find_parent("tr")
            row_text = row.get_text(" ", strip=True) if row is not None else ""

            code = (
                find_protocol_code(link_text)
                or find_protocol_code(row_text)
                or find_protocol_code(filename)
            )
            title = row_text or link_text or filename

            if code is None:
                code = fallback_code(title, location)
                logger.debug(f"No protocol code in {title[:60]!r}, generated {code}")

            if code in seen_codes:
                logger.debug(f"Duplicate listing entry for {code}: {location}")
                continue
            seen_codes.add(code)

            refs.append(
                DocumentRef(
                    code=code,
                    location=location,
                    title=title,
                    last_modified=_parse_row_date(row_text),
                )
            )

        if not refs:
            logger.warning(f"No PDF links found on {base_url}")

        return refs

    # =========================================================================
    # Fetching
    # =========================================================================

    def fetch(self, ref: DocumentRef) -> FetchResult:
        retrying = self._retrying.copy()
        try:
            response = retrying(self._get, ref.location)
        except httpx.HTTPError as e:
            attempts = retrying.statistics.get("attempt_number", 1)
            failure = FetchFailure(ref.code, ref.location, _describe(e), attempts=attempts)
            logger.error(str(failure))
            return FetchResult(ref=ref, failure=failure)

        logger.debug(f"Fetched {ref.code}: {len(response.content)} bytes")
        return FetchResult(ref=ref, content=response.content)


class DirectoryFetcher(Fetcher):
    """
    Read protocol PDFs from a local directory.

    The code is the file stem when it is a protocol code ("N030C.pdf"),
    else the first code found in the stem, else a generated one. The file
    modification time is the last-modified hint.
    """

    def __init__(self, directory: Path, pattern: str = "*.pdf"):
        self.directory = Path(directory)
        self.pattern = pattern

    def list(self) -> list[DocumentRef]:
        if not self.directory.is_dir():
            raise ListingFailure(f"Not a directory: {self.directory}")

        refs = []
        seen_codes = set()

        for path in sorted(self.directory.glob(self.pattern)):
            if not path.is_file():
                continue

            stem = path.stem
            if is_protocol_code(stem):
                code = normalize_code(stem)
            else:
                code = find_protocol_code(stem) or fallback_code(stem, path.name)

            if code in seen_codes:
                logger.warning(f"Skipping {path.name}: code {code} already listed")
                continue
            seen_codes.add(code)

            mtime = datetime.fromtimestamp(path.stat().st_mtime, tz=timezone.utc)
            refs.append(DocumentRef(code=code, location=str(path), title=stem, last_modified=mtime))

        logger.info(f"Listed {len(refs)} PDFs in {self.directory}")
        return refs

    def fetch(self, ref: DocumentRef) -> FetchResult:
        try:
            content = Path(ref.location).read_bytes()
        except OSError as e:
            failure = FetchFailure(ref.code, ref.location, f"{type(e).__name__}: {e}")
            logger.error(str(failure))
            return FetchResult(ref=ref, failure=failure)
        return FetchResult(ref=ref, content=content)
