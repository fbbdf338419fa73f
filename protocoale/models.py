"""
Data model for Protocoale.

Row-shaped dataclasses mirroring the Postgres schema (schema/postgres/)
plus the tagged records passed between pipeline stages.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Optional

from protocoale.errors import FetchFailure


class RunStatus(Enum):
    """Lifecycle state of a scraper run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class Outcome(Enum):
    """Result of applying extracted content to the store."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"


class DocumentStatus(Enum):
    """Final status of one document within a run."""

    CREATED = "created"
    UPDATED = "updated"
    UNCHANGED = "unchanged"
    FETCH_FAILED = "fetch_failed"
    FAILED = "failed"
    ABORTED = "aborted"


# =============================================================================
# Pipeline records
# =============================================================================


@dataclass
class DocumentRef:
    """A candidate source document from the listing."""

    code: str
    location: str
    title: Optional[str] = None
    last_modified: Optional[datetime] = None


@dataclass
class FetchResult:
    """Tagged result of fetching one document."""

    ref: DocumentRef
    content: Optional[bytes] = None
    failure: Optional[FetchFailure] = None

    @property
    def ok(self) -> bool:
        return self.failure is None and self.content is not None


@dataclass
class ExtractedImage:
    """An image found in the source, in appearance order."""

    position: int
    blob_ref: str
    page_number: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class ExtractionResult:
    """Text, images and coarse metadata recovered from a source document."""

    raw_text: str = ""
    images: list[ExtractedImage] = field(default_factory=list)
    specialty_code_hint: Optional[str] = None
    partial: bool = False
    errors: list[str] = field(default_factory=list)

    page_count: int = 0
    title_hint: Optional[str] = None
    dci: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    quality: float = 0.0

    @property
    def has_text(self) -> bool:
        return bool(self.raw_text.strip())


@dataclass
class SplitSection:
    """A segment of protocol text under one heading."""

    order: int
    heading: str
    body: str
    kind: str = "altele"


@dataclass
class ProtocolContent:
    """Everything VersionManager needs to create or update a protocol."""

    code: str
    title: str
    raw_text: str
    sections: list[SplitSection] = field(default_factory=list)
    images: list[ExtractedImage] = field(default_factory=list)
    dci: Optional[str] = None
    specialty_code: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    official_pdf_url: Optional[str] = None
    stored_pdf_url: Optional[str] = None
    extraction_quality: float = 0.0
    last_update_date: Optional[datetime] = None


@dataclass
class IngestResult:
    """Result of ingesting a single document."""

    code: str
    status: DocumentStatus
    title: str = ""
    version_number: Optional[int] = None
    partial: bool = False
    error: Optional[str] = None
    elapsed_seconds: float = 0.0

    @property
    def success(self) -> bool:
        return self.status in (
            DocumentStatus.CREATED,
            DocumentStatus.UPDATED,
            DocumentStatus.UNCHANGED,
        )


# =============================================================================
# Stored rows
# =============================================================================


@dataclass
class ProtocolRow:
    """Current state of a protocol."""

    code: str
    title: str
    raw_text: str
    dci: Optional[str] = None
    specialty_code: Optional[str] = None
    official_pdf_url: Optional[str] = None
    stored_pdf_url: Optional[str] = None
    categories: list[str] = field(default_factory=list)
    extraction_quality: float = 0.0
    last_update_date: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass
class SectionRow:
    order: int
    heading: str
    body: str
    kind: str = "altele"


@dataclass
class ImageRow:
    position: int
    image_url: str
    page_number: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None


@dataclass
class VersionRow:
    """Immutable snapshot of a protocol at one version."""

    version_number: int
    title: str
    raw_text: str
    fingerprint: str
    recorded_at: datetime
    official_pdf_url: Optional[str] = None


@dataclass
class ScraperRun:
    """One execution of the ingestion pipeline."""

    id: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    status: RunStatus = RunStatus.PENDING
    protocols_found: int = 0
    protocols_added: int = 0
    protocols_updated: int = 0
    protocols_failed: int = 0
    error_log: Optional[str] = None
    summary: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "status": self.status.value,
            "protocols_found": self.protocols_found,
            "protocols_added": self.protocols_added,
            "protocols_updated": self.protocols_updated,
            "protocols_failed": self.protocols_failed,
        }


@dataclass
class ProtocolDetail:
    """A protocol with its ordered children, as served to readers."""

    protocol: ProtocolRow
    sections: list[SectionRow] = field(default_factory=list)
    images: list[ImageRow] = field(default_factory=list)
    versions: list[VersionRow] = field(default_factory=list)

    def to_dict(self) -> dict:
        p = self.protocol
        return {
            "code": p.code,
            "title": p.title,
            "dci": p.dci,
            "specialty_code": p.specialty_code,
            "official_pdf_url": p.official_pdf_url,
            "stored_pdf_url": p.stored_pdf_url,
            "categories": list(p.categories),
            "extraction_quality": p.extraction_quality,
            "last_update_date": p.last_update_date.isoformat() if p.last_update_date else None,
            "raw_text": p.raw_text,
            "sections": [
                {"order": s.order, "heading": s.heading, "kind": s.kind, "body": s.body}
                for s in self.sections
            ],
            "images": [
                {"position": i.position, "image_url": i.image_url, "page_number": i.page_number}
                for i in self.images
            ],
            "versions": [
                {
                    "version_number": v.version_number,
                    "title": v.title,
                    "recorded_at": v.recorded_at.isoformat(),
                    "fingerprint": v.fingerprint,
                }
                for v in self.versions
            ],
        }


@dataclass
class StoreStats:
    """Aggregate statistics over the store."""

    total_protocols: int = 0
    last_update: Optional[datetime] = None
    category_counts: dict[str, int] = field(default_factory=dict)
    recent_runs: list[ScraperRun] = field(default_factory=list)
