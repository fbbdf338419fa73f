"""
Error types for the ingestion pipeline.

Run-level failures (ListingFailure, PersistenceFailure) abort a scraper run.
Document-level failures (FetchFailure, ExtractionFailure) are recorded and
the run moves on to the next document.
"""

from typing import Optional


class ProtocoaleError(Exception):
    """Base class for all pipeline errors."""


class ListingFailure(ProtocoaleError):
    """The source document list could not be enumerated."""


class FetchFailure(ProtocoaleError):
    """A single document could not be downloaded after all retry attempts."""

    def __init__(self, code: str, location: str, reason: str, attempts: int = 1):
        self.code = code
        self.location = location
        self.reason = reason
        self.attempts = attempts
        super().__init__(f"{code}: fetch of {location} failed after {attempts} attempt(s): {reason}")


class ExtractionFailure(ProtocoaleError):
    """Source bytes are malformed or unreadable."""


class PersistenceFailure(ProtocoaleError):
    """A store write failed; the enclosing transaction was rolled back."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class StoreUnavailable(ProtocoaleError):
    """A read against the store failed for a transient reason."""


class InvalidRunTransition(ProtocoaleError):
    """A scraper run was moved to a state its current state does not allow."""
