"""
Ingestion pipeline for Protocoale.

Handles listing and fetching, PDF extraction, title normalization, section
splitting, versioned storage and run tracking.
"""

from .pipeline import IngestPipeline, BatchIngestResult, ingest_directory
from .fetcher import Fetcher, CNASFetcher, DirectoryFetcher
from .extractor import PDFExtractor
from .title_normalizer import TitleNormalizer, normalize, repair_mojibake
from .drug_names import expand_drug_names
from .sections import SectionSplitter, HeadingRule, split_sections
from .versioning import VersionManager, KeyedLock
from .run_tracker import RunTracker
from .doc_identity import find_protocol_code, generate_protocol_code, get_fingerprint

__all__ = [
    "IngestPipeline",
    "BatchIngestResult",
    "ingest_directory",
    "Fetcher",
    "CNASFetcher",
    "DirectoryFetcher",
    "PDFExtractor",
    "TitleNormalizer",
    "normalize",
    "repair_mojibake",
    "expand_drug_names",
    "SectionSplitter",
    "HeadingRule",
    "split_sections",
    "VersionManager",
    "KeyedLock",
    "RunTracker",
    "find_protocol_code",
    "generate_protocol_code",
    "get_fingerprint",
]
