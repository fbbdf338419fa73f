#!/usr/bin/env python3
"""
Validate protocol PDF extraction quality.

Runs the extractor, title normalizer and section splitter over a sample of
local protocol PDFs and reports how clean the result is: partial
extractions, characters per page, quality score, detected sections and
titles that still look corrupted.

Usage:
    python scripts/validate_extraction_quality.py --directory data/pdfs --sample 20
    python scripts/validate_extraction_quality.py --directory data/pdfs --threshold 60
"""

import argparse
import logging
import random
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from protocoale.ingest.doc_identity import find_protocol_code
from protocoale.ingest.extractor import PDFExtractor
from protocoale.ingest.sections import SectionSplitter
from protocoale.ingest.title_normalizer import TitleNormalizer, is_title_corrupted

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@dataclass
class PDFQualityResult:
    """Quality metrics for a single protocol PDF."""

    path: Path
    pages: int = 0
    chars: int = 0
    images: int = 0
    partial: bool = False
    quality: float = 0.0
    avg_chars_per_page: float = 0.0
    section_count: int = 0
    title: str = ""
    title_corrupted: bool = False
    errors: list[str] = field(default_factory=list)


@dataclass
class QualityReport:
    """Aggregate quality report."""

    total_pdfs: int = 0
    partial_count: int = 0
    corrupted_titles: int = 0
    no_sections: int = 0
    avg_quality: float = 0.0
    avg_chars_per_page: float = 0.0
    results: list[PDFQualityResult] = field(default_factory=list)


def validate_pdf(
    pdf_path: Path,
    extractor: PDFExtractor,
    normalizer: TitleNormalizer,
    splitter: SectionSplitter,
) -> PDFQualityResult:
    """Validate a single PDF's extraction quality."""
    result = PDFQualityResult(path=pdf_path)

    extraction = extractor.extract(pdf_path.read_bytes())

    result.pages = extraction.page_count
    result.chars = len(extraction.raw_text)
    result.images = len(extraction.images)
    result.partial = extraction.partial
    result.quality = extraction.quality
    result.errors = list(extraction.errors)
    result.avg_chars_per_page = result.chars / max(1, result.pages)
    result.section_count = len(splitter.split(extraction.raw_text))

    code = find_protocol_code(pdf_path.stem)
    raw_title = extraction.title_hint or code or pdf_path.stem
    result.title = normalizer.normalize(raw_title, extraction.raw_text, code=code)
    result.title_corrupted = is_title_corrupted(result.title)

    return result


def get_pdfs_from_directory(directory: Path, limit: int = 200) -> list[Path]:
    """Get PDFs from a directory recursively."""
    return sorted(directory.rglob("*.pdf"))[:limit]


def run_validation(pdfs: list[Path], sample_size: int = 20) -> QualityReport:
    """Run validation on a sample of PDFs."""
    if len(pdfs) > sample_size:
        pdfs = random.sample(pdfs, sample_size)

    extractor = PDFExtractor()
    normalizer = TitleNormalizer()
    splitter = SectionSplitter()
    report = QualityReport(total_pdfs=len(pdfs))

    logger.info(f"Validating {len(pdfs)} PDFs...")

    for i, pdf_path in enumerate(pdfs):
        logger.info(f"[{i + 1}/{len(pdfs)}] {pdf_path.name}")
        result = validate_pdf(pdf_path, extractor, normalizer, splitter)
        report.results.append(result)

        if result.partial:
            report.partial_count += 1
        if result.title_corrupted:
            report.corrupted_titles += 1
        if result.section_count <= 1:
            report.no_sections += 1

    if report.results:
        report.avg_quality = sum(r.quality for r in report.results) / len(report.results)
        report.avg_chars_per_page = sum(r.avg_chars_per_page for r in report.results) / len(report.results)

    return report


def print_report(report: QualityReport, threshold: float, details: Optional[int] = 10):
    """Print the quality report."""
    print("\n" + "=" * 70)
    print("PROTOCOL EXTRACTION QUALITY REPORT")
    print("=" * 70)

    print("\nSummary:")
    print(f"  Total PDFs tested:     {report.total_pdfs}")
    print(f"  Partial extractions:   {report.partial_count}")
    print(f"  Corrupted titles:      {report.corrupted_titles}")
    print(f"  Without sections:      {report.no_sections}")
    print(f"\n  Avg quality score:     {report.avg_quality:.1f}")
    print(f"  Avg chars/page:        {report.avg_chars_per_page:.0f}")

    print("\n" + "-" * 70)
    if report.avg_quality >= threshold:
        print(f"RESULT: PASS (avg quality >= {threshold:.0f})")
    else:
        print(f"RESULT: FAIL ({report.avg_quality:.1f} < {threshold:.0f} threshold)")
    print("-" * 70)

    print("\nSample Results:")
    print("-" * 70)
    for r in report.results[:details]:
        status = "OK"
        if r.partial:
            status = "PART"
        elif r.title_corrupted:
            status = "TITLE"

        print(f"\n[{status}] {r.path.name}")
        print(f"     Title: {r.title[:80]}")
        print(f"     Pages: {r.pages}, Chars: {r.chars}, Images: {r.images}, Sections: {r.section_count}")
        print(f"     Quality: {r.quality:.1f}")
        for error in r.errors:
            print(f"     Error: {error}")

    print("\n" + "=" * 70)


def main():
    parser = argparse.ArgumentParser(description="Validate protocol PDF extraction quality")
    parser.add_argument(
        "--directory",
        type=Path,
        required=True,
        help="Directory to scan for PDFs",
    )
    parser.add_argument(
        "--sample",
        type=int,
        default=20,
        help="Number of PDFs to sample (default: 20)",
    )
    parser.add_argument(
        "--threshold",
        type=float,
        default=50.0,
        help="Minimum average quality score to pass (default: 50)",
    )

    args = parser.parse_args()

    if not args.directory.is_dir():
        logger.error(f"Not a directory: {args.directory}")
        sys.exit(1)

    pdfs = get_pdfs_from_directory(args.directory)
    logger.info(f"Found {len(pdfs)} PDFs")

    if not pdfs:
        logger.error("No PDFs found")
        sys.exit(1)

    report = run_validation(pdfs, sample_size=args.sample)
    print_report(report, args.threshold)

    sys.exit(0 if report.avg_quality >= args.threshold else 1)


if __name__ == "__main__":
    main()
