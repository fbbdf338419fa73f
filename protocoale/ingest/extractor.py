"""
PDF content extraction for Protocoale.

Converts protocol PDF bytes into:
- Linear raw text (pages in order, blocks sorted top-to-bottom)
- Embedded images in appearance order, stored through a blob store
- Coarse metadata (page count, header line, DCI, categories, specialty hint)
- An extraction quality score (0-100)

Malformed input never raises: whatever could be recovered is returned with
partial=True and the error messages attached.
"""

import hashlib
import logging
import re
from typing import Optional

import pymupdf

from protocoale.errors import ExtractionFailure
from protocoale.ingest.doc_identity import normalize_for_hash
from protocoale.ingest.title_normalizer import repair_mojibake
from protocoale.models import ExtractedImage, ExtractionResult
from protocoale.storage import LocalBlobStore

logger = logging.getLogger(__name__)


# Standard section markers of a CNAS protocol (diacritics stripped)
PROTOCOL_SECTION_MARKERS = (
    "indicati",
    "criterii",
    "tratament",
    "contraindicati",
    "monitorizare",
    "prescriptor",
)

# Category -> (specialty code, keywords matched against diacritic-free text)
CATEGORY_KEYWORDS = {
    "Oncologie": ("oncologie", ("oncolog", "cancer", "tumor", "neoplaz", "chimioterapie", "metastaz", "carcinom", "melanom", "sarcom")),
    "Hematologie": ("hematologie", ("hematolog", "anemie", "trombocit", "hemofilie", "leucemie", "limfom", "mielom")),
    "Reumatologie": ("reumatologie", ("reumatolog", "artrit", "poliartrit", "spondilit", "lupus", "reumatoid")),
    "Cardiologie": ("cardiologie", ("cardiolog", "cardiac", "coronar", "aritmie", "infarct", "insuficienta cardiaca")),
    "Neurologie": ("neurologie", ("neurolog", "cerebral", "scleroza multipla", "epilepsie", "parkinson", "migren")),
    "Endocrinologie": ("endocrinologie", ("diabet", "insulin", "glicemie", "tiroid", "hipofiz", "acromegalie")),
    "Pneumologie": ("pneumologie", ("pneumolog", "respirator", "astm", "bpoc", "pulmonar")),
    "Gastroenterologie": ("gastroenterologie", ("hepatic", "ciroza", "hepatita", "crohn", "colita", "pancreat")),
    "Nefrologie": ("nefrologie", ("renal", "dializa", "nefropatie", "glomerulonefrit")),
    "Psihiatrie": ("psihiatrie", ("psihiatr", "schizofren", "depresi", "bipolar")),
    "Oftalmologie": ("oftalmologie", ("oftalmolog", "retin", "macular", "glaucom")),
    "Dermatologie": ("dermatologie", ("dermatolog", "psoriazis", "dermatit", "cutanat")),
}

_HEADER_HINT = re.compile(r"protocol(?:ul)?\s+terapeutic", re.IGNORECASE)
_DCI_LINE = re.compile(r"^\s*DCI\s*[:\-]?\s*(?P<dci>\S.{1,150}?)\s*$", re.IGNORECASE | re.MULTILINE)
_DCI_IN_HEADER = re.compile(r"cod\s*\([^)]*\)\s*:\s*DCI\s*:?\s*(?P<dci>\S.{1,150}?)\s*$", re.IGNORECASE)
# Header ending in a bare "DCI" with the name wrapped onto the next line
_DCI_WRAPPED = re.compile(
    r"(?i:cod\s*\([^)]*\)\s*:\s*DCI)\s*:?[ \t]*\n\s*(?![IVX]+\.|\d+\.)(?P<dci>[A-ZĂÂÎȘŞȚŢ][A-ZĂÂÎȘŞȚŢ0-9 ,\-()+./]{2,150})$",
    re.MULTILINE,
)


def calculate_quality(text: str, page_count: int) -> float:
    """
    Score extraction quality 0-100.

    Weighted from:
    - Characters per page (2000/page counts as full)
    - Share of standard protocol section markers present
    - Ratio of non-whitespace characters
    """
    if not text or page_count <= 0:
        return 0.0

    length_score = min(100.0, (len(text) / page_count) / 2000 * 100)

    normalized = normalize_for_hash(text)
    found = sum(1 for marker in PROTOCOL_SECTION_MARKERS if marker in normalized)
    section_score = found / len(PROTOCOL_SECTION_MARKERS) * 100

    validity_score = len(re.sub(r"\s", "", text)) / len(text) * 100

    return round(length_score * 0.4 + section_score * 0.4 + validity_score * 0.2, 1)


def detect_categories(text: str) -> list[str]:
    """Medical categories whose keywords occur in the text, in table order."""
    normalized = normalize_for_hash(text)
    if not normalized:
        return []
    return [
        category
        for category, (_, keywords) in CATEGORY_KEYWORDS.items()
        if any(keyword in normalized for keyword in keywords)
    ]


def detect_specialty(text: str) -> Optional[str]:
    """Specialty code of the category with the most keyword hits."""
    normalized = normalize_for_hash(text)
    if not normalized:
        return None

    best_code = None
    best_hits = 0
    for specialty_code, keywords in CATEGORY_KEYWORDS.values():
        hits = sum(normalized.count(keyword) for keyword in keywords)
        if hits > best_hits:
            best_code, best_hits = specialty_code, hits

    return best_code


def find_title_hint(text: str, max_lines: int = 20) -> Optional[str]:
    """First line near the top that looks like the protocol boilerplate header."""
    for line in text.splitlines()[:max_lines]:
        repaired = repair_mojibake(line)
        if repaired and _HEADER_HINT.search(repaired):
            return repaired
    return None


def find_dci(text: str, title_hint: Optional[str] = None) -> Optional[str]:
    """DCI from an explicit "DCI:" line, else from a "cod (...): DCI X" header."""
    head = "\n".join(text.splitlines()[:40])
    match = _DCI_LINE.search(head)
    if match:
        return repair_mojibake(match.group("dci"))

    match = _DCI_WRAPPED.search(head)
    if match:
        return repair_mojibake(match.group("dci"))

    if title_hint:
        match = _DCI_IN_HEADER.search(title_hint)
        if match:
            return repair_mojibake(match.group("dci"))

    return None


class PDFExtractor:
    """
    Extract text and images from protocol PDFs with PyMuPDF.

    Usage:
        extractor = PDFExtractor(image_store=LocalBlobStore(config.IMAGE_STORAGE_DIR))
        result = extractor.extract(pdf_bytes)
        if result.partial:
            logger.warning(result.errors)
    """

    def __init__(self, image_store: Optional[LocalBlobStore] = None, strip_nul: bool = True):
        self.image_store = image_store
        self.strip_nul = strip_nul

    def extract(self, content: bytes) -> ExtractionResult:
        """
        Extract everything recoverable from PDF bytes.

        Never raises for malformed input; see ExtractionResult.partial.
        """
        result = ExtractionResult()

        try:
            doc = self._open(content)
        except ExtractionFailure as e:
            logger.warning(f"Unreadable PDF ({len(content or b'')} bytes): {e}")
            result.partial = True
            result.errors.append(str(e))
            return result

        try:
            result.page_count = doc.page_count
            page_texts = []
            seen_xrefs: set[int] = set()

            for page_index in range(doc.page_count):
                try:
                    page = doc.load_page(page_index)
                    page_texts.append(page.get_text("text", sort=True))
                except (RuntimeError, ValueError) as e:
                    result.partial = True
                    result.errors.append(f"page {page_index + 1}: text extraction failed: {e}")
                    continue

                try:
                    self._collect_images(doc, page, page_index, seen_xrefs, result)
                except (RuntimeError, ValueError) as e:
                    result.partial = True
                    result.errors.append(f"page {page_index + 1}: image extraction failed: {e}")
        finally:
            doc.close()

        result.raw_text = self._clean_text("\n".join(page_texts))
        result.title_hint = find_title_hint(result.raw_text)
        result.dci = find_dci(result.raw_text, result.title_hint)
        result.categories = detect_categories(result.raw_text)
        result.specialty_code_hint = detect_specialty(result.raw_text)
        result.quality = calculate_quality(result.raw_text, result.page_count)

        if not result.has_text:
            result.partial = True
            result.errors.append("no text layer recovered")

        logger.debug(
            f"Extracted {result.page_count} pages, {len(result.raw_text)} chars, "
            f"{len(result.images)} images (quality {result.quality:.1f})"
        )
        return result

    def _open(self, content: bytes) -> "pymupdf.Document":
        if not content:
            raise ExtractionFailure("empty document")

        try:
            doc = pymupdf.open(stream=content, filetype="pdf")
        except (RuntimeError, ValueError) as e:
            raise ExtractionFailure(f"cannot open PDF: {e}") from e

        if doc.needs_pass:
            doc.close()
            raise ExtractionFailure("PDF is password protected")

        return doc

    def _collect_images(self, doc, page, page_index: int, seen_xrefs: set, result: ExtractionResult):
        """Append the page's images in display-list order; repeated xrefs are kept once."""
        for info in page.get_image_info(xrefs=True):
            xref = info.get("xref", 0)
            # Inline images have no xref and cannot be extracted standalone
            if not xref or xref in seen_xrefs:
                continue
            seen_xrefs.add(xref)

            extracted = doc.extract_image(xref)
            if not extracted or not extracted.get("image"):
                continue

            data = extracted["image"]
            extension = extracted.get("ext", "png")
            try:
                blob_ref = self._store_image(data, extension)
            except OSError as e:
                result.partial = True
                result.errors.append(f"page {page_index + 1}: cannot store image: {e}")
                continue

            result.images.append(
                ExtractedImage(
                    position=len(result.images),
                    blob_ref=blob_ref,
                    page_number=page_index + 1,
                    width=extracted.get("width"),
                    height=extracted.get("height"),
                )
            )

    def _store_image(self, data: bytes, extension: str) -> str:
        if self.image_store is not None:
            return self.image_store.put(data, extension)
        return f"sha256:{hashlib.sha256(data).hexdigest()}.{extension}"

    def _clean_text(self, text: str) -> str:
        if self.strip_nul:
            text = text.replace("\x00", "")
        text = text.replace("\r\n", "\n").replace("\r", "\n")
        # Trailing whitespace per line, and no runs of more than two blank lines
        text = "\n".join(line.rstrip() for line in text.split("\n"))
        text = re.sub(r"\n{3,}", "\n\n", text)
        return text.strip()
