"""
Protocol identity management for Protocoale.

Provides protocol code recognition, deterministic fallback codes and the
content fingerprint used to detect changes between versions.

This ensures:
1. Same document always gets same code (idempotent ingestion)
2. Re-ingestion of identical content is detected as unchanged
3. Specialty hints can be derived from the code alone
"""

import hashlib
import re
import unicodedata
from typing import Optional

# CNAS codes: positional (A001E, L040M, N030C) or ATC-based (L01XC12, A10AE06)
PROTOCOL_CODE_PATTERN = re.compile(
    r"\b([A-Z]\d{2}[A-Z]{2}\d{2}|[A-Z]\d{3}[A-Z]{1,2}|[A-Z]\d{3})\b"
)

# ATC anatomical main group -> specialty code
ATC_GROUP_SPECIALTY = {
    "A": "gastroenterologie",
    "B": "hematologie",
    "C": "cardiologie",
    "D": "dermatologie",
    "G": "ginecologie",
    "H": "endocrinologie",
    "J": "boli_infectioase",
    "L": "oncologie",
    "M": "reumatologie",
    "N": "neurologie",
    "R": "pneumologie",
    "S": "oftalmologie",
}

# More specific ATC level-2 prefixes
ATC_PREFIX_SPECIALTY = {
    "A10": "endocrinologie",
    "B01": "hematologie",
    "C09": "cardiologie",
    "H03": "endocrinologie",
    "L03": "imunologie",
    "L04": "reumatologie",
    "N05": "psihiatrie",
    "N06": "psihiatrie",
    "R03": "pneumologie",
    "S01": "oftalmologie",
}


def normalize_for_hash(text: str) -> str:
    """
    Normalize text for slug hashing.

    Transformations:
    - Lowercase
    - Remove accents/diacritics
    - Remove punctuation
    - Collapse whitespace

    Examples:
        "Ranibizumabum" -> "ranibizumabum"
        "COMBINAŢII (PIOGLITAZONUM + METFORMIN)" -> "combinatii pioglitazonum metformin"
    """
    if not text:
        return ""

    text = text.lower()

    text = unicodedata.normalize("NFKD", text)
    text = "".join(c for c in text if not unicodedata.combining(c))

    text = re.sub(r"[^\w\s]", " ", text)

    return " ".join(text.split())


def normalize_code(code: str) -> str:
    """Uppercase a protocol code and drop whitespace."""
    if not code:
        return ""
    return re.sub(r"\s+", "", code).upper()


def find_protocol_code(text: str) -> Optional[str]:
    """
    Find the first protocol code in a piece of text.

    Examples:
        "A001E - ORLISTATUM" -> "A001E"
        "cod (L01XC12): DCI BRENTUXIMAB" -> "L01XC12"
    """
    if not text:
        return None
    match = PROTOCOL_CODE_PATTERN.search(text.upper())
    return match.group(1) if match else None


def is_protocol_code(value: str) -> bool:
    """Check whether a value is exactly a protocol code."""
    if not value:
        return False
    return PROTOCOL_CODE_PATTERN.fullmatch(normalize_code(value)) is not None


def generate_protocol_code(title: str) -> str:
    """
    Generate a deterministic code for a document whose listing has no code.

    Args:
        title: Listing title or file name

    Returns:
        Code of the form AUTO<8 hex chars>

    Raises:
        ValueError: If title is empty after normalization
    """
    normalized = normalize_for_hash(title)
    if not normalized:
        raise ValueError("Cannot generate a protocol code from an empty title")
    digest = hashlib.sha256(normalized.encode("utf-8")).hexdigest()
    return f"AUTO{digest[:8].upper()}"


def get_fingerprint(title: str, raw_text: str) -> str:
    """
    Content fingerprint over (normalized title, raw text).

    Both parts are NFC-normalized so equivalent Unicode spellings of the same
    diacritic hash identically. Any other difference changes the fingerprint.

    Returns:
        64-character hex string
    """
    title_part = unicodedata.normalize("NFC", title or "")
    text_part = unicodedata.normalize("NFC", raw_text or "")
    digest = hashlib.sha256()
    digest.update(title_part.encode("utf-8"))
    digest.update(b"\x1f")
    digest.update(text_part.encode("utf-8"))
    return digest.hexdigest()


def specialty_from_code(code: str) -> Optional[str]:
    """Derive a specialty code from the ATC letter/prefix of a protocol code."""
    code = normalize_code(code)
    if not code or code.startswith("AUTO"):
        return None

    if len(code) >= 3 and code[:3] in ATC_PREFIX_SPECIALTY:
        return ATC_PREFIX_SPECIALTY[code[:3]]

    return ATC_GROUP_SPECIALTY.get(code[0])
