"""
Drug name expansion.

CNAS headers often abbreviate insulin analogues to the analogue name alone
("LISPRO", "GLARGINE"). Titles and DCI values are stored with the full
international name so that searches for INSULINUM find them.
"""

import re

# Short form -> full DCI
DRUG_NAME_EXPANSIONS = {
    "LISPRO": "INSULINUM LISPRO",
    "GLULIZINA": "INSULINUM GLULISINUM",
    "GLULISINUM": "INSULINUM GLULISINUM",
    "ASPART": "INSULINUM ASPART",
    "DETEMIR": "INSULINUM DETEMIR",
    "GLARGINUM": "INSULINUM GLARGINE",
    "GLARGINE": "INSULINUM GLARGINE",
    "DEGLUDECUM": "INSULINUM DEGLUDECUM",
    "DEGLUDEC": "INSULINUM DEGLUDECUM",
}

# Already-expanded names are left alone, which keeps expansion idempotent
_SHORT_NAME_PATTERNS = [
    (re.compile(rf"(?<!INSULINUM\s)\b{short}\b", re.IGNORECASE), full)
    for short, full in DRUG_NAME_EXPANSIONS.items()
]


def _match_case(found: str, full: str) -> str:
    if found.isupper():
        return full.upper()
    if found[:1].isupper():
        return " ".join(word.capitalize() for word in full.split())
    return full.lower()


def expand_drug_names(text: str) -> str:
    """
    Replace abbreviated drug names with their full DCI, keeping the case
    of the abbreviation.

    Examples:
        "LISPRO" -> "INSULINUM LISPRO"
        "Lispro 100 UI/ml" -> "Insulinum Lispro 100 UI/ml"
        "INSULINUM LISPRO" -> "INSULINUM LISPRO"
    """
    if not text:
        return text

    for pattern, full in _SHORT_NAME_PATTERNS:
        text = pattern.sub(lambda m, full=full: _match_case(m.group(0), full), text)
    return text

