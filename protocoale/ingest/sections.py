"""
Heading-aware section splitting for protocol text.

Key insight: CNAS protocols share a loose structure (I. Indicaţia
terapeutică, II. Criterii de includere, ... VIII. Prescriptori), but the
markers vary between documents and years. Heading detection is therefore a
rule set that callers can replace or extend, not one fixed expression.

Supports:
- Roman-numeral headings ("II. Criterii de includere în tratament")
- Short numbered headings ("3. Tratament")
- Labelled lines ("DCI: RANIBIZUMABUM", "Prescriptori")
- ALL CAPS lines of two or more words
"""

import re
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from protocoale.ingest.doc_identity import normalize_for_hash
from protocoale.models import SplitSection

_UPPER = "A-ZĂÂÎȘŞȚŢ"


@dataclass(frozen=True)
class HeadingRule:
    """A named test that marks a line as a section heading."""

    name: str
    pattern: Optional[re.Pattern] = None
    max_length: int = 150
    predicate: Optional[Callable[[str], bool]] = None

    def matches(self, line: str) -> bool:
        if not line or len(line) > self.max_length:
            return False
        if self.pattern is not None and not self.pattern.match(line):
            return False
        if self.predicate is not None and not self.predicate(line):
            return False
        return self.pattern is not None or self.predicate is not None


def _is_all_caps_line(line: str) -> bool:
    """Upper-case line with at least two words and four letters."""
    letters = [c for c in line if c.isalpha()]
    if len(letters) < 4 or len(line.split()) < 2:
        return False
    return line.isupper()


DEFAULT_HEADING_RULES: tuple[HeadingRule, ...] = (
    HeadingRule(
        name="roman",
        pattern=re.compile(r"^[IVX]{1,5}\.\s+\S"),
    ),
    HeadingRule(
        name="numbered",
        pattern=re.compile(rf"^\d{{1,2}}(?:\.\d{{1,2}})*\.?\s+[{_UPPER}][^.:;,]{{2,80}}$"),
        max_length=90,
    ),
    HeadingRule(
        name="labelled",
        pattern=re.compile(
            r"^(?:DCI\b|Indica[țţt]i|Criterii\b|Tratament|Contraindica[țţt]i|"
            r"Aten[țţt]ion[ăa]ri|Monitorizar|Prescriptor)",
            re.IGNORECASE,
        ),
        max_length=80,
    ),
    HeadingRule(name="all_caps", predicate=_is_all_caps_line, max_length=100),
)


SECTION_KINDS = (
    "indicatie",
    "criterii_includere",
    "criterii_excludere",
    "tratament",
    "contraindicatii",
    "atentionari",
    "monitorizare",
    "criterii_intrerupere",
    "prescriptori",
    "altele",
)


def classify_heading(heading: str) -> str:
    """
    Map a heading to a coarse section kind.

    Examples:
        "II. Criterii de includere în tratament" -> "criterii_includere"
        "VIII. PRESCRIPTORI" -> "prescriptori"
    """
    normalized = normalize_for_hash(heading)
    if not normalized:
        return "altele"

    if "criterii" in normalized and "includere" in normalized:
        return "criterii_includere"
    if "criterii" in normalized and "excludere" in normalized:
        return "criterii_excludere"
    if "criterii" in normalized and ("intrerupere" in normalized or "oprire" in normalized):
        return "criterii_intrerupere"
    if "contraindicati" in normalized:
        return "contraindicatii"
    if "indicati" in normalized:
        return "indicatie"
    if "atentionari" in normalized or "precautii" in normalized:
        return "atentionari"
    if "monitorizare" in normalized:
        return "monitorizare"
    if "prescriptor" in normalized:
        return "prescriptori"
    if "tratament" in normalized:
        return "tratament"

    return "altele"


class SectionSplitter:
    """
    Split protocol text at detected headings.

    Usage:
        splitter = SectionSplitter()
        sections = splitter.split(raw_text)

        # Custom rules
        splitter = SectionSplitter(rules=[HeadingRule("anexa", re.compile(r"^ANEXA\\b"))])
    """

    def __init__(self, rules: Optional[Sequence[HeadingRule]] = None):
        self.rules = tuple(DEFAULT_HEADING_RULES if rules is None else rules)

    def is_heading(self, line: str) -> Optional[str]:
        """Return the name of the first rule matching the line, if any."""
        line = line.strip()
        if not line:
            return None
        for rule in self.rules:
            if rule.matches(line):
                return rule.name
        return None

    def split(self, raw_text: str) -> list[SplitSection]:
        """
        Segment text into ordered sections.

        Text before the first heading becomes an implicit section with an
        empty heading (dropped when blank). Without any heading the whole text
        is one implicit section. Orders are dense from 0 in source order.
        """
        if not raw_text or not raw_text.strip():
            return []

        blocks: list[tuple[str, list[str]]] = []
        current_heading = ""
        current_lines: list[str] = []

        for line in raw_text.splitlines():
            if self.is_heading(line):
                blocks.append((current_heading, current_lines))
                current_heading = line.strip()
                current_lines = []
            else:
                current_lines.append(line)

        blocks.append((current_heading, current_lines))

        sections = []
        for index, (heading, lines) in enumerate(blocks):
            body = "\n".join(lines).strip()
            # Implicit leading block with no content
            if index == 0 and not heading and not body:
                continue
            sections.append(
                SplitSection(
                    order=len(sections),
                    heading=heading,
                    body=body,
                    kind=classify_heading(heading),
                )
            )

        return sections


def split_sections(raw_text: str, rules: Optional[Sequence[HeadingRule]] = None) -> list[SplitSection]:
    """Convenience function: split with the default or given rules."""
    return SectionSplitter(rules).split(raw_text)
