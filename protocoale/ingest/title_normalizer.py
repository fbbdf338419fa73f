"""
Protocol title normalization.

CNAS publishes titles in a fixed boilerplate template:

    Protocol terapeutic corespunzător poziţiei nr. 30, cod (N030C): Ranibizumabum

and PDF text extraction regularly corrupts the Romanian diacritics in them,
either as UTF-8 bytes read as Latin-1 ("corespunzÄƒtor") or as a diacritic
split out between spaces ("corespunz ă tor pozi ţ iei").

normalize() repairs the corruption first, then collapses the template to the
protocol name. Titles that still look broken are corrected from a table of
known titles or from the document body, and abbreviated insulin names are
expanded. The function is idempotent.
"""

import logging
import re
from typing import Optional

from protocoale.config import config
from protocoale.ingest.doc_identity import normalize_code
from protocoale.ingest.drug_names import expand_drug_names

logger = logging.getLogger(__name__)


# UTF-8 sequences decoded as cp1252/Latin-1 -> intended character.
# Longer keys first so that overlapping prefixes resolve correctly.
MOJIBAKE_TABLE = {
    "Ä‚": "Ă",
    "Äƒ": "ă",
    "Ã‚": "Â",
    "Ã¢": "â",
    "ÃŽ": "Î",
    "Ã®": "î",
    "È˜": "Ș",
    "È™": "ș",
    "Èš": "Ț",
    "È›": "ț",
    "Åž": "Ş",
    "ÅŸ": "ş",
    "Å¢": "Ţ",
    "Å£": "ţ",
    "Ã©": "é",
    "Ã¶": "ö",
    "Ã¼": "ü",
    "â€ž": "„",
    "â€œ": "“",
    "â€™": "’",
    "â€“": "–",
    "â€": "”",
}

ROMANIAN_DIACRITICS = "ăâîșşțţĂÂÎȘŞȚŢ"

_QUOTES = " \"„“”'"

# A lone diacritic with a space on each side, between two word characters
_SPLIT_DIACRITIC = re.compile(rf"(?<=\w) ([{ROMANIAN_DIACRITICS}]) (?=\w)")

_MOJIBAKE_PATTERN = re.compile(
    "|".join(re.escape(key) for key in sorted(MOJIBAKE_TABLE, key=len, reverse=True))
)

BOILERPLATE_PATTERN = re.compile(
    r"""^\s*["„“”']?\s*
        protocol(?:ul)?\s+terapeutic\s+
        corespunz[ăa]tor\s+
        pozi[țţt]iei\s+
        nr\.?\s*(?P<position>\d+)\s*,?\s*
        cod\s*\(\s*(?P<code>[^)]*?)\s*\)\s*
        :\s*
        (?P<name>.*?)
        \s*["„“”']?\s*$""",
    re.IGNORECASE | re.VERBOSE | re.DOTALL,
)

_TRAILING_ARTIFACTS = [
    re.compile(r"^DCI\b\s*:?\s*", re.IGNORECASE),
    re.compile(r"\s+NU\s*$"),
    re.compile(r"\s+C\d+-[A-Z]\d+(?:\.\d+)?\s*$"),
    re.compile(r"^Pagina:\s*\d+\s*", re.IGNORECASE),
]

# Fragments that show up when the title was cut from the wrong place
_CORRUPTION_PATTERNS = [
    re.compile(r"^[a-z,()]"),
    re.compile(r"poziţiei|pozitiei|poziției|corespunz", re.IGNORECASE),
    re.compile(r"cod\s*\(\s*\)", re.IGNORECASE),
    re.compile(r"^[:\-•,]\s"),
    re.compile(r"^COD PROTOCOL", re.IGNORECASE),
    re.compile(r"sublista/cod", re.IGNORECASE),
    re.compile(r"continuare prescriere", re.IGNORECASE),
    re.compile(r"^[+-] stadiul", re.IGNORECASE),
    re.compile(r"Tratamentului se prescrie", re.IGNORECASE),
]

# Official titles for protocols whose PDF headers are known to come out broken
KNOWN_PROTOCOL_TITLES = {
    "A001E": "ORLISTATUM",
    "A002C": "PALONOSETRONUM",
    "A004C": "ONDASETRONUM, GRANISETRONUM",
    "A005E": "PARICALCITOLUM",
    "A006E": "CALCITRIOLUM",
    "A008E": "IMIGLUCERASUM",
    "A010N": "COMPLEX DE HIDROXID FER (III) SUCROZĂ",
    "A014E": "AGALSIDASUM BETA",
    "A015E": "INSULINUM LISPRO",
    "A016E": "INSULINUM ASPART",
    "A017E": "INSULINUM LISPRO",
    "A018E": "INSULINUM ASPART",
    "A019E": "INSULINUM GLULISINUM",
    "A020E": "PIOGLITAZONUM",
    "A021E": "ACIDUM TIOCTICUM (ALFA-LIPOICUM)",
    "A022E": "SITAGLIPTINUM",
    "A023E": "INSULINUM DETEMIR",
    "A024E": "INSULINUM GLARGINE",
    "A025E": "COMBINAŢII (PIOGLITAZONUM + METFORMIN)",
    "A029E": "INSULINUM LISPRO",
    "A10AE06": "INSULINUM DEGLUDECUM",
    "A10BH03": "SAXAGLIPTINUM",
    "A16AB10": "VELAGLUCERASE ALFA",
    "A16AB12": "ELOSULFASE ALFA",
    "A16AX06": "MIGLUSTATUM",
    "A16AX07": "PLERIXAFOR",
    "A16AX10": "ELIGLUSTAT",
    "L001C": "ACIDUM CLODRONICUM",
    "L001G": "MITOXANTRONUM",
    "L002G": "SCLEROZA MULTIPLĂ - TRATAMENT IMUNOMODULATOR",
    "L004C": "BEVACIZUMABUM",
    "L008C": "IMATINIBUM",
    "N001F": "MEMANTINUM",
    "N002F": "MILNACIPRANUM",
    "N003F": "OLANZAPINUM",
    "N004F": "RISPERIDONUM",
    "N005F": "QUETIAPINUM",
    "N006F": "AMISULPRIDUM",
    "N007F": "ARIPIPRAZOLUM",
    "N008F": "CITALOPRAMUM",
    "N009F": "ESCITALOPRAMUM",
    "N010F": "TRAZODONUM",
    "N011F": "TIANEPTINUM",
    "N012F": "LAMOTRIGINUM",
    "N013F": "VENLAFAXINUM",
    "N014F": "DULOXETINUM",
    "C002I": "ALPROSTADILUM",
    "C003I": "IVABRADINUM",
    "C004I": "IVABRADINUM",
    "C005I": "SARTANI ÎN INSUFICIENŢA CARDIACĂ",
    "C10BA05": "COMBINAŢII (EZETIMIBUM + ATORVASTATINUM)",
    "J003N": "PEGINTERFERONUM ALFA 2B",
    "J004N": "PEGINTERFERONUM ALFA 2A",
    "J005N": "LAMIVUDINUM",
    "J006N": "ADEFOVIR DIPIVOXIL",
    "J007N": "TENOFOVIR DISOPROXIL",
    "J008N": "ENTECAVIRUM",
    "J009N": "TELBIVUDINUM",
    "J010D": "CASPOFUNGINUM",
    "J012B": "VORICONAZOLUM",
    "B009N": "EPOETINUM BETA",
    "B010N": "EPOETINUM ALFA",
    "B011N": "DARBEPOETINUM ALFA",
    "B015D": "EPTACOG ALFA ACTIVATUM",
    "B016I": "DIOSMINUM",
    "B02AB02": "INHIBITOR DE PROTEAZA (ACTIVATED PROTEIN C)",
    "B02BD02": "TUROCTOCOG ALFA PEGOL",
    "B02BX04": "ROMIPLOSTINUM",
    "B03XA03": "EPOETINUM ZETA",
    "B03XA06": "LUSPATERCEPT",
    "B06AC02": "ICATIBANTUM",
    "R001E": "ERDOSTEINUM",
}

_UPPER = "A-ZĂÂÎȘŞȚŢ"

# Header whose drug name wrapped onto the next line: "... cod (A001E): DCI"
_WRAPPED_DCI = re.compile(r"\bDCI\s*:?\s*$", re.IGNORECASE)
_DRUG_LINE = re.compile(rf"^[{_UPPER}][{_UPPER}0-9\s,\-()+./]{{3,148}}$")
_DRUG_WORD = re.compile(r"\b([A-Z]{2,}(?:UM|IN|INE|OLUM|INUM|IDUM))\b")
_NUMBERED_LINE = re.compile(r"^(?:[IVX]+|\d+)\.")
_NOT_A_TITLE_LINE = re.compile(r"protocol|criterii|defini|indica", re.IGNORECASE)
_DESCRIPTIVE_LINE = re.compile(r"^[A-ZĂÂÎȘȚ][a-zăâîșşțţ][A-Za-zăâîșşțţĂÂÎȘŞȚŢ\s\-]{10,100}$")
_SECTION_LEAD = re.compile(r"^(?:Defini|Criterii|Indicat|Protocol|Introducere|Obiective)", re.IGNORECASE)


def repair_mojibake(text: str) -> str:
    """
    Rewrite known corrupted character sequences and collapse whitespace.

    Examples:
        "corespunz ă tor pozi ţ iei" -> "corespunzător poziţiei"
        "CombinaÈ›ii" -> "Combinații"
    """
    if not text:
        return ""

    # Every rewrite shortens the string, so this reaches a fixed point
    previous = None
    while text != previous:
        previous = text
        text = _MOJIBAKE_PATTERN.sub(lambda m: MOJIBAKE_TABLE[m.group(0)], text)
        text = " ".join(text.split())
        text = _SPLIT_DIACRITIC.sub(r"\1", text)

    return text


def _clean_name(name: str) -> str:
    name = name.strip(_QUOTES)
    for pattern in _TRAILING_ARTIFACTS:
        name = pattern.sub("", name)
    return " ".join(name.split()).strip(_QUOTES)


def collapse_boilerplate(title: str) -> Optional[str]:
    """
    Extract the protocol name from a boilerplate title.

    Titles that repeat the template ("Protocol ... cod (A001E): Protocol ...
    cod (A001E): ORLISTATUM") are collapsed down to the innermost name.
    A bare label such as "DCI" counts as an empty name.

    Returns:
        The name (possibly empty) if the template matched, else None
    """
    match = BOILERPLATE_PATTERN.match(title)
    if not match:
        return None

    name = _clean_name(match.group("name"))
    # Each pass strips a whole template, so this terminates
    while True:
        inner = BOILERPLATE_PATTERN.match(name)
        if not inner:
            return name
        name = _clean_name(inner.group("name"))


def _header_matches(match: re.Match, code: Optional[str]) -> bool:
    if not code:
        return True
    return normalize_code(match.group("code")) == normalize_code(code)


def _name_from_text(raw_text: str, min_length: int, code: Optional[str] = None) -> Optional[str]:
    """
    Collapse the first boilerplate header line found in the document body.

    When the header ends in a bare "DCI" label the drug name is taken from
    the next non-empty line, provided it reads like a drug name.
    """
    if not raw_text:
        return None

    lines = [repair_mojibake(line) for line in raw_text.splitlines()[:20]]

    for index, line in enumerate(lines):
        if not line:
            continue
        match = BOILERPLATE_PATTERN.match(line)
        if not match or not _header_matches(match, code):
            continue

        name = collapse_boilerplate(line)
        if len(name) >= min_length:
            return name

        if _WRAPPED_DCI.search(line):
            following = next((candidate for candidate in lines[index + 1:] if candidate), "")
            if _DRUG_LINE.match(following) and not _NUMBERED_LINE.match(following):
                return _clean_name(following)

    return None


def title_from_text(raw_text: str, code: Optional[str] = None) -> Optional[str]:
    """
    Find a usable protocol title in the document body.

    Tries, in order: the boilerplate header for this code, a drug-name word
    (…UM, …INE), an ALL-CAPS line, then a descriptive mixed-case line.
    """
    if not raw_text:
        return None

    from_header = _name_from_text(raw_text, 4, code=code)
    if from_header:
        return from_header

    lines = [repair_mojibake(line) for line in raw_text.splitlines()[:30]]

    for line in lines:
        if not line or _NUMBERED_LINE.match(line) or _NOT_A_TITLE_LINE.search(line):
            continue
        word = _DRUG_WORD.search(line)
        if word and len(word.group(1)) > 5:
            return word.group(1)
        if 5 <= len(line) <= 100 and _DRUG_LINE.match(line):
            return line

    for line in lines:
        if _DESCRIPTIVE_LINE.match(line) and not _SECTION_LEAD.match(line):
            return line

    return None


def is_title_corrupted(title: str) -> bool:
    """Check whether a title looks like a fragment rather than a protocol name."""
    if not title or len(title) < 3:
        return True
    return any(pattern.search(title) for pattern in _CORRUPTION_PATTERNS)


def needs_correction(title: str) -> bool:
    return is_title_corrupted(title) or not 5 <= len(title) <= 150


def correct_title(title: str, code: Optional[str] = None, raw_text: str = "") -> Optional[str]:
    """
    Replace a corrupted or implausibly sized title.

    The known-titles table wins for codes it lists; otherwise the title is
    looked up in the document body.

    Returns:
        The replacement title, or None when the title is fine or nothing
        better was found
    """
    if not needs_correction(title):
        return None

    if code:
        known = KNOWN_PROTOCOL_TITLES.get(normalize_code(code))
        if known:
            return known

    candidate = title_from_text(raw_text, code=code)
    if candidate and not needs_correction(candidate):
        return candidate

    return None


def normalize(
    raw_title: str,
    raw_text: str = "",
    min_length: Optional[int] = None,
    code: Optional[str] = None,
) -> str:
    """
    Produce the canonical title for a protocol.

    Steps:
    1. Repair mojibake in the title
    2. If the title is the CNAS boilerplate, collapse it to the protocol name
    3. If the collapsed name is too short, collapse the header line of the
       document body instead; failing that keep the repaired title
    4. If the result still looks corrupted, correct it from the known titles
       or the document body
    5. Expand abbreviated drug names

    Args:
        raw_title: Title from the listing or the PDF header
        raw_text: Full extracted text of the protocol
        min_length: Minimum accepted name length (default: config.MIN_TITLE_LENGTH)
        code: Protocol code, used to look up known titles and header lines

    Returns:
        Clean title; normalize(normalize(t, r), r) == normalize(t, r)
    """
    if min_length is None:
        min_length = config.MIN_TITLE_LENGTH

    repaired = repair_mojibake(raw_title or "")

    name = collapse_boilerplate(repaired)
    if name is None:
        title = repaired
    elif len(name) >= min_length:
        title = name
    else:
        title = _name_from_text(raw_text, min_length) or repaired

    corrected = correct_title(title, code, raw_text)
    if corrected:
        title = corrected

    return expand_drug_names(title)


class TitleNormalizer:
    """Stateless wrapper around normalize() with a fixed minimum length."""

    def __init__(self, min_length: Optional[int] = None):
        self.min_length = config.MIN_TITLE_LENGTH if min_length is None else min_length

    def normalize(self, raw_title: str, raw_text: str = "", code: Optional[str] = None) -> str:
        title = normalize(raw_title, raw_text, min_length=self.min_length, code=code)
        if is_title_corrupted(title):
            logger.warning(f"Title still looks corrupted after normalization: {title[:80]!r}")
        return title
