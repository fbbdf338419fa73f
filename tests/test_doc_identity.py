"""
Tests for protocol codes and content fingerprints.
"""

import unicodedata

import pytest

from protocoale.ingest.doc_identity import (
    find_protocol_code,
    generate_protocol_code,
    get_fingerprint,
    is_protocol_code,
    normalize_code,
    normalize_for_hash,
    specialty_from_code,
)


class TestProtocolCodes:
    """Tests for code recognition."""

    @pytest.mark.parametrize("text,code", [
        ("A001E - ORLISTATUM", "A001E"),
        ("cod (L01XC12): DCI BRENTUXIMAB VEDOTIN", "L01XC12"),
        ("Protocol terapeutic ... cod (N030C): Ranibizumabum", "N030C"),
        ("L040M", "L040M"),
        ("protocol-b009i.pdf", "B009I"),
    ])
    def test_find(self, text, code):
        assert find_protocol_code(text) == code

    def test_find_none(self):
        """Text without a code returns None."""
        assert find_protocol_code("Ghid de prescriere") is None
        assert find_protocol_code("") is None

    def test_is_protocol_code(self):
        """Only whole codes are accepted."""
        assert is_protocol_code("N030C")
        assert is_protocol_code(" n030c ")
        assert not is_protocol_code("N030C extra")
        assert not is_protocol_code("ghid")

    def test_normalize_code(self):
        assert normalize_code(" n 030c ") == "N030C"
        assert normalize_code("") == ""


class TestGeneratedCodes:
    """Tests for fallback codes."""

    def test_deterministic(self):
        """Same title gives the same code."""
        assert generate_protocol_code("Ghid de prescriere") == generate_protocol_code("Ghid de prescriere")

    def test_format(self):
        code = generate_protocol_code("Ghid de prescriere")
        assert code.startswith("AUTO")
        assert len(code) == 12
        assert code[4:] == code[4:].upper()

    def test_insensitive_to_case_and_diacritics(self):
        """Trivial spelling differences map to the same code."""
        assert generate_protocol_code("Ghid Terapeutic") == generate_protocol_code("ghid terapeutic")
        assert generate_protocol_code("Indicaţii") == generate_protocol_code("Indicatii")

    def test_empty_title_rejected(self):
        with pytest.raises(ValueError):
            generate_protocol_code("")
        with pytest.raises(ValueError):
            generate_protocol_code("!!!")


class TestFingerprint:
    """Tests for content fingerprints."""

    def test_stable(self):
        assert get_fingerprint("Ranibizumabum", "text") == get_fingerprint("Ranibizumabum", "text")

    def test_length(self):
        assert len(get_fingerprint("a", "b")) == 64

    def test_text_change_detected(self):
        assert get_fingerprint("Ranibizumabum", "v1") != get_fingerprint("Ranibizumabum", "v2")

    def test_title_change_detected(self):
        assert get_fingerprint("Ranibizumabum", "text") != get_fingerprint("RANIBIZUMABUM", "text")

    def test_field_boundary(self):
        """Moving characters between title and text changes the fingerprint."""
        assert get_fingerprint("ab", "c") != get_fingerprint("a", "bc")

    def test_unicode_equivalents_match(self):
        """Composed and decomposed spellings of a diacritic hash the same."""
        composed = "Indicaţii"
        decomposed = unicodedata.normalize("NFD", composed)
        assert composed != decomposed
        assert get_fingerprint(composed, decomposed) == get_fingerprint(composed, composed)


class TestSpecialtyFromCode:
    """Tests for specialty derivation."""

    @pytest.mark.parametrize("code,specialty", [
        ("A10AE06", "endocrinologie"),
        ("N030C", "neurologie"),
        ("S01LA04", "oftalmologie"),
        ("L04AB02", "reumatologie"),
        ("L01XC12", "oncologie"),
    ])
    def test_known(self, code, specialty):
        assert specialty_from_code(code) == specialty

    def test_unknown(self):
        assert specialty_from_code("AUTO1A2B3C4D") is None
        assert specialty_from_code("") is None
        assert specialty_from_code("Z999") is None


class TestNormalizeForHash:
    def test_diacritics_and_punctuation(self):
        assert normalize_for_hash("COMBINAŢII (PIOGLITAZONUM + METFORMIN)") == "combinatii pioglitazonum metformin"
