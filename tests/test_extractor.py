"""
Tests for PDF extraction and the text metadata helpers.
"""

import pytest

from protocoale.ingest.extractor import (
    PDFExtractor,
    calculate_quality,
    detect_categories,
    detect_specialty,
    find_dci,
    find_title_hint,
)
from protocoale.storage import LocalBlobStore


class FullDiskBlobStore(LocalBlobStore):
    def put(self, data, extension):
        raise OSError(28, "No space left on device")


class TestPDFExtractor:
    """Tests for PDFExtractor.extract."""

    def test_pages_in_order(self, make_pdf):
        data = make_pdf(["Prima pagina", "A doua pagina", "A treia pagina"])
        result = PDFExtractor().extract(data)

        assert not result.partial
        assert result.errors == []
        assert result.page_count == 3
        first = result.raw_text.index("Prima pagina")
        second = result.raw_text.index("A doua pagina")
        third = result.raw_text.index("A treia pagina")
        assert first < second < third

    def test_images_in_appearance_order(self, make_pdf, tmp_path):
        """Images get dense positions and the page they appear on."""
        images = LocalBlobStore(tmp_path / "images")
        data = make_pdf(["Pagina cu imagine", "Alta imagine"], image_pages=(0, 1))

        result = PDFExtractor(image_store=images).extract(data)

        assert [i.position for i in result.images] == [0, 1]
        assert [i.page_number for i in result.images] == [1, 2]
        assert all(i.blob_ref.startswith("/data/images/") for i in result.images)
        assert all(images.exists(i.blob_ref) for i in result.images)
        assert result.images[0].blob_ref != result.images[1].blob_ref
        assert result.images[0].width == 8

    def test_image_refs_without_store(self, make_pdf):
        result = PDFExtractor().extract(make_pdf(["Text"], image_pages=(0,)))

        assert len(result.images) == 1
        assert result.images[0].blob_ref.startswith("sha256:")

    def test_same_bytes_same_refs(self, make_pdf, tmp_path):
        """Re-extracting identical bytes yields identical image references."""
        images = LocalBlobStore(tmp_path / "images")
        data = make_pdf(["Text"], image_pages=(0,))

        first = PDFExtractor(image_store=images).extract(data)
        second = PDFExtractor(image_store=images).extract(data)

        assert [i.blob_ref for i in first.images] == [i.blob_ref for i in second.images]

    def test_metadata(self, make_pdf, sample_ascii_protocol_text):
        result = PDFExtractor().extract(make_pdf([sample_ascii_protocol_text]))

        assert result.title_hint.startswith("Protocol terapeutic")
        assert result.dci == "RANIBIZUMABUM"
        assert result.specialty_code_hint == "oftalmologie"
        assert "Oftalmologie" in result.categories
        assert result.quality > 50

    @pytest.mark.parametrize("data", [
        b"",
        b"this is not a pdf",
        b"%PDF-1.7\n1 0 obj\n<< /Type /Catalog",
    ])
    def test_malformed_input_partial(self, data):
        """Unreadable input returns a partial result instead of raising."""
        result = PDFExtractor().extract(data)

        assert result.partial
        assert result.errors
        assert result.raw_text == ""
        assert result.images == []

    def test_truncated_pdf_does_not_raise(self, make_pdf):
        data = make_pdf(["Prima pagina", "A doua pagina"])
        result = PDFExtractor().extract(data[: len(data) // 2])
        assert isinstance(result.raw_text, str)

    def test_image_store_error_partial(self, make_pdf, tmp_path):
        """A blob store write error drops the image and flags the result partial."""
        extractor = PDFExtractor(image_store=FullDiskBlobStore(tmp_path / "images"))

        result = extractor.extract(make_pdf(["Pagina cu imagine"], image_pages=(0,)))

        assert result.partial
        assert result.images == []
        assert any("cannot store image" in e for e in result.errors)
        assert "Pagina cu imagine" in result.raw_text

    def test_blank_page_partial(self, make_pdf):
        """A PDF without a text layer is flagged partial."""
        result = PDFExtractor().extract(make_pdf([""]))

        assert result.page_count == 1
        assert result.partial
        assert "no text layer recovered" in result.errors


class TestCleanText:
    def test_nul_and_blank_lines(self):
        extractor = PDFExtractor()
        assert extractor._clean_text("a\x00b  \r\n\n\n\nc") == "ab\n\nc"

    def test_nul_kept_when_disabled(self):
        assert "\x00" in PDFExtractor(strip_nul=False)._clean_text("a\x00b")


class TestQuality:
    """Tests for calculate_quality."""

    def test_empty(self):
        assert calculate_quality("", 1) == 0.0
        assert calculate_quality("text", 0) == 0.0

    def test_full_protocol_scores_higher(self, sample_protocol_text):
        full = calculate_quality(sample_protocol_text, 1)
        bare = calculate_quality("Lorem ipsum dolor sit amet.", 1)
        assert full > bare
        assert 0 <= bare <= full <= 100

    def test_bounded(self):
        text = "Indicatii criterii tratament contraindicatii monitorizare prescriptori " * 200
        assert calculate_quality(text, 1) <= 100


class TestTextHelpers:
    """Tests for metadata detection from text."""

    def test_categories(self, sample_protocol_text):
        assert detect_categories(sample_protocol_text) == ["Oftalmologie"]

    def test_categories_multiple(self):
        text = "Tratamentul diabetului zaharat la pacienti cu nefropatie diabetica si dializa."
        assert detect_categories(text) == ["Endocrinologie", "Nefrologie"]

    def test_categories_empty(self):
        assert detect_categories("") == []

    def test_specialty(self, sample_protocol_text):
        assert detect_specialty(sample_protocol_text) == "oftalmologie"
        assert detect_specialty("Text administrativ.") is None

    def test_title_hint(self, sample_protocol_text):
        assert find_title_hint(sample_protocol_text).startswith("Protocol terapeutic corespunzător")
        assert find_title_hint("Ghid\nAnexa 1") is None

    def test_title_hint_repairs_split_diacritics(self):
        text = "Protocol terapeutic corespunz ă tor pozi ţ iei nr. 30"
        assert find_title_hint(text) == "Protocol terapeutic corespunzător poziţiei nr. 30"

    def test_dci_from_header(self, sample_protocol_text):
        hint = find_title_hint(sample_protocol_text)
        assert find_dci(sample_protocol_text, hint) == "RANIBIZUMABUM"

    def test_dci_line_preferred(self):
        text = "Protocol terapeutic cod (L040M): DCI ALTCEVA\nDCI: SECUKINUMABUM\nI. Indicatii"
        assert find_dci(text, find_title_hint(text)) == "SECUKINUMABUM"

    def test_dci_wrapped_after_header(self):
        text = "Protocol terapeutic cod (A001E): DCI\nORLISTATUM\nI. Indicatii"
        assert find_dci(text, find_title_hint(text)) == "ORLISTATUM"

    def test_dci_wrapped_section_heading_ignored(self):
        text = "Protocol terapeutic cod (A001E): DCI\nI. INDICATII\nObezitate"
        assert find_dci(text, find_title_hint(text)) is None

    def test_dci_missing(self):
        assert find_dci("Ghid de prescriere", None) is None
