"""
Pytest configuration and fixtures for Protocoale tests.
"""

import pytest
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pymupdf

from protocoale.errors import FetchFailure
from protocoale.models import DocumentRef, FetchResult


# =============================================================================
# Sample data fixtures
# =============================================================================


@pytest.fixture
def sample_protocol_text():
    """Sample protocol text as extracted from a CNAS PDF."""
    return """Protocol terapeutic corespunzător poziţiei nr. 30, cod (N030C): DCI RANIBIZUMABUM
Ranibizumabum este indicat la adulţi.
I. Indicaţia terapeutică
Degenerescenţa maculară legată de vârstă, forma neovasculară.
II. Criterii de includere în tratament
Pacienţi cu vârsta peste 50 de ani.
Acuitate vizuală între 0,1 şi 0,5.
III. Tratament
Doza recomandată este de 0,5 mg administrată lunar.
IV. Contraindicaţii
Hipersensibilitate la substanţa activă.
V. Monitorizarea tratamentului
Control oftalmologic lunar.
VI. Prescriptori
Medici în specialitatea oftalmologie."""


@pytest.fixture
def sample_ascii_protocol_text():
    """Protocol text without diacritics, for round trips through generated PDFs."""
    return """Protocol terapeutic corespunzator pozitiei nr. 30, cod (N030C): DCI RANIBIZUMABUM
I. Indicatia terapeutica
Degenerescenta maculara legata de varsta, forma neovasculara.
II. Criterii de includere in tratament
Pacienti cu varsta peste 50 de ani.
III. Tratament
Doza recomandata este de 0,5 mg administrata lunar.
IV. Contraindicatii
Hipersensibilitate la substanta activa.
V. Monitorizarea tratamentului
Control oftalmologic lunar, evaluare retina.
VI. Prescriptori
Medici in specialitatea oftalmologie."""


@pytest.fixture
def make_pdf():
    """Factory building PDF bytes with PyMuPDF: one page per text, optional images."""

    def _make_pdf(pages, image_pages=()):
        doc = pymupdf.open()
        for index, text in enumerate(pages):
            page = doc.new_page()
            page.insert_text((72, 72), text, fontsize=10)
            if index in image_pages:
                page.insert_image(pymupdf.Rect(72, 600, 136, 664), stream=make_png(index))
        data = doc.tobytes()
        doc.close()
        return data

    return _make_pdf


def make_png(seed: int = 0) -> bytes:
    """Small solid-color PNG; different seeds give different bytes."""
    pix = pymupdf.Pixmap(pymupdf.csRGB, pymupdf.IRect(0, 0, 8, 8), False)
    pix.set_rect(pix.irect, ((40 * seed) % 256, 80, 160))
    return pix.tobytes("png")


@pytest.fixture
def memory_store():
    """Empty in-process store."""
    from protocoale.db.memory import MemoryStore
    return MemoryStore()


class FakeFetcher:
    """In-memory fetcher: code -> bytes; codes in `failing` fail to fetch."""

    def __init__(self, documents, failing=(), titles=None):
        self.documents = dict(documents)
        self.failing = set(failing)
        self.titles = titles or {}
        self.fetched = []

    def list(self):
        return [
            DocumentRef(
                code=code,
                location=f"https://cnas.test/{code}.pdf",
                title=self.titles.get(code),
                last_modified=datetime(2024, 1, 15, tzinfo=timezone.utc),
            )
            for code in self.documents
        ]

    def fetch(self, ref):
        self.fetched.append(ref.code)
        if ref.code in self.failing:
            return FetchResult(
                ref=ref,
                failure=FetchFailure(ref.code, ref.location, "timeout (ReadTimeout)", attempts=3),
            )
        return FetchResult(ref=ref, content=self.documents[ref.code])

    def close(self):
        pass


@pytest.fixture
def fake_fetcher():
    """The FakeFetcher class, for building fetchers inside tests."""
    return FakeFetcher


@pytest.fixture
def fixed_clock():
    """Clock returning a fixed, increasing sequence of timestamps."""
    state = {"tick": 0}

    def _clock():
        state["tick"] += 1
        return datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc) + timedelta(seconds=state["tick"])

    return _clock


# =============================================================================
# Mock fixtures
# =============================================================================


@pytest.fixture
def mock_pg_pool():
    """Mock PostgreSQL connection pool."""
    with patch("protocoale.db.postgres.get_pg_pool") as mock:
        mock_pool = MagicMock()
        mock_conn = MagicMock()
        mock_cursor = MagicMock()

        mock_pool.connection.return_value.__enter__ = MagicMock(return_value=mock_conn)
        mock_pool.connection.return_value.__exit__ = MagicMock(return_value=False)
        mock_conn.cursor.return_value.__enter__ = MagicMock(return_value=mock_cursor)
        mock_conn.cursor.return_value.__exit__ = MagicMock(return_value=False)

        mock.return_value = mock_pool
        yield mock_cursor


# =============================================================================
# Pytest markers
# =============================================================================


def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers", "integration: marks tests as integration tests (require DB)"
    )
    config.addinivalue_line(
        "markers", "slow: marks tests as slow (deselect with -m 'not slow')"
    )
