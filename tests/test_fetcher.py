"""
Tests for the CNAS and directory fetchers.
"""

import os
from datetime import datetime, timezone

import httpx
import pytest

from protocoale.errors import ListingFailure
from protocoale.ingest.fetcher import CNASFetcher, DirectoryFetcher, fallback_code, is_retryable
from protocoale.models import DocumentRef


LISTING_URL = "https://cnas.test/protocoale-terapeutice/"

LISTING_HTML = """
<html><body>
<table>
  <tr>
    <td>A001E</td>
    <td>DCI ORLISTATUM</td>
    <td>12.03.2024</td>
    <td><a href="/docs/A001E.pdf">Descarcă</a></td>
  </tr>
  <tr>
    <td>Protocol terapeutic cod (N030C): Ranibizumabum</td>
    <td><a href="https://cnas.test/docs/protocol%20oftalmologie.pdf">PDF</a></td>
  </tr>
  <tr>
    <td><a href="/docs/A001E-duplicat.pdf">A001E - ORLISTATUM (vechi)</a></td>
  </tr>
</table>
<p><a href="/docs/L01XC12_brentuximab.pdf">L01XC12 brentuximab</a></p>
<p><a href="/docs/ghid-prescriere.pdf">Ghid de prescriere</a></p>
<p><a href="/docs/A001E.pdf">A001E din nou</a></p>
<p><a href="/despre.html">Despre CNAS</a></p>
</body></html>
"""


def make_fetcher(handler, max_attempts=3):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return CNASFetcher(listing_url=LISTING_URL, client=client, max_attempts=max_attempts, backoff_base=0)


def ref(code="N030C"):
    return DocumentRef(code=code, location=f"https://cnas.test/docs/{code}.pdf")


class TestParseListing:
    """Tests for listing HTML parsing."""

    @pytest.fixture
    def refs(self):
        fetcher = make_fetcher(lambda request: httpx.Response(404))
        return fetcher.parse_listing(LISTING_HTML, base_url=LISTING_URL)

    def test_only_pdf_links(self, refs):
        assert all(r.location.endswith(".pdf") for r in refs)

    def test_codes_in_listing_order(self, refs):
        codes = [r.code for r in refs]
        assert codes[:3] == ["A001E", "N030C", "L01XC12"]
        assert codes[3].startswith("AUTO")
        assert len(codes) == 4

    def test_relative_links_resolved(self, refs):
        assert refs[0].location == "https://cnas.test/docs/A001E.pdf"

    def test_row_text_is_title(self, refs):
        assert refs[0].title.startswith("A001E DCI ORLISTATUM")

    def test_row_date_parsed(self, refs):
        assert refs[0].last_modified == datetime(2024, 3, 12, tzinfo=timezone.utc)
        assert refs[1].last_modified is None

    def test_duplicate_code_keeps_first(self, refs):
        """A second link for the same code does not replace the first."""
        a001 = [r for r in refs if r.code == "A001E"]
        assert len(a001) == 1
        assert a001[0].location.endswith("/A001E.pdf")

    def test_empty_page(self, caplog):
        fetcher = make_fetcher(lambda request: httpx.Response(404))
        assert fetcher.parse_listing("<html></html>", base_url=LISTING_URL) == []
        assert "No PDF links" in caplog.text


class TestList:
    """Tests for listing over HTTP."""

    def test_success(self):
        fetcher = make_fetcher(lambda request: httpx.Response(200, text=LISTING_HTML))
        refs = fetcher.list()
        assert [r.code for r in refs][:3] == ["A001E", "N030C", "L01XC12"]

    def test_server_error_retried_then_fails(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(500)

        fetcher = make_fetcher(handler)
        with pytest.raises(ListingFailure) as exc_info:
            fetcher.list()

        assert len(calls) == 3
        assert "HTTP 500" in str(exc_info.value)

    def test_client_error_not_retried(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(403)

        with pytest.raises(ListingFailure):
            make_fetcher(handler).list()
        assert len(calls) == 1


class TestFetch:
    """Tests for document downloads."""

    def test_success(self):
        fetcher = make_fetcher(lambda request: httpx.Response(200, content=b"%PDF-1.7 ..."))
        result = fetcher.fetch(ref())

        assert result.ok
        assert result.content == b"%PDF-1.7 ..."
        assert result.failure is None

    def test_transient_errors_retried(self):
        """Two 503s followed by a 200 succeed."""
        responses = iter([503, 503, 200])
        calls = []

        def handler(request):
            calls.append(request.url)
            status = next(responses)
            return httpx.Response(status, content=b"%PDF" if status == 200 else b"")

        result = make_fetcher(handler).fetch(ref())

        assert result.ok
        assert len(calls) == 3

    def test_not_found_fails_immediately(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(404)

        result = make_fetcher(handler).fetch(ref())

        assert not result.ok
        assert len(calls) == 1
        assert result.failure.attempts == 1
        assert result.failure.reason == "HTTP 404"
        assert result.failure.code == "N030C"

    def test_timeouts_exhaust_attempts(self):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        result = make_fetcher(handler).fetch(ref())

        assert not result.ok
        assert result.failure.attempts == 3
        assert result.failure.reason.startswith("timeout")

    def test_attempts_configurable(self):
        calls = []

        def handler(request):
            calls.append(request.url)
            return httpx.Response(502)

        result = make_fetcher(handler, max_attempts=5).fetch(ref())
        assert len(calls) == 5
        assert result.failure.attempts == 5


class TestIsRetryable:
    def test_classification(self):
        request = httpx.Request("GET", "https://cnas.test/")

        def status_error(code):
            response = httpx.Response(code, request=request)
            return httpx.HTTPStatusError("error", request=request, response=response)

        assert is_retryable(status_error(500))
        assert is_retryable(status_error(503))
        assert not is_retryable(status_error(404))
        assert is_retryable(httpx.ConnectError("refused", request=request))
        assert is_retryable(httpx.ReadTimeout("slow", request=request))
        assert not is_retryable(ValueError("bad"))

    def test_protocol_errors_are_final(self):
        """Errors a retry cannot fix are not retried."""
        request = httpx.Request("GET", "mailto:cnas@cnas.test")

        assert not is_retryable(httpx.UnsupportedProtocol("mailto", request=request))
        assert not is_retryable(httpx.LocalProtocolError("bad header", request=request))
        assert is_retryable(httpx.RemoteProtocolError("peer closed connection", request=request))
        assert is_retryable(httpx.PoolTimeout("pool exhausted", request=request))


class TestFallbackCode:
    def test_from_title(self):
        assert fallback_code("Ghid de prescriere", "a.pdf") == fallback_code("Ghid de prescriere", "b.pdf")

    def test_unusable_title_uses_identity(self):
        first = fallback_code("-", "-.pdf")
        second = fallback_code("-", "--.pdf")

        assert first.startswith("AUTO")
        assert len(first) == 12
        assert first != second
        assert fallback_code("-", "-.pdf") == first


class TestDirectoryFetcher:
    """Tests for the local directory fetcher."""

    def test_codes_from_file_names(self, tmp_path):
        (tmp_path / "N030C.pdf").write_bytes(b"%PDF n030c")
        (tmp_path / "protocol-A001E.pdf").write_bytes(b"%PDF a001e")
        (tmp_path / "ghid.pdf").write_bytes(b"%PDF ghid")
        (tmp_path / "note.txt").write_text("not a pdf")

        refs = DirectoryFetcher(tmp_path).list()
        codes = {r.code for r in refs}

        assert "N030C" in codes
        assert "A001E" in codes
        assert len(refs) == 3
        assert any(c.startswith("AUTO") for c in codes)

    def test_last_modified_from_mtime(self, tmp_path):
        path = tmp_path / "N030C.pdf"
        path.write_bytes(b"%PDF")
        os.utime(path, (1700000000, 1700000000))

        [listed] = DirectoryFetcher(tmp_path).list()
        assert listed.last_modified == datetime.fromtimestamp(1700000000, tz=timezone.utc)

    def test_duplicate_code_skipped(self, tmp_path):
        (tmp_path / "A001E.pdf").write_bytes(b"%PDF 1")
        (tmp_path / "protocol-A001E.pdf").write_bytes(b"%PDF 2")

        refs = DirectoryFetcher(tmp_path).list()
        assert len(refs) == 1
        assert refs[0].location.endswith("/A001E.pdf")

    def test_punctuation_file_names(self, tmp_path):
        """File names with nothing to hash still list, each with its own code."""
        (tmp_path / "-.pdf").write_bytes(b"%PDF 1")
        (tmp_path / "+.pdf").write_bytes(b"%PDF 2")

        refs = DirectoryFetcher(tmp_path).list()
        codes = [r.code for r in refs]

        assert len(refs) == 2
        assert all(c.startswith("AUTO") for c in codes)
        assert len(set(codes)) == 2

    def test_missing_directory(self, tmp_path):
        with pytest.raises(ListingFailure):
            DirectoryFetcher(tmp_path / "missing").list()

    def test_fetch(self, tmp_path):
        (tmp_path / "N030C.pdf").write_bytes(b"%PDF n030c")
        fetcher = DirectoryFetcher(tmp_path)

        [listed] = fetcher.list()
        assert fetcher.fetch(listed).content == b"%PDF n030c"

    def test_fetch_missing_file(self, tmp_path):
        result = DirectoryFetcher(tmp_path).fetch(DocumentRef(code="N030C", location=str(tmp_path / "gone.pdf")))
        assert not result.ok
        assert "FileNotFoundError" in result.failure.reason
