"""
Tests for the command line interface.
"""

import json
from unittest.mock import patch

import pytest
from click.testing import CliRunner

from cli.main import cli
from protocoale.ingest.sections import split_sections
from protocoale.ingest.versioning import VersionManager
from protocoale.models import ProtocolContent


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def populated_store(memory_store, sample_protocol_text):
    content = ProtocolContent(
        code="N030C",
        title="RANIBIZUMABUM",
        raw_text=sample_protocol_text,
        sections=split_sections(sample_protocol_text),
        dci="RANIBIZUMABUM",
        specialty_code="oftalmologie",
        categories=["Oftalmologie"],
    )
    VersionManager(memory_store).apply("N030C", content)
    return memory_store


@pytest.fixture
def patched_store(populated_store):
    with patch("protocoale.db.postgres.PostgresStore", return_value=populated_store):
        yield populated_store


class TestNormalizeTitle:
    def test_collapses_boilerplate(self, runner):
        title = "Protocol terapeutic corespunz ă tor pozi ţ iei nr. 30, cod (N030C): DCI RANIBIZUMABUM"
        result = runner.invoke(cli, ["normalize-title", title])

        assert result.exit_code == 0
        assert result.output.strip() == "RANIBIZUMABUM"

    def test_text_file_fallback(self, runner, tmp_path, sample_protocol_text):
        text_file = tmp_path / "N030C.txt"
        text_file.write_text(sample_protocol_text, encoding="utf-8")
        title = "Protocol terapeutic corespunzător poziţiei nr. 30, cod (N030C):"

        result = runner.invoke(cli, ["normalize-title", title, "--text-file", str(text_file)])

        assert result.exit_code == 0
        assert "RANIBIZUMABUM" in result.output

    def test_known_title_with_code(self, runner):
        result = runner.invoke(cli, ["normalize-title", "poziţiei nr. 1", "--code", "A001E"])

        assert result.exit_code == 0
        assert result.output.strip() == "ORLISTATUM"


class TestIngestDir:
    def test_dry_run(self, runner, tmp_path, make_pdf, sample_ascii_protocol_text):
        (tmp_path / "N030C.pdf").write_bytes(make_pdf([sample_ascii_protocol_text]))

        result = runner.invoke(cli, ["ingest-dir", str(tmp_path), "--dry-run", "--workers", "1"])

        assert result.exit_code == 0, result.output
        assert "N030C created" in result.output
        assert "COMPLETED" in result.output

    def test_missing_directory(self, runner, tmp_path):
        result = runner.invoke(cli, ["ingest-dir", str(tmp_path / "missing"), "--dry-run"])
        assert result.exit_code != 0


class TestReadCommands:
    """Tests for show, stats and health over an in-memory store."""

    def test_show(self, runner, patched_store):
        result = runner.invoke(cli, ["show", "n030c"])

        assert result.exit_code == 0, result.output
        assert "N030C - RANIBIZUMABUM" in result.output
        assert "Sections (7)" in result.output
        assert "v1" in result.output

    def test_show_json(self, runner, patched_store):
        result = runner.invoke(cli, ["show", "N030C", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["code"] == "N030C"
        assert data["categories"] == ["Oftalmologie"]
        assert [s["order"] for s in data["sections"]] == list(range(7))
        assert data["versions"][0]["version_number"] == 1

    def test_show_not_found(self, runner, patched_store):
        result = runner.invoke(cli, ["show", "X999"])

        assert result.exit_code == 1
        assert "not found" in result.output

    def test_stats_json(self, runner, patched_store):
        result = runner.invoke(cli, ["stats", "--json"])

        assert result.exit_code == 0, result.output
        data = json.loads(result.output)
        assert data["total_protocols"] == 1
        assert data["category_counts"] == {"Oftalmologie": 1}
        assert data["last_update"] is not None

    def test_health(self, runner, patched_store):
        result = runner.invoke(cli, ["health"])

        assert result.exit_code == 0
        assert "healthy" in result.output
