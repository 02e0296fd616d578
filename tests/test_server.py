"""Tests for the MCP server, health tool and command line."""

import json
import re
from pathlib import Path

import pytest

from stop_search import __version__
from stop_search.data.config import get_search_settings
from stop_search.search.engine import reset_for_tests
from stop_search.server import health, main


@pytest.fixture
def db_path(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    """Point STOP_SEARCH_DB_PATH at a temporary (not yet created) database."""
    path = tmp_path / "stops.db"
    monkeypatch.setenv("STOP_SEARCH_DB_PATH", str(path))
    get_search_settings.cache_clear()
    reset_for_tests()
    yield path
    get_search_settings.cache_clear()
    reset_for_tests()


@pytest.fixture
def ingested_db(db_path: Path, sample_gtfs_dir: Path) -> Path:
    main(["ingest", str(sample_gtfs_dir), "--db", str(db_path)])
    return db_path


def test_health_returns_version(db_path: Path):
    """Health check should return the current version."""
    response = health()
    assert response.version == __version__


def test_health_returns_timestamp(db_path: Path):
    """Health check should return a valid ISO timestamp."""
    response = health()
    assert response.timestamp is not None
    # Should be parseable as ISO format
    assert "T" in response.timestamp


def test_health_degraded_without_database(db_path: Path):
    """Health check should report degraded until the feed is ingested."""
    response = health()
    assert response.status == "degraded"
    assert response.database == str(db_path)


def test_health_ok_with_database(ingested_db: Path):
    """Health check should return status ok once the database exists."""
    assert health().status == "ok"


class TestCommandLine:
    """Tests for the stop-search command."""

    def test_ingest_prints_counts(
        self, db_path: Path, sample_gtfs_dir: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        main(["ingest", str(sample_gtfs_dir), "--db", str(db_path)])

        out = capsys.readouterr().out
        assert "Ingestion complete" in out
        assert re.search(r"^\s+stop_search_index\s+22$", out, re.MULTILINE)
        assert db_path.exists()

    def test_search_prints_json(self, ingested_db: Path, capsys: pytest.CaptureFixture[str]) -> None:
        capsys.readouterr()
        main(["search", "Zürich", "-n", "3", "--db", str(ingested_db)])

        response = json.loads(capsys.readouterr().out)
        assert response["stops"][0]["station_id"] == "Parent8503000"
        assert len(response["stops"]) <= 3
        assert "debug" not in response

    def test_search_debug(self, ingested_db: Path, capsys: pytest.CaptureFixture[str]) -> None:
        capsys.readouterr()
        main(["search", "Bern", "--debug", "--db", str(ingested_db)])

        response = json.loads(capsys.readouterr().out)
        assert response["debug"]["query_norm"] == "bern"
        assert response["debug"]["stages"]

    def test_search_too_short(self, ingested_db: Path) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["search", "a", "--db", str(ingested_db)])
        assert excinfo.value.code == 2

    def test_sync_aliases(self, ingested_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]) -> None:
        seed_path = tmp_path / "aliases.csv"
        seed_path.write_text(
            "canonical_key,target_name,alias_text,weight\nzurich_hb,Zürich HB,ZH HB,2\n", encoding="utf-8"
        )
        report_path = tmp_path / "report.json"
        capsys.readouterr()

        main(["sync-aliases", str(seed_path), "--report", str(report_path), "--db", str(ingested_db)])

        printed = json.loads(capsys.readouterr().out)
        assert printed["status"] == "success"
        assert printed["resolved"][0]["stop_id"] == "Parent8503000"
        assert json.loads(report_path.read_text(encoding="utf-8")) == printed

    def test_sync_aliases_failure(
        self, ingested_db: Path, tmp_path: Path, capsys: pytest.CaptureFixture[str]
    ) -> None:
        with pytest.raises(SystemExit) as excinfo:
            main(["sync-aliases", str(tmp_path / "missing.csv"), "--db", str(ingested_db)])

        assert excinfo.value.code == 1
        failure = json.loads(capsys.readouterr().err)
        assert failure["status"] == "failed"
        assert failure["degraded"] is True
