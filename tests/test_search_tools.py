"""Tests for the stop search service and its MCP tools."""

from pathlib import Path

import pytest

from stop_search.data.config import SearchSettings
from stop_search.data.gtfs_loader import GTFSLoader
from stop_search.search.engine import QueryTooShortError, StopSearchEngine
from stop_search.services.stop_service import normalize_query, search_stops, validate_query
from stop_search.tools import search_tools


@pytest.fixture
async def db_path(sample_gtfs_dir: Path, tmp_path: Path) -> Path:
    path = tmp_path / "stops.db"
    await GTFSLoader(path).ingest(sample_gtfs_dir)
    return path


@pytest.fixture
def engine(settings: SearchSettings) -> StopSearchEngine:
    return StopSearchEngine(settings)


class TestValidateQuery:
    """Tests for query validation."""

    def test_trims(self) -> None:
        assert validate_query("  Bern ") == "Bern"

    @pytest.mark.parametrize("query", [None, "", "a", " - ", "é"])
    def test_too_short(self, query) -> None:
        with pytest.raises(QueryTooShortError):
            validate_query(query)

    def test_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError, match="too short"):
            validate_query("x")


class TestNormalizeQuery:
    """Tests for normalize_query."""

    def test_forms(self) -> None:
        result = normalize_query("Genève, Gare Cornavin")
        assert result.normalized == "geneve gare cornavin"
        assert result.core == "geneve cornavin"

    def test_hub_and_saint(self) -> None:
        assert normalize_query("St. Gallen Hauptbahnhof").normalized == "saint gallen hb"

    def test_none(self) -> None:
        assert normalize_query(None).normalized == ""


class TestSearchService:
    """Tests for the service layer."""

    async def test_search(self, db_path: Path, engine: StopSearchEngine) -> None:
        response = await search_stops("Zürich", limit=3, db_path=db_path, engine=engine)
        assert response.stops[0].station_id == "Parent8503000"
        assert len(response.stops) <= 3
        assert response.debug is None

    async def test_search_with_debug(self, db_path: Path, engine: StopSearchEngine) -> None:
        response = await search_stops("Bern", limit=5, debug=True, db_path=db_path, engine=engine)
        assert response.debug is not None
        assert response.debug.candidate_limit == 100
        assert len(response.debug.ranked_top) <= 10

    async def test_default_limit_widens_candidates(self, db_path: Path, engine: StopSearchEngine) -> None:
        response = await search_stops("Bern", debug=True, db_path=db_path, engine=engine)
        assert response.debug.candidate_limit == 320

    async def test_limit_is_clamped(self, db_path: Path, engine: StopSearchEngine) -> None:
        response = await search_stops("Zürich", limit=0, db_path=db_path, engine=engine)
        assert len(response.stops) == 1

    async def test_too_short_checked_before_db(self, tmp_path: Path, engine: StopSearchEngine) -> None:
        # The database does not exist: validation must fail first
        with pytest.raises(QueryTooShortError):
            await search_stops("a", db_path=tmp_path / "missing.db", engine=engine)

    async def test_missing_database(self, tmp_path: Path, engine: StopSearchEngine) -> None:
        with pytest.raises(FileNotFoundError):
            await search_stops("Bern", db_path=tmp_path / "missing.db", engine=engine)


class TestSearchTools:
    """Tests for the MCP tool functions."""

    async def test_search_tool(
        self, db_path: Path, monkeypatch: pytest.MonkeyPatch, engine: StopSearchEngine
    ) -> None:
        monkeypatch.setattr("stop_search.data.database.get_db_path", lambda: db_path)
        monkeypatch.setattr("stop_search.services.stop_service.get_default_engine", lambda: engine)

        response = await search_tools.search_stops(query="cornavain", limit=500)

        assert "8587057" in [stop.id for stop in response.stops[:3]]
        assert response.debug is None

    async def test_search_tool_rejects_short_query(self) -> None:
        with pytest.raises(QueryTooShortError):
            await search_tools.search_stops(query="a")

    def test_normalize_tool(self) -> None:
        result = search_tools.normalize_stop_query("Zürich Hauptbahnhof")
        assert result.normalized == "zurich hb"
        assert result.core == "zurich hb"
