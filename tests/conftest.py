"""Shared fixtures: a small Swiss gazetteer, a SQL-dispatching fake store, a fake clock."""

from collections.abc import Mapping
from pathlib import Path
from typing import Any

import pytest

from stop_search.data.config import SearchSettings
from stop_search.matching.normalizers import normalize_search_text

# stop_id, stop_name, parent_station, location_type, nb_stop_times
GAZETTEER: list[tuple[str, str, str, str, int]] = [
    ("Parent8503000", "Zürich HB", "", "1", 5000),
    ("8503000:0:3", "Zürich HB", "Parent8503000", "0", 800),
    ("8503000:0:4", "Zürich HB", "Parent8503000", "0", 700),
    ("Parent8503006", "Zürich Oerlikon", "", "1", 2000),
    ("Parent8503020", "Zürich Hardbrücke", "", "1", 900),
    ("8591382", "Zürich, Bellevue", "", "0", 1500),
    ("Parent8501008", "Genève", "", "1", 3000),
    ("8587057", "Genève, gare Cornavin", "", "0", 2500),
    ("Parent8501026", "Genève-Aéroport", "", "1", 1100),
    ("8587387", "Genève, Bel-Air", "", "0", 1200),
    ("Parent8501120", "Lausanne", "", "1", 4000),
    ("8501120:0:1", "Lausanne", "Parent8501120", "0", 600),
    ("Parent8592082", "Lausanne, Bel-Air", "", "1", 0),
    ("8592082:0:1", "Lausanne, Bel-Air", "Parent8592082", "0", 400),
    ("8592050", "Lausanne, Riponne-M. Béjart", "", "0", 700),
    ("Parent8507000", "Bern", "", "1", 6000),
    ("8507000:0:1", "Bern", "Parent8507000", "0", 900),
    ("8588000", "Bern", "", "0", 50),
    ("8576646", "Bern, Bahnhof", "", "0", 300),
    ("8576194", "Bern, Bundesplatz", "", "0", 250),
    ("Parent8506302", "St. Gallen", "", "1", 2200),
    ("8014443", "St. Blasien", "", "0", 30),
]

ALL_CAPABILITIES = {
    "has_stop_search_index": 1,
    "has_stop_aliases": 1,
    "has_app_stop_aliases": 1,
    "has_normalize_fn": 1,
    "has_strip_fn": 1,
    "has_trigram": 1,
    "has_unaccent": 1,
}

NO_CAPABILITIES = {name: 0 for name in ALL_CAPABILITIES}

# Ordered: the first marker found in the SQL names the stage
STAGE_MARKERS = (
    ("pragma_function_list", "probe"),
    ("FROM stop_aliases sa", "alias:stop"),
    ("FROM app_stop_aliases aa", "alias:app"),
    ("FROM stop_search_index fb", "fallback:index"),
    ("FROM stop_search_index b", "primary"),
    ("FROM stops s", "fallback:live"),
)


def gazetteer_rows() -> list[dict[str, Any]]:
    """Fixture stops as retrieval rows."""
    return [
        {
            "stop_id": stop_id,
            "stop_name": name,
            "group_id": parent or stop_id,
            "parent_station": parent or None,
            "location_type": location_type,
            "nb_stop_times": nb_stop_times,
        }
        for stop_id, name, parent, location_type, nb_stop_times in GAZETTEER
    ]


def stage_of(sql: str) -> str:
    for marker, stage in STAGE_MARKERS:
        if marker in sql:
            return stage
    raise AssertionError(f"Unexpected SQL: {sql[:80]}")


class FakeClock:
    """Monotonic clock in seconds that only moves when told to."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class FakeStore:
    """StopStore answering each retrieval stage from in-memory rows.

    Primary and alias stages match by substring of the normalized name (or
    alias); fallback stages also accept a matching first character, like
    the degraded SQL does.
    """

    def __init__(
        self,
        rows: list[dict[str, Any]] | None = None,
        capabilities: Mapping[str, Any] | None = None,
        aliases: dict[str, list[str]] | None = None,
        errors: dict[str, Exception] | None = None,
        clock: FakeClock | None = None,
        cost_ms: dict[str, float] | None = None,
    ):
        self.rows = gazetteer_rows() if rows is None else rows
        self.capabilities = dict(ALL_CAPABILITIES if capabilities is None else capabilities)
        self.aliases = aliases or {}
        self.errors = errors or {}
        self.clock = clock
        self.cost_ms = cost_ms or {}
        self.calls: list[str] = []
        self.params: list[Any] = []

    async def query(self, sql: str, params: Any = ()) -> list[dict[str, Any]]:
        stage = stage_of(sql)
        self.calls.append(stage)
        self.params.append(params)
        if self.clock is not None:
            self.clock.advance_ms(self.cost_ms.get(stage, 0))
        if stage in self.errors:
            raise self.errors[stage]
        if stage == "probe":
            return [dict(self.capabilities)]

        if stage == "primary":
            query_norm = normalize_search_text(params["q_raw"])
        else:
            query_norm = params["q"]

        if stage.startswith("alias"):
            return self._alias_rows(query_norm)

        matched = []
        for row in self.rows:
            name_norm = normalize_search_text(row["stop_name"])
            if query_norm in name_norm or (
                stage.startswith("fallback") and name_norm[:1] == query_norm[:1]
            ):
                matched.append(dict(row))
        return matched[: params["lim"]]

    def _alias_rows(self, query_norm: str) -> list[dict[str, Any]]:
        by_id = {row["stop_id"]: row for row in self.rows}
        matched = []
        for stop_id, aliases in self.aliases.items():
            for alias in aliases:
                if query_norm in normalize_search_text(alias):
                    matched.append({**by_id[stop_id], "aliases_matched": alias, "alias_weight": 1.0})
        return matched


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def settings() -> SearchSettings:
    """Default settings, independent of the environment."""
    return SearchSettings(
        budget_ms=1800,
        capability_timeout_ms=250,
        primary_timeout_ms=900,
        fallback_timeout_ms=600,
        alias_timeout_ms=250,
        capability_ttl_seconds=60,
    )


@pytest.fixture
def sample_gtfs_dir(tmp_path: Path) -> Path:
    """GTFS directory holding the fixture gazetteer and stop_times for its popularity."""
    gtfs_dir = tmp_path / "gtfs"
    gtfs_dir.mkdir()

    stop_lines = ["stop_id,stop_code,stop_name,stop_lat,stop_lon,location_type,parent_station"]
    for stop_id, name, parent, location_type, _ in GAZETTEER:
        stop_lines.append(f'{stop_id},,"{name}",46.5,7.4,{location_type},{parent}')
    (gtfs_dir / "stops.txt").write_text("\n".join(stop_lines) + "\n", encoding="utf-8")

    # Popularity: stop_times on platforms and stand-alone stops only
    time_lines = ["trip_id,arrival_time,departure_time,stop_id,stop_sequence"]
    for stop_id, _, _, location_type, nb_stop_times in GAZETTEER:
        if location_type == "1":
            continue
        for i in range(min(nb_stop_times, 20)):
            time_lines.append(f"T{stop_id}-{i},08:00:00,08:00:00,{stop_id},1")
    (gtfs_dir / "stop_times.txt").write_text("\n".join(time_lines) + "\n", encoding="utf-8")

    return gtfs_dir
