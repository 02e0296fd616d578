"""Precomputed stop search index, built with the same normalizer as the query path."""

import logging
from typing import Any

import aiosqlite

from stop_search.matching.normalizers import (
    has_hub_token,
    normalize_search_text,
    strip_stop_words,
    tokenize,
)
from stop_search.matching.ranker import extract_city_name, is_parent_like

logger = logging.getLogger(__name__)

SEARCH_INDEX_SQL = """
DROP TABLE IF EXISTS stop_search_index;
CREATE TABLE stop_search_index (
    stop_id TEXT PRIMARY KEY,
    group_id TEXT NOT NULL,
    stop_name TEXT NOT NULL,
    parent_station TEXT,
    location_type INTEGER,
    station_name TEXT,
    city_name TEXT,
    name_norm TEXT NOT NULL,
    name_core TEXT NOT NULL,
    is_parent INTEGER NOT NULL,
    has_hub_token INTEGER NOT NULL,
    nb_stop_times INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX idx_stop_search_name_norm ON stop_search_index(name_norm);
CREATE INDEX idx_stop_search_name_core ON stop_search_index(name_core);
CREATE INDEX idx_stop_search_group ON stop_search_index(group_id);
"""

ALIAS_TABLES = ("stop_aliases", "app_stop_aliases")

ALIAS_TABLES_SQL = """
CREATE TABLE IF NOT EXISTS stop_aliases (
    alias_text TEXT PRIMARY KEY,
    alias_norm TEXT NOT NULL,
    stop_id TEXT NOT NULL,
    weight REAL NOT NULL DEFAULT 1.0,
    canonical_key TEXT,
    source TEXT,
    updated_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_stop_aliases_stop ON stop_aliases(stop_id);
CREATE INDEX IF NOT EXISTS idx_stop_aliases_key ON stop_aliases(canonical_key);

CREATE TABLE IF NOT EXISTS app_stop_aliases (
    stop_id TEXT NOT NULL,
    alias TEXT NOT NULL,
    PRIMARY KEY (stop_id, alias)
);
"""

STOPS_FOR_INDEX_SQL = """
SELECT
    s.stop_id,
    s.stop_name,
    NULLIF(s.parent_station, '') AS parent_station,
    s.location_type,
    p.stop_name AS parent_name
FROM stops s
LEFT JOIN stops p ON p.stop_id = s.parent_station
"""

STOP_TIME_COUNTS_SQL = "SELECT stop_id, COUNT(*) AS n FROM stop_times GROUP BY stop_id"

INSERT_INDEX_SQL = """
INSERT INTO stop_search_index (
    stop_id, group_id, stop_name, parent_station, location_type, station_name,
    city_name, name_norm, name_core, is_parent, has_hub_token, nb_stop_times
) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
"""


def _location_type(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip().removesuffix(".0")


def index_row(stop: dict[str, Any], stop_times: int) -> tuple[Any, ...]:
    """Index columns for one stop."""
    stop_id = stop["stop_id"]
    stop_name = stop["stop_name"]
    parent_station = stop["parent_station"]
    location_type = _location_type(stop["location_type"])

    name_norm = normalize_search_text(stop_name)
    return (
        stop_id,
        parent_station or stop_id,
        stop_name,
        parent_station,
        int(location_type) if location_type.isdigit() else None,
        stop["parent_name"] or stop_name,
        extract_city_name(stop_name),
        name_norm,
        strip_stop_words(name_norm),
        int(is_parent_like(stop_id, parent_station, location_type)),
        int(has_hub_token(tokenize(name_norm))),
        stop_times,
    )


async def ensure_alias_tables(db: aiosqlite.Connection) -> None:
    """Create the alias tables if they don't exist yet."""
    await db.executescript(ALIAS_TABLES_SQL)
    await db.commit()


async def build_search_index(db: aiosqlite.Connection) -> int:
    """Rebuild stop_search_index from the stops and stop_times tables.

    Station groups get the stop_times count of their whole group, since
    GTFS attaches stop_times to platforms, not to parent stations.

    Args:
        db: Connection to a database holding the GTFS stops tables.

    Returns:
        Number of indexed stops.
    """
    logger.info("Building stop search index...")
    db.row_factory = aiosqlite.Row

    counts: dict[str, int] = {}
    async with db.execute(STOP_TIME_COUNTS_SQL) as cursor:
        async for row in cursor:
            counts[row["stop_id"]] = row["n"]

    async with db.execute(STOPS_FOR_INDEX_SQL) as cursor:
        stops = [dict(row) for row in await cursor.fetchall()]

    group_counts: dict[str, int] = {}
    for stop in stops:
        group_id = stop["parent_station"] or stop["stop_id"]
        group_counts[group_id] = group_counts.get(group_id, 0) + counts.get(stop["stop_id"], 0)

    rows = []
    for stop in stops:
        if not stop["stop_name"]:
            continue
        if stop["parent_station"]:
            stop_times = counts.get(stop["stop_id"], 0)
        else:
            stop_times = group_counts.get(stop["stop_id"], 0)
        rows.append(index_row(stop, stop_times))

    await db.executescript(SEARCH_INDEX_SQL)
    await db.executemany(INSERT_INDEX_SQL, rows)
    await db.commit()

    logger.info(f"  Indexed {len(rows):,} stops")
    return len(rows)
