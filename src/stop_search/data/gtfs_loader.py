"""Load a GTFS feed's stops into the search database.

Only two feed files matter for stop search: ``stops.txt`` is the gazetteer
and ``stop_times.txt`` provides the popularity proxy (how many times a stop
is served). Everything else in the feed is ignored.
"""

import csv
import io
import logging
import zipfile
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from itertools import islice
from pathlib import Path
from typing import TextIO

import aiosqlite

from stop_search.data.search_index import ALIAS_TABLES, build_search_index, ensure_alias_tables

logger = logging.getLogger(__name__)

GAZETTEER_SCHEMA = """
CREATE TABLE stops (
    stop_id TEXT PRIMARY KEY,
    stop_code TEXT,
    stop_name TEXT NOT NULL,
    stop_lat REAL,
    stop_lon REAL,
    location_type INTEGER,
    parent_station TEXT
);
CREATE TABLE stop_times (
    trip_id TEXT NOT NULL,
    stop_sequence INTEGER NOT NULL,
    stop_id TEXT NOT NULL,
    PRIMARY KEY (trip_id, stop_sequence)
);
"""

GAZETTEER_INDEXES = """
CREATE INDEX idx_stops_parent ON stops(parent_station);
CREATE INDEX idx_stops_name ON stops(stop_name);
CREATE INDEX idx_stop_times_stop ON stop_times(stop_id);
"""

BATCH_SIZE = 5000


@dataclass(frozen=True)
class FeedFile:
    """A GTFS file copied into a table of the same shape."""

    filename: str
    table: str
    columns: tuple[str, ...]
    # Rows with an empty value in one of these are skipped
    required: tuple[str, ...]
    mandatory: bool = False

    @property
    def insert_sql(self) -> str:
        placeholders = ", ".join("?" for _ in self.columns)
        return f"INSERT OR IGNORE INTO {self.table} ({', '.join(self.columns)}) VALUES ({placeholders})"

    def check_header(self, header: Iterable[str]) -> None:
        """Raise ValueError if a required column is absent from the header."""
        missing = [col for col in self.required if col not in header]
        if missing:
            raise ValueError(f"{self.filename} missing columns: {', '.join(missing)}")

    def to_values(self, record: dict[str, str | None]) -> tuple[str | None, ...] | None:
        """Column values of one record (blank becomes NULL), or None to skip it."""
        values = {col: (record.get(col) or "").strip() or None for col in self.columns}
        if any(values[col] is None for col in self.required):
            return None
        return tuple(values[col] for col in self.columns)


STOPS_FILE = FeedFile(
    filename="stops.txt",
    table="stops",
    columns=("stop_id", "stop_code", "stop_name", "stop_lat", "stop_lon", "location_type", "parent_station"),
    required=("stop_id", "stop_name"),
    mandatory=True,
)

STOP_TIMES_FILE = FeedFile(
    filename="stop_times.txt",
    table="stop_times",
    columns=("trip_id", "stop_sequence", "stop_id"),
    required=("trip_id", "stop_sequence", "stop_id"),
)

FEED_FILES = (STOPS_FILE, STOP_TIMES_FILE)


@contextmanager
def open_feed_file(gtfs_path: Path, filename: str) -> Iterator[TextIO | None]:
    """Open one file of a feed directory or ZIP archive (None if the feed lacks it)."""
    if gtfs_path.is_dir():
        file_path = gtfs_path / filename
        if not file_path.is_file():
            yield None
            return
        with open(file_path, encoding="utf-8-sig", newline="") as f:
            yield f
        return

    with zipfile.ZipFile(gtfs_path) as archive:
        if filename not in archive.namelist():
            yield None
            return
        with archive.open(filename) as raw:
            yield io.TextIOWrapper(raw, encoding="utf-8-sig", newline="")


def _batches(rows: Iterable[tuple], size: int) -> Iterator[list[tuple]]:
    iterator = iter(rows)
    while batch := list(islice(iterator, size)):
        yield batch


class GTFSLoader:
    """Builds the stop search database from a GTFS feed.

    The database is assembled next to the target under a ``.tmp.db`` name and
    moved over the target only once it is complete, so a failed load never
    leaves a half-written database behind and searches keep working on the
    previous one.

    Usage:
        loader = GTFSLoader(Path("data/stops.db"))
        counts = await loader.ingest(Path("gtfs.zip"))
    """

    def __init__(self, db_path: Path):
        self.db_path = Path(db_path)

    @property
    def staging_path(self) -> Path:
        return self.db_path.with_suffix(".tmp.db")

    async def ingest(self, gtfs_path: Path) -> dict[str, int]:
        """Load stops and stop_times, build the search index and swap the database in.

        Alias tables of the database being replaced are carried over.

        Args:
            gtfs_path: GTFS directory or ZIP archive.

        Returns:
            Row counts per table.

        Raises:
            FileNotFoundError: If gtfs_path does not exist.
            ValueError: If stops.txt is absent, lacks columns or yields no stops.
        """
        gtfs_path = Path(gtfs_path)
        if not gtfs_path.exists():
            raise FileNotFoundError(f"GTFS feed not found: {gtfs_path}")

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.staging_path.unlink(missing_ok=True)

        try:
            async with aiosqlite.connect(self.staging_path) as db:
                counts = await self._build(db, gtfs_path)
            self.staging_path.replace(self.db_path)
        except Exception:
            self.staging_path.unlink(missing_ok=True)
            raise

        logger.info(f"Stop database ready at {self.db_path}")
        return counts

    async def _build(self, db: aiosqlite.Connection, gtfs_path: Path) -> dict[str, int]:
        # Throwaway file until the swap: no journal needed
        await db.execute("PRAGMA journal_mode=OFF")
        await db.execute("PRAGMA synchronous=OFF")
        await db.executescript(GAZETTEER_SCHEMA)

        counts: dict[str, int] = {}
        for feed_file in FEED_FILES:
            counts[feed_file.table] = await self._copy_feed_file(db, gtfs_path, feed_file)

        if counts[STOPS_FILE.table] == 0:
            raise ValueError(f"No stops loaded from {gtfs_path}")

        await db.executescript(GAZETTEER_INDEXES)
        counts["stop_search_index"] = await build_search_index(db)
        await ensure_alias_tables(db)
        counts.update(await self._carry_over_aliases(db))
        await db.commit()
        return counts

    async def _copy_feed_file(self, db: aiosqlite.Connection, gtfs_path: Path, feed_file: FeedFile) -> int:
        with open_feed_file(gtfs_path, feed_file.filename) as text:
            if text is None:
                if feed_file.mandatory:
                    raise ValueError(f"{feed_file.filename} not found in {gtfs_path}")
                logger.warning(f"{feed_file.filename} not found, stop popularity will be zero")
                return 0

            reader = csv.DictReader(text)
            header = [name.strip() for name in reader.fieldnames or []]
            if not header:
                raise ValueError(f"{feed_file.filename} is empty")
            feed_file.check_header(header)
            reader.fieldnames = header

            skipped = 0

            def values() -> Iterator[tuple]:
                nonlocal skipped
                for record in reader:
                    row = feed_file.to_values(record)
                    if row is None:
                        skipped += 1
                    else:
                        yield row

            loaded = 0
            for batch in _batches(values(), BATCH_SIZE):
                await db.executemany(feed_file.insert_sql, batch)
                loaded += len(batch)

        await db.commit()
        logger.info(f"{feed_file.filename}: {loaded:,} rows" + (f", {skipped:,} skipped" if skipped else ""))
        return loaded

    async def _carry_over_aliases(self, db: aiosqlite.Connection) -> dict[str, int]:
        """Copy alias rows from the database being replaced."""
        if not self.db_path.exists():
            return {}

        carried: dict[str, int] = {}
        await db.execute("ATTACH DATABASE ? AS previous", (str(self.db_path),))
        try:
            async with db.execute(
                "SELECT name FROM previous.sqlite_master WHERE type = 'table'"
            ) as cursor:
                previous_tables = {row[0] async for row in cursor}
            for table in ALIAS_TABLES:
                if table not in previous_tables:
                    continue
                cursor = await db.execute(f"INSERT OR IGNORE INTO main.{table} SELECT * FROM previous.{table}")
                carried[table] = cursor.rowcount
                logger.info(f"Kept {cursor.rowcount:,} rows of {table} from the previous database")
            await db.commit()
        finally:
            await db.execute("DETACH DATABASE previous")
        return carried


async def get_table_counts(db_path: Path) -> dict[str, int]:
    """Row counts of the stop search tables.

    Args:
        db_path: Path to the SQLite database.

    Returns:
        Table name -> row count.
    """
    tables = (STOPS_FILE.table, STOP_TIMES_FILE.table, "stop_search_index", *ALIAS_TABLES)
    async with aiosqlite.connect(db_path) as db:
        counts = {}
        for table in tables:
            async with db.execute(f"SELECT COUNT(*) FROM {table}") as cursor:
                (counts[table],) = await cursor.fetchone()
    return counts
