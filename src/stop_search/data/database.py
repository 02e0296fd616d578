"""SQLite connection helpers and the SQLite-backed stop store."""

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import aiosqlite

from stop_search.data.config import get_search_settings
from stop_search.data.store import QueryParams, Rows
from stop_search.matching.normalizers import (
    normalize_search_text,
    remove_accents,
    strip_stop_words,
    trigram_similarity,
)

logger = logging.getLogger(__name__)


def get_db_path() -> Path:
    """Configured stop database path."""
    return get_search_settings().db_path


def _sql_normalize(value: Any) -> str:
    return normalize_search_text(None if value is None else str(value))


def _sql_strip(value: Any) -> str:
    return strip_stop_words(_sql_normalize(value))


def _sql_similarity(left: Any, right: Any) -> float:
    if left is None or right is None:
        return 0.0
    return trigram_similarity(str(left), str(right))


def _sql_unaccent(value: Any) -> str | None:
    if value is None:
        return None
    return remove_accents(str(value))


# name -> (arity, implementation)
SEARCH_FUNCTIONS = {
    "normalize_stop_search_text": (1, _sql_normalize),
    "strip_stop_search_terms": (1, _sql_strip),
    "similarity": (2, _sql_similarity),
    "unaccent": (1, _sql_unaccent),
}


async def register_search_functions(
    db: aiosqlite.Connection, names: tuple[str, ...] | None = None
) -> None:
    """Register the Python search helpers as deterministic SQL functions.

    Args:
        db: Open connection.
        names: Subset of SEARCH_FUNCTIONS to register (default: all).
    """
    for name, (arity, func) in SEARCH_FUNCTIONS.items():
        if names is not None and name not in names:
            continue
        await db.create_function(name, arity, func, deterministic=True)


@asynccontextmanager
async def get_db(
    db_path: Path | None = None, search_functions: bool = True
) -> AsyncIterator[aiosqlite.Connection]:
    """Open the stop database with rows returned as ``aiosqlite.Row``.

    ``db_path`` falls back to the configured path. The search SQL functions
    are registered unless ``search_functions`` is False, which is enough for
    plain reads and writes such as the alias sync.

    Raises:
        FileNotFoundError: If nothing has been ingested at that path yet.
    """
    if db_path is None:
        db_path = get_db_path()

    if not db_path.exists():
        raise FileNotFoundError(
            f"Database not found at {db_path}. Run 'stop-search ingest <gtfs_path>' to create it."
        )

    async with aiosqlite.connect(db_path) as db:
        db.row_factory = aiosqlite.Row
        if search_functions:
            await register_search_functions(db)
        yield db


class SqliteStopStore:
    """StopStore over an aiosqlite connection.

    Timed-out queries are interrupted on the connection so the worker thread
    is free for the next stage.
    """

    def __init__(self, db: aiosqlite.Connection):
        self._db = db

    async def query(self, sql: str, params: QueryParams = ()) -> Rows:
        async with self._db.execute(sql, params) as cursor:
            rows = await cursor.fetchall()
        return [dict(row) for row in rows]

    async def query_with_timeout(self, sql: str, params: QueryParams, timeout_ms: int) -> Rows:
        try:
            return await asyncio.wait_for(self.query(sql, params), timeout=timeout_ms / 1000)
        except TimeoutError:
            await self._db.interrupt()
            logger.debug(f"Interrupted query after {timeout_ms}ms")
            raise


@asynccontextmanager
async def open_stop_store(db_path: Path | None = None) -> AsyncIterator[SqliteStopStore]:
    """Open the stop database and wrap it in a SqliteStopStore."""
    async with get_db(db_path) as db:
        yield SqliteStopStore(db)
