"""Stop search service: runs the engine against the configured database."""

from pathlib import Path
from typing import Any

from stop_search.data.database import open_stop_store
from stop_search.matching.models import NormalizedQuery, StopSearchResponse
from stop_search.matching.normalizers import MIN_QUERY_LEN, normalize_search_text, strip_stop_words
from stop_search.matching.ranker import DEFAULT_LIMIT, clamp_limit
from stop_search.search.engine import QueryTooShortError, StopSearchEngine, get_default_engine


def validate_query(query: str | None) -> str:
    """Trimmed query, or QueryTooShortError if it normalizes below MIN_QUERY_LEN."""
    raw = (query or "").strip()
    if len(normalize_search_text(raw)) < MIN_QUERY_LEN:
        raise QueryTooShortError(raw)
    return raw


def normalize_query(text: str | None) -> NormalizedQuery:
    """Normalized and core forms of a text, as stored in the search index."""
    normalized = normalize_search_text(text)
    return NormalizedQuery(normalized=normalized, core=strip_stop_words(normalized))


async def search_stops(
    query: str | None,
    limit: Any = DEFAULT_LIMIT,
    debug: bool = False,
    db_path: Path | None = None,
    engine: StopSearchEngine | None = None,
) -> StopSearchResponse:
    """Search stops by name in the stop database.

    Args:
        query: Free-text query.
        limit: Maximum results (clamped to 1..50).
        debug: Include score breakdown and retrieval stages.
        db_path: Database path (default: STOP_SEARCH_DB_PATH).
        engine: Engine to use (default: the process-wide engine).

    Returns:
        StopSearchResponse; debug is None unless requested.

    Raises:
        QueryTooShortError: Before any database access, for a too-short query.
        FileNotFoundError: If the database does not exist.
    """
    raw = validate_query(query)
    engine = engine or get_default_engine()
    async with open_stop_store(db_path) as store:
        response = await engine.search_stops_with_debug(store, raw, clamp_limit(limit))
    if not debug:
        response.debug = None
    return response
