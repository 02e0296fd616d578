"""MCP tools for searching stops."""

from stop_search.app import mcp
from stop_search.matching.models import NormalizedQuery, StopSearchResponse
from stop_search.matching.ranker import clamp_limit
from stop_search.services.stop_service import normalize_query
from stop_search.services.stop_service import search_stops as _search_stops


@mcp.tool()
async def search_stops(
    query: str,
    limit: int = 20,
    debug: bool = False,
) -> StopSearchResponse:
    """Search transit stops by name.

    Tolerates typos, missing accents and abbreviations ("St." / "Saint",
    "HB" / "Hauptbahnhof"). A comma qualifies the stop within a city.

    Examples:
        search_stops(query="Zürich")  # Main station first
        search_stops(query="Lausanne, Bel-Air")  # The Bel-Air stop, not Lausanne station
        search_stops(query="cornavain")  # Typo for "Cornavin"

    Args:
        query: Stop name, at least 2 letters or digits.
        limit: Maximum number of results to return (default 20, max 50).
        debug: Include retrieval stages and the score breakdown of the top 10.

    Returns:
        StopSearchResponse with ranked stops (rank 1 is the best match).
    """
    return await _search_stops(query=query, limit=clamp_limit(limit), debug=debug)


@mcp.tool()
def normalize_stop_query(text: str) -> NormalizedQuery:
    """Show how a text is normalized for stop search.

    Examples:
        normalize_stop_query("Zürich Hauptbahnhof")  # normalized="zurich hb"
        normalize_stop_query("Gare de Lausanne")  # core="de lausanne"

    Args:
        text: Any text.

    Returns:
        NormalizedQuery with the normalized form and the core form without
        generic station words (gare, bahnhof, station, ...).
    """
    return normalize_query(text)
