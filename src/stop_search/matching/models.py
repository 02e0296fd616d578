from enum import IntEnum

from pydantic import BaseModel, Field


class MatchTier(IntEnum):
    """Discrete match quality, the primary sort key before the continuous score.

    - EXACT: normalized name, core name or alias equals the query
    - PREFIX: name, core name or alias starts with the query
    - CONTAINS: substring match, or every query token starts a candidate token
    - FUZZY: bounded edit distance / trigram similarity above the threshold
    - NONE: rejected
    """

    NONE = 0
    FUZZY = 1
    CONTAINS = 2
    PREFIX = 3
    EXACT = 4


class StopResult(BaseModel):
    """A ranked stop as returned to callers."""

    id: str = Field(description="Stop identifier of the best row for this station group")
    name: str = Field(description="Display name")
    station_id: str = Field(description="Group id: parent station id, or the stop's own id")
    station_name: str = Field(description="Display name of the station group")
    parent_station: str | None = None
    location_type: str = Field(default="", description="GTFS location_type ('1' = station)")
    city: str | None = Field(default=None, description="City part of the name, when known")
    is_parent: bool = Field(description="True for station-level (group) records")
    is_platform: bool = Field(description="True for platform/child stops")
    aliases_matched: list[str] | None = Field(
        default=None, description="Up to 5 aliases that matched the query"
    )
    rank: int = Field(description="1-based position in the result list")


class ScoreBreakdown(BaseModel):
    """Scoring details for one ranked candidate (debug output)."""

    id: str
    name: str
    station_id: str
    score: int
    tier: MatchTier
    fuzzy_similarity: float
    parent_like: bool
    signals: list[str] = Field(description="Match signals that fired for this candidate")
    bonuses: dict[str, int] = Field(description="Additive score adjustments by name")


class StopSearchDebug(BaseModel):
    """Introspection data for offline tuning and tests."""

    query: str = Field(description="Query as received (trimmed)")
    query_norm: str = Field(description="Normalized query")
    query_core: str = Field(description="Normalized query without generic station words")
    candidate_limit: int = Field(description="Row limit passed to the retrieval queries")
    raw_rows: int = Field(description="Candidate rows fetched before ranking")
    stages: list[str] = Field(description="Retrieval stages in the order they ran or were skipped")
    primary_error: str | None = Field(default=None, description="Primary stage failure, if any")
    backoff_query: str | None = Field(
        default=None, description="Shortened query used when the full query had no result"
    )
    ranked_top: list[ScoreBreakdown] = Field(description="Score breakdown of the top 10")


class StopSearchResponse(BaseModel):
    """Response from search_stops_with_debug."""

    stops: list[StopResult]
    debug: StopSearchDebug | None = None


class NormalizedQuery(BaseModel):
    """Normalized forms of a text, byte-identical to what the search index stores."""

    normalized: str
    core: str = Field(description="Normalized text without generic station words")
