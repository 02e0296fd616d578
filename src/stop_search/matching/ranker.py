"""Deterministic scoring, grouping and dedup of stop candidates.

This module does no I/O. The retriever hands it raw rows, it hands back a
ranked list, so it can be exercised directly against fixture rows.
"""

import math
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from stop_search.matching.models import MatchTier, ScoreBreakdown, StopResult
from stop_search.matching.normalizers import (
    MIN_QUERY_LEN,
    bounded_levenshtein,
    has_hub_token,
    normalize_search_text,
    remove_accents,
    similarity_threshold,
    strip_stop_words,
    tokenize,
)

DEFAULT_LIMIT = 20
MIN_LIMIT = 1
MAX_LIMIT = 50

CANDIDATE_MIN = 60
CANDIDATE_MAX = 320
CANDIDATE_MULTIPLIER = 20

# Queries up to this many normalized characters are treated as bare city/station names
SHORT_QUERY_LEN = 6

# Token containment may rescue a candidate this far below the fuzzy threshold
FUZZY_SLACK = 0.08

MAX_ALIASES_RETURNED = 5

# Score adjustments. Calibrated against the fixture suite; the relative order
# matters, the exact integers less so.
TIER_WEIGHT = 10_000
SIMILARITY_WEIGHT = 1000
ALIAS_EXACT_BONUS = 1700
ALIAS_PREFIX_BONUS = 900
ALIAS_CONTAINS_BONUS = 300
ALIAS_WEIGHT_FACTOR = 260
ALIAS_WEIGHT_CAP = 10.0
POPULARITY_FACTOR = 25
POPULARITY_CAP = 300
CITY_BONUS = 220
CITY_PARENT_BONUS = 280
HUB_BARE_CITY_BONUS = 1100
HUB_REQUESTED_BONUS = 700
SHORT_QUERY_PARENT_BONUS = 350
SHORT_QUERY_CHILD_PENALTY = -220
PARENT_BONUS = 120
WORD_START_BONUS = 180
TOKEN_CONTAINS_BONUS = 120
POST_COMMA_STRONG_BONUS = 2600
POST_COMMA_PREFIX_BONUS = 1200
POST_COMMA_MISS_PENALTY = -900
COMMA_PARENT_PENALTY = -600

# location_type -> tie-break rank (stations first, then stops/platforms)
LOCATION_TYPE_RANK: dict[str, int] = {"1": 2, "0": 1, "": 1}

TRUE_STRINGS = frozenset({"1", "t", "true", "yes", "y", "on"})


def _text(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _number(value: Any, fallback: float = 0.0) -> float:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return fallback
    return number if math.isfinite(number) else fallback


def _flag(value: Any) -> bool | None:
    if value is None or value == "":
        return None
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


def _aliases(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items: Iterable[Any] = value.split("|")
    else:
        items = value
    seen: set[str] = set()
    aliases: list[str] = []
    for item in items:
        alias = _text(item)
        if not alias or alias.lower() in seen:
            continue
        seen.add(alias.lower())
        aliases.append(alias)
    return aliases


def clamp_limit(limit: Any) -> int:
    """Round and clamp a requested result limit to 1..50 (default 20)."""
    parsed = _number(limit, fallback=math.nan)
    if math.isnan(parsed):
        return DEFAULT_LIMIT
    return min(MAX_LIMIT, max(MIN_LIMIT, round(parsed)))


def candidate_limit_for(limit: int) -> int:
    """Rows to fetch for a result limit: wide enough to re-rank, bounded for cost."""
    return min(CANDIDATE_MAX, max(CANDIDATE_MIN, limit * CANDIDATE_MULTIPLIER))


def is_parent_like(stop_id: str, parent_station: str | None, location_type: str) -> bool:
    """Station group rather than a platform: no parent, station type, or Parent* id."""
    return not parent_station or location_type == "1" or stop_id.startswith("Parent")


@dataclass
class CandidateRow:
    """A raw stop record as produced by the retrieval queries."""

    stop_id: str
    stop_name: str
    group_id: str = ""
    parent_station: str | None = None
    location_type: str = ""
    station_name: str = ""
    city_name: str = ""
    name_norm: str = ""
    name_core: str = ""
    aliases_matched: list[str] = field(default_factory=list)
    alias_weight: float = 0.0
    alias_similarity: float = 0.0
    name_similarity: float = 0.0
    core_similarity: float = 0.0
    is_parent: bool | None = None
    has_hub_token: bool | None = None
    nb_stop_times: int = 0

    @classmethod
    def from_mapping(cls, row: Mapping[str, Any]) -> "CandidateRow":
        """Build a row from a database mapping, tolerating missing or odd values."""
        stop_id = _text(row.get("stop_id"))
        location_type = _text(row.get("location_type"))
        # SQLite returns INTEGER columns as ints ("1"), REAL ones as floats ("1.0")
        if location_type.endswith(".0"):
            location_type = location_type[:-2]
        return cls(
            stop_id=stop_id,
            stop_name=_text(row.get("stop_name")),
            group_id=_text(row.get("group_id")) or stop_id,
            parent_station=_text(row.get("parent_station")) or None,
            location_type=location_type,
            station_name=_text(row.get("station_name")),
            city_name=_text(row.get("city_name")),
            name_norm=_text(row.get("name_norm")),
            name_core=_text(row.get("name_core")),
            aliases_matched=_aliases(row.get("aliases_matched")),
            alias_weight=_number(row.get("alias_weight")),
            alias_similarity=_number(row.get("alias_similarity")),
            name_similarity=_number(row.get("name_similarity")),
            core_similarity=_number(row.get("core_similarity")),
            is_parent=_flag(row.get("is_parent")),
            has_hub_token=_flag(row.get("has_hub_token")),
            nb_stop_times=max(0, round(_number(row.get("nb_stop_times")))),
        )

    @property
    def parent_like(self) -> bool:
        """Station group rather than a platform: no parent, station type, or Parent* id."""
        if self.is_parent is not None:
            return self.is_parent
        return is_parent_like(self.stop_id, self.parent_station, self.location_type)


@dataclass(frozen=True)
class QueryContext:
    """Everything the scorer needs to know about the query, derived once per call."""

    query_norm: str
    query_core: str
    query_tokens: tuple[str, ...]
    has_comma: bool
    head_tokens: tuple[str, ...]
    post_norm: str
    post_tokens: tuple[str, ...]
    city_token: str
    fuzzy_threshold: float
    is_short_query: bool
    query_has_hub_token: bool


@dataclass
class ScoredCandidate:
    """A candidate row with its score, tier and tie-break keys."""

    row: CandidateRow
    name_norm: str
    city_name: str
    score: int
    tier: MatchTier
    fuzzy_similarity: float
    parent_like: bool
    parent_rank: int
    location_rank: int
    signals: list[str]
    bonuses: dict[str, int]

    @property
    def sort_key(self) -> tuple[Any, ...]:
        row = self.row
        return (
            -self.score,
            -self.tier,
            -self.parent_rank,
            -self.location_rank,
            -row.nb_stop_times,
            len(row.stop_name),
            remove_accents(row.stop_name).casefold(),
            row.stop_id,
        )

    def to_result(self, rank: int) -> StopResult:
        row = self.row
        return StopResult(
            id=row.stop_id,
            name=row.stop_name,
            station_id=row.group_id or row.stop_id,
            station_name=row.station_name or row.stop_name,
            parent_station=row.parent_station,
            location_type=row.location_type,
            city=self.city_name or None,
            is_parent=self.parent_like,
            is_platform=not self.parent_like and row.location_type in ("", "0"),
            aliases_matched=row.aliases_matched[:MAX_ALIASES_RETURNED] or None,
            rank=rank,
        )

    def to_breakdown(self) -> ScoreBreakdown:
        return ScoreBreakdown(
            id=self.row.stop_id,
            name=self.row.stop_name,
            station_id=self.row.group_id or self.row.stop_id,
            score=self.score,
            tier=self.tier,
            fuzzy_similarity=round(self.fuzzy_similarity, 4),
            parent_like=self.parent_like,
            signals=self.signals,
            bonuses=self.bonuses,
        )


@dataclass
class RankingOutcome:
    """Result of rank_stop_candidates_detailed."""

    context: QueryContext | None
    stops: list[StopResult]
    ranked: list[ScoredCandidate]
    scored_rows: int = 0

    def breakdown(self, top: int = 10) -> list[ScoreBreakdown]:
        return [candidate.to_breakdown() for candidate in self.ranked[:top]]


def build_query_context(query: str | None) -> QueryContext | None:
    """Derive the query context, or None if the query is too short to search."""
    raw = _text(query)
    query_norm = normalize_search_text(raw)
    if len(query_norm) < MIN_QUERY_LEN:
        return None

    query_core = strip_stop_words(query_norm)
    query_tokens = tuple(tokenize(query_core or query_norm))

    # "City, Venue": the part after the comma names a specific stop
    head_raw, _, post_raw = raw.partition(",")
    head_norm = normalize_search_text(head_raw)
    post_norm = normalize_search_text(post_raw)
    has_comma = bool(head_norm and post_norm)

    if has_comma:
        head_tokens = tuple(tokenize(strip_stop_words(head_norm) or head_norm))
        post_tokens = tuple(tokenize(strip_stop_words(post_norm) or post_norm))
        city_token = head_norm
    else:
        head_tokens = query_tokens
        post_norm = ""
        post_tokens = ()
        city_token = query_tokens[0] if query_tokens else ""

    return QueryContext(
        query_norm=query_norm,
        query_core=query_core,
        query_tokens=query_tokens,
        has_comma=has_comma,
        head_tokens=head_tokens,
        post_norm=post_norm,
        post_tokens=post_tokens,
        city_token=city_token,
        fuzzy_threshold=similarity_threshold(len(query_norm)),
        is_short_query=len(query_norm) <= SHORT_QUERY_LEN,
        query_has_hub_token=has_hub_token(list(query_tokens)),
    )


def extract_city_name(stop_name: str, provided_city: str = "") -> str:
    """Best guess of the city part of a stop name.

    Example: "Genève, Cornavin" -> "Genève"
    Example: "Zürich Oerlikon" -> "Zürich Oerlikon"
    """
    if provided_city:
        return provided_city
    if "," in stop_name:
        return stop_name.split(",", 1)[0].strip()
    words = stop_name.split()
    return " ".join(words[:2])


def _word_start_match(query_tokens: Iterable[str], candidate_tokens: list[str]) -> bool:
    """Every query token is a prefix of some candidate token."""
    query_tokens = list(query_tokens)
    if not query_tokens or not candidate_tokens:
        return False
    return all(any(c.startswith(q) for c in candidate_tokens) for q in query_tokens)


def _token_containment_match(query_tokens: Iterable[str], candidate_tokens: list[str]) -> bool:
    """Every query token is a substring of some candidate token."""
    query_tokens = list(query_tokens)
    if not query_tokens or not candidate_tokens:
        return False
    return all(any(q in c for c in candidate_tokens) for q in query_tokens)


def _edit_ratio(left: str, right: str, max_distance: int) -> float:
    distance = bounded_levenshtein(left, right, max_distance)
    if distance > max_distance:
        return 0.0
    return 1 - distance / max(len(left), len(right), 1)


def compute_fuzzy_similarity(
    ctx: QueryContext,
    name_norm: str,
    core_norm: str,
    candidate_tokens: list[str],
    db_similarity: float = 0.0,
) -> float:
    """Best similarity ratio between query and candidate.

    Takes the maximum of the store-provided similarity, the whole-name edit
    ratio, the core-name edit ratio and the best token-to-token edit ratio.
    Edit distances are bounded: 1 for queries up to 4 characters, else 2.
    """
    best = max(0.0, db_similarity)
    max_distance = 1 if len(ctx.query_norm) <= 4 else 2

    best = max(best, _edit_ratio(ctx.query_norm, name_norm, max_distance))
    if ctx.query_core and core_norm:
        best = max(best, _edit_ratio(ctx.query_core, core_norm, max_distance))

    for q_token in ctx.query_tokens:
        for c_token in candidate_tokens:
            best = max(best, _edit_ratio(q_token, c_token, max_distance))

    return best


def score_candidate(row: CandidateRow, ctx: QueryContext) -> ScoredCandidate | None:
    """Score one candidate row; None if the row is unusable or does not match."""
    if not row.stop_name or not row.stop_id:
        return None

    name_norm = normalize_search_text(row.name_norm or row.stop_name)
    if not name_norm:
        return None
    core_norm = normalize_search_text(row.name_core) if row.name_core else strip_stop_words(name_norm)

    alias_norms = [a for a in (normalize_search_text(alias) for alias in row.aliases_matched) if a]
    name_tokens = tokenize(name_norm)
    candidate_tokens = tokenize(core_norm) or name_tokens

    _, cand_sep, cand_post_raw = row.stop_name.partition(",")
    cand_post_norm = normalize_search_text(cand_post_raw) if cand_sep else ""
    cand_post_tokens = tokenize(strip_stop_words(cand_post_norm) or cand_post_norm)

    q = ctx.query_norm
    qc = ctx.query_core

    signals: dict[str, bool] = {
        "exact_name": name_norm == q or bool(qc and core_norm == qc),
        "exact_alias": any(a == q or bool(qc and a == qc) for a in alias_norms),
        "prefix_name": name_norm.startswith(q) or bool(qc and core_norm.startswith(qc)),
        "prefix_alias": any(a.startswith(q) or bool(qc and a.startswith(qc)) for a in alias_norms),
        "contains_name": q in name_norm or bool(qc and qc in core_norm),
        "contains_alias": any(q in a for a in alias_norms),
        "word_start": _word_start_match(ctx.query_tokens, candidate_tokens),
        "token_contains": _token_containment_match(ctx.query_tokens, candidate_tokens),
        "post_comma_strong": False,
        "post_comma_prefix": False,
    }
    if ctx.has_comma:
        signals["post_comma_strong"] = bool(cand_post_norm) and (
            cand_post_norm == ctx.post_norm or cand_post_norm.startswith(ctx.post_norm)
        )
        signals["post_comma_prefix"] = _word_start_match(
            ctx.post_tokens, cand_post_tokens or candidate_tokens
        )

    db_similarity = max(row.name_similarity, row.core_similarity, row.alias_similarity)
    fuzzy_similarity = compute_fuzzy_similarity(
        ctx, name_norm, core_norm, candidate_tokens, db_similarity
    )
    fuzzy_accepted = fuzzy_similarity >= ctx.fuzzy_threshold
    signals["fuzzy"] = fuzzy_accepted

    if signals["exact_name"] or signals["exact_alias"]:
        tier = MatchTier.EXACT
    elif signals["prefix_name"] or signals["prefix_alias"]:
        tier = MatchTier.PREFIX
    elif signals["contains_name"] or signals["contains_alias"] or signals["word_start"]:
        tier = MatchTier.CONTAINS
    elif fuzzy_accepted or (
        signals["token_contains"] and fuzzy_similarity >= ctx.fuzzy_threshold - FUZZY_SLACK
    ):
        tier = MatchTier.FUZZY
    else:
        return None

    parent_like = row.parent_like
    city_name = extract_city_name(row.stop_name, row.city_name)
    city_norm = normalize_search_text(city_name)
    city_match = bool(ctx.city_token) and (
        city_norm == ctx.city_token
        or name_norm == ctx.city_token
        or name_norm.startswith(f"{ctx.city_token} ")
    )
    signals["city"] = city_match
    candidate_is_hub = bool(row.has_hub_token) or has_hub_token(name_tokens)

    bonuses: dict[str, int] = {}

    def add(name: str, value: int) -> None:
        if value:
            bonuses[name] = value

    if signals["exact_alias"]:
        add("alias_exact", ALIAS_EXACT_BONUS)
    elif signals["prefix_alias"]:
        add("alias_prefix", ALIAS_PREFIX_BONUS)
    elif signals["contains_alias"]:
        add("alias_contains", ALIAS_CONTAINS_BONUS)

    add("alias_weight", round(min(max(row.alias_weight, 0.0), ALIAS_WEIGHT_CAP) * ALIAS_WEIGHT_FACTOR))
    add("popularity", min(POPULARITY_CAP, round(math.log1p(row.nb_stop_times) * POPULARITY_FACTOR)))

    if city_match:
        add("city", CITY_BONUS)
        if parent_like:
            add("city_parent", CITY_PARENT_BONUS)

    # A bare city query ("zurich") should surface the main station
    if candidate_is_hub and city_match and not ctx.query_has_hub_token:
        add("hub", HUB_BARE_CITY_BONUS)
    elif candidate_is_hub and ctx.query_has_hub_token:
        add("hub", HUB_REQUESTED_BONUS)

    if ctx.has_comma:
        # "City, Venue" almost always targets a specific stop, not the generic parent
        if signals["post_comma_strong"]:
            add("post_comma", POST_COMMA_STRONG_BONUS)
        elif signals["post_comma_prefix"]:
            add("post_comma", POST_COMMA_PREFIX_BONUS)
        else:
            add("post_comma", POST_COMMA_MISS_PENALTY)
        if parent_like:
            add("comma_parent", COMMA_PARENT_PENALTY)
        parent_rank = 0 if parent_like else 1
    elif ctx.is_short_query:
        add("parent", SHORT_QUERY_PARENT_BONUS if parent_like else SHORT_QUERY_CHILD_PENALTY)
        parent_rank = 1 if parent_like else -1
    else:
        add("parent", PARENT_BONUS if parent_like else 0)
        parent_rank = 1 if parent_like else 0

    if signals["token_contains"]:
        add("token_contains", TOKEN_CONTAINS_BONUS)
    if signals["word_start"]:
        add("word_start", WORD_START_BONUS)

    score = tier * TIER_WEIGHT + round(fuzzy_similarity * SIMILARITY_WEIGHT) + sum(bonuses.values())

    return ScoredCandidate(
        row=row,
        name_norm=normalize_search_text(row.stop_name),
        city_name=city_name,
        score=score,
        tier=tier,
        fuzzy_similarity=fuzzy_similarity,
        parent_like=parent_like,
        parent_rank=parent_rank,
        location_rank=LOCATION_TYPE_RANK.get(row.location_type, 0),
        signals=[name for name, fired in signals.items() if fired],
        bonuses=bonuses,
    )


def _coerce_row(row: CandidateRow | Mapping[str, Any]) -> CandidateRow:
    if isinstance(row, CandidateRow):
        return row
    return CandidateRow.from_mapping(row)


def rank_stop_candidates_detailed(
    rows: Iterable[CandidateRow | Mapping[str, Any]] | None,
    query: str | None,
    limit: Any = DEFAULT_LIMIT,
) -> RankingOutcome:
    """Score, group, dedupe and cap candidate rows.

    Grouping keeps the best row per station group (parent id, or the stop's
    own id). Name dedup then keeps the best-ranked row per normalized display
    name. Ordering: score, tier, parent preference, location type,
    popularity, shorter name, name, id.

    Args:
        rows: Candidate rows (CandidateRow or database mappings).
        query: Raw query text; a comma splits "city, venue".
        limit: Maximum results (clamped to 1..50).

    Returns:
        RankingOutcome with StopResult list and the scored candidates behind it.
    """
    ctx = build_query_context(query)
    if ctx is None:
        return RankingOutcome(context=None, stops=[], ranked=[])

    lim = clamp_limit(limit)
    best_by_group: dict[str, ScoredCandidate] = {}
    scored_rows = 0

    for raw_row in rows or []:
        row = _coerce_row(raw_row)
        scored = score_candidate(row, ctx)
        if scored is None:
            continue
        scored_rows += 1
        key = row.group_id or row.stop_id
        previous = best_by_group.get(key)
        if previous is None or scored.sort_key < previous.sort_key:
            best_by_group[key] = scored

    ordered = sorted(best_by_group.values(), key=lambda candidate: candidate.sort_key)

    ranked: list[ScoredCandidate] = []
    seen_names: set[str] = set()
    for candidate in ordered:
        if candidate.name_norm in seen_names:
            continue
        seen_names.add(candidate.name_norm)
        ranked.append(candidate)
        if len(ranked) >= lim:
            break

    stops = [candidate.to_result(rank) for rank, candidate in enumerate(ranked, start=1)]
    return RankingOutcome(context=ctx, stops=stops, ranked=ranked, scored_rows=scored_rows)


def rank_stop_candidates(
    rows: Iterable[CandidateRow | Mapping[str, Any]] | None,
    query: str | None,
    limit: Any = DEFAULT_LIMIT,
) -> list[StopResult]:
    """Rank candidate rows for a query. Pure and deterministic."""
    return rank_stop_candidates_detailed(rows, query, limit).stops
