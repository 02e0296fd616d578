"""Budgeted retrieval cascade: primary indexed query, degraded fallback, alias fallbacks.

Stages run one after the other because each one draws its timeout from the
same call budget. The SQL targets the SQLite store (see data/database.py),
where normalization, stop-word stripping, trigram similarity and accent
folding are registered as SQL functions.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from stop_search.data.config import SearchSettings
from stop_search.data.store import StopStore, run_query
from stop_search.matching.normalizers import token_prefixes, tokenize, trigram_threshold
from stop_search.matching.ranker import CandidateRow
from stop_search.search.budget import Budget
from stop_search.search.capabilities import CapabilitySet, WarningRegistry

logger = logging.getLogger(__name__)

PRIMARY_MIN_TIMEOUT_MS = 80
FALLBACK_MIN_TIMEOUT_MS = 60
ALIAS_MIN_TIMEOUT_MS = 40

# Columns every retrieval query returns, in this order
INDEX_COLUMNS = """
    {t}.group_id,
    {t}.stop_id,
    {t}.stop_name,
    {t}.parent_station,
    {t}.location_type,
    {t}.station_name,
    {t}.city_name,
    {t}.name_norm,
    {t}.name_core,
    {t}.is_parent,
    {t}.has_hub_token,
    {t}.nb_stop_times"""

STOP_COLUMNS = """
    COALESCE(NULLIF(s.parent_station, ''), s.stop_id) AS group_id,
    s.stop_id,
    s.stop_name,
    NULLIF(s.parent_station, '') AS parent_station,
    COALESCE(s.location_type, '') AS location_type,
    COALESCE(p.stop_name, s.stop_name) AS station_name"""

NO_ALIAS_COLUMNS = """
    '' AS aliases_matched,
    0.0 AS alias_weight,
    0.0 AS alias_similarity"""

STOP_ALIAS_SOURCE = """
    SELECT
        stop_id,
        alias_text,
        COALESCE(NULLIF(alias_norm, ''), normalize_stop_search_text(alias_text)) AS alias_norm,
        COALESCE(weight, 1.0) AS weight
    FROM stop_aliases"""

APP_ALIAS_SOURCE = """
    SELECT
        stop_id,
        alias AS alias_text,
        normalize_stop_search_text(alias) AS alias_norm,
        1.0 AS weight
    FROM app_stop_aliases"""

# Separators folded to spaces when the gazetteer is searched without the index
FOLD_SEPARATORS = ("-", "_", ".", "''", ",", "/")

# Accented letters folded by replace() when unaccent is missing (SQLite lower() is ASCII only)
ACCENT_FOLDS = {
    "a": "àáâäãåÀÁÂÄÃÅ",
    "c": "çÇ",
    "e": "èéêëÈÉÊË",
    "i": "ìíîïÌÍÎÏ",
    "n": "ñÑ",
    "o": "òóôöõøÒÓÔÖÕØ",
    "u": "ùúûüÙÚÛÜ",
    "y": "ÿýÝ",
}


def build_primary_sql(capabilities: CapabilitySet) -> str:
    """Indexed query joined with alias hits, ordered by a composite relevance."""
    alias_sources = []
    if capabilities.has_stop_aliases:
        alias_sources.append(STOP_ALIAS_SOURCE)
    if capabilities.has_app_stop_aliases:
        alias_sources.append(APP_ALIAS_SOURCE)

    ctes = [
        """params AS (
    SELECT
        normalize_stop_search_text(unaccent(:q_raw)) AS q_norm,
        strip_stop_search_terms(normalize_stop_search_text(unaccent(:q_raw))) AS q_core,
        :sim AS sim_threshold
)"""
    ]
    if capabilities.has_alias_tables:
        ctes.append("alias_source AS (" + "\n    UNION ALL".join(alias_sources) + "\n)")
        ctes.append(
            """alias_hits AS (
    SELECT
        a.stop_id,
        group_concat(a.alias_text, '|') AS aliases_matched,
        MAX(a.weight) AS alias_weight,
        MAX(similarity(a.alias_norm, p.q_norm)) AS alias_similarity
    FROM alias_source a
    CROSS JOIN params p
    WHERE
        p.q_norm <> ''
        AND (
            a.alias_norm = p.q_norm
            OR a.alias_norm LIKE p.q_norm || '%'
            OR similarity(a.alias_norm, p.q_norm) >= p.sim_threshold
        )
    GROUP BY a.stop_id
)"""
        )
        alias_columns = """
    COALESCE(ahs.aliases_matched, ahg.aliases_matched, '') AS aliases_matched,
    MAX(COALESCE(ahs.alias_weight, 0.0), COALESCE(ahg.alias_weight, 0.0)) AS alias_weight,
    MAX(COALESCE(ahs.alias_similarity, 0.0), COALESCE(ahg.alias_similarity, 0.0)) AS alias_similarity"""
        alias_joins = """
LEFT JOIN alias_hits ahs ON ahs.stop_id = b.stop_id
LEFT JOIN alias_hits ahg ON ahg.stop_id = b.group_id"""
        alias_match = "\n        OR ahs.stop_id IS NOT NULL\n        OR ahg.stop_id IS NOT NULL"
        alias_rank = ",\n        MAX(COALESCE(ahs.alias_similarity, 0.0), COALESCE(ahg.alias_similarity, 0.0))"
    else:
        alias_columns = NO_ALIAS_COLUMNS
        alias_joins = ""
        alias_match = ""
        alias_rank = ""

    with_clause = ",\n".join(ctes)
    return f"""
WITH {with_clause}
SELECT{INDEX_COLUMNS.format(t="b")},{alias_columns},
    similarity(b.name_norm, p.q_norm) AS name_similarity,
    CASE WHEN p.q_core = '' THEN 0.0 ELSE similarity(b.name_core, p.q_core) END AS core_similarity
FROM stop_search_index b
CROSS JOIN params p{alias_joins}
WHERE
    p.q_norm <> ''
    AND (
        b.name_norm = p.q_norm
        OR b.name_norm LIKE p.q_norm || '%'
        OR b.name_norm LIKE '%' || p.q_norm || '%'
        OR similarity(b.name_norm, p.q_norm) >= p.sim_threshold
        OR (
            p.q_core <> ''
            AND (b.name_core LIKE p.q_core || '%' OR similarity(b.name_core, p.q_core) >= p.sim_threshold)
        ){alias_match}
    )
ORDER BY
    MAX(
        CASE WHEN b.name_norm = p.q_norm THEN 1.5 ELSE 0.0 END,
        CASE WHEN b.name_norm LIKE p.q_norm || '%' THEN 1.2 ELSE 0.0 END,
        CASE WHEN p.q_core <> '' AND b.name_core LIKE p.q_core || '%' THEN 1.1 ELSE 0.0 END,
        similarity(b.name_norm, p.q_norm){alias_rank}
    ) DESC,
    b.is_parent DESC,
    b.has_hub_token DESC,
    b.nb_stop_times DESC,
    b.stop_name ASC
LIMIT :lim
"""


def _pattern_clauses(column: str, pattern_count: int) -> str:
    return "".join(f"\n    OR {column} LIKE :p{i}" for i in range(pattern_count))


def live_fold_expression(column: str, capabilities: CapabilitySet) -> str:
    """Inline accent-fold + lowercase + punctuation strip of a raw name column."""
    expression = f"lower({column})"
    if capabilities.has_unaccent:
        expression = f"unaccent({expression})"
    else:
        for plain, accented in ACCENT_FOLDS.items():
            for letter in accented:
                expression = f"replace({expression}, '{letter}', '{plain}')"
    for separator in FOLD_SEPARATORS:
        expression = f"replace({expression}, '{separator}', ' ')"
    return expression


def build_fallback_sql(capabilities: CapabilitySet, pattern_count: int) -> str:
    """Degraded base match: the index without alias joins, or a live fold of the gazetteer.

    Uses trigram similarity when the store has it, otherwise plain prefix,
    substring, token-prefix and first-character matching.
    """
    if capabilities.has_stop_search_index:
        name = "fb.name_norm"
        select = f"SELECT{INDEX_COLUMNS.format(t='fb')},"
        source = "FROM stop_search_index fb"
        parent_order = "fb.is_parent DESC,\n    fb.nb_stop_times DESC,\n    fb.stop_name ASC"
    else:
        name = live_fold_expression("s.stop_name", capabilities)
        select = f"SELECT{STOP_COLUMNS},\n    0 AS nb_stop_times,"
        source = "FROM stops s\nLEFT JOIN stops p ON p.stop_id = s.parent_station"
        parent_order = (
            "(s.parent_station IS NULL OR s.parent_station = '' OR s.location_type = 1) DESC,\n"
            "    s.stop_name ASC"
        )

    if capabilities.has_trigram:
        similarity_column = f"similarity({name}, :q)"
        similarity_match = f"\n    OR similarity({name}, :q) >= :sim"
    else:
        similarity_column = "0.0"
        similarity_match = ""

    return f"""
{select}{NO_ALIAS_COLUMNS},
    {similarity_column} AS name_similarity,
    0.0 AS core_similarity
{source}
WHERE
    {name} LIKE :q || '%'
    OR {name} LIKE '%' || :q || '%'{_pattern_clauses(name, pattern_count)}{similarity_match}
    OR substr({name}, 1, 1) = :first
ORDER BY
    CASE
        WHEN {name} = :q THEN 0
        WHEN {name} LIKE :q || '%' THEN 1
        WHEN {name} LIKE '%' || :q || '%' THEN 2
        WHEN substr({name}, 1, 1) = :first THEN 4
        ELSE 3
    END,
    {parent_order}
LIMIT :lim
"""


def build_stop_alias_fallback_sql(pattern_count: int) -> str:
    return f"""
SELECT{STOP_COLUMNS},
    sa.alias_text AS aliases_matched,
    COALESCE(sa.weight, 1.0) AS alias_weight,
    0.0 AS alias_similarity,
    0.0 AS name_similarity,
    0.0 AS core_similarity,
    0 AS nb_stop_times
FROM stop_aliases sa
JOIN stops s ON s.stop_id = sa.stop_id
LEFT JOIN stops p ON p.stop_id = s.parent_station
WHERE
    lower(sa.alias_text) LIKE '%' || :q || '%'
    OR COALESCE(sa.alias_norm, '') LIKE '%' || :q || '%'{_pattern_clauses("lower(sa.alias_text)", pattern_count)}
LIMIT :lim
"""


def build_app_alias_fallback_sql(pattern_count: int) -> str:
    return f"""
SELECT{STOP_COLUMNS},
    aa.alias AS aliases_matched,
    1.0 AS alias_weight,
    0.0 AS alias_similarity,
    0.0 AS name_similarity,
    0.0 AS core_similarity,
    0 AS nb_stop_times
FROM app_stop_aliases aa
JOIN stops s ON s.stop_id = aa.stop_id
LEFT JOIN stops p ON p.stop_id = s.parent_station
WHERE
    lower(aa.alias) LIKE '%' || :q || '%'{_pattern_clauses("lower(aa.alias)", pattern_count)}
LIMIT :lim
"""


@dataclass
class RetrievalResult:
    """Candidate rows from all stages that ran, plus what happened along the way."""

    rows: list[CandidateRow] = field(default_factory=list)
    raw_rows: int = 0
    stages: list[str] = field(default_factory=list)
    primary_error: Exception | None = None


def _to_candidates(rows: list[Mapping[str, Any]]) -> list[CandidateRow]:
    candidates = []
    for row in rows:
        candidate = CandidateRow.from_mapping(row)
        # Unscorable rows are dropped here rather than in the ranker
        if candidate.stop_id and candidate.stop_name:
            candidates.append(candidate)
    return candidates


class CandidateRetriever:
    """Runs the retrieval cascade against a store under a shared budget.

    Cascade:
    1. Primary indexed query (only when the store supports it)
    2. Degraded base fallback, if the primary is unsupported, failed, timed
       out or returned fewer than min(candidate_limit, limit * 3) rows
    3. Stop-level then app-level alias fallbacks, if those tables exist

    A stage whose budgeted timeout is zero is skipped and contributes no rows.
    """

    def __init__(self, settings: SearchSettings, warnings: WarningRegistry):
        self._settings = settings
        self._warnings = warnings

    async def retrieve(
        self,
        store: StopStore,
        query_raw: str,
        query_norm: str,
        candidate_limit: int,
        limit: int,
        capabilities: CapabilitySet,
        budget: Budget,
    ) -> RetrievalResult:
        """Collect candidate rows for a query.

        Args:
            store: Backing store.
            query_raw: Query as typed (the primary query normalizes it in SQL).
            query_norm: Normalized query.
            candidate_limit: Row limit per query.
            limit: Requested result count.
            capabilities: Store capabilities for this call.
            budget: Budget of the current search call.

        Returns:
            RetrievalResult with rows from every stage that produced any.

        Raises:
            Exception: The fallback failure, only when no stage produced rows.
                Its __cause__ is the primary failure when there was one.
        """
        result = RetrievalResult()
        rows: list[Mapping[str, Any]] = []

        if capabilities.supports_primary:
            rows.extend(
                await self._run_primary(store, query_raw, query_norm, candidate_limit, capabilities, budget, result)
            )
        else:
            result.stages.append("primary:unsupported")

        if result.primary_error is None and len(rows) >= min(candidate_limit, limit * 3):
            result.raw_rows = len(rows)
            result.rows = _to_candidates(rows)
            return result

        patterns = [f"%{prefix}%" for prefix in token_prefixes(tokenize(query_norm))]
        params: dict[str, Any] = {
            "q": query_norm,
            "first": query_norm[:1],
            "sim": trigram_threshold(len(query_norm)),
            "lim": candidate_limit,
        }
        params.update({f"p{i}": pattern for i, pattern in enumerate(patterns)})

        fallback_error: Exception | None = None
        timeout_ms = budget.timeout_for(self._settings.fallback_timeout_ms, FALLBACK_MIN_TIMEOUT_MS)
        stage = "fallback:index" if capabilities.has_stop_search_index else "fallback:live"
        if timeout_ms:
            try:
                rows.extend(
                    await run_query(store, build_fallback_sql(capabilities, len(patterns)), params, timeout_ms)
                )
                result.stages.append(stage)
            except Exception as exc:
                fallback_error = exc
                result.stages.append(f"{stage}:error")
                logger.debug(f"Stop search fallback query failed: {exc}")
        else:
            result.stages.append(f"{stage}:skipped")

        alias_queries = []
        if capabilities.has_stop_aliases:
            alias_queries.append(("alias:stop", build_stop_alias_fallback_sql(len(patterns))))
        if capabilities.has_app_stop_aliases:
            alias_queries.append(("alias:app", build_app_alias_fallback_sql(len(patterns))))

        for alias_stage, sql in alias_queries:
            timeout_ms = budget.timeout_for(self._settings.alias_timeout_ms, ALIAS_MIN_TIMEOUT_MS)
            if not timeout_ms:
                result.stages.append(f"{alias_stage}:skipped")
                continue
            try:
                rows.extend(await run_query(store, sql, params, timeout_ms))
                result.stages.append(alias_stage)
            except Exception as exc:
                # Alias enrichment is best-effort
                result.stages.append(f"{alias_stage}:error")
                logger.debug(f"Stop search {alias_stage} query failed: {exc}")

        candidates = _to_candidates(rows)
        if fallback_error is not None and not candidates:
            if result.primary_error is not None:
                raise fallback_error from result.primary_error
            raise fallback_error

        result.raw_rows = len(rows)
        result.rows = candidates
        return result

    async def _run_primary(
        self,
        store: StopStore,
        query_raw: str,
        query_norm: str,
        candidate_limit: int,
        capabilities: CapabilitySet,
        budget: Budget,
        result: RetrievalResult,
    ) -> list[Mapping[str, Any]]:
        timeout_ms = budget.timeout_for(self._settings.primary_timeout_ms, PRIMARY_MIN_TIMEOUT_MS)
        if not timeout_ms:
            result.stages.append("primary:skipped")
            return []

        params = {
            "q_raw": query_raw,
            "sim": trigram_threshold(len(query_norm)),
            "lim": candidate_limit,
        }
        try:
            rows = await run_query(store, build_primary_sql(capabilities), params, timeout_ms)
        except TimeoutError as exc:
            result.primary_error = exc
            result.stages.append("primary:timeout")
            self._warnings.warn_once(
                "primary:timeout",
                f"Stop search primary query timed out after {timeout_ms}ms, falling back",
                logger,
            )
            return []
        except Exception as exc:
            result.primary_error = exc
            result.stages.append("primary:error")
            self._warnings.warn_once(
                f"primary:{exc}",
                f"Stop search primary query failed ({exc}), falling back",
                logger,
            )
            return []

        result.stages.append("primary")
        return rows
