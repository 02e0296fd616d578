"""Stop search orchestration: capabilities, budgeted retrieval, ranking and backoff."""

import logging
import time
from collections.abc import Callable
from functools import lru_cache
from typing import Any

from stop_search.data.config import SearchSettings, get_search_settings
from stop_search.data.store import StopStore
from stop_search.matching.models import StopResult, StopSearchDebug, StopSearchResponse
from stop_search.matching.normalizers import MIN_QUERY_LEN, normalize_search_text, strip_stop_words
from stop_search.matching.ranker import (
    DEFAULT_LIMIT,
    RankingOutcome,
    candidate_limit_for,
    clamp_limit,
    rank_stop_candidates_detailed,
)
from stop_search.search.budget import Budget
from stop_search.search.capabilities import CapabilityDetector, WarningRegistry
from stop_search.search.retriever import CandidateRetriever, RetrievalResult

logger = logging.getLogger(__name__)

DEBUG_TOP = 10


class StopSearchError(Exception):
    """Base error of the stop search package."""


class QueryTooShortError(StopSearchError, ValueError):
    """Query normalizes to fewer than MIN_QUERY_LEN characters."""

    def __init__(self, query: str):
        self.query = query
        super().__init__(
            f"Query {query!r} is too short: at least {MIN_QUERY_LEN} letters or digits are required"
        )


def shortened_query(query_norm: str) -> str | None:
    """Query with its last character dropped, or None if too short to shorten."""
    if len(query_norm) < MIN_QUERY_LEN + 1:
        return None
    shortened = query_norm[:-1].strip()
    if len(shortened) < MIN_QUERY_LEN:
        return None
    return shortened


class StopSearchEngine:
    """Runs stop searches against any StopStore.

    Owns the capability cache and the warn-once registry, so separate engine
    instances (e.g. one per test) never share state.

    Usage:
        engine = StopSearchEngine()
        stops = await engine.search_stops(store, "Zürich HB", limit=5)
    """

    def __init__(
        self,
        settings: SearchSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings if settings is not None else get_search_settings()
        self._clock = clock
        self.warnings = WarningRegistry()
        self.capabilities = CapabilityDetector(
            ttl_seconds=self.settings.capability_ttl_seconds,
            probe_timeout_ms=self.settings.capability_timeout_ms,
            warnings=self.warnings,
            clock=clock,
        )
        self._retriever = CandidateRetriever(self.settings, self.warnings)

    async def search_stops(
        self,
        store: StopStore,
        query: str | None,
        limit: Any = DEFAULT_LIMIT,
        backoff: bool = True,
    ) -> list[StopResult]:
        """Ranked stops for a free-text query.

        Args:
            store: Backing store.
            query: Free-text query; "City, Venue" targets a specific stop.
            limit: Maximum results (clamped to 1..50).
            backoff: Retry once with the last character dropped when nothing matches.

        Returns:
            Ranked StopResult list, empty if the query normalizes below 2 characters.

        Raises:
            Exception: Only when the fallback retrieval failed and no stage
                produced a single candidate row.
        """
        response = await self.search_stops_with_debug(store, query, limit, backoff)
        return response.stops

    async def search_stops_with_debug(
        self,
        store: StopStore,
        query: str | None,
        limit: Any = DEFAULT_LIMIT,
        backoff: bool = True,
    ) -> StopSearchResponse:
        """Same ranking as search_stops, plus introspection data."""
        raw = (query or "").strip()
        lim = clamp_limit(limit)
        query_norm = normalize_search_text(raw)
        candidate_limit = candidate_limit_for(lim)

        debug = StopSearchDebug(
            query=raw,
            query_norm=query_norm,
            query_core=strip_stop_words(query_norm),
            candidate_limit=candidate_limit,
            raw_rows=0,
            stages=[],
            ranked_top=[],
        )
        if len(query_norm) < MIN_QUERY_LEN:
            return StopSearchResponse(stops=[], debug=debug)

        budget = Budget.create(self.settings.budget_ms, self._clock)

        outcome, retrieval = await self._search_once(store, raw, query_norm, lim, candidate_limit, budget)
        self._record(debug, retrieval)

        if not outcome.stops and backoff:
            backoff_query = shortened_query(query_norm)
            if backoff_query is not None:
                logger.debug(f"No stops for {query_norm!r}, retrying with {backoff_query!r}")
                debug.backoff_query = backoff_query
                outcome, retrieval = await self._search_once(
                    store, backoff_query, backoff_query, lim, candidate_limit, budget
                )
                self._record(debug, retrieval, prefix="backoff:")

        debug.ranked_top = outcome.breakdown(DEBUG_TOP)
        return StopSearchResponse(stops=outcome.stops, debug=debug)

    async def _search_once(
        self,
        store: StopStore,
        query_raw: str,
        query_norm: str,
        limit: int,
        candidate_limit: int,
        budget: Budget,
    ) -> tuple[RankingOutcome, RetrievalResult]:
        capabilities = await self.capabilities.detect(store, budget)
        retrieval = await self._retriever.retrieve(
            store,
            query_raw=query_raw,
            query_norm=query_norm,
            candidate_limit=candidate_limit,
            limit=limit,
            capabilities=capabilities,
            budget=budget,
        )
        outcome = rank_stop_candidates_detailed(retrieval.rows, query_raw, limit)
        return outcome, retrieval

    @staticmethod
    def _record(debug: StopSearchDebug, retrieval: RetrievalResult, prefix: str = "") -> None:
        debug.raw_rows += retrieval.raw_rows
        debug.stages.extend(f"{prefix}{stage}" for stage in retrieval.stages)
        if retrieval.primary_error is not None and debug.primary_error is None:
            debug.primary_error = f"{type(retrieval.primary_error).__name__}: {retrieval.primary_error}"

    def reset_for_tests(self) -> None:
        """Forget cached capabilities and already-logged warnings."""
        self.capabilities.reset_for_tests()


@lru_cache
def get_default_engine() -> StopSearchEngine:
    """Get the process-wide engine (cached singleton)."""
    return StopSearchEngine()


async def search_stops(
    store: StopStore, query: str | None, limit: Any = DEFAULT_LIMIT
) -> list[StopResult]:
    """Ranked stops for a query, using the process-wide engine."""
    return await get_default_engine().search_stops(store, query, limit)


async def search_stops_with_debug(
    store: StopStore, query: str | None, limit: Any = DEFAULT_LIMIT
) -> StopSearchResponse:
    """Ranked stops plus introspection data, using the process-wide engine."""
    return await get_default_engine().search_stops_with_debug(store, query, limit)


def reset_for_tests() -> None:
    """Drop the process-wide engine so the next call builds a fresh one."""
    get_default_engine.cache_clear()
