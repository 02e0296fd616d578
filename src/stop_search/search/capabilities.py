"""Backing-store capability detection, cached process-wide with a TTL."""

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from stop_search.data.cache import TTLCell
from stop_search.data.store import StopStore, run_query
from stop_search.search.budget import Budget

logger = logging.getLogger(__name__)

DEFAULT_CAPABILITY_TTL = 60.0
CAPABILITY_MAX_TIMEOUT_MS = 250
CAPABILITY_MIN_TIMEOUT_MS = 25

CAPABILITY_PROBE_SQL = """
SELECT
    EXISTS(SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'stop_search_index')
        AS has_stop_search_index,
    EXISTS(SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'stop_aliases')
        AS has_stop_aliases,
    EXISTS(SELECT 1 FROM sqlite_master WHERE type = 'table' AND name = 'app_stop_aliases')
        AS has_app_stop_aliases,
    EXISTS(SELECT 1 FROM pragma_function_list WHERE name = 'normalize_stop_search_text')
        AS has_normalize_fn,
    EXISTS(SELECT 1 FROM pragma_function_list WHERE name = 'strip_stop_search_terms')
        AS has_strip_fn,
    EXISTS(SELECT 1 FROM pragma_function_list WHERE name = 'similarity')
        AS has_trigram,
    EXISTS(SELECT 1 FROM pragma_function_list WHERE name = 'unaccent')
        AS has_unaccent
"""


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in ("1", "t", "true")
    return value is True or value == 1


@dataclass(frozen=True)
class CapabilitySet:
    """Which search features the backing store offers."""

    has_stop_search_index: bool = False
    has_stop_aliases: bool = False
    has_app_stop_aliases: bool = False
    has_normalize_fn: bool = False
    has_strip_fn: bool = False
    has_trigram: bool = False
    has_unaccent: bool = False

    @classmethod
    def degraded(cls) -> "CapabilitySet":
        """All features absent."""
        return cls()

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "CapabilitySet":
        return cls(**{f.name: _truthy(row.get(f.name)) for f in fields(cls)})

    @property
    def supports_primary(self) -> bool:
        """The indexed primary query needs the index and every SQL helper function."""
        return (
            self.has_stop_search_index
            and self.has_normalize_fn
            and self.has_strip_fn
            and self.has_trigram
            and self.has_unaccent
        )

    @property
    def has_alias_tables(self) -> bool:
        return self.has_stop_aliases or self.has_app_stop_aliases


class WarningRegistry:
    """Remembers which warnings were already logged so each is logged once."""

    def __init__(self) -> None:
        self._seen: set[str] = set()

    def warn_once(self, key: str, message: str, log: logging.Logger = logger) -> bool:
        """Log message at WARNING the first time key is seen.

        Returns:
            True if the warning was logged, False if it was a repeat.
        """
        if key in self._seen:
            return False
        self._seen.add(key)
        log.warning(message)
        return True

    def seen(self, key: str) -> bool:
        return key in self._seen

    def reset_for_tests(self) -> None:
        self._seen.clear()


class CapabilityDetector:
    """Probes the store once per TTL window and caches the CapabilitySet.

    Usage:
        detector = CapabilityDetector()
        caps = await detector.detect(store, budget)

    Probe failures and timeouts never reach the caller: they yield an
    all-false (fully degraded) set and a warning logged once per reason.
    """

    def __init__(
        self,
        ttl_seconds: float = DEFAULT_CAPABILITY_TTL,
        probe_timeout_ms: int = CAPABILITY_MAX_TIMEOUT_MS,
        warnings: WarningRegistry | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._cache: TTLCell[CapabilitySet] = TTLCell(ttl=ttl_seconds, clock=clock)
        self._probe_timeout_ms = min(probe_timeout_ms, CAPABILITY_MAX_TIMEOUT_MS)
        self.warnings = warnings if warnings is not None else WarningRegistry()

    async def detect(
        self, store: StopStore, budget: Budget, force_refresh: bool = False
    ) -> CapabilitySet:
        """Return the store's capabilities, probing only when the cache is stale.

        Args:
            store: Backing store to probe.
            budget: Budget of the current search call.
            force_refresh: Ignore a fresh cached value.

        Returns:
            The detected CapabilitySet, or an all-false set on failure.
        """
        if not force_refresh:
            cached = self._cache.get()
            if cached is not None:
                return cached

        timeout_ms = budget.timeout_for(self._probe_timeout_ms, CAPABILITY_MIN_TIMEOUT_MS)
        if not timeout_ms:
            # Not cached: the next call with a fresh budget probes again
            logger.debug("Capability probe skipped, search budget exhausted")
            return CapabilitySet.degraded()

        try:
            rows = await run_query(store, CAPABILITY_PROBE_SQL, (), timeout_ms)
        except TimeoutError:
            self.warnings.warn_once(
                "capability_probe:timeout",
                f"Stop search capability probe timed out after {timeout_ms}ms, using degraded search",
            )
            capabilities = CapabilitySet.degraded()
        except Exception as exc:
            self.warnings.warn_once(
                f"capability_probe:{type(exc).__name__}:{exc}",
                f"Stop search capability probe failed ({exc}), using degraded search",
            )
            capabilities = CapabilitySet.degraded()
        else:
            capabilities = CapabilitySet.from_row(rows[0] if rows else {})
            logger.debug(f"Stop search capabilities: {capabilities}")

        self._cache.set(capabilities)
        return capabilities

    def invalidate(self) -> None:
        """Drop the cached capabilities so the next call probes again."""
        self._cache.clear()

    def reset_for_tests(self) -> None:
        self.invalidate()
        self.warnings.reset_for_tests()
