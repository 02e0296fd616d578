"""Tests for capability detection and the warn-once registry."""

import logging

import pytest
from conftest import ALL_CAPABILITIES, FakeClock, FakeStore

from stop_search.search.budget import Budget
from stop_search.search.capabilities import CapabilityDetector, CapabilitySet, WarningRegistry


@pytest.fixture
def detector(clock: FakeClock) -> CapabilityDetector:
    return CapabilityDetector(ttl_seconds=60, clock=clock)


class TestCapabilitySet:
    """Tests for CapabilitySet."""

    def test_degraded_is_all_false(self) -> None:
        caps = CapabilitySet.degraded()
        assert not caps.supports_primary
        assert not caps.has_alias_tables
        assert not caps.has_trigram

    def test_from_row_accepts_sql_truthiness(self) -> None:
        caps = CapabilitySet.from_row({**ALL_CAPABILITIES, "has_trigram": "t", "has_unaccent": True})
        assert caps.supports_primary
        assert caps.has_alias_tables

    def test_primary_needs_every_function(self) -> None:
        caps = CapabilitySet.from_row({**ALL_CAPABILITIES, "has_unaccent": 0})
        assert not caps.supports_primary

    def test_primary_does_not_need_alias_tables(self) -> None:
        caps = CapabilitySet.from_row({**ALL_CAPABILITIES, "has_stop_aliases": 0, "has_app_stop_aliases": 0})
        assert caps.supports_primary
        assert not caps.has_alias_tables


class TestWarningRegistry:
    """Tests for WarningRegistry."""

    def test_warns_once_per_key(self, caplog: pytest.LogCaptureFixture) -> None:
        registry = WarningRegistry()
        with caplog.at_level(logging.WARNING):
            assert registry.warn_once("probe:timeout", "probe timed out")
            assert not registry.warn_once("probe:timeout", "probe timed out")
            assert registry.warn_once("probe:error", "probe failed")
        assert [r.message for r in caplog.records] == ["probe timed out", "probe failed"]

    def test_reset_for_tests(self) -> None:
        registry = WarningRegistry()
        registry.warn_once("key", "message")
        registry.reset_for_tests()
        assert not registry.seen("key")


class TestCapabilityDetector:
    """Tests for CapabilityDetector."""

    async def test_detects_and_caches(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore()
        budget = Budget.create(1800, clock)

        first = await detector.detect(store, budget)
        second = await detector.detect(store, budget)

        assert first.supports_primary
        assert first is second
        assert store.calls == ["probe"]

    async def test_refreshes_after_ttl(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore()
        await detector.detect(store, Budget.create(1800, clock))

        clock.advance_ms(60_000)
        await detector.detect(store, Budget.create(1800, clock))

        assert store.calls == ["probe", "probe"]

    async def test_force_refresh(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore()
        await detector.detect(store, Budget.create(1800, clock))
        await detector.detect(store, Budget.create(1800, clock), force_refresh=True)
        assert store.calls == ["probe", "probe"]

    async def test_invalidate(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore()
        await detector.detect(store, Budget.create(1800, clock))
        detector.invalidate()
        await detector.detect(store, Budget.create(1800, clock))
        assert store.calls == ["probe", "probe"]

    async def test_probe_failure_degrades_and_warns_once(
        self, detector: CapabilityDetector, clock: FakeClock, caplog: pytest.LogCaptureFixture
    ) -> None:
        store = FakeStore(errors={"probe": RuntimeError("no such table: pragma_function_list")})

        with caplog.at_level(logging.WARNING):
            caps = await detector.detect(store, Budget.create(1800, clock))
            detector.invalidate()
            again = await detector.detect(store, Budget.create(1800, clock))

        assert caps == CapabilitySet.degraded()
        assert again == CapabilitySet.degraded()
        assert store.calls == ["probe", "probe"]
        assert len([r for r in caplog.records if "capability probe failed" in r.message]) == 1

    async def test_probe_failure_is_cached(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore(errors={"probe": RuntimeError("boom")})
        await detector.detect(store, Budget.create(1800, clock))
        await detector.detect(store, Budget.create(1800, clock))
        assert store.calls == ["probe"]

    async def test_probe_timeout_degrades(self, detector: CapabilityDetector, clock: FakeClock) -> None:
        store = FakeStore(errors={"probe": TimeoutError()})
        caps = await detector.detect(store, Budget.create(1800, clock))
        assert caps == CapabilitySet.degraded()
        assert detector.warnings.seen("capability_probe:timeout")

    async def test_exhausted_budget_skips_probe_without_caching(
        self, detector: CapabilityDetector, clock: FakeClock
    ) -> None:
        store = FakeStore()
        budget = Budget.create(300, clock)
        clock.advance_ms(290)

        caps = await detector.detect(store, budget)

        assert caps == CapabilitySet.degraded()
        assert store.calls == []
        assert (await detector.detect(store, Budget.create(1800, clock))).supports_primary

    async def test_probe_timeout_is_bounded(self, clock: FakeClock) -> None:
        calls: list[int] = []

        class TimedStore(FakeStore):
            async def query_with_timeout(self, sql, params, timeout_ms):
                calls.append(timeout_ms)
                return await self.query(sql, params)

        detector = CapabilityDetector(probe_timeout_ms=5000, clock=clock)
        await detector.detect(TimedStore(), Budget.create(1800, clock))
        assert calls == [250]

    async def test_separate_detectors_do_not_share_cache(self, clock: FakeClock) -> None:
        store = FakeStore()
        await CapabilityDetector(clock=clock).detect(store, Budget.create(1800, clock))
        await CapabilityDetector(clock=clock).detect(store, Budget.create(1800, clock))
        assert store.calls == ["probe", "probe"]
