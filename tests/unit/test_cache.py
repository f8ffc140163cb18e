"""Tests for the analysis cache and data-updated notifications."""

from unittest.mock import MagicMock

from src.analysis.cache import AnalysisCache
from src.scraping.notifications import DataUpdateBus, DataUpdated


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class TestAnalysisCache:
    def test_put_get(self) -> None:
        cache = AnalysisCache(ttl_seconds=60)
        cache.put("loc-1", {"adr": 100})
        assert cache.get("loc-1") == {"adr": 100}

    def test_miss(self) -> None:
        assert AnalysisCache(ttl_seconds=60).get("loc-1") is None

    def test_keys_are_separate(self) -> None:
        cache = AnalysisCache(ttl_seconds=60)
        cache.put("loc-1", "a", key="occupancy")
        cache.put("loc-1", "b", key="adr")
        assert cache.get("loc-1", key="occupancy") == "a"
        assert cache.get("loc-1", key="adr") == "b"
        assert cache.get("loc-1") is None

    def test_expiry(self) -> None:
        clock = FakeClock()
        cache = AnalysisCache(ttl_seconds=60, clock=clock)
        cache.put("loc-1", "x")
        clock.now += 59
        assert cache.get("loc-1") == "x"
        clock.now += 1
        assert cache.get("loc-1") is None
        assert len(cache) == 0

    def test_evict_location(self) -> None:
        cache = AnalysisCache(ttl_seconds=60)
        cache.put("loc-1", "a", key="occupancy")
        cache.put("loc-1", "b", key="adr")
        cache.put("loc-2", "c")
        assert cache.evict_location("loc-1") == 2
        assert cache.get("loc-2") == "c"
        assert len(cache) == 1

    def test_evict_unknown_location(self) -> None:
        assert AnalysisCache(ttl_seconds=60).evict_location("loc-1") == 0


class TestDataUpdateBus:
    def test_cache_evicted_on_update(self) -> None:
        cache = AnalysisCache(ttl_seconds=60)
        bus = DataUpdateBus()
        bus.subscribe(cache.on_data_updated)
        cache.put("loc-1", "stale")

        bus.publish(DataUpdated(location_id="loc-1", properties_count=5))

        assert cache.get("loc-1") is None

    def test_all_listeners_called(self) -> None:
        bus = DataUpdateBus()
        first, second = MagicMock(), MagicMock()
        bus.subscribe(first)
        bus.subscribe(second)
        event = DataUpdated(location_id="loc-1", properties_count=0)

        bus.publish(event)

        first.assert_called_once_with(event)
        second.assert_called_once_with(event)

    def test_failing_listener_isolated(self) -> None:
        bus = DataUpdateBus()
        after = MagicMock()
        bus.subscribe(MagicMock(side_effect=RuntimeError("boom")))
        bus.subscribe(after)

        bus.publish(DataUpdated(location_id="loc-1", properties_count=1))

        after.assert_called_once()

    def test_publish_without_listeners(self) -> None:
        DataUpdateBus().publish(DataUpdated(location_id="loc-1", properties_count=1))
