"""
Property-based tests for the monthly production data proxy.

Uses Hypothesis for property-based testing to verify date ranges, monthly
aggregation and the cache status reported for each response.
"""

import asyncio
from datetime import date, datetime, timezone

import httpx
import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from portal_core.config import CacheConfig, DataProxyConfig, RateLimitConfig, RetryConfig
from portal_core.enums import CacheStatus
from portal_core.exceptions import ValidationError
from portal_core.fetch_cache import ResilientFetchCache
from portal_core.kv_store import MemoryKeyValueStore
from portal_core.production import (
    PRODUCTION_FIELDS,
    MonthlyProductionService,
    ProductionQuery,
    aggregate_by_month,
    filter_production_type,
    process_production_data,
    production_statistics,
)
from portal_core.rate_limiter import RateLimiter
from portal_core.retry_manager import RetryManager
from portal_core.upstream_client import UpstreamClient


NOW = datetime(2025, 3, 15, 12, 0, tzinfo=timezone.utc).timestamp()


async def no_sleep(delay: float) -> None:
    return None


def hour(stamp: str, **values) -> dict:
    record = {"HourUTC": stamp}
    record.update(values)
    return record


def make_service(handler, store=None):
    store = store or MemoryKeyValueStore(now_fn=lambda: NOW)
    upstream = UpstreamClient(
        RateLimiter(RateLimitConfig(), time_func=lambda: 0.0),
        RetryManager(RetryConfig(), sleep_func=no_sleep),
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    cache_config = CacheConfig(dedup_linger_seconds=0)
    cache = ResilientFetchCache(store, cache_config)
    service = MonthlyProductionService(cache, upstream, DataProxyConfig(), cache_config, now_fn=lambda: NOW)
    return service, store, upstream


class TestProductionQueryProperty:
    """
    Property-based tests for query parsing.

    **Property 26: A month query covers exactly that calendar month**
    """

    @given(year=st.integers(min_value=1000, max_value=9998), month=st.integers(min_value=1, max_value=12))
    @settings(max_examples=100)
    def test_month_range(self, year: int, month: int) -> None:
        query = ProductionQuery.from_params(str(year), str(month))
        start, end = query.date_range(date(2025, 3, 15))
        assert start == date(year, month, 1)
        assert end.month == month and end.year == year
        assert (end.replace(day=28) - start).days >= 27
        next_day = date.fromordinal(end.toordinal() + 1)
        assert next_day.day == 1

    def test_year_range(self) -> None:
        start, end = ProductionQuery.from_params("2023").date_range(date(2025, 3, 15))
        assert (start, end) == (date(2023, 1, 1), date(2023, 12, 31))

    def test_trailing_year(self) -> None:
        query = ProductionQuery.from_params()
        assert query.date_range(date(2025, 3, 15)) == (date(2024, 3, 15), date(2025, 3, 15))
        assert query.date_range(date(2024, 2, 29)) == (date(2023, 2, 28), date(2024, 2, 29))

    @pytest.mark.parametrize("year,month,kind", [
        ("20", None, None),
        ("abcd", None, None),
        ("2024", "13", None),
        ("2024", "0", None),
        (None, None, "coal"),
    ])
    def test_invalid_parameters(self, year, month, kind) -> None:
        with pytest.raises(ValidationError) as info:
            ProductionQuery.from_params(year, month, kind)
        assert info.value.code == "invalid_parameters"
        assert info.value.details["errors"]


class TestAggregationProperty:
    """
    Property-based tests for monthly aggregation.

    **Property 27: Monthly totals equal the sum of the hourly records**
    """

    @given(values=st.lists(st.integers(min_value=0, max_value=1000), min_size=1, max_size=48))
    @settings(max_examples=100)
    def test_totals_match_hours(self, values: list) -> None:
        records = [
            hour(f"2024-05-{1 + i // 24:02d}T{i % 24:02d}:00:00", SolarPowerMWh=v, GrossConsumptionMWh=2 * v)
            for i, v in enumerate(values)
        ]
        months = aggregate_by_month(records)
        assert len(months) == 1
        assert months[0]["month"] == "2024-05"
        assert months[0]["solar"] == sum(values)
        assert months[0]["totalProduction"] == sum(values)
        assert months[0]["totalConsumption"] == 2 * sum(values)
        assert months[0]["hours"] == len(values)

    def test_months_are_sorted_and_bad_records_skipped(self) -> None:
        months = aggregate_by_month([
            hour("2024-06-01T00:00:00", OnshoreWindPowerMWh=5),
            hour("not a date", OnshoreWindPowerMWh=100),
            "junk",
            hour("2024-05-31T23:00:00Z", OnshoreWindPowerMWh=1, NetExchangeSumMWh=-3),
        ])
        assert [m["month"] for m in months] == ["2024-05", "2024-06"]
        assert months[0]["netExport"] == -3

    def test_filter_keeps_selected_type_and_other(self) -> None:
        months = aggregate_by_month([
            hour("2024-05-01T00:00:00", OnshoreWindPowerMWh=1, OffshoreWindPowerMWh=2,
                 SolarPowerMWh=4, OtherRenewablePowerMWh=8),
        ])
        wind = filter_production_type(months, "wind")[0]
        assert (wind["windOnshore"], wind["windOffshore"], wind["solar"], wind["other"]) == (1, 2, 0, 8)
        assert wind["totalProduction"] == 11
        assert filter_production_type(months, "all") == months

    def test_statistics(self) -> None:
        months = aggregate_by_month([
            hour("2024-05-01T00:00:00", OnshoreWindPowerMWh=30, SolarPowerMWh=10,
                 ThermalPowerMWh=60, GrossConsumptionMWh=200),
        ])
        stats = production_statistics(months)
        assert stats["totalWindProduction"] == 30
        assert stats["renewablePercentage"] == pytest.approx(40.0)
        assert stats["selfSufficiency"] == pytest.approx(50.0)
        assert stats["monthsAnalyzed"] == 1
        assert production_statistics([])["renewablePercentage"] == 0

    def test_payload_metadata(self) -> None:
        payload = process_production_data([hour("2024-05-01T00:00:00", SolarPowerMWh=1)], "solar", NOW)
        assert payload["metadata"]["startDate"] == "2024-05"
        assert payload["metadata"]["lastUpdated"] == "2025-03-15T12:00:00.000Z"
        assert set(payload["data"][0]) >= set(PRODUCTION_FIELDS)


class TestCacheStatusProperty:
    """
    Property-based tests for the production route's cache behaviour.

    **Property 28: The route degrades to stale data and then to an empty dataset**
    """

    def test_miss_then_hit(self) -> None:
        calls = []

        def handler(request: httpx.Request) -> httpx.Response:
            calls.append(request)
            return httpx.Response(200, json={"records": [hour("2024-05-01T00:00:00", SolarPowerMWh=3)]})

        service, _, upstream = make_service(handler)
        query = ProductionQuery.from_params("2024", "5")

        async def run():
            try:
                first = await service.get_monthly_production(query)
                second = await service.get_monthly_production(query)
            finally:
                await upstream._client.aclose()
            return first, second

        first, second = asyncio.run(run())
        assert first.cache_status is CacheStatus.MISS
        assert second.cache_status is CacheStatus.HIT_KV
        assert first.headers["X-Cache"] == "MISS"
        assert first.headers["Cache-Control"] == "public, s-maxage=86400, stale-while-revalidate=172800"
        assert second.payload == first.payload
        assert len(calls) == 1
        assert calls[0].url.params["start"] == "2024-05-01"
        assert calls[0].url.params["end"] == "2024-05-31"

    def test_upstream_404_is_empty_data(self) -> None:
        service, _, upstream = make_service(lambda request: httpx.Response(404))

        async def run():
            try:
                return await service.get_monthly_production(ProductionQuery.from_params("2024"))
            finally:
                await upstream._client.aclose()

        response = asyncio.run(run())
        assert response.cache_status is CacheStatus.MISS
        assert response.payload["data"] == []

    def test_failure_serves_stale_copy(self) -> None:
        store = MemoryKeyValueStore(now_fn=lambda: NOW)
        service, _, upstream = make_service(lambda request: httpx.Response(500), store=store)

        async def run():
            await store.set("production:all", {"data": ["old"]})
            try:
                return await service.get_monthly_production(ProductionQuery.from_params("2024"))
            finally:
                await upstream._client.aclose()

        response = asyncio.run(run())
        assert response.cache_status is CacheStatus.HIT_STALE
        assert response.payload == {"data": ["old"]}
        assert response.headers["Cache-Control"] == "public, s-maxage=3600"

    def test_failure_without_stale_copy_is_empty_fallback(self) -> None:
        service, _, upstream = make_service(lambda request: httpx.Response(500))

        async def run():
            try:
                return await service.get_monthly_production(ProductionQuery.from_params())
            finally:
                await upstream._client.aclose()

        response = asyncio.run(run())
        assert response.cache_status is CacheStatus.MISS_FALLBACK
        assert response.headers["X-Cache"] == "MISS-FALLBACK"
        assert response.headers["Cache-Control"] == "public, s-maxage=60, stale-while-revalidate=300"
        assert response.payload["data"] == []
        assert response.payload["metadata"]["message"] == "No production data available"
