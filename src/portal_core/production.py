"""
Monthly electricity production data proxy.

Reads hourly settlement records from EnergiDataService, aggregates them per
month and serves the result through the resilient fetch cache. Upstream
failures degrade to a stale copy and finally to an empty dataset, so the
route itself never fails because of the upstream API.
"""

import calendar
import time
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from .audit_logger import AuditLogger
from .config import CacheConfig, DataProxyConfig
from .enums import CacheStatus, LogLevel
from .exceptions import PortalError, UpstreamError, ValidationError
from .fetch_cache import ResilientFetchCache, cache_headers
from .upstream_client import UpstreamClient


PRODUCTION_TYPES = ("wind", "solar", "thermal", "nuclear", "hydro", "all")
DATASET = "ProductionConsumptionSettlement"
SOURCE_LABEL = f"EnergiDataService {DATASET}"
ENDPOINT = "energidata"

# Monthly field -> dataset column (MWh).
PRODUCTION_FIELDS = {
    "windOnshore": "OnshoreWindPowerMWh",
    "windOffshore": "OffshoreWindPowerMWh",
    "solar": "SolarPowerMWh",
    "thermal": "ThermalPowerMWh",
    "nuclear": "NuclearPowerMWh",
    "hydro": "HydroPowerMWh",
    "other": "OtherRenewablePowerMWh",
}

# Fields kept by each production-type filter; "other" is always kept.
TYPE_FIELDS = {
    "wind": ("windOnshore", "windOffshore"),
    "solar": ("solar",),
    "thermal": ("thermal",),
    "nuclear": ("nuclear",),
    "hydro": ("hydro",),
}


def _iso_now(now: float) -> str:
    stamp = datetime.fromtimestamp(now, tz=timezone.utc)
    return stamp.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _number(value: Any) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return 0
    return value


@dataclass
class ProductionQuery:
    """Validated query parameters of the monthly production route."""

    year: Optional[int] = None
    month: Optional[int] = None
    production_type: str = "all"

    @classmethod
    def from_params(
        cls,
        year: Optional[str] = None,
        month: Optional[str] = None,
        production_type: Optional[str] = None,
    ) -> "ProductionQuery":
        """
        Parse raw query-string values.

        Raises:
            ValidationError: If any value is malformed
        """
        errors = []
        parsed_year = parsed_month = None
        if year is not None:
            if len(year) == 4 and year.isdigit() and int(year) > 0:
                parsed_year = int(year)
            else:
                errors.append({"field": "year", "message": "Expected a four digit year"})
        if month is not None:
            if month.isdigit() and 1 <= int(month) <= 12 and len(month) <= 2:
                parsed_month = int(month)
            else:
                errors.append({"field": "month", "message": "Expected a month between 1 and 12"})
        kind = production_type or "all"
        if kind not in PRODUCTION_TYPES:
            errors.append({"field": "productionType", "message": f"Expected one of {', '.join(PRODUCTION_TYPES)}"})

        if errors:
            raise ValidationError(
                code="invalid_parameters",
                message="Invalid parameters",
                details={"errors": errors},
            )
        return cls(year=parsed_year, month=parsed_month, production_type=kind)

    def date_range(self, today: date) -> tuple[date, date]:
        """
        Requested period: one month, one calendar year, or the trailing
        twelve months up to ``today`` when no year is given.
        """
        if self.year and self.month:
            last_day = calendar.monthrange(self.year, self.month)[1]
            return date(self.year, self.month, 1), date(self.year, self.month, last_day)
        if self.year:
            return date(self.year, 1, 1), date(self.year, 12, 31)
        try:
            start = today.replace(year=today.year - 1)
        except ValueError:
            # 29 February
            start = today.replace(year=today.year - 1, day=28)
        return start, today


def aggregate_by_month(records: list[dict]) -> list[dict]:
    """Sum hourly settlement records into per-month totals, oldest first."""
    months: dict[str, dict] = {}
    for record in records:
        if not isinstance(record, dict):
            continue
        try:
            hour = datetime.fromisoformat(str(record.get("HourUTC")).replace("Z", "+00:00"))
        except ValueError:
            continue
        key = f"{hour.year}-{hour.month:02d}"
        month = months.get(key)
        if month is None:
            month = {"month": key}
            month.update({name: 0 for name in PRODUCTION_FIELDS})
            month.update({"totalProduction": 0, "totalConsumption": 0, "netExport": 0, "hours": 0})
            months[key] = month

        for name, column in PRODUCTION_FIELDS.items():
            value = _number(record.get(column))
            month[name] += value
            month["totalProduction"] += value
        month["totalConsumption"] += _number(record.get("GrossConsumptionMWh"))
        # Positive is export, negative is import.
        month["netExport"] += _number(record.get("NetExchangeSumMWh"))
        month["hours"] += 1

    return [months[key] for key in sorted(months)]


def filter_production_type(months: list[dict], production_type: str) -> list[dict]:
    """Zero the production types not selected and recompute the totals."""
    if production_type == "all":
        return months
    keep = set(TYPE_FIELDS[production_type]) | {"other"}
    filtered = []
    for month in months:
        copy = dict(month)
        for name in PRODUCTION_FIELDS:
            if name not in keep:
                copy[name] = 0
        copy["totalProduction"] = sum(copy[name] for name in PRODUCTION_FIELDS)
        filtered.append(copy)
    return filtered


def production_statistics(months: list[dict]) -> dict:
    total_production = sum(m["totalProduction"] for m in months)
    total_consumption = sum(m["totalConsumption"] for m in months)
    wind = sum(m["windOnshore"] + m["windOffshore"] for m in months)
    solar = sum(m["solar"] for m in months)
    renewable = wind + solar + sum(m["hydro"] + m["other"] for m in months)
    return {
        "totalProduction": total_production,
        "totalConsumption": total_consumption,
        "totalWindProduction": wind,
        "totalSolarProduction": solar,
        "totalRenewableProduction": renewable,
        "renewablePercentage": renewable / total_production * 100 if total_production > 0 else 0,
        "selfSufficiency": total_production / total_consumption * 100 if total_consumption > 0 else 0,
        "monthsAnalyzed": len(months),
    }


def process_production_data(records: list[dict], production_type: str, now: float) -> dict:
    """Build the route payload from raw settlement records."""
    months = filter_production_type(aggregate_by_month(records), production_type)
    return {
        "data": months,
        "statistics": production_statistics(months),
        "metadata": {
            "productionType": production_type,
            "startDate": months[0]["month"] if months else None,
            "endDate": months[-1]["month"] if months else None,
            "lastUpdated": _iso_now(now),
            "source": SOURCE_LABEL,
        },
    }


def empty_production_response(now: float) -> dict:
    payload = process_production_data([], "all", now)
    payload["metadata"]["message"] = "No production data available"
    return payload


@dataclass
class ProxyResponse:
    """A data-proxy payload with its cache headers."""

    payload: Any
    cache_status: CacheStatus
    headers: dict[str, str] = field(default_factory=dict)


class MonthlyProductionService:
    """Serves aggregated monthly production through the fetch cache."""

    def __init__(
        self,
        cache: ResilientFetchCache,
        upstream: UpstreamClient,
        config: DataProxyConfig,
        cache_config: CacheConfig,
        logger: Optional[AuditLogger] = None,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        self._cache = cache
        self._upstream = upstream
        self._config = config
        self._cache_config = cache_config
        self._logger = logger
        self._now = now_fn or time.time

    def _headers(self, status: CacheStatus) -> dict[str, str]:
        policy = self._cache_config
        if status is CacheStatus.HIT_STALE:
            headers = cache_headers(policy.stale_max_age_seconds)
        elif status is CacheStatus.MISS_FALLBACK:
            headers = cache_headers(60, 300)
        else:
            headers = cache_headers(policy.kv_ttl_seconds, policy.fallback_ttl_seconds)
        headers["X-Cache"] = status.value
        return headers

    async def fetch_records(self, start: date, end: date) -> list[dict]:
        """
        Fetch hourly settlement records for ``start``..``end``.

        A 400 or 404 from the dataset means "no data" rather than a failure.
        """
        try:
            data = await self._upstream.get_json(
                f"{self._config.energidata_base_url}/dataset/{DATASET}",
                endpoint=ENDPOINT,
                params={"start": start.isoformat(), "end": end.isoformat(), "sort": "HourUTC asc"},
            )
        except UpstreamError as e:
            if e.status_code in (400, 404):
                return []
            raise
        records = data.get("records") if isinstance(data, dict) else None
        return records if isinstance(records, list) else []

    async def get_monthly_production(self, query: ProductionQuery) -> ProxyResponse:
        today = datetime.fromtimestamp(self._now(), tz=timezone.utc).date()
        start, end = query.date_range(today)
        kind = query.production_type
        cache_key = f"production:{kind}:{start.isoformat()}:{end.isoformat()}"
        local_key = f"{kind}_{start.isoformat()}_{end.isoformat()}"
        fallback_key = f"production:{kind}"

        async def produce() -> dict:
            if self._logger:
                self._logger.log(
                    LogLevel.INFO,
                    "monthly_production",
                    "Fetching production data",
                    {"cache_key": cache_key},
                )
            records = await self.fetch_records(start, end)
            return process_production_data(records, kind, self._now())

        try:
            lookup = await self._cache.fetch(
                cache_key,
                produce,
                local_key=local_key,
                fallback_key=fallback_key,
            )
        except PortalError as e:
            if self._logger:
                self._logger.log_error(
                    "monthly_production",
                    "No production data available, serving empty dataset",
                    error=e,
                )
            status = CacheStatus.MISS_FALLBACK
            return ProxyResponse(empty_production_response(self._now()), status, self._headers(status))

        return ProxyResponse(lookup.value, lookup.status, self._headers(lookup.status))
