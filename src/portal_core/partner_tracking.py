"""
Partner-side event tracking.

Partners embed a tracking script (or a 1x1 pixel) on their own sites. The
script posts page views and conversions to ``/api/tracking/log``; the pixel
reports the same events through query parameters. Each event is checked
against the partner's configuration and hourly quota, stored for a week,
and counted into ``metrics:daily:{date}:{partnerId}``. Script conversions
reuse the conversion attributor, so a click converts at most once no
matter which channel reported it.
"""

import base64
import json
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlsplit

from .audit_logger import AuditLogger
from .click_ledger import ClickLedger, is_valid_click_id
from .config import TrackingConfig
from .conversions import (
    DAY_MS,
    REASON_OUTSIDE_WINDOW,
    ConversionAttributor,
    utc_date,
)
from .enums import AttributionMethod, ConversionSource, LogLevel, TrackingStatus
from .exceptions import (
    ConflictError,
    ForbiddenError,
    NotFoundError,
    QuotaExceededError,
    StoreError,
    ValidationError,
)
from .kv_store import KeyValueStore
from .models import (
    ClientInfo,
    ConversionOutcome,
    ConversionReport,
    EventSummary,
    PartnerConfig,
    QuotaDecision,
    TrackingEvent,
    VerificationReport,
)


PARTNER_CONFIG_KEY = "partner_config:{}"
EVENT_KEY = "tracking_event:{}:{}:{}"
EVENT_INDEX_KEY = "tracking_events:{}"
METRICS_KEY = "metrics:daily:{}:{}"
QUOTA_KEY = "rate_limit:{}:{}:{}"
FINGERPRINT_KEY = "fingerprint:{}"
UNATTRIBUTED_KEY = "unattributed_conversion:{}:{}:{}"

QUOTA_WINDOW_MS = 60 * 60 * 1000
METRICS_TTL_SECONDS = 30 * 24 * 60 * 60
FINGERPRINT_TTL_SECONDS = 90 * 24 * 60 * 60
UNATTRIBUTED_TTL_SECONDS = 30 * 24 * 60 * 60
EVENT_INDEX_LIMIT = 1000
RECENT_EVENT_LIMIT = 10
ACTIVE_WITHIN_MS = 60 * 60 * 1000
WEEK_DAYS = 7

PARTNER_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{3,50}$")

# 1x1 transparent GIF
PIXEL_GIF = base64.b64decode("R0lGODlhAQABAIAAAAAAAP///yH5BAEAAAAALAAAAAABAAEAAAIBRAA7")
PIXEL_HEADERS = {
    "Cache-Control": "no-store, no-cache, must-revalidate, private",
    "Pragma": "no-cache",
    "Expires": "0",
    "Access-Control-Allow-Origin": "*",
    "Timing-Allow-Origin": "*",
}

MESSAGE_LOGGED = "Event logged successfully"
MESSAGE_CONVERTED = "Conversion tracked successfully"
MESSAGE_UNATTRIBUTED = "Conversion tracked (unattributed)"
MESSAGE_DUPLICATE = "Conversion already tracked for this click_id"
MESSAGE_OUTSIDE_WINDOW = "Conversion outside attribution window"
MESSAGE_UNKNOWN_CLICK = "Click ID not found or expired"
MESSAGE_FAILED = "Failed to process conversion"


def iso_timestamp(timestamp_ms: int) -> str:
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def referer_domain(referer: Optional[str]) -> str:
    """Hostname of a Referer header, or an empty string."""
    if not referer:
        return ""
    try:
        return urlsplit(referer).hostname or ""
    except ValueError:
        return ""


def pixel_payload(params: dict[str, str]) -> dict:
    """
    Event fields carried by a pixel request.

    A ``data`` parameter holding a JSON object wins; otherwise the individual
    ``partner_id``, ``event_type``, ``click_id``, ``url`` and ``ref``
    parameters are used.
    """
    raw = params.get("data")
    if raw:
        try:
            decoded = json.loads(raw)
        except ValueError:
            decoded = None
        if isinstance(decoded, dict):
            return decoded
    return {
        "partner_id": params.get("partner_id"),
        "event_type": params.get("event_type") or "page_view",
        "click_id": params.get("click_id"),
        "page_url": params.get("url"),
        "referrer": params.get("ref"),
    }


class PartnerTracker:
    """
    Ingests partner tracking events and reports on them.

    All keys are namespaced by partner id. Recent events are found through
    the capped list ``tracking_events:{partnerId}`` rather than a key scan.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: ClickLedger,
        attributor: ConversionAttributor,
        config: TrackingConfig,
        logger: Optional[AuditLogger] = None,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Initialize the tracker.

        Args:
            store: Shared key-value store
            ledger: Click ledger for clicks captured on partner sites
            attributor: Conversion attributor shared with the webhook route
            config: Click id prefix, default quota and event retention
            logger: Optional audit logger
            now_fn: Clock returning epoch seconds
        """
        self._store = store
        self._ledger = ledger
        self._attributor = attributor
        self._config = config
        self._logger = logger
        self._now = now_fn or time.time

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "partner_tracking", message, data)

    def _log_error(self, message: str, error: Exception, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log_error("partner_tracking", message, error=error, additional_data=data)

    def client_info(self, ip: str, user_agent: str) -> ClientInfo:
        return ClientInfo(ip=ip, user_agent=user_agent, timestamp=self._now_ms())

    @property
    def event_ttl_seconds(self) -> int:
        return self._config.event_retention_days * 24 * 60 * 60

    async def get_partner_config(self, partner_id: str) -> Optional[PartnerConfig]:
        data = await self._store.get(PARTNER_CONFIG_KEY.format(partner_id))
        if not isinstance(data, dict):
            return None
        return PartnerConfig.from_dict(partner_id, data)

    async def validate_domain(self, partner_id: str, domain: str) -> bool:
        """True only for an active partner whose whitelist admits ``domain``; store errors deny."""
        try:
            config = await self.get_partner_config(partner_id)
        except StoreError as e:
            self._log_error("Partner config lookup failed", e, {"partner_id": partner_id})
            return False
        return config is not None and config.is_active and config.allows_domain(domain)

    async def check_quota(self, partner_id: str, client_ip: str) -> QuotaDecision:
        """
        Count one event against the partner's quota for the current hour.

        Windows are fixed clock hours. If the store fails the event is
        allowed.
        """
        now = self._now_ms()
        window_start = now // QUOTA_WINDOW_MS * QUOTA_WINDOW_MS
        reset_at = window_start + QUOTA_WINDOW_MS
        limit = self._config.partner_hourly_quota

        try:
            config = await self.get_partner_config(partner_id)
            if config is not None and config.rate_limit_per_hour:
                limit = config.rate_limit_per_hour
            key = QUOTA_KEY.format(partner_id, client_ip, window_start)
            used = await self._store.incr(key)
            if used == 1:
                await self._store.expire(key, QUOTA_WINDOW_MS // 1000)
        except StoreError as e:
            self._log_error("Quota check failed, allowing event", e, {"partner_id": partner_id})
            return QuotaDecision(allowed=True, limit=limit, remaining=limit - 1, reset_at=now + QUOTA_WINDOW_MS)

        if used > limit:
            return QuotaDecision(allowed=False, limit=limit, remaining=0, reset_at=reset_at)
        return QuotaDecision(allowed=True, limit=limit, remaining=limit - used, reset_at=reset_at)

    async def store_event(self, event: TrackingEvent) -> bool:
        """
        Persist an event, index it and count a page view for non-conversions.

        Conversions are counted by ``process_conversion`` once accepted.
        Returns False if the store failed.
        """
        now = self._now_ms()
        key = EVENT_KEY.format(event.partner_id, iso_timestamp(now), secrets.token_hex(6))
        index = EVENT_INDEX_KEY.format(event.partner_id)
        try:
            await self._store.set(key, event.to_dict(), ex=self.event_ttl_seconds)
            await self._store.lpush(index, key)
            await self._store.ltrim(index, 0, EVENT_INDEX_LIMIT - 1)
            await self._store.expire(index, self.event_ttl_seconds)
            if event.type != "conversion":
                await self._count(event.partner_id, "page_views")
        except StoreError as e:
            self._log_error("Failed to store tracking event", e, {"partner_id": event.partner_id})
            return False
        return True

    async def _count(self, partner_id: str, field: str, value: Optional[float] = None) -> None:
        key = METRICS_KEY.format(utc_date(self._now_ms()), partner_id)
        await self._store.hincrby(key, field, 1)
        if value:
            await self._store.hincrbyfloat(key, "conversion_value", value)
        await self._store.expire(key, METRICS_TTL_SECONDS)

    async def capture_click(self, event: TrackingEvent, source: str) -> None:
        """
        Record the click an event arrived with, unless it is already known.

        Conversions never create clicks, so a conversion cannot attribute
        itself to an id it just invented.
        """
        click_id = event.click_id
        if event.type == "conversion" or not is_valid_click_id(click_id, self._config.click_id_prefix):
            return
        if await self._ledger.get_click(click_id) is not None:
            return
        await self._ledger.record_click(
            event.partner_id,
            source=source,
            metadata={
                "partner_domain": event.partner_domain,
                "session_id": event.session_id,
                "user_agent": event.client_info.user_agent,
                "ip": event.client_info.ip,
            },
            click_id=click_id,
        )

    async def map_fingerprint(self, event: TrackingEvent) -> None:
        """Remember which click a browser fingerprint first arrived with."""
        fingerprint = event.fingerprint
        if not fingerprint or not (event.click_id or event.session_id):
            return

        key = FINGERPRINT_KEY.format(fingerprint)
        now = self._now_ms()
        existing = await self._store.get(key)
        existing = existing if isinstance(existing, dict) else {}
        views = existing.get("page_views")
        await self._store.set(
            key,
            {
                "partner_id": event.partner_id,
                "click_id": existing.get("click_id") or event.click_id,
                "session_id": event.session_id,
                "first_seen": existing.get("first_seen") or now,
                "last_seen": now,
                "page_views": (views if isinstance(views, int) else 0) + 1,
            },
            ex=FINGERPRINT_TTL_SECONDS,
        )

    async def _resolve_click(self, event: TrackingEvent) -> tuple[Optional[str], AttributionMethod]:
        if event.click_id:
            return event.click_id, AttributionMethod.DIRECT
        if event.fingerprint:
            mapped = await self._store.get(FINGERPRINT_KEY.format(event.fingerprint))
            if isinstance(mapped, dict) and isinstance(mapped.get("click_id"), str) and mapped["click_id"]:
                return mapped["click_id"], AttributionMethod.FINGERPRINT
        return None, AttributionMethod.DIRECT

    async def process_conversion(
        self,
        event: TrackingEvent,
        reported_via: ConversionSource = ConversionSource.UNIVERSAL_SCRIPT,
    ) -> ConversionOutcome:
        """
        Attribute a script or pixel conversion.

        Without a click id (directly or through the fingerprint) the
        conversion is kept as unattributed for a month. Failures are
        reported in the outcome, never raised.
        """
        value = event.conversion_value
        try:
            click_id, method = await self._resolve_click(event)
            if click_id is None:
                key = UNATTRIBUTED_KEY.format(event.partner_id, self._now_ms(), secrets.token_hex(6))
                await self._store.set(key, event.data, ex=UNATTRIBUTED_TTL_SECONDS)
                await self._count(event.partner_id, "conversions", value)
                return ConversionOutcome(success=True, message=MESSAGE_UNATTRIBUTED, attributed=False)

            validation = await self._attributor.validate_click(click_id)
            if not validation.valid:
                message = MESSAGE_OUTSIDE_WINDOW if validation.reason == REASON_OUTSIDE_WINDOW else MESSAGE_UNKNOWN_CLICK
                return ConversionOutcome(success=False, message=message, click_id=click_id)

            metadata = event.data.get("metadata")
            report = ConversionReport(
                click_id=click_id,
                conversion_type=event.data.get("conversion_type"),
                conversion_value=value,
                conversion_currency=event.data.get("conversion_currency"),
                metadata={
                    **(metadata if isinstance(metadata, dict) else {}),
                    "attribution_method": method.value,
                    "partner_domain": event.partner_domain,
                },
            )
            try:
                await self._attributor.store(report, validation.click, reported_via=reported_via)
            except ConflictError:
                return ConversionOutcome(success=False, message=MESSAGE_DUPLICATE, click_id=click_id)

            await self._count(event.partner_id, "conversions", value)
        except StoreError as e:
            self._log_error("Failed to process conversion", e, {"partner_id": event.partner_id})
            return ConversionOutcome(success=False, message=MESSAGE_FAILED)

        attributed = method is AttributionMethod.FINGERPRINT
        self._log(
            LogLevel.INFO,
            "Partner conversion tracked",
            {"partner_id": event.partner_id, "click_id": click_id, "value": value, "method": method.value},
        )
        return ConversionOutcome(
            success=True,
            message=MESSAGE_CONVERTED,
            attributed=attributed,
            click_id=click_id,
            method=method,
        )

    async def log_event(self, payload: Any, client_info: ClientInfo) -> tuple[dict, QuotaDecision]:
        """
        Handle one ``/api/tracking/log`` event.

        Returns:
            The response body and the quota decision for the rate-limit headers

        Raises:
            ValidationError: Missing partner_id, type or data (400)
            ForbiddenError: Unknown or inactive partner, or domain not whitelisted (403)
            QuotaExceededError: Hourly quota used up (429)
        """
        event = TrackingEvent.from_payload(payload, client_info)

        if not await self.validate_domain(event.partner_id, event.partner_domain):
            self._log(
                LogLevel.WARN,
                "Rejected event from unauthorized domain",
                {"partner_id": event.partner_id, "partner_domain": event.partner_domain},
            )
            raise ForbiddenError(code="domain_not_authorized", message="Partner domain not authorized")

        quota = await self.check_quota(event.partner_id, client_info.ip)
        if not quota.allowed:
            raise QuotaExceededError(
                code="rate_limit_exceeded",
                message="Rate limit exceeded",
                headers=quota.headers,
                details={"reset_time": quota.reset_at},
            )

        await self.store_event(event)
        try:
            await self.capture_click(event, source="universal_script")
            await self.map_fingerprint(event)
        except StoreError as e:
            self._log_error("Click capture failed", e, {"partner_id": event.partner_id})

        body = {
            "success": True,
            "message": MESSAGE_LOGGED,
            "timestamp": iso_timestamp(self._now_ms()),
        }
        if event.type == "conversion":
            body.update((await self.process_conversion(event)).to_dict())
        return body, quota

    async def track_pixel(
        self,
        params: dict,
        referer: Optional[str],
        client_ip: str,
        user_agent: str,
    ) -> None:
        """
        Record a pixel hit. Runs after the GIF is sent; never raises.

        Hits from a domain the partner has not whitelisted are dropped
        silently.
        """
        try:
            await self._track_pixel(params, referer, client_ip, user_agent)
        except Exception as e:
            self._log_error("Pixel tracking failed", e)

    async def _track_pixel(self, params: dict, referer: Optional[str], client_ip: str, user_agent: str) -> None:
        partner_id = params.get("partner_id")
        if not isinstance(partner_id, str) or not partner_id:
            return

        domain = referer_domain(referer)
        if not await self.validate_domain(partner_id, domain):
            self._log(LogLevel.DEBUG, "Dropped pixel hit", {"partner_id": partner_id, "domain": domain})
            return
        if not (await self.check_quota(partner_id, client_ip)).allowed:
            self._log(LogLevel.DEBUG, "Dropped pixel hit over quota", {"partner_id": partner_id})
            return

        now = self._now_ms()
        event_type = params.get("event_type") if isinstance(params.get("event_type"), str) else None
        data = {
            "click_id": params.get("click_id"),
            "session_id": params.get("session_id"),
            "page_url": params.get("page_url") or referer,
            "timestamp": params.get("timestamp") or now,
            "event_type": event_type,
        }
        for name in ("fingerprint", "conversion_value", "conversion_type", "conversion_currency", "metadata"):
            if params.get(name) is not None:
                data[name] = params[name]

        event = TrackingEvent(
            type=event_type or "track",
            partner_id=partner_id,
            partner_domain=domain or "unknown",
            data=data,
            client_info=ClientInfo(ip=client_ip, user_agent=user_agent or "unknown", timestamp=now),
        )
        await self.store_event(event)
        if event.type == "landing":
            await self.capture_click(event, source="pixel_tracking")
        elif event.type == "conversion":
            await self.process_conversion(event, reported_via=ConversionSource.PIXEL)

    async def recent_events(self, partner_id: str, limit: int = RECENT_EVENT_LIMIT) -> list[EventSummary]:
        """Newest first; index entries whose event has expired are skipped."""
        now = self._now_ms()
        keys = await self._store.lrange(EVENT_INDEX_KEY.format(partner_id), 0, limit - 1)
        events = []
        for key in keys:
            stored = await self._store.get(key)
            if isinstance(stored, dict):
                events.append(EventSummary.from_stored(stored, now))
        return events

    async def event_counts(self, partner_id: str) -> tuple[int, int]:
        """Page views plus conversions for today and for the last seven days."""
        now = self._now_ms()
        daily = []
        for days_ago in range(WEEK_DAYS):
            metrics = await self._store.hgetall(METRICS_KEY.format(utc_date(now - days_ago * DAY_MS), partner_id))
            daily.append(_metric(metrics, "page_views") + _metric(metrics, "conversions"))
        return daily[0], sum(daily)

    async def verify(self, partner_id: Any, include_debug: bool = False) -> VerificationReport:
        """
        Build the verification read-out for a partner.

        Raises:
            ValidationError: Missing or malformed partner_id (400)
            NotFoundError: No configuration stored for the partner (404)
            StoreError: If the store fails
        """
        if not isinstance(partner_id, str) or not partner_id:
            raise ValidationError(
                code="missing_partner_id",
                message="Please provide partner_id as query parameter or in request body",
            )
        if not PARTNER_ID_PATTERN.match(partner_id):
            raise ValidationError(
                code="invalid_partner_id",
                message="Partner ID must be 3-50 characters, alphanumeric with hyphens and underscores",
            )

        config = await self.get_partner_config(partner_id)
        if config is None:
            raise NotFoundError(
                code="partner_not_found",
                message=f"No configuration found for partner_id: {partner_id}",
                details={"help": "Please ensure your partner account is properly configured"},
            )

        events = await self.recent_events(partner_id)
        today, week = await self.event_counts(partner_id)

        status = TrackingStatus.NO_DATA
        last_event_time = None
        if events:
            last_event_time = iso_timestamp(events[0].timestamp)
            recent = events[0].timestamp > self._now_ms() - ACTIVE_WITHIN_MS
            status = TrackingStatus.ACTIVE if recent else TrackingStatus.INACTIVE

        if not config.is_active:
            message = "Partner account is not active. Please contact support to activate your account."
        elif status is TrackingStatus.NO_DATA:
            message = "No tracking data found. Please ensure the tracking script is installed on your website."
        elif status is TrackingStatus.INACTIVE:
            message = f"Tracking was last active {last_event_time}. No recent events detected."
        else:
            message = "Tracking is active and working correctly!"

        debug = None
        if include_debug:
            debug = {
                "config_status": config.status,
                "config_tier": config.tier,
                "domain_whitelist": config.domain_whitelist,
                "tracking_endpoint": config.tracking_endpoint,
            }

        return VerificationReport(
            partner_id=partner_id,
            is_active=config.is_active,
            tracking_status=status,
            recent_events=events,
            total_events_today=today,
            total_events_week=week,
            message=message,
            last_event_time=last_event_time,
            debug=debug,
        )


def _metric(metrics: dict, field: str) -> int:
    try:
        return int(float(metrics.get(field) or 0))
    except ValueError:
        return 0
