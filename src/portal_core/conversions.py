"""
Conversion attribution for partner-reported sales.

A partner reports a conversion with the click id it received on the
outbound link. The report is accepted only if the click exists, lies inside
the attribution window and has not been converted before; acceptance writes
the durable conversion record plus daily projections for batch processing.
"""

import hmac
import json
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

from .audit_logger import AuditLogger
from .click_ledger import ClickLedger, is_valid_click_id
from .config import TrackingConfig
from .enums import ConversionSource, ConversionStatus, LogLevel
from .exceptions import (
    AuthenticationError,
    ConfigurationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from .kv_store import KeyValueStore
from .models import ClickRecord, ClickValidation, ConversionRecord, ConversionReport


CONVERSION_KEY = "conversion:{}"
DAILY_COUNT_KEY = "conversions:daily:{}:{}"
DAILY_REVENUE_KEY = "revenue:daily:{}:{}"
QUEUE_KEY = "conversion_queue:{}"

REASON_NOT_FOUND = "Click ID not found"
REASON_OUTSIDE_WINDOW = "Outside attribution window"
REASON_BAD_FORMAT = "Invalid click ID format"

DAY_MS = 24 * 60 * 60 * 1000


def conversion_key(click_id: str) -> str:
    return CONVERSION_KEY.format(click_id)


def utc_date(timestamp_ms: int) -> str:
    """YYYY-MM-DD of an epoch-ms instant in UTC, as used by the daily keys."""
    return datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc).strftime("%Y-%m-%d")


def within_window(elapsed_ms: int, window_days: int) -> bool:
    """Exactly ``window_days`` old is still inside; one millisecond more is not."""
    return not elapsed_ms > window_days * DAY_MS


class ConversionAttributor:
    """
    Validates and records conversions exactly once per click.

    The duplicate guard is an atomic set-if-absent on ``conversion:{id}``;
    daily aggregates are only written by the caller that won that write.
    """

    def __init__(
        self,
        store: KeyValueStore,
        ledger: ClickLedger,
        config: TrackingConfig,
        logger: Optional[AuditLogger] = None,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Initialize the attributor.

        Args:
            store: Shared key-value store
            ledger: Click ledger used to look clicks up
            config: Attribution window and webhook secret
            logger: Optional audit logger
            now_fn: Clock returning epoch seconds
        """
        self._store = store
        self._ledger = ledger
        self._config = config
        self._logger = logger
        self._now = now_fn or time.time

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "conversions", message, data)

    def authenticate(self, provided_secret: Optional[str]) -> bool:
        """
        Compare the webhook secret in constant time.

        Raises:
            ConfigurationError: If no webhook secret is configured
        """
        expected = self._config.webhook_secret
        if not expected:
            raise ConfigurationError(
                code="missing_webhook_secret",
                message="CONVERSION_WEBHOOK_SECRET is not set",
            )
        if not provided_secret:
            return False
        return hmac.compare_digest(provided_secret.encode("utf-8"), expected.encode("utf-8"))

    async def validate_click(self, click_id: str) -> ClickValidation:
        if not is_valid_click_id(click_id, self._config.click_id_prefix):
            return ClickValidation(valid=False, reason=REASON_BAD_FORMAT)

        click = await self._ledger.get_click(click_id)
        if click is None:
            return ClickValidation(valid=False, reason=REASON_NOT_FOUND)

        elapsed = self._now_ms() - click.timestamp
        if not within_window(elapsed, self._config.attribution_window_days):
            return ClickValidation(valid=False, reason=REASON_OUTSIDE_WINDOW, click=click)

        return ClickValidation(valid=True, click=click)

    async def check_duplicate(self, click_id: str) -> bool:
        return await self._store.exists(conversion_key(click_id))

    async def store(
        self,
        report: ConversionReport,
        click: ClickRecord,
        reported_via: ConversionSource = ConversionSource.WEBHOOK,
    ) -> ConversionRecord:
        """
        Write the conversion record and its daily projections.

        The record write is set-if-absent, so a concurrent duplicate loses
        here even if both passed ``check_duplicate``. Counters are not
        idempotent and are written only after the record write succeeds.

        Raises:
            ConflictError: If a conversion for the click already exists
            StoreError: If the store fails
        """
        now = self._now_ms()
        record = ConversionRecord(
            click_id=report.click_id,
            partner_id=click.partner_id,
            click_timestamp=click.timestamp,
            conversion_timestamp=now,
            status=ConversionStatus.PENDING,
            customer_id=report.customer_id,
            product_selected=report.product_selected,
            contract_value=report.contract_value,
            contract_length_months=report.contract_length_months,
            conversion_type=report.conversion_type,
            conversion_value=report.conversion_value,
            conversion_currency=report.conversion_currency,
            reported_via=reported_via.value,
            source=click.source,
            metadata=click.metadata if report.metadata is None else report.metadata,
        )

        written = await self._store.set(conversion_key(record.click_id), record.to_dict(), nx=True)
        if not written:
            raise ConflictError(
                code="duplicate_conversion",
                message="Conversion already tracked",
                details={"click_id": record.click_id},
            )

        date = utc_date(now)
        await self._store.incr(DAILY_COUNT_KEY.format(date, record.partner_id))
        revenue = report.revenue
        if revenue:
            await self._store.incrbyfloat(DAILY_REVENUE_KEY.format(date, record.partner_id), revenue)
        await self._store.lpush(QUEUE_KEY.format(date), json.dumps(record.to_dict()))

        self._log(
            LogLevel.INFO,
            "Conversion stored",
            {"click_id": record.click_id, "partner_id": record.partner_id, "value": revenue},
        )
        return record

    async def track_conversion(
        self,
        payload: Any,
        provided_secret: Optional[str],
        reported_via: ConversionSource = ConversionSource.WEBHOOK,
    ) -> ConversionRecord:
        """
        Authenticate, validate and record a partner conversion report.

        Raises:
            AuthenticationError: Wrong or missing webhook secret (401)
            ValidationError: Missing or malformed ``click_id`` (400)
            NotFoundError: Unknown click or outside the window (404)
            ConflictError: Conversion already recorded (409)
        """
        if not self.authenticate(provided_secret):
            self._log(LogLevel.WARN, "Rejected conversion with invalid webhook secret")
            raise AuthenticationError(code="unauthorized", message="Unauthorized")

        report = ConversionReport.from_payload(payload)
        if not is_valid_click_id(report.click_id, self._config.click_id_prefix):
            raise ValidationError(
                code="invalid_click_id",
                message="Invalid click_id format",
                details={"click_id": report.click_id},
            )

        validation = await self.validate_click(report.click_id)
        if not validation.valid:
            self._log(
                LogLevel.INFO,
                "Conversion rejected",
                {"click_id": report.click_id, "reason": validation.reason},
            )
            raise NotFoundError(
                code="click_not_found",
                message="Click not found or expired",
                details={"reason": validation.reason},
            )

        if await self.check_duplicate(report.click_id):
            raise ConflictError(
                code="duplicate_conversion",
                message="Conversion already tracked",
                details={"click_id": report.click_id},
            )

        return await self.store(report, validation.click, reported_via=reported_via)
