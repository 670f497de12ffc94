"""
Click ledger for outbound referral clicks.

Every outbound partner link carries a click id; the click itself is recorded
under ``click:{clickId}`` for at least the attribution window so a later
conversion report can be matched against it.
"""

import asyncio
import secrets
import time
from typing import Any, Awaitable, Callable, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from .audit_logger import AuditLogger
from .config import TrackingConfig
from .enums import LogLevel
from .exceptions import ValidationError
from .kv_store import KeyValueStore
from .models import ClickRecord


CLICK_KEY = "click:{}"
BASE36_ALPHABET = "0123456789abcdefghijklmnopqrstuvwxyz"
RANDOM_PART_LENGTH = 7


def click_key(click_id: str) -> str:
    return CLICK_KEY.format(click_id)


def to_base36(number: int) -> str:
    """Encode a non-negative integer in lowercase base36."""
    if number < 0:
        raise ValueError("base36 encoding requires a non-negative integer")
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(BASE36_ALPHABET[remainder])
    return "".join(reversed(digits))


def generate_click_id(prefix: str = "dep", now_ms: Optional[int] = None) -> str:
    """
    Generate a click id of the form ``{prefix}_{base36 ms}_{base36 random}``.

    The time part keeps ids roughly ordered; the random part makes
    collisions between concurrent generators negligible.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    random_part = "".join(secrets.choice(BASE36_ALPHABET) for _ in range(RANDOM_PART_LENGTH))
    return f"{prefix}_{to_base36(now_ms)}_{random_part}"


def is_valid_click_id(click_id: Any, prefix: str = "dep") -> bool:
    """Format check only: the id must carry our fixed prefix."""
    return isinstance(click_id, str) and click_id.startswith(f"{prefix}_")


def build_tracking_params(
    click_id: str,
    component: Optional[str] = None,
    page: Optional[str] = None,
    variant: Optional[str] = None,
    consumption: Optional[Any] = None,
    region: Optional[str] = None,
) -> dict[str, str]:
    """
    Query parameters appended to an outbound partner link.

    Unset optional values are left out.
    """
    params = {
        "click_id": click_id,
        "utm_source": "dinelportal",
        "utm_medium": component or "referral",
        "utm_campaign": page or "website",
        "utm_content": variant,
        "ref": "dinelportal",
        "consumption": str(consumption) if consumption is not None else None,
        "region": region,
    }
    return {k: v for k, v in params.items() if v}


def add_tracking_to_url(url: str, params: dict[str, str]) -> str:
    """Merge tracking parameters into ``url``, replacing any existing ones."""
    parts = urlsplit(url)
    query = dict(parse_qsl(parts.query, keep_blank_values=True))
    query.update(params)
    return urlunsplit(parts._replace(query=urlencode(query)))


class ClickLedger:
    """
    Writes and reads click records.

    Recording from a request path goes through ``record_click_in_background``
    so the caller never waits on the store.
    """

    def __init__(
        self,
        store: KeyValueStore,
        config: TrackingConfig,
        logger: Optional[AuditLogger] = None,
        now_fn: Optional[Callable[[], float]] = None,
        sleep_func: Optional[Callable[[float], Awaitable[None]]] = None,
    ) -> None:
        self._store = store
        self._config = config
        self._logger = logger
        self._now = now_fn or time.time
        self._sleep = sleep_func or asyncio.sleep
        self._background: set[asyncio.Task] = set()

    @property
    def retention_seconds(self) -> int:
        return self._config.click_retention_days * 24 * 60 * 60

    def new_click_id(self) -> str:
        return generate_click_id(self._config.click_id_prefix, int(self._now() * 1000))

    async def record_click(
        self,
        partner_id: str,
        source: Any = None,
        metadata: Any = None,
        click_id: Optional[str] = None,
    ) -> ClickRecord:
        """
        Write a click record and return it.

        Raises:
            StoreError: If the store rejects the write
        """
        record = ClickRecord(
            click_id=click_id or self.new_click_id(),
            partner_id=partner_id,
            timestamp=int(self._now() * 1000),
            source=source,
            metadata=metadata,
        )
        await self._store.set(click_key(record.click_id), record.to_dict(), ex=self.retention_seconds)
        if self._logger:
            self._logger.log(
                LogLevel.INFO,
                "click_ledger",
                "Click recorded",
                {"click_id": record.click_id, "partner_id": partner_id},
            )
        return record

    async def get_click(self, click_id: str) -> Optional[ClickRecord]:
        """Load a click; a missing or malformed record counts as absent."""
        data = await self._store.get(click_key(click_id))
        if not isinstance(data, dict):
            return None
        try:
            return ClickRecord.from_dict({**data, "click_id": click_id})
        except ValidationError as e:
            if self._logger:
                self._logger.log(
                    LogLevel.WARN,
                    "click_ledger",
                    "Ignoring malformed click record",
                    {"click_id": click_id, "error_code": e.code},
                )
            return None

    def record_click_in_background(
        self,
        partner_id: str,
        source: Any = None,
        metadata: Any = None,
        click_id: Optional[str] = None,
    ) -> tuple[str, asyncio.Task]:
        """
        Schedule a click write without waiting for it.

        Must be called from a running event loop. The write is retried a
        bounded number of times; a final failure is logged, never raised.

        Returns:
            The click id and the scheduled task
        """
        click_id = click_id or self.new_click_id()
        task = asyncio.ensure_future(
            self.record_click_best_effort(partner_id, source, metadata, click_id)
        )
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return click_id, task

    async def record_click_best_effort(
        self,
        partner_id: str,
        source: Any,
        metadata: Any,
        click_id: str,
    ) -> Optional[ClickRecord]:
        """Write a click with bounded retries; returns None instead of raising."""
        attempts = max(1, self._config.background_attempts)
        for attempt in range(1, attempts + 1):
            try:
                return await self.record_click(partner_id, source, metadata, click_id=click_id)
            except Exception as e:
                if attempt >= attempts:
                    if self._logger:
                        self._logger.log_error(
                            "click_ledger",
                            f"Dropping click after {attempt} attempt(s)",
                            error=e,
                            additional_data={"click_id": click_id, "partner_id": partner_id},
                        )
                    return None
                await self._sleep(self._config.background_delay_seconds * attempt)
        return None

    async def drain(self) -> None:
        """Wait for pending background writes, e.g. on shutdown."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
