"""
Structured event log for portal components.

Every component (sessions, click ledger, conversions, fetch cache, upstream
client, API) writes through one AuditLogger. Entries are kept in a bounded
in-memory buffer and written to a stream as JSON lines, text lines, or both.
Values stored under keys that look like credentials are replaced before an
entry is created, so neither the buffer nor the stream ever holds them.
"""

import json
import sys
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Optional, TextIO

from .enums import LogLevel


OUTPUT_FORMATS = ("json", "text", "both")


@dataclass
class LogEntry:
    """One logged event after masking."""

    timestamp: str
    level: LogLevel
    component: str
    message: str
    data: dict = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "timestamp": self.timestamp,
            "level": self.level.value,
            "component": self.component,
            "message": self.message,
            "data": self.data,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False, default=str)

    def to_text(self) -> str:
        line = f"[{self.timestamp}] {self.level.value.upper()} [{self.component}] {self.message}"
        if not self.data:
            return line
        return f"{line} {json.dumps(self.data, ensure_ascii=False, default=str)}"


class AuditLogger:
    """
    Logger shared by the portal services.

    ``log`` drops entries below ``min_level``; ``log_error`` adds the
    exception type, its PortalError code when present, and the HTTP request
    context to the entry data.
    """

    # Matched as substrings of the lowercased key
    SENSITIVE_KEYS = frozenset({
        'token', 'secret', 'password', 'api_key', 'signing_key',
        'cookie', 'credential', 'private_key', 'state_value',
    })

    MASK_VALUE = "***MASKED***"

    def __init__(
        self,
        output_format: str = "json",
        output_stream: Optional[TextIO] = None,
        min_level: LogLevel = LogLevel.INFO,
        max_entries: int = 1000,
    ):
        if output_format not in OUTPUT_FORMATS:
            raise ValueError(f"Invalid output_format: {output_format}")

        self._output_format = output_format
        self._stream = output_stream or sys.stderr
        self._min_level = min_level
        self._recent: deque[LogEntry] = deque(maxlen=max_entries)

        self._renderers = []
        if output_format != "text":
            self._renderers.append(LogEntry.to_json)
        if output_format != "json":
            self._renderers.append(LogEntry.to_text)

    @classmethod
    def from_config(cls, config, output_stream: Optional[TextIO] = None) -> "AuditLogger":
        """
        Build a logger from a LoggingConfig.

        An unknown level falls back to info and an unknown format to JSON,
        so a typo in the environment never stops the service from starting.
        """
        try:
            min_level = LogLevel(config.level)
        except ValueError:
            min_level = LogLevel.INFO
        output_format = config.output_format if config.output_format in OUTPUT_FORMATS else "json"
        return cls(output_format=output_format, output_stream=output_stream, min_level=min_level)

    @property
    def output_format(self) -> str:
        return self._output_format

    @property
    def entries(self) -> list[LogEntry]:
        """Buffered entries, oldest first."""
        return list(self._recent)

    def is_enabled_for(self, level: LogLevel) -> bool:
        return level.severity >= self._min_level.severity

    def log(
        self,
        level: LogLevel,
        component: str,
        message: str,
        data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        """
        Record and write one entry.

        Args:
            level: Severity of the event
            component: Short name of the emitting service, e.g. ``"sessions"``
            message: One-line description
            data: Extra fields; credential-like keys are masked

        Returns:
            The stored entry, or None when the level is below the minimum
        """
        if not self.is_enabled_for(level):
            return None

        entry = LogEntry(
            timestamp=datetime.now(timezone.utc).isoformat(),
            level=level,
            component=component,
            message=message,
            data=self.mask_sensitive_data(data or {}),
        )
        self._recent.append(entry)
        self._write(entry)
        return entry

    def log_error(
        self,
        component: str,
        message: str,
        error: Optional[BaseException] = None,
        request_url: Optional[str] = None,
        response_status_code: Optional[int] = None,
        additional_data: Optional[dict] = None,
    ) -> Optional[LogEntry]:
        data = dict(additional_data or {})

        if error is not None:
            data["error_message"] = str(error)
            data["error_type"] = type(error).__name__
            if getattr(error, "code", None) is not None:
                data["error_code"] = error.code

        context = {"request_url": request_url, "response_status_code": response_status_code}
        data.update({k: v for k, v in context.items() if v is not None})

        return self.log(LogLevel.ERROR, component, message, data)

    def mask_sensitive_data(self, data: dict) -> dict:
        """Return a copy of ``data`` with credential-like values replaced."""
        if not isinstance(data, dict):
            return data
        return {
            key: self.MASK_VALUE if self._is_sensitive(key) else self._mask_value(value)
            for key, value in data.items()
        }

    def _is_sensitive(self, key: Any) -> bool:
        lowered = str(key).lower()
        return any(marker in lowered for marker in self.SENSITIVE_KEYS)

    def _mask_value(self, value: Any) -> Any:
        if isinstance(value, dict):
            return self.mask_sensitive_data(value)
        if isinstance(value, (list, tuple)):
            return [self._mask_value(item) for item in value]
        return value

    def _write(self, entry: LogEntry) -> None:
        for render in self._renderers:
            self._stream.write(render(entry) + "\n")
        self._stream.flush()
