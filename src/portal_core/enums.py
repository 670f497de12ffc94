"""
Enumeration types for the portal core.

These enums provide type-safe constants for session lifecycle, conversion
status and attribution, partner tracking health, cache tiers and logging
levels.
"""

from enum import Enum


class SessionStatus(Enum):
    """Lifecycle of a visitor session across the authorization handshake."""

    INITIALIZED = "initialized"
    AUTHORIZING = "authorizing"
    AUTHORIZED = "authorized"
    EXPIRED = "expired"

    @property
    def rank(self) -> int:
        """Position in the forward-only lifecycle."""
        return _SESSION_ORDER.index(self)


_SESSION_ORDER = [
    SessionStatus.INITIALIZED,
    SessionStatus.AUTHORIZING,
    SessionStatus.AUTHORIZED,
    SessionStatus.EXPIRED,
]


class ConversionStatus(Enum):
    """Review state of a stored conversion."""

    PENDING = "pending"
    VERIFIED = "verified"


class ConversionSource(Enum):
    """Where a conversion report came from."""

    WEBHOOK = "webhook"
    UNIVERSAL_SCRIPT = "universal_script"
    PIXEL = "pixel"


class AttributionMethod(Enum):
    """How a script-reported conversion was tied to its click."""

    DIRECT = "direct"
    FINGERPRINT = "fingerprint"


class TrackingStatus(Enum):
    """Health of a partner's tracking script as seen from its recent events."""

    ACTIVE = "active"
    INACTIVE = "inactive"
    NO_DATA = "no_data"


class CacheStatus(Enum):
    """Which cache tier served a proxied response (X-Cache header)."""

    HIT_KV = "HIT-KV"
    HIT_MEMORY = "HIT-MEMORY"
    MISS = "MISS"
    HIT_STALE = "HIT-STALE"
    MISS_FALLBACK = "MISS-FALLBACK"


class LogLevel(Enum):
    """Logging severity levels."""

    DEBUG = "debug"
    INFO = "info"
    WARN = "warn"
    ERROR = "error"

    @property
    def severity(self) -> int:
        return _LEVEL_ORDER.index(self)


_LEVEL_ORDER = [LogLevel.DEBUG, LogLevel.INFO, LogLevel.WARN, LogLevel.ERROR]
