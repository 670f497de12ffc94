"""
Portal Core - click attribution, session authorization and resilient data
proxying for a price-comparison site.

This package signs and verifies session tokens, drives the third-party
authorization handshake, records referral clicks, attributes partner
conversions exactly once and fronts a flaky statistics API with a rate
limiter, retries and a two-tier cache.
"""

__version__ = "0.1.0"
__author__ = "Portal Core Team"

from portal_core.exceptions import (
    PortalError,
    AuthenticationError,
    ValidationError,
    NotFoundError,
    ForbiddenError,
    ConflictError,
    QuotaExceededError,
    UpstreamError,
    ConfigurationError,
    StoreError,
)
from portal_core.enums import (
    SessionStatus,
    ConversionStatus,
    ConversionSource,
    AttributionMethod,
    TrackingStatus,
    CacheStatus,
    LogLevel,
)
from portal_core.config import (
    SigningConfig,
    KVConfig,
    RateLimitRule,
    RateLimitConfig,
    RetryConfig,
    CacheConfig,
    AuthorizationConfig,
    TrackingConfig,
    DataProxyConfig,
    LoggingConfig,
    SystemConfig,
    load_config_from_env,
)
from portal_core.models import (
    SessionClaims,
    SessionRecord,
    StateTokenRecord,
    AuthorizationRequest,
    ClickRecord,
    ClickValidation,
    ConversionReport,
    ConversionRecord,
    PartnerConfig,
    QuotaDecision,
    ClientInfo,
    TrackingEvent,
    ConversionOutcome,
    EventSummary,
    VerificationReport,
)
from portal_core.audit_logger import (
    AuditLogger,
    LogEntry,
)
from portal_core.token_codec import (
    SignedTokenCodec,
    load_signing_key,
)
from portal_core.kv_store import (
    KeyValueStore,
    MemoryKeyValueStore,
    RestKeyValueStore,
)
from portal_core.rate_limiter import (
    RateLimiter,
    RateLimitStatus,
)
from portal_core.retry_manager import (
    RetryManager,
)
from portal_core.local_cache import (
    LocalCache,
)
from portal_core.fetch_cache import (
    CacheLookup,
    ResilientFetchCache,
    cache_headers,
)
from portal_core.upstream_client import (
    UpstreamClient,
)
from portal_core.sessions import (
    SessionManager,
)
from portal_core.click_ledger import (
    ClickLedger,
    generate_click_id,
    is_valid_click_id,
    build_tracking_params,
    add_tracking_to_url,
)
from portal_core.conversions import (
    ConversionAttributor,
)
from portal_core.partner_tracking import (
    PartnerTracker,
    pixel_payload,
)
from portal_core.eloverblik import (
    AuthorizationResolver,
)
from portal_core.production import (
    MonthlyProductionService,
    ProductionQuery,
    ProxyResponse,
)
from portal_core.api import (
    PortalServices,
    build_services,
    create_app,
)
from portal_core.cli import (
    main as cli_main,
    create_parser,
)

__all__ = [
    # Exceptions
    "PortalError",
    "AuthenticationError",
    "ValidationError",
    "NotFoundError",
    "ForbiddenError",
    "ConflictError",
    "QuotaExceededError",
    "UpstreamError",
    "ConfigurationError",
    "StoreError",
    # Enums
    "SessionStatus",
    "ConversionStatus",
    "ConversionSource",
    "AttributionMethod",
    "TrackingStatus",
    "CacheStatus",
    "LogLevel",
    # Configuration
    "SigningConfig",
    "KVConfig",
    "RateLimitRule",
    "RateLimitConfig",
    "RetryConfig",
    "CacheConfig",
    "AuthorizationConfig",
    "TrackingConfig",
    "DataProxyConfig",
    "LoggingConfig",
    "SystemConfig",
    "load_config_from_env",
    # Models
    "SessionClaims",
    "SessionRecord",
    "StateTokenRecord",
    "AuthorizationRequest",
    "ClickRecord",
    "ClickValidation",
    "ConversionReport",
    "ConversionRecord",
    "PartnerConfig",
    "QuotaDecision",
    "ClientInfo",
    "TrackingEvent",
    "ConversionOutcome",
    "EventSummary",
    "VerificationReport",
    # Audit Logger
    "AuditLogger",
    "LogEntry",
    # Token Codec
    "SignedTokenCodec",
    "load_signing_key",
    # Key-value store
    "KeyValueStore",
    "MemoryKeyValueStore",
    "RestKeyValueStore",
    # Rate Limiter
    "RateLimiter",
    "RateLimitStatus",
    # Retry Manager
    "RetryManager",
    # Caching
    "LocalCache",
    "CacheLookup",
    "ResilientFetchCache",
    "cache_headers",
    # Upstream
    "UpstreamClient",
    "AuthorizationResolver",
    # Sessions
    "SessionManager",
    # Click ledger
    "ClickLedger",
    "generate_click_id",
    "is_valid_click_id",
    "build_tracking_params",
    "add_tracking_to_url",
    # Conversions
    "ConversionAttributor",
    # Partner tracking
    "PartnerTracker",
    "pixel_payload",
    # Data proxy
    "MonthlyProductionService",
    "ProductionQuery",
    "ProxyResponse",
    # HTTP API
    "PortalServices",
    "build_services",
    "create_app",
    # CLI
    "cli_main",
    "create_parser",
]
