"""
Configuration dataclasses for the portal core.

This module defines all configuration structures used throughout the system,
including token signing, key-value store access, rate limiting, retry logic,
caching, the third-party authorization handshake, click tracking and logging.
Configuration is built once per process by ``load_config_from_env`` and then
passed explicitly to every component.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Union
from urllib.parse import urlparse

from dotenv import dotenv_values

from .exceptions import ConfigurationError


MIN_SIGNING_KEY_BYTES = 32
KEY_ENCODINGS = ("base64", "raw")


@dataclass
class SigningConfig:
    """Symmetric key used to sign session tokens."""

    key: Optional[str] = None
    key_encoding: str = "base64"


@dataclass
class KVConfig:
    """Connection settings for the REST key-value store."""

    url: Optional[str] = None
    token: Optional[str] = None
    timeout_seconds: float = 5.0

    @property
    def is_configured(self) -> bool:
        return bool(self.url and self.token)


@dataclass
class RateLimitRule:
    """A single sliding-window rule for one logical endpoint."""

    max_requests: int
    window_seconds: float
    backoff_seconds: float = 30.0


def _default_endpoint_rules() -> dict[str, RateLimitRule]:
    return {
        "eloverblik-auth": RateLimitRule(max_requests=2, window_seconds=60.0, backoff_seconds=60.0),
        "eloverblik-consumption": RateLimitRule(max_requests=5, window_seconds=60.0, backoff_seconds=30.0),
        "eloverblik-default": RateLimitRule(max_requests=10, window_seconds=60.0, backoff_seconds=20.0),
        "energidata": RateLimitRule(max_requests=40, window_seconds=10.0, backoff_seconds=10.0),
    }


@dataclass
class RateLimitConfig:
    """Rate limiting configuration for all outbound endpoints."""

    per_endpoint: dict[str, RateLimitRule] = field(default_factory=_default_endpoint_rules)
    default_endpoint: str = "eloverblik-default"

    def rule_for(self, endpoint: str) -> RateLimitRule:
        """Return the rule for an endpoint, falling back to the default rule."""
        rule = self.per_endpoint.get(endpoint)
        if rule is None:
            rule = self.per_endpoint.get(self.default_endpoint)
        if rule is None:
            raise ConfigurationError(
                code="missing_rate_limit_rule",
                message=f"No rate limit rule for {endpoint!r} and no default rule",
                details={"endpoint": endpoint},
            )
        return rule


@dataclass
class RetryConfig:
    """Retry behavior configuration for upstream calls."""

    max_attempts: int = 3
    base_delay_seconds: float = 1.0
    max_delay_seconds: float = 30.0
    retryable_status_codes: list[int] = field(default_factory=lambda: [429, 503])


@dataclass
class CacheConfig:
    """TTL policy for the distributed and local cache tiers."""

    kv_ttl_seconds: int = 86400
    fallback_ttl_seconds: int = 172800
    local_ttl_seconds: float = 86400.0
    local_max_entries: int = 50
    stale_max_age_seconds: int = 3600
    # How long a settled in-flight result is still shared with late callers.
    dedup_linger_seconds: float = 0.1


@dataclass
class AuthorizationConfig:
    """Third-party (Eloverblik) authorization handshake settings."""

    third_party_id: str = "945ac027-559a-4923-a670-66bfda8d27c6"
    authorize_url: str = "https://eloverblik.dk/power-of-attorney"
    callback_url: str = "https://mondaybrew.dk/dinelportal-callback/"
    api_base_url: str = "https://api.eloverblik.dk/thirdpartyapi/api"
    api_token: Optional[str] = None
    from_date: str = "2021-08-08"
    to_date: str = "2028-08-08"
    redirect_base_url: str = "https://www.dinelportal.dk"
    tracker_path: str = "/forbrug-tracker"
    session_cookie_name: str = "elportal_session"
    session_ttl_seconds: int = 24 * 60 * 60
    state_ttl_seconds: int = 10 * 60


@dataclass
class TrackingConfig:
    """Click ledger and conversion attribution settings."""

    click_id_prefix: str = "dep"
    attribution_window_days: int = 90
    # One day of slack so a click at the window boundary is still readable.
    click_retention_days: int = 91
    webhook_secret: Optional[str] = None
    background_attempts: int = 3
    background_delay_seconds: float = 0.5
    # Per partner and client IP, used when the partner config sets no quota.
    partner_hourly_quota: int = 1000
    event_retention_days: int = 7


@dataclass
class DataProxyConfig:
    """Upstream statistics API used by the data-proxy routes."""

    energidata_base_url: str = "https://api.energidataservice.dk"
    timeout_seconds: float = 8.0


@dataclass
class LoggingConfig:
    """Logging configuration."""

    level: str = "info"
    output_format: str = "json"  # 'json', 'text', 'both'


@dataclass
class SystemConfig:
    """Main system configuration combining all sub-configurations."""

    signing: SigningConfig = field(default_factory=SigningConfig)
    kv: KVConfig = field(default_factory=KVConfig)
    rate_limits: RateLimitConfig = field(default_factory=RateLimitConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    cache: CacheConfig = field(default_factory=CacheConfig)
    authorization: AuthorizationConfig = field(default_factory=AuthorizationConfig)
    tracking: TrackingConfig = field(default_factory=TrackingConfig)
    data_proxy: DataProxyConfig = field(default_factory=DataProxyConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    environment: str = "production"

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    def validate(self) -> None:
        """
        Check the configuration and fail fast on anything unusable.

        Raises:
            ConfigurationError: On the first invalid setting found
        """
        # Imported here to keep config importable without the codec module.
        from .token_codec import load_signing_key

        load_signing_key(self.signing)

        if self.kv.url is not None or self.kv.token is not None:
            _validate_kv(self.kv)

        for name, rule in self.rate_limits.per_endpoint.items():
            if rule.max_requests <= 0 or rule.window_seconds <= 0 or rule.backoff_seconds < 0:
                raise ConfigurationError(
                    code="invalid_rate_limit_rule",
                    message=f"Rate limit rule for {name!r} must have positive limits",
                    details={"endpoint": name},
                )
        self.rate_limits.rule_for(self.rate_limits.default_endpoint)

        if self.retry.max_attempts < 1:
            raise ConfigurationError(
                code="invalid_retry_config",
                message="Retry max_attempts must be at least 1",
            )

        if self.tracking.click_retention_days < self.tracking.attribution_window_days:
            raise ConfigurationError(
                code="invalid_click_retention",
                message="Click retention must cover the attribution window",
                details={
                    "click_retention_days": self.tracking.click_retention_days,
                    "attribution_window_days": self.tracking.attribution_window_days,
                },
            )

        if self.tracking.partner_hourly_quota < 1:
            raise ConfigurationError(
                code="invalid_partner_quota",
                message="Partner hourly quota must be at least 1",
            )


def _validate_kv(kv: KVConfig) -> None:
    if not kv.url or not kv.token:
        raise ConfigurationError(
            code="incomplete_kv_config",
            message="Both the KV REST URL and token must be set",
        )
    if urlparse(kv.url).scheme != "https":
        raise ConfigurationError(
            code="insecure_kv_url",
            message="KV REST URL must use HTTPS",
        )
    if any(ch.isspace() for ch in kv.url) or any(ch.isspace() for ch in kv.token):
        raise ConfigurationError(
            code="malformed_kv_config",
            message="KV REST URL and token must not contain whitespace",
        )


def _clean(value: Optional[str]) -> Optional[str]:
    """Strip whitespace and stray surrounding quotes from an env value."""
    if value is None:
        return None
    cleaned = value.strip().strip('"').strip()
    return cleaned or None


def _int_env(env: Mapping[str, str], name: str, default: int) -> int:
    try:
        return int(env.get(name, default))
    except (TypeError, ValueError):
        return default


def _float_env(env: Mapping[str, str], name: str, default: float) -> float:
    try:
        return float(env.get(name, default))
    except (TypeError, ValueError):
        return default


def load_config_from_env(
    env_file: Optional[Union[str, Path]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> SystemConfig:
    """
    Build a SystemConfig from environment variables.

    Values from ``env_file`` (a dotenv file) are used only where the
    environment does not already define them.

    Args:
        env_file: Optional path to a .env file
        environ: Environment mapping (defaults to os.environ)

    Returns:
        An unvalidated SystemConfig; call ``validate()`` before use
    """
    env: dict[str, str] = {}
    if env_file is not None and Path(env_file).exists():
        env.update({k: v for k, v in dotenv_values(env_file).items() if v is not None})
    env.update(os.environ if environ is None else environ)

    authorization = AuthorizationConfig()
    if _clean(env.get("ELOVERBLIK_THIRD_PARTY_ID")):
        authorization.third_party_id = _clean(env.get("ELOVERBLIK_THIRD_PARTY_ID"))
    if _clean(env.get("AUTHORIZATION_CALLBACK_URL")):
        authorization.callback_url = _clean(env.get("AUTHORIZATION_CALLBACK_URL"))
    if _clean(env.get("REDIRECT_BASE_URL")):
        authorization.redirect_base_url = _clean(env.get("REDIRECT_BASE_URL"))
    authorization.api_token = _clean(
        env.get("ELOVERBLIK_API_TOKEN") or env.get("ELOVERBLIK_THIRDPARTY_REFRESH_TOKEN")
    )

    tracking = TrackingConfig(
        webhook_secret=_clean(env.get("CONVERSION_WEBHOOK_SECRET")),
        attribution_window_days=_int_env(env, "ATTRIBUTION_WINDOW_DAYS", 90),
        partner_hourly_quota=_int_env(env, "PARTNER_HOURLY_QUOTA", 1000),
    )
    tracking.click_retention_days = max(
        _int_env(env, "CLICK_RETENTION_DAYS", tracking.attribution_window_days + 1),
        tracking.attribution_window_days,
    )

    data_proxy = DataProxyConfig(
        timeout_seconds=_float_env(env, "UPSTREAM_TIMEOUT_SECONDS", 8.0),
    )
    if _clean(env.get("ENERGIDATA_BASE_URL")):
        data_proxy.energidata_base_url = _clean(env.get("ENERGIDATA_BASE_URL"))

    return SystemConfig(
        signing=SigningConfig(
            key=_clean(env.get("ELPORTAL_SIGNING_KEY")),
            key_encoding=(_clean(env.get("ELPORTAL_SIGNING_KEY_ENCODING")) or "base64").lower(),
        ),
        kv=KVConfig(
            url=_clean(env.get("KV_REST_API_URL") or env.get("UPSTASH_REDIS_REST_URL")),
            token=_clean(env.get("KV_REST_API_TOKEN") or env.get("UPSTASH_REDIS_REST_TOKEN")),
            timeout_seconds=_float_env(env, "KV_TIMEOUT_SECONDS", 5.0),
        ),
        authorization=authorization,
        tracking=tracking,
        data_proxy=data_proxy,
        logging=LoggingConfig(
            level=(_clean(env.get("LOG_LEVEL")) or "info").lower(),
            output_format=(_clean(env.get("LOG_FORMAT")) or "json").lower(),
        ),
        environment=(_clean(env.get("APP_ENV")) or "production").lower(),
    )
