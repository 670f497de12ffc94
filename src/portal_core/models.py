"""
Data models for the portal core.

This module defines the records persisted in the key-value store and the
value objects passed between components. Stored field names are kept exactly
as other deployments sharing the store write them, so every record has an
explicit ``to_dict``/``from_dict`` pair. Instants are epoch milliseconds.
"""

from dataclasses import dataclass, field
from typing import Any, Optional

from .enums import AttributionMethod, ConversionStatus, SessionStatus, TrackingStatus
from .exceptions import ValidationError


@dataclass
class SessionClaims:
    """Claims carried inside a signed session token."""

    session_id: str
    created_at: int
    expires_at: int
    customer_id: Optional[str] = None
    scopes: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        claims: dict[str, Any] = {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
        }
        if self.customer_id is not None:
            claims["customerId"] = self.customer_id
        if self.scopes:
            claims["scopes"] = list(self.scopes)
        return claims

    @classmethod
    def from_dict(cls, data: dict) -> "SessionClaims":
        return cls(
            session_id=data["sessionId"],
            created_at=int(data.get("createdAt", 0)),
            expires_at=int(data.get("expiresAt", 0)),
            customer_id=data.get("customerId"),
            scopes=list(data.get("scopes") or []),
        )


@dataclass
class SessionRecord:
    """Live session state stored under ``session:{sessionId}``."""

    status: SessionStatus
    created_at: int
    expires_at: int
    customer_id: Optional[str] = None
    scopes: list[str] = field(default_factory=list)
    metadata: dict = field(default_factory=dict)

    @property
    def state_token(self) -> Optional[str]:
        return self.metadata.get("stateValue")

    @property
    def auth_started_at(self) -> Optional[int]:
        return self.metadata.get("authStartedAt")

    def to_dict(self) -> dict:
        data: dict[str, Any] = {
            "createdAt": self.created_at,
            "expiresAt": self.expires_at,
            "status": self.status.value,
        }
        if self.customer_id is not None:
            data["customerId"] = self.customer_id
        if self.scopes:
            data["scopes"] = list(self.scopes)
        if self.metadata:
            data["metadata"] = dict(self.metadata)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "SessionRecord":
        raw_status = data.get("status", SessionStatus.INITIALIZED.value)
        # Older writers used "pending_authorization" for a fresh session.
        if raw_status == "pending_authorization":
            raw_status = SessionStatus.INITIALIZED.value
        return cls(
            status=SessionStatus(raw_status),
            created_at=int(data.get("createdAt", 0)),
            expires_at=int(data.get("expiresAt", 0)),
            customer_id=data.get("customerId"),
            scopes=list(data.get("scopes") or []),
            metadata=dict(data.get("metadata") or {}),
        )


@dataclass
class StateTokenRecord:
    """CSRF state token record stored under ``state:{stateToken}``."""

    session_id: str
    created_at: int
    type: str = "eloverblik_authorization"

    def to_dict(self) -> dict:
        return {
            "sessionId": self.session_id,
            "createdAt": self.created_at,
            "type": self.type,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "StateTokenRecord":
        return cls(
            session_id=data["sessionId"],
            created_at=int(data.get("createdAt", 0)),
            type=data.get("type", "eloverblik_authorization"),
        )


@dataclass
class AuthorizationRequest:
    """Result of starting the third-party authorization handshake."""

    authorization_url: str
    state_value: str
    session_id: str


@dataclass
class ClickRecord:
    """An outbound referral click stored under ``click:{clickId}``."""

    click_id: str
    partner_id: str
    timestamp: int
    source: Any = None
    metadata: Any = None

    def to_dict(self) -> dict:
        return {
            "click_id": self.click_id,
            "partner_id": self.partner_id,
            "timestamp": self.timestamp,
            "source": self.source,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ClickRecord":
        """
        Raises:
            ValidationError: If the id, partner id or timestamp is missing
                or has the wrong type
        """
        click_id = data.get("click_id")
        partner_id = data.get("partner_id")
        timestamp = data.get("timestamp")
        if (
            not isinstance(click_id, str)
            or not isinstance(partner_id, str)
            or not partner_id
            or isinstance(timestamp, bool)
            or not isinstance(timestamp, (int, float))
        ):
            raise ValidationError(
                code="invalid_click_record",
                message="Stored click record is malformed",
                details={"click_id": click_id},
            )
        return cls(
            click_id=click_id,
            partner_id=partner_id,
            timestamp=int(timestamp),
            source=data.get("source"),
            metadata=data.get("metadata"),
        )


@dataclass
class ClickValidation:
    """Outcome of checking a click against the attribution window."""

    valid: bool
    reason: Optional[str] = None
    click: Optional[ClickRecord] = None


@dataclass
class ConversionReport:
    """A conversion event as reported by a partner."""

    click_id: str
    customer_id: Optional[str] = None
    product_selected: Optional[str] = None
    contract_value: Optional[float] = None
    contract_length_months: Optional[int] = None
    conversion_type: Optional[str] = None
    conversion_value: Optional[float] = None
    conversion_currency: Optional[str] = None
    metadata: Optional[dict] = None

    @property
    def revenue(self) -> Optional[float]:
        """Monetary value of the conversion, if any was reported."""
        return self.contract_value or self.conversion_value or None

    @classmethod
    def from_payload(cls, payload: Any) -> "ConversionReport":
        """
        Build a report from a decoded JSON body.

        Raises:
            ValidationError: If the body is not an object, lacks ``click_id``
                or carries ill-typed numeric fields
        """
        if not isinstance(payload, dict):
            raise ValidationError(code="invalid_body", message="Request body must be a JSON object")

        click_id = payload.get("click_id")
        if not click_id or not isinstance(click_id, str):
            raise ValidationError(code="missing_click_id", message="Missing required field: click_id")

        def number(name: str) -> Optional[float]:
            value = payload.get(name)
            if value is None:
                return None
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                raise ValidationError(
                    code="invalid_field",
                    message=f"Field {name} must be a number",
                    details={"field": name},
                )
            return float(value)

        length = number("contract_length_months")
        metadata = payload.get("metadata")
        return cls(
            click_id=click_id,
            customer_id=payload.get("customer_id"),
            product_selected=payload.get("product_selected"),
            contract_value=number("contract_value"),
            contract_length_months=int(length) if length is not None else None,
            conversion_type=payload.get("conversion_type"),
            conversion_value=number("conversion_value"),
            conversion_currency=payload.get("conversion_currency"),
            metadata=metadata if isinstance(metadata, dict) else None,
        )


@dataclass
class ConversionRecord:
    """The durable accounting record stored under ``conversion:{clickId}``."""

    click_id: str
    partner_id: str
    click_timestamp: int
    conversion_timestamp: int
    status: ConversionStatus = ConversionStatus.PENDING
    customer_id: Optional[str] = None
    product_selected: Optional[str] = None
    contract_value: Optional[float] = None
    contract_length_months: Optional[int] = None
    conversion_type: Optional[str] = None
    conversion_value: Optional[float] = None
    conversion_currency: Optional[str] = None
    reported_via: Optional[str] = None
    source: Any = None
    metadata: Any = None

    def to_dict(self) -> dict:
        data = {
            "click_id": self.click_id,
            "partner_id": self.partner_id,
            "click_timestamp": self.click_timestamp,
            "conversion_timestamp": self.conversion_timestamp,
            "status": self.status.value,
            "source": self.source,
            "metadata": self.metadata,
        }
        optional = {
            "customer_id": self.customer_id,
            "product_selected": self.product_selected,
            "contract_value": self.contract_value,
            "contract_length_months": self.contract_length_months,
            "conversion_type": self.conversion_type,
            "conversion_value": self.conversion_value,
            "conversion_currency": self.conversion_currency,
            "reported_via": self.reported_via,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "ConversionRecord":
        return cls(
            click_id=data["click_id"],
            partner_id=data["partner_id"],
            click_timestamp=int(data["click_timestamp"]),
            conversion_timestamp=int(data["conversion_timestamp"]),
            status=ConversionStatus(data.get("status", "pending")),
            customer_id=data.get("customer_id"),
            product_selected=data.get("product_selected"),
            contract_value=data.get("contract_value"),
            contract_length_months=data.get("contract_length_months"),
            conversion_type=data.get("conversion_type"),
            conversion_value=data.get("conversion_value"),
            conversion_currency=data.get("conversion_currency"),
            reported_via=data.get("reported_via"),
            source=data.get("source"),
            metadata=data.get("metadata"),
        )


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


@dataclass
class PartnerConfig:
    """
    A partner's tracking setup stored under ``partner_config:{partnerId}``.

    The stored document nests status and tier under ``metadata`` and the
    hourly quota under ``security``; unknown or ill-typed parts are ignored.
    """

    partner_id: str
    status: Optional[str] = None
    tier: Optional[str] = None
    domain_whitelist: list[str] = field(default_factory=list)
    rate_limit_per_hour: Optional[int] = None
    tracking_endpoint: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status == "active"

    def allows_domain(self, domain: str) -> bool:
        """
        An empty whitelist allows every domain. ``*.example.com`` matches any
        domain ending in ``example.com``.
        """
        if not self.domain_whitelist:
            return True
        for allowed in self.domain_whitelist:
            if allowed.startswith("*."):
                if domain.endswith(allowed[2:]):
                    return True
            elif domain == allowed:
                return True
        return False

    def to_dict(self) -> dict:
        return {
            "partner_id": self.partner_id,
            "metadata": {"status": self.status, "tier": self.tier},
            "domain_whitelist": list(self.domain_whitelist),
            "security": {"rate_limit_per_hour": self.rate_limit_per_hour},
            "tracking_config": {"endpoint": self.tracking_endpoint},
        }

    @classmethod
    def from_dict(cls, partner_id: str, data: dict) -> "PartnerConfig":
        def section(name: str) -> dict:
            value = data.get(name)
            return value if isinstance(value, dict) else {}

        whitelist = data.get("domain_whitelist")
        quota = section("security").get("rate_limit_per_hour")
        return cls(
            partner_id=partner_id,
            status=section("metadata").get("status"),
            tier=section("metadata").get("tier"),
            domain_whitelist=[d for d in whitelist if isinstance(d, str)] if isinstance(whitelist, list) else [],
            rate_limit_per_hour=int(quota) if _number(quota) and quota > 0 else None,
            tracking_endpoint=section("tracking_config").get("endpoint"),
        )


@dataclass
class QuotaDecision:
    """Outcome of counting one event against a partner's hourly quota."""

    allowed: bool
    limit: int
    remaining: int
    reset_at: int

    @property
    def headers(self) -> dict[str, str]:
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(self.remaining),
            "X-RateLimit-Reset": str(self.reset_at),
        }


@dataclass
class ClientInfo:
    """Who sent a tracking event, as seen by the server."""

    ip: str
    user_agent: str
    timestamp: int

    def to_dict(self) -> dict:
        return {"ip": self.ip, "user_agent": self.user_agent, "timestamp": self.timestamp}


@dataclass
class TrackingEvent:
    """
    One event from a partner's tracking script or pixel, stored under
    ``tracking_event:{partnerId}:{iso}:{suffix}``.

    ``data`` is the partner-supplied payload; the fields read by the
    tracker are exposed as properties.
    """

    type: str
    partner_id: str
    partner_domain: str
    data: dict
    client_info: ClientInfo

    REQUIRED_FIELDS = ("partner_id", "type", "data")

    @property
    def click_id(self) -> Optional[str]:
        value = self.data.get("click_id")
        return value if isinstance(value, str) and value else None

    @property
    def fingerprint(self) -> Optional[str]:
        value = self.data.get("fingerprint")
        return value if isinstance(value, str) and value else None

    @property
    def session_id(self) -> Optional[str]:
        value = self.data.get("session_id")
        return value if isinstance(value, str) and value else None

    @property
    def conversion_value(self) -> Optional[float]:
        return _number(self.data.get("conversion_value"))

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "partner_id": self.partner_id,
            "partner_domain": self.partner_domain,
            "data": self.data,
            "client_info": self.client_info.to_dict(),
        }

    @classmethod
    def from_payload(cls, payload: Any, client_info: ClientInfo) -> "TrackingEvent":
        """
        Build an event from a decoded ``/api/tracking/log`` body.

        A missing ``data.timestamp`` is filled with the receive time.

        Raises:
            ValidationError: If partner_id, type or data is missing
        """
        if not isinstance(payload, dict) or not all(payload.get(name) for name in cls.REQUIRED_FIELDS):
            raise ValidationError(
                code="missing_fields",
                message="Missing required fields",
                details={"required": list(cls.REQUIRED_FIELDS)},
            )
        partner_id, event_type, data = payload["partner_id"], payload["type"], payload["data"]
        if not isinstance(partner_id, str) or not isinstance(event_type, str) or not isinstance(data, dict):
            raise ValidationError(
                code="invalid_fields",
                message="partner_id and type must be strings and data an object",
            )
        domain = payload.get("partner_domain")
        return cls(
            type=event_type,
            partner_id=partner_id,
            partner_domain=domain if isinstance(domain, str) and domain else "unknown",
            data={**data, "timestamp": data.get("timestamp") or client_info.timestamp},
            client_info=client_info,
        )


@dataclass
class ConversionOutcome:
    """Result of attributing a conversion reported by a tracking script."""

    success: bool
    message: str
    attributed: Optional[bool] = None
    click_id: Optional[str] = None
    method: Optional[AttributionMethod] = None

    def to_dict(self) -> dict:
        body = {"success": self.success, "message": self.message}
        if self.attributed is not None:
            body["attributed"] = self.attributed
        return body


@dataclass
class EventSummary:
    """The part of a stored tracking event shown by the verification read-out."""

    type: str
    timestamp: int
    click_id: Optional[str] = None
    page_url: Optional[str] = None
    conversion_value: Optional[float] = None
    metadata: Any = None

    def to_dict(self) -> dict:
        return {
            "type": self.type,
            "timestamp": self.timestamp,
            "click_id": self.click_id,
            "page_url": self.page_url,
            "conversion_value": self.conversion_value,
            "metadata": self.metadata,
        }

    @classmethod
    def from_stored(cls, stored: dict, default_timestamp: int) -> "EventSummary":
        data = stored.get("data") if isinstance(stored.get("data"), dict) else {}
        client = stored.get("client_info") if isinstance(stored.get("client_info"), dict) else {}
        timestamp = _number(client.get("timestamp")) or _number(data.get("timestamp")) or default_timestamp
        return cls(
            type=stored.get("type") or "page_view",
            timestamp=int(timestamp),
            click_id=data.get("click_id"),
            page_url=data.get("page_url"),
            conversion_value=_number(data.get("conversion_value")),
            metadata=data.get("metadata"),
        )


@dataclass
class VerificationReport:
    """What a partner sees when checking that its tracking works."""

    partner_id: str
    is_active: bool
    tracking_status: TrackingStatus
    recent_events: list[EventSummary]
    total_events_today: int
    total_events_week: int
    message: str
    last_event_time: Optional[str] = None
    debug: Optional[dict] = None

    def to_dict(self) -> dict:
        body = {
            "success": True,
            "partner_id": self.partner_id,
            "is_active": self.is_active,
            "tracking_status": self.tracking_status.value,
            "recent_events": [event.to_dict() for event in self.recent_events],
            "last_event_time": self.last_event_time,
            "total_events_today": self.total_events_today,
            "total_events_week": self.total_events_week,
            "message": self.message,
        }
        if self.debug is not None:
            body["debug"] = self.debug
        return body
