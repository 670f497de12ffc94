"""
FastAPI application for the portal core.

``create_app`` builds one ``PortalServices`` container from a validated
configuration and exposes the session, authorization, click, conversion,
partner tracking and data-proxy routes. Nothing is held in module globals:
tests build an app per case with an in-memory store and a mocked HTTP
transport.
"""

import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncGenerator, Callable, Optional
from urllib.parse import urlencode

import httpx
from fastapi import BackgroundTasks, FastAPI, Query, Request
from fastapi.responses import JSONResponse, RedirectResponse, Response

from . import __version__
from .audit_logger import AuditLogger
from .click_ledger import ClickLedger
from .config import SystemConfig
from .conversions import ConversionAttributor
from .eloverblik import AuthorizationResolver
from .enums import LogLevel
from .exceptions import AuthenticationError, PortalError, ValidationError
from .fetch_cache import ResilientFetchCache
from .kv_store import KeyValueStore, MemoryKeyValueStore, RestKeyValueStore
from .models import ClientInfo, SessionClaims
from .partner_tracking import PIXEL_GIF, PIXEL_HEADERS, PartnerTracker, pixel_payload
from .production import MonthlyProductionService, ProductionQuery
from .rate_limiter import RateLimiter
from .retry_manager import RetryManager
from .sessions import SessionManager
from .token_codec import SignedTokenCodec
from .upstream_client import UpstreamClient


GENERIC_ERROR = {"code": "internal_error", "message": "Internal server error"}


@dataclass
class PortalServices:
    """Everything a request handler needs, constructed once per process."""

    config: SystemConfig
    logger: AuditLogger
    store: KeyValueStore
    upstream: UpstreamClient
    sessions: SessionManager
    ledger: ClickLedger
    conversions: ConversionAttributor
    tracking: PartnerTracker
    resolver: AuthorizationResolver
    production: MonthlyProductionService

    async def aclose(self) -> None:
        await self.ledger.drain()
        await self.upstream.aclose()
        if isinstance(self.store, RestKeyValueStore):
            await self.store.aclose()


def build_services(
    config: SystemConfig,
    store: Optional[KeyValueStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    logger: Optional[AuditLogger] = None,
    now_fn: Optional[Callable[[], float]] = None,
    sleep_func: Optional[Callable[[float], Any]] = None,
) -> PortalServices:
    """
    Validate the configuration and wire up all components.

    Raises:
        ConfigurationError: If the configuration is unusable
    """
    config.validate()
    logger = logger or AuditLogger.from_config(config.logging)
    now_fn = now_fn or time.time

    if store is None:
        if config.kv.is_configured:
            store = RestKeyValueStore(config.kv, client=http_client)
        else:
            logger.log(
                LogLevel.WARN,
                "api",
                "KV store not configured, using process-local memory store",
            )
            store = MemoryKeyValueStore(now_fn=now_fn)

    codec = SignedTokenCodec.from_config(config.signing, now_fn=now_fn)
    rate_limiter = RateLimiter(config.rate_limits)
    retry = RetryManager(config.retry, sleep_func=sleep_func, logger=logger)
    upstream = UpstreamClient(
        rate_limiter,
        retry,
        client=http_client,
        timeout=config.data_proxy.timeout_seconds,
        logger=logger,
    )
    ledger = ClickLedger(store, config.tracking, logger=logger, now_fn=now_fn, sleep_func=sleep_func)
    cache = ResilientFetchCache(store, config.cache, logger=logger)
    conversions = ConversionAttributor(store, ledger, config.tracking, logger=logger, now_fn=now_fn)

    return PortalServices(
        config=config,
        logger=logger,
        store=store,
        upstream=upstream,
        sessions=SessionManager(store, codec, config.authorization, logger=logger, now_fn=now_fn),
        ledger=ledger,
        conversions=conversions,
        tracking=PartnerTracker(store, ledger, conversions, config.tracking, logger=logger, now_fn=now_fn),
        resolver=AuthorizationResolver(config.authorization, upstream),
        production=MonthlyProductionService(
            cache,
            upstream,
            config.data_proxy,
            config.cache,
            logger=logger,
            now_fn=now_fn,
        ),
    )


def _services(request: Request) -> PortalServices:
    return request.app.state.services


def session_token(request: Request, cookie_name: str) -> Optional[str]:
    """Session token from the session cookie, else from a bearer header."""
    token = request.cookies.get(cookie_name)
    if token:
        return token
    header = request.headers.get("Authorization", "")
    if header.lower().startswith("bearer "):
        return header[7:].strip() or None
    return None


def client_ip(request: Request) -> str:
    """First X-Forwarded-For hop, else X-Real-IP, else ``"unknown"``."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.headers.get("x-real-ip") or "unknown"


def _client_info(request: Request) -> ClientInfo:
    tracker = _services(request).tracking
    return tracker.client_info(client_ip(request), request.headers.get("user-agent", ""))


def _set_session_cookie(response: Response, services: PortalServices, token: str) -> None:
    auth = services.config.authorization
    response.set_cookie(
        auth.session_cookie_name,
        token,
        max_age=auth.session_ttl_seconds,
        httponly=True,
        secure=services.config.is_production,
        samesite="lax",
        path="/",
    )


async def _require_session(request: Request) -> tuple[SessionClaims, Any]:
    services = _services(request)
    token = session_token(request, services.config.authorization.session_cookie_name)
    session = await services.sessions.get_session(token)
    if session is None:
        raise AuthenticationError(code="NO_SESSION", message="No active session found")
    return session


def _tracker_url(services: PortalServices, **params: str) -> str:
    auth = services.config.authorization
    return f"{auth.redirect_base_url}{auth.tracker_path}?{urlencode(params)}"


def _pixel_response(request: Request, background_tasks: BackgroundTasks, payload: dict) -> Response:
    """The GIF goes out first; the hit is recorded after the response is sent."""
    background_tasks.add_task(
        _services(request).tracking.track_pixel,
        payload,
        request.headers.get("referer"),
        client_ip(request),
        request.headers.get("user-agent", ""),
    )
    return Response(PIXEL_GIF, media_type="image/gif", headers=PIXEL_HEADERS)


async def _verify(request: Request, partner_id: Any) -> JSONResponse:
    services = _services(request)
    report = await services.tracking.verify(
        partner_id,
        include_debug=services.config.environment == "development",
    )
    return JSONResponse(report.to_dict())


def _register_error_handlers(app: FastAPI) -> None:
    @app.exception_handler(PortalError)
    async def portal_error_handler(request: Request, exc: PortalError) -> JSONResponse:
        services = _services(request)
        production = services.config.is_production
        if exc.http_status >= 500:
            services.logger.log_error("api", f"{request.method} {request.url.path} failed", error=exc)
            body = GENERIC_ERROR if production else exc.to_dict()
        else:
            body = exc.to_dict(include_details=not production)
        return JSONResponse(
            {"ok": False, "error": body},
            status_code=exc.http_status,
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        services = _services(request)
        services.logger.log_error("api", f"Unhandled error on {request.url.path}", error=exc)
        return JSONResponse({"ok": False, "error": GENERIC_ERROR}, status_code=500)


def _register_routes(app: FastAPI) -> None:
    @app.get("/health")
    async def health_check():
        return {"status": "healthy", "version": __version__}

    @app.post("/api/auth/session")
    async def create_session(request: Request, action: Optional[str] = Query(default=None)):
        services = _services(request)
        cookie_name = services.config.authorization.session_cookie_name

        if action == "logout":
            claims = services.sessions.verify_token(session_token(request, cookie_name))
            if claims is not None:
                await services.sessions.clear_session(claims.session_id)
            response = JSONResponse({
                "ok": True,
                "data": {"status": "logged_out", "message": "Session cleared successfully"},
            })
            response.delete_cookie(cookie_name, path="/")
            return response

        claims, token = await services.sessions.create_session()
        response = JSONResponse({
            "ok": True,
            "data": {
                "sessionId": claims.session_id,
                "expiresIn": services.config.authorization.session_ttl_seconds,
                "status": "created",
            },
        })
        _set_session_cookie(response, services, token)
        return response

    @app.post("/api/auth/authorize")
    async def begin_authorization(request: Request):
        services = _services(request)
        claims, _ = await _require_session(request)
        auth_request = await services.sessions.begin_authorization(claims)
        return {
            "ok": True,
            "data": {
                "authorizationUrl": auth_request.authorization_url,
                "stateValue": auth_request.state_value,
                "sessionId": auth_request.session_id,
                "message": "Redirect user to authorizationUrl to complete authorization",
            },
        }

    @app.get("/api/auth/authorize")
    async def authorization_status(request: Request):
        services = _services(request)
        claims, record = await _require_session(request)
        customer_id = (record.customer_id if record else None) or claims.customer_id
        return {
            "ok": True,
            "data": {
                "sessionId": claims.session_id,
                "status": record.status.value if record else None,
                "hasAuthorization": bool(customer_id),
                "customerId": customer_id,
                "thirdPartyId": services.config.authorization.third_party_id,
                "authorizationUrl": services.config.authorization.authorize_url,
            },
        }

    @app.get("/api/auth/callback")
    async def authorization_callback(request: Request, state: Optional[str] = Query(default=None)):
        services = _services(request)
        if not state:
            return RedirectResponse(_tracker_url(services, error="missing_state"), status_code=302)

        try:
            session_id = await services.sessions.verify_state(state)
            if session_id is None:
                return RedirectResponse(_tracker_url(services, error="invalid_state"), status_code=302)

            customer_id = await services.resolver.resolve_customer_id()
            if customer_id is None:
                return RedirectResponse(_tracker_url(services, error="no_authorizations"), status_code=302)

            record = await services.sessions.complete_authorization(session_id, customer_id)
            token = await services.sessions.rotate_session(SessionClaims(
                session_id=session_id,
                created_at=record.created_at,
                expires_at=record.expires_at,
                customer_id=customer_id,
                scopes=record.scopes,
            ))
        except PortalError as e:
            services.logger.log_error("api", "Authorization callback failed", error=e)
            return RedirectResponse(_tracker_url(services, error="callback_failed"), status_code=302)

        response = RedirectResponse(
            _tracker_url(services, authorized="true", customer=customer_id),
            status_code=302,
        )
        _set_session_cookie(response, services, token)
        return response

    @app.post("/api/track-click", status_code=202)
    async def track_click(request: Request, background_tasks: BackgroundTasks):
        services = _services(request)
        try:
            body = await request.json()
        except ValueError:
            body = None
        if not isinstance(body, dict) or not isinstance(body.get("partner_id"), str) or not body["partner_id"]:
            raise ValidationError(code="missing_partner_id", message="Missing required field: partner_id")

        click_id = services.ledger.new_click_id()
        background_tasks.add_task(
            services.ledger.record_click_best_effort,
            body["partner_id"],
            body.get("source"),
            body.get("metadata"),
            click_id,
        )
        return {"success": True, "click_id": click_id}

    @app.post("/api/track-conversion")
    async def track_conversion(request: Request):
        services = _services(request)
        try:
            payload = await request.json()
        except ValueError:
            payload = None

        record = await services.conversions.track_conversion(
            payload,
            request.headers.get("X-Webhook-Secret"),
        )
        return {
            "success": True,
            "click_id": record.click_id,
            "data": {
                "click_id": record.click_id,
                "partner_id": record.partner_id,
                "value": record.contract_value or record.conversion_value,
                "source": record.reported_via,
            },
            "message": "Conversion tracked successfully",
            "timestamp": record.conversion_timestamp,
        }

    @app.post("/api/tracking/log")
    async def tracking_log(request: Request):
        services = _services(request)
        try:
            payload = await request.json()
        except ValueError:
            payload = None

        body, quota = await services.tracking.log_event(payload, _client_info(request))
        return JSONResponse(body, headers=quota.headers)

    @app.get("/api/tracking/pixel")
    async def tracking_pixel(request: Request, background_tasks: BackgroundTasks):
        payload = pixel_payload(dict(request.query_params))
        return _pixel_response(request, background_tasks, payload)

    @app.post("/api/tracking/pixel")
    async def tracking_pixel_post(request: Request, background_tasks: BackgroundTasks):
        try:
            payload = await request.json()
        except ValueError:
            payload = None
        return _pixel_response(request, background_tasks, payload if isinstance(payload, dict) else {})

    @app.get("/api/tracking/verify")
    async def tracking_verify(request: Request, partner_id: Optional[str] = Query(default=None)):
        return await _verify(request, partner_id)

    @app.post("/api/tracking/verify")
    async def tracking_verify_post(request: Request):
        try:
            body = await request.json()
        except ValueError:
            body = None
        return await _verify(request, body.get("partner_id") if isinstance(body, dict) else None)

    @app.get("/api/monthly-production")
    async def monthly_production(
        request: Request,
        year: Optional[str] = Query(default=None),
        month: Optional[str] = Query(default=None),
        production_type: Optional[str] = Query(default=None, alias="productionType"),
    ):
        services = _services(request)
        query = ProductionQuery.from_params(year, month, production_type)
        result = await services.production.get_monthly_production(query)
        return JSONResponse(result.payload, headers=result.headers)


def create_app(
    config: SystemConfig,
    *,
    store: Optional[KeyValueStore] = None,
    http_client: Optional[httpx.AsyncClient] = None,
    logger: Optional[AuditLogger] = None,
    now_fn: Optional[Callable[[], float]] = None,
    sleep_func: Optional[Callable[[float], Any]] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: System configuration (validated here)
        store: Key-value store; built from ``config.kv`` if omitted
        http_client: Shared httpx client for upstream and KV calls
        logger: Audit logger; built from ``config.logging`` if omitted
        now_fn: Clock returning epoch seconds
        sleep_func: Coroutine used for retry delays

    Raises:
        ConfigurationError: If the configuration is unusable
    """
    services = build_services(
        config,
        store=store,
        http_client=http_client,
        logger=logger,
        now_fn=now_fn,
        sleep_func=sleep_func,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        services.logger.log(LogLevel.INFO, "api", "Portal API starting", {"environment": config.environment})
        yield
        services.logger.log(LogLevel.INFO, "api", "Portal API shutting down")
        await services.aclose()

    app = FastAPI(title="Portal Core API", version=__version__, lifespan=lifespan)
    app.state.services = services
    _register_error_handlers(app)
    _register_routes(app)
    return app
