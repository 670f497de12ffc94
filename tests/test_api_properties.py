"""
Tests for the FastAPI application.

Each test builds its own app around an in-memory store, a controllable
clock and a mocked upstream transport.
"""

import asyncio
import base64
import io
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from portal_core.api import create_app
from portal_core.audit_logger import AuditLogger
from portal_core.click_ledger import click_key
from portal_core.config import SigningConfig, SystemConfig, TrackingConfig
from portal_core.conversions import conversion_key
from portal_core.kv_store import MemoryKeyValueStore
from portal_core.partner_tracking import PARTNER_CONFIG_KEY, PIXEL_GIF
from portal_core.sessions import state_key
from portal_core.token_codec import SignedTokenCodec


RAW_KEY = b"s" * 32
SECRET = "whsec-test"
T0 = 1_700_000_000.0
DAY = 24 * 60 * 60


class Clock:
    def __init__(self, now: float = T0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def no_sleep(delay: float) -> None:
    return None


def upstream_handler(request: httpx.Request) -> httpx.Response:
    path = request.url.path
    if path.endswith("/token"):
        return httpx.Response(200, json={"result": "access-token"})
    if path.endswith("/authorization/authorizations"):
        return httpx.Response(200, json={"result": [
            {"id": "cust-old", "timeStamp": "2024-01-01T00:00:00Z"},
            {"id": "cust-new", "timeStamp": "2024-06-01T00:00:00Z"},
        ]})
    if "ProductionConsumptionSettlement" in path:
        return httpx.Response(200, json={"records": [
            {"HourUTC": "2024-05-01T00:00:00", "SolarPowerMWh": 3, "GrossConsumptionMWh": 6},
        ]})
    return httpx.Response(404)


def make_config(environment: str = "development", webhook_secret=SECRET) -> SystemConfig:
    config = SystemConfig(
        signing=SigningConfig(key=base64.b64encode(RAW_KEY).decode("ascii")),
        tracking=TrackingConfig(webhook_secret=webhook_secret),
        environment=environment,
    )
    config.authorization.api_token = "refresh-token"
    return config


def make_app(config=None, handler=upstream_handler):
    clock = Clock()
    store = MemoryKeyValueStore(now_fn=clock)
    app = create_app(
        config or make_config(),
        store=store,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        logger=AuditLogger(output_stream=io.StringIO()),
        now_fn=clock,
        sleep_func=no_sleep,
    )
    return app, store, clock


def tracker_query(response) -> dict:
    location = response.headers["location"]
    assert location.startswith("https://www.dinelportal.dk/forbrug-tracker?")
    return {k: v[0] for k, v in parse_qs(urlsplit(location).query).items()}


class TestSessionRoutes:
    def test_health(self) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    def test_create_session_sets_cookie(self) -> None:
        app, store, _ = make_app()
        with TestClient(app) as client:
            response = client.post("/api/auth/session")
            body = response.json()
            assert response.status_code == 200
            assert body["ok"] is True
            assert body["data"]["status"] == "created"
            assert body["data"]["expiresIn"] == DAY
            assert "elportal_session" in response.cookies
            assert asyncio.run(store.get(f"session:{body['data']['sessionId']}"))["status"] == "initialized"

    def test_logout_clears_session(self) -> None:
        app, store, _ = make_app()
        with TestClient(app) as client:
            session_id = client.post("/api/auth/session").json()["data"]["sessionId"]
            response = client.post("/api/auth/session", params={"action": "logout"})
            assert response.json()["data"]["status"] == "logged_out"
            assert asyncio.run(store.get(f"session:{session_id}")) is None


class TestAuthorizationRoutes:
    def test_authorize_without_session_is_401(self) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.post("/api/auth/authorize")
        assert response.status_code == 401
        assert response.json() == {
            "ok": False,
            "error": {"code": "NO_SESSION", "message": "No active session found"},
        }

    def test_authorize_with_token_but_no_record_is_401(self) -> None:
        app, _, clock = make_app()
        codec = SignedTokenCodec(RAW_KEY, now_fn=clock)
        token = codec.sign({"sessionId": "s1", "createdAt": 0, "expiresAt": 0}, clock.now + 3600)
        with TestClient(app) as client:
            response = client.post("/api/auth/authorize", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "NO_SESSION"

    def test_full_handshake(self) -> None:
        app, store, _ = make_app()
        with TestClient(app) as client:
            session_id = client.post("/api/auth/session").json()["data"]["sessionId"]

            started = client.post("/api/auth/authorize").json()["data"]
            assert started["sessionId"] == session_id
            assert started["stateValue"] in started["authorizationUrl"]
            assert asyncio.run(store.get(state_key(started["stateValue"])))["sessionId"] == session_id

            callback = client.get(
                "/api/auth/callback",
                params={"state": started["stateValue"]},
                follow_redirects=False,
            )
            assert callback.status_code == 302
            assert tracker_query(callback) == {"authorized": "true", "customer": "cust-new"}

            status = client.get("/api/auth/authorize").json()["data"]
            assert status["status"] == "authorized"
            assert status["hasAuthorization"] is True
            assert status["customerId"] == "cust-new"

            replay = client.get(
                "/api/auth/callback",
                params={"state": started["stateValue"]},
                follow_redirects=False,
            )
            assert tracker_query(replay) == {"error": "invalid_state"}

    @pytest.mark.parametrize("params,error", [
        ({}, "missing_state"),
        ({"state": "unknown"}, "invalid_state"),
    ])
    def test_callback_errors_redirect(self, params, error) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.get("/api/auth/callback", params=params, follow_redirects=False)
        assert response.status_code == 302
        assert tracker_query(response) == {"error": error}

    def test_callback_without_authorizations(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            if request.url.path.endswith("/token"):
                return httpx.Response(200, json={"result": "access-token"})
            return httpx.Response(200, json={"result": []})

        app, _, _ = make_app(handler=handler)
        with TestClient(app) as client:
            client.post("/api/auth/session")
            state = client.post("/api/auth/authorize").json()["data"]["stateValue"]
            response = client.get("/api/auth/callback", params={"state": state}, follow_redirects=False)
        assert tracker_query(response) == {"error": "no_authorizations"}

    def test_callback_upstream_failure(self) -> None:
        app, _, _ = make_app(handler=lambda request: httpx.Response(500))
        with TestClient(app) as client:
            client.post("/api/auth/session")
            state = client.post("/api/auth/authorize").json()["data"]["stateValue"]
            response = client.get("/api/auth/callback", params={"state": state}, follow_redirects=False)
        assert tracker_query(response) == {"error": "callback_failed"}


class TestTrackingRoutes:
    def test_track_click_is_accepted_and_recorded(self) -> None:
        app, store, _ = make_app()
        with TestClient(app) as client:
            response = client.post("/api/track-click", json={"partner_id": "partner-a", "source": {"page": "home"}})
        assert response.status_code == 202
        click_id = response.json()["click_id"]
        assert click_id.startswith("dep_")
        stored = asyncio.run(store.get(click_key(click_id)))
        assert stored["partner_id"] == "partner-a"
        assert stored["source"] == {"page": "home"}

    @pytest.mark.parametrize("body", [{}, {"partner_id": ""}, {"partner_id": 5}])
    def test_track_click_requires_partner(self, body) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.post("/api/track-click", json=body)
        assert response.status_code == 400
        assert response.json()["error"]["code"] == "missing_partner_id"

    def test_conversion_scenario(self) -> None:
        app, store, clock = make_app()
        ledger = app.state.services.ledger
        asyncio.run(ledger.record_click("partner-a", click_id="dep_abc123_xy9"))
        asyncio.run(ledger.record_click("partner-b", click_id="dep_other_click"))
        headers = {"X-Webhook-Secret": SECRET}

        with TestClient(app) as client:
            clock.now += 89 * DAY
            accepted = client.post(
                "/api/track-conversion",
                json={"click_id": "dep_abc123_xy9", "contract_value": 1200},
                headers=headers,
            )
            assert accepted.status_code == 200
            body = accepted.json()
            assert body["success"] is True
            assert body["data"] == {
                "click_id": "dep_abc123_xy9",
                "partner_id": "partner-a",
                "value": 1200,
                "source": "webhook",
            }

            repeat = client.post("/api/track-conversion", json={"click_id": "dep_abc123_xy9"}, headers=headers)
            assert repeat.status_code == 409

            clock.now += 2 * DAY
            expired = client.post("/api/track-conversion", json={"click_id": "dep_other_click"}, headers=headers)
            assert expired.status_code == 404

        assert asyncio.run(store.get(conversion_key("dep_abc123_xy9")))["partner_id"] == "partner-a"
        assert asyncio.run(store.get(conversion_key("dep_other_click"))) is None

    @pytest.mark.parametrize("headers,body,status", [
        ({}, {"click_id": "dep_x"}, 401),
        ({"X-Webhook-Secret": "wrong"}, {"click_id": "dep_x"}, 401),
        ({"X-Webhook-Secret": SECRET}, {}, 400),
        ({"X-Webhook-Secret": SECRET}, {"click_id": "abc"}, 400),
        ({"X-Webhook-Secret": SECRET}, {"click_id": "dep_unknown"}, 404),
    ])
    def test_conversion_errors(self, headers, body, status) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.post("/api/track-conversion", json=body, headers=headers)
        assert response.status_code == status
        assert response.json()["ok"] is False


class TestPartnerTrackingRoutes:
    def _partner(self, store, **extra) -> None:
        config = {"metadata": {"status": "active", "tier": "gold"}, "domain_whitelist": ["*.example.com"]}
        config.update(extra)
        asyncio.run(store.set(PARTNER_CONFIG_KEY.format("partner-a"), config))

    def _event(self, event_type="track", **data) -> dict:
        return {
            "type": event_type,
            "partner_id": "partner-a",
            "partner_domain": "shop.example.com",
            "data": {"session_id": "s1", **data},
        }

    def test_log_event_returns_rate_limit_headers(self) -> None:
        app, store, _ = make_app()
        self._partner(store)
        with TestClient(app) as client:
            response = client.post(
                "/api/tracking/log",
                json=self._event(click_id="dep_abc123_xy9"),
                headers={"X-Forwarded-For": "198.51.100.4, 10.0.0.1"},
            )
        assert response.status_code == 200
        assert response.json()["message"] == "Event logged successfully"
        assert response.headers["X-RateLimit-Limit"] == "1000"
        assert response.headers["X-RateLimit-Remaining"] == "999"
        click = asyncio.run(store.get(click_key("dep_abc123_xy9")))
        assert click["source"] == "universal_script"
        assert click["metadata"]["ip"] == "198.51.100.4"

    def test_log_event_errors(self) -> None:
        app, store, _ = make_app()
        self._partner(store, security={"rate_limit_per_hour": 1})
        with TestClient(app) as client:
            missing = client.post("/api/tracking/log", json={"partner_id": "partner-a"})
            foreign = client.post("/api/tracking/log", json={**self._event(), "partner_domain": "evil.dk"})
            first = client.post("/api/tracking/log", json=self._event())
            limited = client.post("/api/tracking/log", json=self._event())
        assert missing.status_code == 400
        assert missing.json()["error"]["details"] == {"required": ["partner_id", "type", "data"]}
        assert foreign.status_code == 403
        assert first.status_code == 200
        assert limited.status_code == 429
        assert limited.json()["error"]["code"] == "rate_limit_exceeded"
        assert limited.headers["X-RateLimit-Remaining"] == "0"
        assert limited.headers["X-RateLimit-Limit"] == "1"

    def test_script_conversion(self) -> None:
        app, store, _ = make_app()
        self._partner(store)
        asyncio.run(app.state.services.ledger.record_click("partner-a", click_id="dep_abc123_xy9"))
        with TestClient(app) as client:
            response = client.post(
                "/api/tracking/log",
                json=self._event("conversion", click_id="dep_abc123_xy9", conversion_value=399),
            )
        body = response.json()
        assert (body["success"], body["message"], body["attributed"]) == (
            True, "Conversion tracked successfully", False,
        )
        assert asyncio.run(store.get(conversion_key("dep_abc123_xy9")))["reported_via"] == "universal_script"

    def test_pixel_serves_gif_and_records_landing(self) -> None:
        app, store, _ = make_app()
        self._partner(store)
        with TestClient(app) as client:
            response = client.get(
                "/api/tracking/pixel",
                params={"partner_id": "partner-a", "event_type": "landing", "click_id": "dep_abc123_xy9"},
                headers={"Referer": "https://shop.example.com/landing"},
            )
        assert response.status_code == 200
        assert response.headers["content-type"] == "image/gif"
        assert response.headers["cache-control"].startswith("no-store")
        assert response.content == PIXEL_GIF
        assert asyncio.run(store.get(click_key("dep_abc123_xy9")))["source"] == "pixel_tracking"

    def test_pixel_without_partner_still_serves_gif(self) -> None:
        app, store, _ = make_app()
        with TestClient(app) as client:
            get = client.get("/api/tracking/pixel")
            post = client.post("/api/tracking/pixel", content=b"not json")
        assert get.content == PIXEL_GIF
        assert post.content == PIXEL_GIF
        assert store.keys() == []

    def test_verify(self) -> None:
        app, store, _ = make_app()
        self._partner(store)
        with TestClient(app) as client:
            client.post("/api/tracking/log", json=self._event(page_url="https://shop.example.com/"))
            by_query = client.get("/api/tracking/verify", params={"partner_id": "partner-a"})
            by_body = client.post("/api/tracking/verify", json={"partner_id": "partner-a"})
            unknown = client.get("/api/tracking/verify", params={"partner_id": "partner-z"})
            malformed = client.post("/api/tracking/verify", json={"partner_id": "a b"})
            missing = client.get("/api/tracking/verify")
        body = by_query.json()
        assert body["tracking_status"] == "active"
        assert body["total_events_today"] == 1
        assert body["recent_events"][0]["page_url"] == "https://shop.example.com/"
        assert body["debug"]["domain_whitelist"] == ["*.example.com"]
        assert by_body.json()["partner_id"] == "partner-a"
        assert unknown.status_code == 404
        assert malformed.status_code == 400
        assert missing.json()["error"]["code"] == "missing_partner_id"

    def test_verify_hides_debug_in_production(self) -> None:
        app, store, _ = make_app(config=make_config(environment="production"))
        self._partner(store)
        with TestClient(app) as client:
            body = client.get("/api/tracking/verify", params={"partner_id": "partner-a"}).json()
        assert body["tracking_status"] == "no_data"
        assert "debug" not in body


class TestErrorBodies:
    def test_production_hides_server_error_details(self) -> None:
        app, _, _ = make_app(config=make_config(environment="production", webhook_secret=None))
        with TestClient(app) as client:
            response = client.post("/api/track-conversion", json={"click_id": "dep_x"}, headers={"X-Webhook-Secret": "x"})
        assert response.status_code == 500
        assert response.json() == {"ok": False, "error": {"code": "internal_error", "message": "Internal server error"}}

    def test_development_shows_server_error_code(self) -> None:
        app, _, _ = make_app(config=make_config(webhook_secret=None))
        with TestClient(app) as client:
            response = client.post("/api/track-conversion", json={"click_id": "dep_x"}, headers={"X-Webhook-Secret": "x"})
        assert response.status_code == 500
        assert response.json()["error"]["code"] == "missing_webhook_secret"

    def test_production_hides_client_error_details(self) -> None:
        app, _, _ = make_app(config=make_config(environment="production"))
        with TestClient(app) as client:
            response = client.get("/api/monthly-production", params={"year": "20"})
        assert response.status_code == 400
        assert response.json()["error"] == {"code": "invalid_parameters", "message": "Invalid parameters"}


class TestMonthlyProductionRoute:
    def test_cache_status_header(self) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            first = client.get("/api/monthly-production", params={"year": "2024", "month": "5"})
            second = client.get("/api/monthly-production", params={"year": "2024", "month": "5"})
        assert first.status_code == 200
        assert first.headers["X-Cache"] == "MISS"
        assert second.headers["X-Cache"] == "HIT-KV"
        assert first.json()["data"][0]["solar"] == 3
        assert second.json() == first.json()

    def test_invalid_parameters(self) -> None:
        app, _, _ = make_app()
        with TestClient(app) as client:
            response = client.get("/api/monthly-production", params={"month": "13", "productionType": "coal"})
        assert response.status_code == 400
        assert len(response.json()["error"]["details"]["errors"]) == 2
