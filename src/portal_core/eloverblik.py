"""
Eloverblik third-party API access used to finish the authorization handshake.

After the customer grants power of attorney, the newest authorization listed
by the third-party API identifies the customer for the session.
"""

from datetime import datetime, timezone
from typing import Optional

from .config import AuthorizationConfig
from .exceptions import ConfigurationError, UpstreamError
from .upstream_client import UpstreamClient


def _authorization_time(entry: dict) -> datetime:
    raw = entry.get("timeStamp") or entry.get("validFrom")
    if not isinstance(raw, str):
        return datetime.min.replace(tzinfo=timezone.utc)
    try:
        parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
    except ValueError:
        return datetime.min.replace(tzinfo=timezone.utc)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def newest_authorization(authorizations: list[dict]) -> Optional[dict]:
    """Pick the most recently created authorization."""
    candidates = [a for a in authorizations if isinstance(a, dict) and a.get("id")]
    if not candidates:
        return None
    return max(candidates, key=_authorization_time)


class AuthorizationResolver:
    """Resolves the customer id granted to us in the latest authorization."""

    def __init__(self, config: AuthorizationConfig, upstream: UpstreamClient) -> None:
        self._config = config
        self._upstream = upstream

    def _headers(self, bearer: str) -> dict[str, str]:
        return {
            "Authorization": f"Bearer {bearer}",
            "Accept": "application/json",
            "api-version": "1.0",
        }

    async def fetch_access_token(self) -> str:
        if not self._config.api_token:
            raise ConfigurationError(
                code="missing_api_token",
                message="ELOVERBLIK_API_TOKEN is not set",
            )
        data = await self._upstream.get_json(
            f"{self._config.api_base_url}/token",
            endpoint="eloverblik-auth",
            headers=self._headers(self._config.api_token),
        )
        data = data if isinstance(data, dict) else {}
        access = data.get("result") or data.get("access_token") or data.get("token")
        if not access:
            raise UpstreamError(code="no_access_token", message="No access token received")
        return access

    async def fetch_authorizations(self) -> list[dict]:
        access = await self.fetch_access_token()
        data = await self._upstream.get_json(
            f"{self._config.api_base_url}/authorization/authorizations",
            endpoint="eloverblik-default",
            headers=self._headers(access),
        )
        result = data.get("result") if isinstance(data, dict) else None
        return result if isinstance(result, list) else []

    async def resolve_customer_id(self) -> Optional[str]:
        """Return the newest authorization id, or None if there is none."""
        newest = newest_authorization(await self.fetch_authorizations())
        return str(newest["id"]) if newest else None
