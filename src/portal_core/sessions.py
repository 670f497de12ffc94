"""
Session manager for visitor sessions and the third-party authorization
handshake.

A session is a signed token held by the browser plus a live record in the
key-value store. Starting authorization mints a single-use CSRF state token
that the third party hands back on the callback.
"""

import secrets
import time
from typing import Callable, Optional
from urllib.parse import urlencode

from .audit_logger import AuditLogger
from .config import AuthorizationConfig
from .enums import LogLevel, SessionStatus
from .exceptions import ConflictError, NotFoundError, PortalError
from .kv_store import KeyValueStore
from .models import AuthorizationRequest, SessionClaims, SessionRecord, StateTokenRecord
from .token_codec import SignedTokenCodec


SESSION_KEY = "session:{}"
STATE_KEY = "state:{}"
AUTHORIZATION_STATE_TYPE = "eloverblik_authorization"


def session_key(session_id: str) -> str:
    return SESSION_KEY.format(session_id)


def state_key(state_value: str) -> str:
    return STATE_KEY.format(state_value)


class SessionManager:
    """
    Issues, reads and advances visitor sessions.

    Status only moves forward (initialized -> authorizing -> authorized);
    attempts to move it backwards raise ``ConflictError``.
    """

    def __init__(
        self,
        store: KeyValueStore,
        codec: SignedTokenCodec,
        config: AuthorizationConfig,
        logger: Optional[AuditLogger] = None,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Initialize the session manager.

        Args:
            store: Shared key-value store
            codec: Signed token codec for session tokens
            config: Authorization handshake settings and TTLs
            logger: Optional audit logger
            now_fn: Clock returning epoch seconds
        """
        self._store = store
        self._codec = codec
        self._config = config
        self._logger = logger
        self._now = now_fn or time.time

    def _now_ms(self) -> int:
        return int(self._now() * 1000)

    def _log(self, level: LogLevel, message: str, data: Optional[dict] = None) -> None:
        if self._logger:
            self._logger.log(level, "session_manager", message, data)

    async def create_session(
        self,
        customer_id: Optional[str] = None,
        scopes: Optional[list[str]] = None,
    ) -> tuple[SessionClaims, str]:
        """
        Create a session record and its signed token.

        Returns:
            The session claims and the token to hand to the browser
        """
        now = self._now_ms()
        ttl = self._config.session_ttl_seconds
        claims = SessionClaims(
            session_id=secrets.token_urlsafe(24),
            created_at=now,
            expires_at=now + ttl * 1000,
            customer_id=customer_id,
            scopes=list(scopes or []),
        )
        record = SessionRecord(
            status=SessionStatus.AUTHORIZED if customer_id else SessionStatus.INITIALIZED,
            created_at=claims.created_at,
            expires_at=claims.expires_at,
            customer_id=customer_id,
            scopes=claims.scopes,
        )
        await self._store.set(session_key(claims.session_id), record.to_dict(), ex=ttl)
        token = self._codec.sign(claims.to_dict(), claims.expires_at / 1000)
        self._log(LogLevel.INFO, "Session created", {"session_id": claims.session_id})
        return claims, token

    def verify_token(self, token: Optional[str]) -> Optional[SessionClaims]:
        """Verify a session token; any failure means "no session"."""
        claims = self._codec.verify(token)
        if claims is None:
            if token:
                self._log(LogLevel.DEBUG, "Session token rejected")
            return None
        return SessionClaims.from_dict(claims)

    async def get_session(
        self,
        token: Optional[str],
        require_record: bool = True,
    ) -> Optional[tuple[SessionClaims, Optional[SessionRecord]]]:
        """
        Resolve a request's session.

        Args:
            token: Session token from the cookie or bearer header
            require_record: Treat a missing live record as "no session"

        Returns:
            The verified claims with the live record, or None
        """
        claims = self.verify_token(token)
        if claims is None:
            return None
        record = await self.get_session_record(claims.session_id)
        if record is None and require_record:
            self._log(LogLevel.INFO, "Session record missing", {"session_id": claims.session_id})
            return None
        return claims, record

    async def get_session_record(self, session_id: str) -> Optional[SessionRecord]:
        data = await self._store.get(session_key(session_id))
        if not isinstance(data, dict):
            return None
        return SessionRecord.from_dict(data)

    async def update_session(
        self,
        session_id: str,
        status: Optional[SessionStatus] = None,
        customer_id: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SessionRecord:
        """
        Apply changes to a session record and reset its TTL.

        Raises:
            NotFoundError: If the session record does not exist
            ConflictError: If the status would move backwards
        """
        record = await self.get_session_record(session_id)
        if record is None:
            raise NotFoundError(
                code="session_not_found",
                message="Session not found",
                details={"session_id": session_id},
            )

        if status is not None:
            if status.rank < record.status.rank:
                self._log(
                    LogLevel.WARN,
                    "Rejected session status regression",
                    {"session_id": session_id, "from": record.status.value, "to": status.value},
                )
                raise ConflictError(
                    code="status_regression",
                    message=f"Cannot move session from {record.status.value} to {status.value}",
                    details={"session_id": session_id},
                )
            record.status = status
        if customer_id is not None:
            record.customer_id = customer_id
        if metadata:
            record.metadata.update(metadata)

        ttl = self._config.session_ttl_seconds
        record.expires_at = self._now_ms() + ttl * 1000
        await self._store.set(session_key(session_id), record.to_dict(), ex=ttl)
        return record

    def build_authorization_url(self, state_value: str) -> str:
        """Third-party consent URL whose return URL carries the state token."""
        callback_url = f"{self._config.callback_url}?{urlencode({'state': state_value})}"
        params = urlencode({
            "thirdPartyId": self._config.third_party_id,
            "fromDate": self._config.from_date,
            "toDate": self._config.to_date,
            "returnUrl": callback_url,
        })
        return f"{self._config.authorize_url}?{params}"

    async def begin_authorization(self, claims: SessionClaims) -> AuthorizationRequest:
        """
        Start the third-party authorization handshake for a session.

        The state record must be written for the flow to proceed; the
        session status update is best-effort and never aborts it.

        Raises:
            StoreError: If the state token record cannot be written
        """
        state_value = secrets.token_urlsafe(32)
        now = self._now_ms()
        state_record = StateTokenRecord(
            session_id=claims.session_id,
            created_at=now,
            type=AUTHORIZATION_STATE_TYPE,
        )
        await self._store.set(
            state_key(state_value),
            state_record.to_dict(),
            ex=self._config.state_ttl_seconds,
        )

        try:
            await self.update_session(
                claims.session_id,
                status=SessionStatus.AUTHORIZING,
                metadata={"authStartedAt": now, "stateValue": state_value},
            )
        except PortalError as e:
            if self._logger:
                self._logger.log_error(
                    "session_manager",
                    "Failed to update session; continuing with authorization",
                    error=e,
                    additional_data={"session_id": claims.session_id},
                )

        self._log(LogLevel.INFO, "Authorization started", {"session_id": claims.session_id})
        return AuthorizationRequest(
            authorization_url=self.build_authorization_url(state_value),
            state_value=state_value,
            session_id=claims.session_id,
        )

    async def verify_state(self, state_value: str) -> Optional[str]:
        """
        Consume a state token.

        State tokens are single-use: the record is deleted on the first
        successful read, so a replayed callback finds nothing.

        Returns:
            The owning session id, or None if the token is unknown/expired
        """
        if not state_value:
            return None
        data = await self._store.get(state_key(state_value))
        if not isinstance(data, dict) or not isinstance(data.get("sessionId"), str):
            return None
        if await self._store.delete(state_key(state_value)) == 0:
            # Another callback consumed it between our read and delete.
            return None
        return StateTokenRecord.from_dict(data).session_id

    async def complete_authorization(self, session_id: str, customer_id: str) -> SessionRecord:
        """Mark the session authorized for ``customer_id``."""
        record = await self.update_session(
            session_id,
            status=SessionStatus.AUTHORIZED,
            customer_id=customer_id,
            metadata={"authCompletedAt": self._now_ms()},
        )
        self._log(LogLevel.INFO, "Authorization completed", {"session_id": session_id})
        return record

    async def rotate_session(self, claims: SessionClaims) -> str:
        """Issue a fresh token for the same session and extend its record."""
        now = self._now_ms()
        rotated = SessionClaims(
            session_id=claims.session_id,
            created_at=now,
            expires_at=now + self._config.session_ttl_seconds * 1000,
            customer_id=claims.customer_id,
            scopes=claims.scopes,
        )
        await self.update_session(claims.session_id)
        return self._codec.sign(rotated.to_dict(), rotated.expires_at / 1000)

    async def clear_session(self, session_id: str) -> None:
        await self._store.delete(session_key(session_id))
