"""
Signed token codec.

Session tokens are HS256 JSON Web Tokens carrying the session claims and an
``exp`` epoch timestamp, signed with the configured signing key through
python-jose.
"""

import base64
import binascii
import time
from datetime import datetime
from typing import Callable, Optional, Union

from jose import jwt
from jose.exceptions import JOSEError
from jose.utils import base64url_decode, base64url_encode

from .config import KEY_ENCODINGS, MIN_SIGNING_KEY_BYTES, SigningConfig
from .exceptions import ConfigurationError


ALGORITHM = "HS256"
EXPIRY_CLAIM = "exp"

# jose compares ``exp`` with the wall clock and accepts ``now == exp``.
# Presence and expiry of ``exp`` are checked against the injected clock.
DECODE_OPTIONS = {"verify_exp": False}


def load_signing_key(config: SigningConfig) -> bytes:
    """
    Decode the configured signing key.

    The key has exactly one declared encoding. ``base64`` keys must decode
    cleanly; ``raw`` keys are used as their UTF-8 bytes. Either way the
    resulting key must be at least 32 bytes long.

    Raises:
        ConfigurationError: If the key is absent, undecodable or too short
    """
    if not config.key:
        raise ConfigurationError(
            code="missing_signing_key",
            message="ELPORTAL_SIGNING_KEY is not set",
        )

    if config.key_encoding not in KEY_ENCODINGS:
        raise ConfigurationError(
            code="unknown_signing_key_encoding",
            message=f"Unsupported signing key encoding: {config.key_encoding!r}",
            details={"allowed": list(KEY_ENCODINGS)},
        )

    if config.key_encoding == "base64":
        try:
            key = base64.b64decode(config.key, validate=True)
        except (binascii.Error, ValueError):
            raise ConfigurationError(
                code="invalid_signing_key",
                message="Signing key is declared base64 but does not decode",
            )
    else:
        key = config.key.encode("utf-8")

    if len(key) < MIN_SIGNING_KEY_BYTES:
        raise ConfigurationError(
            code="signing_key_too_short",
            message=f"Signing key too short: {len(key)} bytes (need at least {MIN_SIGNING_KEY_BYTES})",
        )
    return key


class SignedTokenCodec:
    """
    Turns a claims mapping into an HS256 JWT with an ``exp`` claim and back.

    Verification never raises: any structural, signature or expiry problem
    yields ``None`` so callers can treat it as "no valid token". Expiry is
    checked against the injected clock, and a token is already invalid at
    the instant of its expiry.
    """

    def __init__(
        self,
        key: bytes,
        required_claim: Optional[str] = "sessionId",
        now_fn: Optional[Callable[[], float]] = None,
    ) -> None:
        """
        Initialize the codec.

        Args:
            key: Decoded signing key (see ``load_signing_key``)
            required_claim: Claim that must be present as a non-empty string
            now_fn: Clock returning epoch seconds
        """
        if len(key) < MIN_SIGNING_KEY_BYTES:
            raise ConfigurationError(
                code="signing_key_too_short",
                message="Signing key too short",
            )
        self._key = key
        self._required_claim = required_claim
        self._now = now_fn or time.time

    @classmethod
    def from_config(
        cls,
        config: SigningConfig,
        now_fn: Optional[Callable[[], float]] = None,
    ) -> "SignedTokenCodec":
        return cls(load_signing_key(config), now_fn=now_fn)

    def sign(self, claims: dict, expiry: Union[datetime, float]) -> str:
        """
        Encode claims plus expiry as a signed JWT.

        Args:
            claims: JSON-serialisable claims
            expiry: Expiry instant (aware datetime or epoch seconds)

        Returns:
            The compact JWT string
        """
        to_encode = dict(claims)
        to_encode[EXPIRY_CLAIM] = expiry.timestamp() if isinstance(expiry, datetime) else float(expiry)
        return jwt.encode(to_encode, self._key, algorithm=ALGORITHM)

    def verify(self, token: Optional[str]) -> Optional[dict]:
        """
        Verify a token and return its claims.

        Returns:
            The claims (without the expiry claim) or None when the token is
            malformed, the signature does not match, the required claim is
            missing, or the current time is at or past the expiry.
        """
        if not token or not isinstance(token, str) or not token.isascii():
            return None
        if token.count(".") != 2 or not _is_canonical_segment(token.rsplit(".", 1)[1]):
            return None

        try:
            payload = jwt.decode(token, self._key, algorithms=[ALGORITHM], options=DECODE_OPTIONS)
        except JOSEError:
            return None

        expires_at = payload.pop(EXPIRY_CLAIM, None)
        if isinstance(expires_at, bool) or not isinstance(expires_at, (int, float)):
            return None
        if self._now() >= expires_at:
            return None

        if self._required_claim is not None:
            value = payload.get(self._required_claim)
            if not isinstance(value, str) or not value:
                return None

        return payload


def _is_canonical_segment(segment: str) -> bool:
    # Unpadded base64 leaves spare low bits in the last character; only the
    # encoding with those bits cleared is accepted.
    try:
        return base64url_encode(base64url_decode(segment.encode("ascii"))) == segment.encode("ascii")
    except (binascii.Error, ValueError):
        return False
