"""
Property-based tests for the Signed Token Codec module.

Uses Hypothesis for property-based testing to verify token integrity,
expiry handling and signing-key loading.
"""

import base64

import pytest
from hypothesis import given, settings, assume
from hypothesis import strategies as st

from portal_core.config import SigningConfig
from portal_core.exceptions import ConfigurationError
from jose import jwt

from portal_core.token_codec import SignedTokenCodec, load_signing_key


KEY = b"k" * 32
NOW = 1_700_000_000.0


class Clock:
    def __init__(self, now: float = NOW) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


# Strategies for generating test data

@st.composite
def claims_strategy(draw) -> dict:
    """Generate claims carrying a non-empty session id."""
    claims = {"sessionId": draw(st.text(min_size=1, max_size=40))}
    if draw(st.booleans()):
        claims["customerId"] = draw(st.text(alphabet="0123456789abcdef", min_size=1, max_size=36))
    if draw(st.booleans()):
        claims["scopes"] = draw(st.lists(st.sampled_from(["read", "write", "meter"]), max_size=3))
    claims["createdAt"] = draw(st.integers(min_value=0, max_value=2**41))
    return claims


class TestTokenVerificationProperty:
    """
    Property-based tests for signature and expiry checks.

    **Property 1: A token verifies iff its signature matches and now < expiry**
    """

    @given(claims=claims_strategy(), lifetime=st.floats(min_value=0.001, max_value=86400 * 30))
    @settings(max_examples=100)
    def test_fresh_token_round_trips_claims(self, claims: dict, lifetime: float) -> None:
        """
        Property 1: A token verified before its expiry yields its claims.
        """
        clock = Clock()
        codec = SignedTokenCodec(KEY, now_fn=clock)
        token = codec.sign(claims, NOW + lifetime)

        assert codec.verify(token) == claims

    @given(claims=claims_strategy(), past=st.floats(min_value=0.0, max_value=86400 * 30))
    @settings(max_examples=100)
    def test_token_at_or_after_expiry_is_invalid(self, claims: dict, past: float) -> None:
        """
        Property 1: At or after the embedded expiry verification fails.
        """
        clock = Clock()
        codec = SignedTokenCodec(KEY, now_fn=clock)
        token = codec.sign(claims, NOW)

        clock.now = NOW + past
        assert codec.verify(token) is None

    @given(claims=claims_strategy(), data=st.data())
    @settings(max_examples=200)
    def test_mutating_any_byte_invalidates_token(self, claims: dict, data) -> None:
        """
        Property 2: Changing any single character of a valid token makes
        verification fail.
        """
        codec = SignedTokenCodec(KEY, now_fn=Clock())
        token = codec.sign(claims, NOW + 3600)

        index = data.draw(st.integers(min_value=0, max_value=len(token) - 1))
        replacement = data.draw(st.characters(min_codepoint=33, max_codepoint=0x2FF))
        assume(replacement != token[index])
        tampered = token[:index] + replacement + token[index + 1:]

        assert codec.verify(token) is not None
        assert codec.verify(tampered) is None

    @given(claims=claims_strategy())
    @settings(max_examples=50)
    def test_token_signed_with_other_key_is_invalid(self, claims: dict) -> None:
        """
        Property 2: A token signed with a different key never verifies.
        """
        clock = Clock()
        ours = SignedTokenCodec(KEY, now_fn=clock)
        theirs = SignedTokenCodec(b"x" * 32, now_fn=clock)

        assert ours.verify(theirs.sign(claims, NOW + 60)) is None

    def test_missing_identity_claim_is_invalid(self) -> None:
        codec = SignedTokenCodec(KEY, now_fn=Clock())
        assert codec.verify(codec.sign({"customerId": "c1"}, NOW + 60)) is None
        assert codec.verify(codec.sign({"sessionId": 42}, NOW + 60)) is None
        assert codec.verify(codec.sign({"sessionId": ""}, NOW + 60)) is None

    def test_token_is_standard_hs256_jwt(self) -> None:
        """
        Property 3: Issued tokens are HS256 JWTs any JOSE library can read.
        """
        codec = SignedTokenCodec(KEY, now_fn=Clock())
        token = codec.sign({"sessionId": "s1"}, NOW + 60)

        assert jwt.get_unverified_header(token)["alg"] == "HS256"
        assert jwt.get_unverified_claims(token) == {"sessionId": "s1", "exp": NOW + 60}

    def test_foreign_jwt_with_same_key_is_accepted(self) -> None:
        token = jwt.encode({"sessionId": "s1", "exp": int(NOW) + 60}, KEY, algorithm="HS256")
        assert SignedTokenCodec(KEY, now_fn=Clock()).verify(token) == {"sessionId": "s1"}

    @pytest.mark.parametrize("claims", [{"sessionId": "s1"}, {"sessionId": "s1", "exp": "soon"}])
    def test_token_without_numeric_expiry_is_invalid(self, claims) -> None:
        token = jwt.encode(claims, KEY, algorithm="HS256")
        assert SignedTokenCodec(KEY, now_fn=Clock()).verify(token) is None

    def test_other_algorithms_are_refused(self) -> None:
        token = jwt.encode({"sessionId": "s1", "exp": NOW + 60}, KEY, algorithm="HS512")
        assert SignedTokenCodec(KEY, now_fn=Clock()).verify(token) is None

    @pytest.mark.parametrize("token", [None, "", "abc", "a.b.c", "ä.ö", ".", "x."])
    def test_malformed_tokens_are_invalid(self, token) -> None:
        codec = SignedTokenCodec(KEY, now_fn=Clock())
        assert codec.verify(token) is None


class TestSigningKeyLoading:
    """Tests for explicit signing-key encodings."""

    def test_base64_key_is_decoded(self) -> None:
        raw = bytes(range(32))
        key = load_signing_key(SigningConfig(key=base64.b64encode(raw).decode(), key_encoding="base64"))
        assert key == raw

    def test_raw_key_uses_utf8_bytes(self) -> None:
        value = "r" * 40
        assert load_signing_key(SigningConfig(key=value, key_encoding="raw")) == value.encode("utf-8")

    @given(length=st.integers(min_value=1, max_value=31))
    @settings(max_examples=30)
    def test_short_keys_are_rejected(self, length: int) -> None:
        encoded = base64.b64encode(b"a" * length).decode()
        with pytest.raises(ConfigurationError) as info:
            load_signing_key(SigningConfig(key=encoded, key_encoding="base64"))
        assert info.value.code == "signing_key_too_short"

    def test_missing_key_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as info:
            load_signing_key(SigningConfig(key=None))
        assert info.value.code == "missing_signing_key"

    def test_non_base64_key_declared_base64_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as info:
            load_signing_key(SigningConfig(key="not base64 at all!" * 4, key_encoding="base64"))
        assert info.value.code == "invalid_signing_key"

    def test_unknown_encoding_is_rejected(self) -> None:
        with pytest.raises(ConfigurationError) as info:
            load_signing_key(SigningConfig(key="k" * 40, key_encoding="hex"))
        assert info.value.code == "unknown_signing_key_encoding"

    def test_codec_refuses_short_key(self) -> None:
        with pytest.raises(ConfigurationError):
            SignedTokenCodec(b"short")
