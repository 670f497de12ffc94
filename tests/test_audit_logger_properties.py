"""
Property-based tests for Audit Logger module.

Uses Hypothesis for property-based testing to verify output formats, level
filtering and masking of secrets.
"""

import json
from io import StringIO

import pytest
from hypothesis import assume, given, settings
from hypothesis import strategies as st

from portal_core.audit_logger import AuditLogger
from portal_core.config import LoggingConfig
from portal_core.enums import LogLevel
from portal_core.exceptions import UpstreamError


SENSITIVE_PATTERNS = [
    'token', 'secret', 'password', 'api_key', 'signing_key',
    'cookie', 'credential', 'private_key', 'state_value',
]


# Strategies for generating valid test data

@st.composite
def component_name_strategy(draw) -> str:
    """Generate valid component names."""
    return draw(st.text(
        alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz0123456789_-"),
        min_size=1,
        max_size=30,
    ))


@st.composite
def message_strategy(draw) -> str:
    """Generate single-line log messages."""
    return draw(st.text(
        alphabet=st.characters(
            whitelist_categories=('L', 'N', 'P', 'S', 'Zs'),
            blacklist_characters='\x00\n\r',
        ),
        min_size=1,
        max_size=100,
    ))


@st.composite
def non_sensitive_key_strategy(draw) -> str:
    """Generate keys that are NOT sensitive."""
    key = draw(st.text(alphabet=st.sampled_from("abcdefghijklmnopqrstuvwxyz_"), min_size=1, max_size=20))
    for pattern in SENSITIVE_PATTERNS:
        assume(pattern not in key)
    return key


@st.composite
def sensitive_key_strategy(draw) -> str:
    """Generate keys that ARE sensitive."""
    base = draw(st.sampled_from(SENSITIVE_PATTERNS + ['webhook_secret', 'session_token', 'KV_REST_API_TOKEN']))
    prefix = draw(st.sampled_from(['', 'my_', 'partner_']))
    suffix = draw(st.sampled_from(['', '_value', '_1']))
    return f"{prefix}{base}{suffix}"


class TestOutputFormatProperty:
    """
    Property-based tests for output formats.

    **Property 1: Every emitted entry is one parseable line per format**
    """

    @given(
        level=st.sampled_from(list(LogLevel)),
        component=component_name_strategy(),
        message=message_strategy(),
    )
    @settings(max_examples=100)
    def test_both_formats(self, level: LogLevel, component: str, message: str) -> None:
        output = StringIO()
        logger = AuditLogger(output_format="both", output_stream=output, min_level=LogLevel.DEBUG)

        logger.log(level, component, message, {"click_id": "dep_1_abcdefg"})

        json_line, text_line = output.getvalue().strip().split('\n')
        parsed = json.loads(json_line)
        assert parsed["level"] == level.value
        assert parsed["component"] == component
        assert parsed["message"] == message
        assert parsed["data"] == {"click_id": "dep_1_abcdefg"}
        assert text_line.split(" ")[1] == level.value.upper()
        assert f"[{component}]" in text_line

    def test_invalid_format_is_rejected(self) -> None:
        with pytest.raises(ValueError):
            AuditLogger(output_format="xml")


class TestLevelFilterProperty:
    """
    Property-based tests for the minimum level.

    **Property 2: Entries below the minimum level are dropped**
    """

    @given(level=st.sampled_from(list(LogLevel)), minimum=st.sampled_from(list(LogLevel)))
    @settings(max_examples=50)
    def test_min_level(self, level: LogLevel, minimum: LogLevel) -> None:
        output = StringIO()
        logger = AuditLogger(output_stream=output, min_level=minimum)

        entry = logger.log(level, "api", "message")

        if level.severity >= minimum.severity:
            assert entry is not None
            assert len(logger.entries) == 1
        else:
            assert entry is None
            assert output.getvalue() == ""

    def test_from_config(self) -> None:
        logger = AuditLogger.from_config(LoggingConfig(level="warn", output_format="text"), output_stream=StringIO())
        assert logger.output_format == "text"
        assert logger.log(LogLevel.INFO, "api", "dropped") is None
        assert logger.log(LogLevel.WARN, "api", "kept") is not None


class TestMaskingProperty:
    """
    Property-based tests for secret masking.

    **Property 3: Values under sensitive keys never reach the output**
    """

    @given(key=sensitive_key_strategy(), value=st.text(min_size=8, max_size=40, alphabet="abcdefghijkXYZ0123456789"))
    @settings(max_examples=100)
    def test_sensitive_values_are_masked(self, key: str, value: str) -> None:
        output = StringIO()
        logger = AuditLogger(output_stream=output)

        logger.log(LogLevel.INFO, "sessions", "msg", {key: value, "nested": {key: value}, "items": [{key: value}]})

        assert value not in output.getvalue()
        data = logger.entries[-1].data
        assert data[key] == AuditLogger.MASK_VALUE
        assert data["nested"][key] == AuditLogger.MASK_VALUE
        assert data["items"][0][key] == AuditLogger.MASK_VALUE

    @given(data=st.dictionaries(non_sensitive_key_strategy(), st.integers(), max_size=5))
    @settings(max_examples=50)
    def test_other_values_are_kept(self, data: dict) -> None:
        logger = AuditLogger(output_stream=StringIO())
        assert logger.mask_sensitive_data(data) == data


class TestErrorLoggingProperty:
    """
    Property-based tests for error entries.

    **Property 4: Error entries carry the error type, code and HTTP context**
    """

    @given(status=st.sampled_from([400, 404, 429, 500, 503]))
    @settings(max_examples=20)
    def test_error_context(self, status: int) -> None:
        logger = AuditLogger(output_stream=StringIO())
        error = UpstreamError(code="upstream_status", message=f"returned {status}", status_code=status)

        entry = logger.log_error(
            "upstream_client",
            "Upstream request failed",
            error=error,
            request_url="https://api.energidataservice.dk/dataset/x",
            response_status_code=status,
            additional_data={"endpoint": "energidata"},
        )

        assert entry.level is LogLevel.ERROR
        assert entry.data == {
            "endpoint": "energidata",
            "error_message": f"returned {status}",
            "error_type": "UpstreamError",
            "error_code": "upstream_status",
            "request_url": "https://api.energidataservice.dk/dataset/x",
            "response_status_code": status,
        }
