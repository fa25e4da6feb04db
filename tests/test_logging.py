"""Tests for the log processors that keep credentials out of log lines."""

import pytest

from authgate.logging import (
    _redact_pii,
    _strip_url_fragments,
    redact_email,
    get_correlation_id,
    set_correlation_id,
    strip_fragment,
)


class TestUrlFragments:
    def test_strip_fragment(self):
        url = "https://audits.example.com/app?x=1#access_token=abc&type=recovery"

        assert strip_fragment(url) == "https://audits.example.com/app?x=1"
        assert strip_fragment(None) is None

    def test_processor_scrubs_url_fields_only(self):
        event = _strip_url_fragments(
            None,
            "info",
            {
                "event": "runtime_init_started",
                "arrival_url": "https://audits.example.com/#access_token=abc",
                "redirect_to": "https://audits.example.com/#/reset",
                "note": "see #42",
            },
        )

        assert event["arrival_url"] == "https://audits.example.com/"
        assert event["redirect_to"] == "https://audits.example.com/"
        assert event["note"] == "see #42"


class TestRedaction:
    @pytest.mark.parametrize("key", ["access_token", "new_password", "email", "api_key"])
    def test_sensitive_keys_masked(self, key):
        event = _redact_pii(None, "info", {key: "supersecretvalue"})

        assert event[key] == "su***ue"

    def test_redact_email(self):
        assert redact_email("alice@example.com") == "al***@example.com"
        assert redact_email(None) == "redacted"
        assert redact_email("not-an-address") == "redacted"


class TestCorrelationId:
    def test_generated_when_missing(self):
        cid = set_correlation_id()

        assert cid
        assert get_correlation_id() == cid
