"""Tests for log redaction."""

from switchboard.utils.logging import _filter_sensitive


class TestFilterSensitive:
    def test_redacts_tokens(self):
        event = {"event": "proxy_call", "detail": "Authorization: Bearer abc.def-123"}
        out = _filter_sensitive(None, "info", event)
        assert "abc.def-123" not in out["detail"]
        assert "***REDACTED***" in out["detail"]

    def test_redacts_api_key(self):
        out = _filter_sensitive(None, "info", {"detail": "api_key=n8n-secret-key"})
        assert out["detail"] == "api_key=***REDACTED***"

    def test_leaves_plain_values(self):
        event = {"event": "webhook_dispatched", "correlation_id": "m1-g1-attempt-1", "attempt": 1}
        assert _filter_sensitive(None, "info", dict(event)) == event
