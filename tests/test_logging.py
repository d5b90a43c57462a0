"""
Logging and audit dispatch tests.
"""

import logging
from unittest.mock import patch

from util.logging import (
    StructuredLogger,
    audit_event,
    register_audit_sink,
    sanitize_payload,
    unregister_audit_sink,
)


class TestSanitizePayload:

    def test_sensitive_fields_redacted(self):
        payload = {"field_id": "notes", "value": "history of seizures", "nested": {"pin": "2468"}}

        sanitized = sanitize_payload(payload)

        assert sanitized == {"field_id": "notes", "value": "[REDACTED]", "nested": {"pin": "[REDACTED]"}}

    def test_reveal(self):
        assert sanitize_payload({"value": 1}, reveal_sensitive=True) == {"value": 1}

    def test_bytes_never_logged(self):
        assert sanitize_payload([b"\x00\x01", bytearray(4)]) == ["[REDACTED]", "[REDACTED]"]

    def test_long_strings_truncated(self):
        assert sanitize_payload("x" * 150) == "x" * 100 + "..."


class TestAuditEvent:

    def test_event_shape(self):
        event = audit_event("session.stage_change", {"session_id": "session_1"},
                            payload={"value": "secret", "to_stage": "assessment"}, actor="nurse")

        assert event["category"] == "session"
        assert event["actor"] == "nurse"
        assert event["outcome"] == "success"
        assert event["details"]["payload"] == {"value": "[REDACTED]", "to_stage": "assessment"}

    def test_unknown_prefix_is_system(self):
        assert audit_event("startup", {})["category"] == "system"

    def test_sinks_receive_events(self):
        received = []
        register_audit_sink(received.append)
        try:
            audit_event("form.started", {"instance_id": "form_1"})
        finally:
            unregister_audit_sink(received.append)

        assert [e["event_type"] for e in received] == ["form.started"]

    def test_failing_sink_is_isolated(self):
        def broken(event):
            raise RuntimeError("disk full")

        received = []
        register_audit_sink(broken)
        register_audit_sink(received.append)
        try:
            with patch('util.logging.logger.error') as mock_error:
                audit_event("key.rotate", {"new_key_id": "abc"})
        finally:
            unregister_audit_sink(broken)
            unregister_audit_sink(received.append)

        assert len(received) == 1
        mock_error.assert_called_once()


class TestStructuredLogger:

    def test_key_event_levels(self):
        structured = StructuredLogger("healthbridge.test")
        with patch.object(structured.logger, 'log') as mock_log:
            structured.log_key_event("derive", "abc")
            structured.log_key_event("expire", "abc", status="expired")

        assert mock_log.call_args_list[0][0][0] == logging.INFO
        assert mock_log.call_args_list[1][0][0] == logging.WARNING
        assert "key_id" in mock_log.call_args_list[0][0][1]

    def test_form_event_details_sanitized(self):
        structured = StructuredLogger("healthbridge.test")
        with patch.object(structured.logger, 'log') as mock_log:
            structured.log_form_event("field_change", "form_1", details={"value": "confidential"})

        assert "confidential" not in mock_log.call_args[0][1]
