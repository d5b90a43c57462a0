"""
Structured operation logging and audit dispatch for key, document, session and form events.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

AuditSink = Callable[[Dict[str, Any]], None]

DEFAULT_SENSITIVE_FIELDS = ['value', 'answers', 'data', 'payload', 'content', 'secret', 'pin', 'password', 'key_bytes']

SEVERITY_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "critical": logging.CRITICAL,
}

CATEGORY_PREFIXES = ("key", "document", "session", "form", "integrity", "migration")


class StructuredLogger:
    """Structured logger for key lifecycle, encrypted storage and clinical workflow operations."""

    def __init__(self, name: str = "healthbridge"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(logging.INFO)

        # Create handler if not already set
        if not self.logger.handlers:
            handler = logging.StreamHandler()
            formatter = logging.Formatter(
                '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
            )
            handler.setFormatter(formatter)
            self.logger.addHandler(handler)

    def log_operation(self, operation: str, status: str, details: Dict[str, Any] = None, level: int = logging.INFO):
        """Log a structured operation."""
        message = f"Operation: {operation}, Status: {status}"
        if details:
            message += f", Details: {details}"

        self.logger.log(level, message)

    def log_key_event(self, action: str, key_id: str = None, status: str = "success", details: Dict[str, Any] = None):
        """Log a key lifecycle event. Never pass key bytes or secrets here."""
        log_details = {}
        if key_id:
            log_details["key_id"] = key_id
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("degraded", "expired", "failed") else logging.INFO
        self.log_operation(f"key.{action}", status, log_details, level)

    def log_document_event(self, action: str, doc_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log an encrypted-store event."""
        log_details = {"doc_id": doc_id}
        if details:
            log_details.update(details)

        level = logging.ERROR if status == "corrupted" else logging.INFO
        self.log_operation(f"document.{action}", status, log_details, level)

    def log_session_transition(self, session_id: str, from_stage: str, to_stage: str, status: str = "success", reason: str = None):
        """Log a clinical session stage change or a rejected attempt."""
        log_details = {
            "session_id": session_id,
            "from_stage": from_stage,
            "to_stage": to_stage
        }
        if reason:
            log_details["reason"] = reason[:100]

        self.log_operation("session.stage_change", status, log_details)

    def log_form_event(self, action: str, instance_id: str, status: str = "success", details: Dict[str, Any] = None):
        """Log a form instance event."""
        log_details = {"instance_id": instance_id}
        if details:
            log_details.update(sanitize_payload(details))

        self.log_operation(f"form.{action}", status, log_details)

    def log_migration_progress(self, migrated: int, skipped: int, failed: int, status: str = "running", details: Dict[str, Any] = None):
        """Log re-encryption progress during key rotation."""
        log_details = {
            "migrated": migrated,
            "skipped": skipped,
            "failed": failed
        }
        if details:
            log_details.update(details)

        level = logging.WARNING if status in ("interrupted", "partial") else logging.INFO
        self.log_operation("migration.rotate_and_migrate", status, log_details, level)

    # Standard logging methods for compatibility
    def info(self, message: str) -> None:
        """Log an info message."""
        self.logger.info(message)

    def warning(self, message: str) -> None:
        """Log a warning message."""
        self.logger.warning(message)

    def error(self, message: str) -> None:
        """Log an error message."""
        self.logger.error(message)

    def debug(self, message: str) -> None:
        """Log a debug message."""
        self.logger.debug(message)


# Global logger instance
logger = StructuredLogger()

_audit_sinks: List[AuditSink] = []


def register_audit_sink(sink: AuditSink) -> None:
    """Register a callable that receives every audit event."""
    if sink not in _audit_sinks:
        _audit_sinks.append(sink)


def unregister_audit_sink(sink: AuditSink) -> None:
    if sink in _audit_sinks:
        _audit_sinks.remove(sink)


def _category_for(event_type: str) -> str:
    prefix = event_type.split(".", 1)[0]
    return prefix if prefix in CATEGORY_PREFIXES else "system"


def audit_event(event_type: str, identifiers: Dict[str, Any], payload: Dict[str, Any] = None,
                severity: str = "info", actor: str = "system", outcome: str = "success",
                sensitive_fields: List[str] = None) -> Dict[str, Any]:
    """Emit an audit event to the log and to every registered sink.

    Sinks are called synchronously; a failing sink is logged and skipped so the
    state-changing operation that emitted the event is never interrupted.
    """
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    details = identifiers.copy() if identifiers else {}
    if payload:
        details["payload"] = sanitize_payload(payload, sensitive_fields=sensitive_fields)

    event = {
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "event_type": event_type,
        "category": _category_for(event_type),
        "severity": severity,
        "actor": actor,
        "details": details,
        "outcome": outcome,
    }

    logger.log_operation(event_type, f"audit.{outcome}", details, SEVERITY_LEVELS.get(severity, logging.INFO))

    for sink in list(_audit_sinks):
        try:
            sink(event)
        except Exception as e:
            logger.error(f"Audit sink {getattr(sink, '__name__', sink)!r} failed for {event_type}: {e}")

    return event


# Payload sanitization utility
def sanitize_payload(payload: Any, reveal_sensitive: bool = False, sensitive_fields: List[str] = None) -> Any:
    """Sanitize payloads for audit logging."""
    if sensitive_fields is None:
        sensitive_fields = DEFAULT_SENSITIVE_FIELDS

    if isinstance(payload, dict):
        sanitized = {}
        for k, v in payload.items():
            if reveal_sensitive or k not in sensitive_fields:
                sanitized[k] = sanitize_payload(v, reveal_sensitive, sensitive_fields)
            else:
                sanitized[k] = "[REDACTED]"
        return sanitized
    elif isinstance(payload, str):
        # Truncate long strings
        return payload[:100] + "..." if len(payload) > 100 else payload
    elif isinstance(payload, (list, tuple)):
        return [sanitize_payload(item, reveal_sensitive, sensitive_fields) for item in payload]
    elif isinstance(payload, (bytes, bytearray)):
        return "[REDACTED]"
    else:
        return payload
