"""
Audit trail - persists audit events to SQLite and derives per-session clinical timelines.
"""

import json
from typing import Any, Dict, List, Optional

from . import config
from .db import get_db, init_db
from util.logging import register_audit_sink, unregister_audit_sink

TIMELINE_EVENT_TYPES = {
    "session.created": "session_created",
    "session.stage_change": "stage_change",
    "session.triage_update": "triage_update",
    "session.status_change": "status_change",
    "form.started": "form_started",
    "form.completed": "form_completed",
}


class AuditTrail:
    """Audit sink storing the most recent events, capped at AUDIT_MAX_EVENTS."""

    def __init__(self, db_path: Optional[str] = None, max_events: Optional[int] = None):
        self.db_path = db_path
        self.max_events = max_events or config.AUDIT_MAX_EVENTS
        init_db(db_path)

    def __call__(self, event: Dict[str, Any]) -> None:
        self.record(event)

    def attach(self) -> 'AuditTrail':
        register_audit_sink(self)
        return self

    def detach(self) -> None:
        unregister_audit_sink(self)

    def record(self, event: Dict[str, Any]) -> None:
        details = event.get("details") or {}
        with get_db(self.db_path) as conn:
            conn.execute(
                '''INSERT INTO audit_events (ts, event_type, category, severity, actor, outcome, session_id, details)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)''',
                (event["timestamp"], event["event_type"], event["category"], event["severity"],
                 event.get("actor"), event["outcome"], details.get("session_id"), json.dumps(details, default=str))
            )
            conn.execute(
                "DELETE FROM audit_events WHERE id NOT IN (SELECT id FROM audit_events ORDER BY id DESC LIMIT ?)",
                (self.max_events,)
            )
            conn.commit()

    def recent_events(self, limit: int = 50, category: Optional[str] = None) -> List[Dict[str, Any]]:
        with get_db(self.db_path) as conn:
            if category:
                rows = conn.execute(
                    "SELECT * FROM audit_events WHERE category = ? ORDER BY id DESC LIMIT ?", (category, limit)
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM audit_events ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [self._to_event(row) for row in rows]

    def session_timeline(self, session_id: str) -> List[Dict[str, Any]]:
        """Clinical events for one session, oldest first."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT * FROM audit_events WHERE session_id = ? ORDER BY id ASC", (session_id,)
            ).fetchall()

        timeline = []
        for row in rows:
            kind = TIMELINE_EVENT_TYPES.get(row["event_type"])
            if kind is None or row["outcome"] != "success":
                continue
            event = self._to_event(row)
            event["type"] = kind
            timeline.append(event)
        return timeline

    def timeline_summary(self, session_id: str) -> Dict[str, Any]:
        timeline = self.session_timeline(session_id)
        counts: Dict[str, int] = {}
        for event in timeline:
            counts[event["type"]] = counts.get(event["type"], 0) + 1
        return {
            "session_id": session_id,
            "event_count": len(timeline),
            "counts": counts,
            "first_event": timeline[0]["timestamp"] if timeline else None,
            "last_event": timeline[-1]["timestamp"] if timeline else None,
        }

    def _to_event(self, row) -> Dict[str, Any]:
        return {
            "id": row["id"],
            "timestamp": row["ts"],
            "event_type": row["event_type"],
            "category": row["category"],
            "severity": row["severity"],
            "actor": row["actor"],
            "outcome": row["outcome"],
            "details": json.loads(row["details"]) if row["details"] else {},
        }
