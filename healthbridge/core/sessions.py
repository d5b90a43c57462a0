"""
Clinical session workflow - the registration > assessment > treatment > discharge stage
machine and its encrypted persistence.

Transitions are planned by pure functions (plan_stage_advance, plan_completion) that
return the new session plus notifications; SessionEngine persists the result, emits
audit events and forwards notifications to subscribers.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import ASSESSMENT_REQUIRED, INVALID_TRANSITION, SessionNotFound, TransitionResult
from .schema import (
    SESSION_ID_PREFIX,
    SESSION_STAGES,
    TERMINAL_STATUSES,
    TRIAGE_LEVELS,
    ClinicalSession,
    utc_now,
)
from .store import DocumentEngine, EncryptedStore
from util.logging import logger, audit_event

DOC_TYPE = "clinical_session"

UPDATABLE_FIELDS = ['patient_ref', 'patient_name', 'date_of_birth', 'gender', 'chief_complaint', 'notes']
PRIORITY_ORDER = ['red', 'yellow', 'green', 'unknown']


@dataclass
class SessionChange:
    """A planned or applied session transition."""
    session: ClinicalSession
    result: TransitionResult
    notifications: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.result.allowed


def successor_stage(stage: str) -> Optional[str]:
    index = SESSION_STAGES.index(stage)
    return SESSION_STAGES[index + 1] if index + 1 < len(SESSION_STAGES) else None


def plan_stage_advance(session: ClinicalSession, next_stage: str, now: datetime) -> SessionChange:
    if session.status != 'open':
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION, f"Session is {session.status}"))

    if next_stage not in SESSION_STAGES:
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION, f"Unknown stage '{next_stage}'"))

    expected = successor_stage(session.stage)
    if next_stage != expected:
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION,
            f"Cannot move from {session.stage} to {next_stage}" + (f"; next stage is {expected}" if expected else "")))

    if next_stage == 'treatment' and not session.form_instance_ids:
        return SessionChange(session, TransitionResult.rejected(
            ASSESSMENT_REQUIRED, "An assessment form must be linked before treatment"))

    updated = replace(session, stage=next_stage, updated_at=now)
    return SessionChange(updated, TransitionResult.ok(), [{
        "event_type": "session.stage_change",
        "session_id": session.id,
        "from_stage": session.stage,
        "to_stage": next_stage,
    }])


def plan_completion(session: ClinicalSession, final_status: str, now: datetime) -> SessionChange:
    """Move an open session to a terminal status.

    cancelled is allowed from any stage; completed and referred only from discharge.
    Repeating the current terminal status is a no-op.
    """
    if final_status not in TERMINAL_STATUSES:
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION, f"'{final_status}' is not a terminal status"))

    if session.status == final_status:
        return SessionChange(session, TransitionResult.ok())

    if session.status != 'open':
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION, f"Session already {session.status}"))

    if final_status != 'cancelled' and session.stage != 'discharge':
        return SessionChange(session, TransitionResult.rejected(
            INVALID_TRANSITION, f"Session must reach discharge before it can be {final_status}"))

    updated = replace(session, status=final_status, stage='discharge', updated_at=now, completed_at=now)
    return SessionChange(updated, TransitionResult.ok(), [{
        "event_type": "session.status_change",
        "session_id": session.id,
        "from_status": session.status,
        "to_status": final_status,
        "from_stage": session.stage,
    }])


class SessionEngine(DocumentEngine):
    """Owns ClinicalSession documents; every write goes through the key gate."""

    def __init__(self, store: EncryptedStore, key_manager, degraded_writes: bool = False,
                 clock: Callable[[], datetime] = utc_now):
        super().__init__(store, key_manager, degraded_writes)
        self._clock = clock

    def _save(self, session: ClinicalSession, actor: str):
        doc = session.to_dict()
        doc['doc_type'] = DOC_TYPE
        self._persist(doc, actor)

    def _emit(self, change: SessionChange, actor: str):
        for notification in change.notifications:
            details = {k: v for k, v in notification.items() if k != "event_type"}
            audit_event(notification["event_type"], details, actor=actor)
            self._notify(dict(notification, session=change.session.to_dict()))

    def create_session(self, patient_ref: Optional[str] = None, actor: str = "system", **details) -> ClinicalSession:
        unknown = set(details) - set(UPDATABLE_FIELDS) - {'triage'}
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")
        triage = details.pop('triage', 'unknown')
        if triage not in TRIAGE_LEVELS:
            raise ValueError(f"triage must be one of: {TRIAGE_LEVELS}")

        now = self._clock()
        session = ClinicalSession(
            id=f"{SESSION_ID_PREFIX}{uuid.uuid4().hex}",
            stage='registration',
            status='open',
            created_at=now,
            updated_at=now,
            patient_ref=patient_ref,
            triage=triage,
            **details
        )
        self._save(session, actor)

        logger.log_operation("session.create", "success", {"session_id": session.id})
        self._emit(SessionChange(session, TransitionResult.ok(), [{
            "event_type": "session.created",
            "session_id": session.id,
            "patient_ref": patient_ref,
            "stage": session.stage,
        }]), actor)
        return session

    def load_session(self, session_id: str) -> Optional[ClinicalSession]:
        """The session, or None when no such session exists."""
        if not session_id.startswith(SESSION_ID_PREFIX):
            return None
        doc = self.store.get(session_id, self._read_key())
        if doc is None or doc.get('doc_type') != DOC_TYPE:
            return None
        return ClinicalSession.from_dict(doc)

    def _require_session(self, session_id: str) -> ClinicalSession:
        session = self.load_session(session_id)
        if session is None:
            raise SessionNotFound(f"Session {session_id} not found")
        return session

    def update_session(self, session_id: str, fields: Dict[str, Any], actor: str = "system") -> ClinicalSession:
        """Merge registration details; stage and status only change through transitions."""
        gated = {'stage', 'status', 'triage', 'form_instance_ids'} & set(fields)
        if gated:
            raise ValueError(f"Fields {sorted(gated)} cannot be changed through update_session")
        unknown = set(fields) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValueError(f"Unknown session fields: {sorted(unknown)}")

        with self.store.document_lock(session_id):
            session = self._require_session(session_id)
            updated = replace(session, updated_at=self._clock(), **fields)
            self._save(updated, actor)

        audit_event("session.update", {"session_id": session_id, "fields": sorted(fields)}, actor=actor)
        return updated

    def advance_stage(self, session_id: str, next_stage: str, actor: str = "system") -> SessionChange:
        with self.store.document_lock(session_id):
            session = self._require_session(session_id)
            change = plan_stage_advance(session, next_stage, self._clock())
            if change.allowed:
                self._save(change.session, actor)

        if change.allowed:
            logger.log_session_transition(session_id, session.stage, next_stage)
            self._emit(change, actor)
        else:
            logger.log_session_transition(session_id, session.stage, next_stage, status="rejected",
                                          reason=change.result.reason)
            audit_event("session.stage_change", {"session_id": session_id, "from_stage": session.stage,
                                                 "to_stage": next_stage, "kind": change.result.kind,
                                                 "reason": change.result.reason},
                        severity="warning", actor=actor, outcome="failure")
        return change

    def complete_session(self, session_id: str, final_status: str, actor: str = "system") -> SessionChange:
        with self.store.document_lock(session_id):
            session = self._require_session(session_id)
            change = plan_completion(session, final_status, self._clock())
            if change.allowed and change.notifications:
                self._save(change.session, actor)

        if change.allowed:
            self._emit(change, actor)
        else:
            audit_event("session.status_change", {"session_id": session_id, "from_status": session.status,
                                                  "to_status": final_status, "kind": change.result.kind,
                                                  "reason": change.result.reason},
                        severity="warning", actor=actor, outcome="failure")
        return change

    def link_form_to_session(self, session_id: str, form_instance_id: str, actor: str = "system") -> ClinicalSession:
        with self.store.document_lock(session_id):
            session = self._require_session(session_id)
            if form_instance_id in session.form_instance_ids:
                return session
            updated = replace(session, form_instance_ids=session.form_instance_ids + [form_instance_id],
                              updated_at=self._clock())
            self._save(updated, actor)

        audit_event("session.form_linked", {"session_id": session_id, "form_instance_id": form_instance_id},
                    actor=actor)
        self._notify({"event_type": "session.form_linked", "session_id": session_id,
                      "form_instance_id": form_instance_id, "session": updated.to_dict()})
        return updated

    def update_session_triage(self, session_id: str, triage: str, actor: str = "system") -> ClinicalSession:
        if triage not in TRIAGE_LEVELS:
            raise ValueError(f"triage must be one of: {TRIAGE_LEVELS}")

        with self.store.document_lock(session_id):
            session = self._require_session(session_id)
            if session.triage == triage:
                return session
            updated = replace(session, triage=triage, updated_at=self._clock())
            self._save(updated, actor)

        self._emit(SessionChange(updated, TransitionResult.ok(), [{
            "event_type": "session.triage_update",
            "session_id": session_id,
            "from_triage": session.triage,
            "to_triage": triage,
        }]), actor)
        return updated

    def list_sessions(self, status: Optional[str] = None) -> List[ClinicalSession]:
        """Sessions, most recently updated first."""
        docs = self.store.all_docs(self._read_key(), prefix=SESSION_ID_PREFIX)
        sessions = [ClinicalSession.from_dict(doc) for doc in docs if doc.get('doc_type') == DOC_TYPE]
        if status is not None:
            sessions = [s for s in sessions if s.status == status]
        return sorted(sessions, key=lambda s: (s.updated_at, s.id), reverse=True)

    def get_open_sessions_by_priority(self) -> Dict[str, List[ClinicalSession]]:
        """Open sessions grouped into the red/yellow/green/unknown queues."""
        queues: Dict[str, List[ClinicalSession]] = {priority: [] for priority in PRIORITY_ORDER}
        for session in self.list_sessions(status='open'):
            queues[session.triage].append(session)
        return queues

    def get_session_stats(self) -> Dict[str, Any]:
        sessions = self.list_sessions()
        stats = {
            "total": len(sessions),
            "by_status": {status: 0 for status in ['open'] + TERMINAL_STATUSES},
            "by_stage": {stage: 0 for stage in SESSION_STAGES},
            "by_triage": {level: 0 for level in TRIAGE_LEVELS},
        }
        for session in sessions:
            stats["by_status"][session.status] += 1
            stats["by_stage"][session.stage] += 1
            stats["by_triage"][session.triage] += 1
        return stats
