"""
Local HTTP surface - unlock/lock, session workflow, form instances and storage diagnostics.
Intended for the on-device UI; it binds to localhost and adds no network sync.
"""

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .schemas import (
    DegradedModeRequest,
    FieldValueRequest,
    FormCreateRequest,
    FormInstanceResponse,
    FormTransitionResponse,
    HealthResponse,
    IntegrityReportResponse,
    KeyBackupRequest,
    KeyBackupResponse,
    KeyRestoreRequest,
    KeyStatusResponse,
    LinkFormRequest,
    MigrationResponse,
    RotateRequest,
    RotateResponse,
    SaveFieldResponse,
    SessionCompleteRequest,
    SessionCreateRequest,
    SessionQueueResponse,
    SessionResponse,
    SessionTransitionResponse,
    SessionUpdateRequest,
    StageAdvanceRequest,
    TransitionRequest,
    TransitionValidationResponse,
    TriageUpdateRequest,
    UnlockRequest,
    UnlockResponse,
    ValidationFailedResponse,
)
from ..core.config import VERSION, debug_enabled, degraded_writes_enabled
from ..core.db import get_document_count, health_check
from ..core.errors import (
    DegradedModeViolation,
    DegradedWriteRejected,
    DocumentCorrupted,
    HealthBridgeError,
    KeyDerivationTimeout,
    KeyExpired,
    NoKeyAvailable,
    NoKeyMaterial,
    NotFound,
    SchemaError,
    SecretMismatch,
    WeakSecret,
)
from ..core.form_schema import SchemaRegistry
from ..core.forms import FormEngine
from ..core.keys import KeyManager
from ..core.sessions import SessionEngine
from ..core.store import EncryptedStore, resume_migration
from ..core.timeline import AuditTrail

logger = logging.getLogger(__name__)

ERROR_STATUS = [
    (WeakSecret, 400),
    (NoKeyAvailable, 401),
    (KeyExpired, 401),
    (SecretMismatch, 401),
    (NotFound, 404),
    (NoKeyMaterial, 409),
    (DocumentCorrupted, 409),
    (SchemaError, 422),
    (DegradedModeViolation, 423),
    (DegradedWriteRejected, 423),
    (KeyDerivationTimeout, 504),
]


class AppContext:
    """Process-wide owner of the key manager, store and engines behind the API."""

    def __init__(self, db_path: Optional[str] = None, schema_dir: Optional[str] = None):
        self.keys = KeyManager(db_path)
        self.store = EncryptedStore(db_path)
        self.checksums = self.store.checksums
        self.schemas = SchemaRegistry(schema_dir)
        self.sessions = SessionEngine(self.store, self.keys, degraded_writes=degraded_writes_enabled())
        self.forms = FormEngine(self.store, self.keys, self.schemas, degraded_writes=degraded_writes_enabled())
        self.audit = AuditTrail(db_path).attach()
        self.db_path = db_path

    def close(self):
        self.keys.clear()
        self.audit.detach()


_context: Optional[AppContext] = None


def get_context() -> AppContext:
    global _context
    if _context is None:
        _context = AppContext()
    return _context


def reset_context(context: Optional[AppContext] = None):
    """Replace the process context (closing the old one); used on shutdown and by tests."""
    global _context
    if _context is not None:
        _context.close()
    _context = context


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    reset_context()


app = FastAPI(
    lifespan=lifespan,
    title="HealthBridge Core API",
    version=VERSION,
    description="Offline-first encrypted clinical session and form workflow",
    docs_url="/docs" if debug_enabled() else None,
    redoc_url="/redoc" if debug_enabled() else None
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:3000", "http://127.0.0.1:3000"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(HealthBridgeError)
async def healthbridge_error_handler(request: Request, exc: HealthBridgeError):
    status_code = next((code for cls, code in ERROR_STATUS if isinstance(exc, cls)), 500)
    content: Dict[str, Any] = {"kind": exc.kind, "detail": str(exc)}
    if isinstance(exc, DocumentCorrupted):
        content.update(doc_id=exc.doc_id, recoverable=exc.recoverable)
    if status_code == 500:
        logger.error(f"Unhandled core failure on {request.url.path}: {exc}")
    return JSONResponse(status_code=status_code, content=content)


def _session_response(session) -> SessionResponse:
    return SessionResponse(**session.to_dict())


def _instance_response(instance) -> FormInstanceResponse:
    data = instance.to_dict()
    data.pop('audit_log', None)
    return FormInstanceResponse(**data)


@app.get("/health", response_model=HealthResponse)
def health_check_endpoint(ctx: AppContext = Depends(get_context)):
    """Check system health."""
    db_health = health_check(ctx.db_path)
    return HealthResponse(
        status="healthy" if db_health else "unhealthy",
        version=VERSION,
        db_health=db_health,
        document_count=get_document_count(ctx.db_path) if db_health else 0,
        key_state=ctx.keys.state,
        degraded=ctx.keys.degraded_mode
    )


# Key lifecycle

@app.post("/key/unlock", response_model=UnlockResponse)
def unlock_endpoint(request: UnlockRequest, ctx: AppContext = Depends(get_context)):
    key_id = ctx.keys.initialize_from_secret(request.secret, actor=request.actor)
    active = ctx.keys.get_active_version()
    return UnlockResponse(key_id=key_id, device_id=ctx.keys.device_id, version=active.version if active else 0)


@app.post("/key/lock")
def lock_endpoint(ctx: AppContext = Depends(get_context)):
    ctx.keys.clear(actor="user")
    return {"success": True, "state": ctx.keys.state}


@app.get("/key/status", response_model=KeyStatusResponse)
def key_status_endpoint(ctx: AppContext = Depends(get_context)):
    return KeyStatusResponse(
        state=ctx.keys.state,
        key_id=ctx.keys.key_id,
        degraded=ctx.keys.degraded_mode,
        degraded_reason=ctx.keys.degraded_reason,
        key_age_seconds=ctx.keys.key_age_seconds(),
        rotation=ctx.keys.get_rotation_status()
    )


@app.post("/key/rotate", response_model=RotateResponse)
def rotate_endpoint(request: RotateRequest, ctx: AppContext = Depends(get_context)):
    """Rotate the key and re-encrypt the store; an interrupted migration resumes on the next call."""
    rotation = ctx.keys.rotate_key(actor=request.actor)
    old_key = ctx.keys.retired_key(rotation.previous_key_id)
    new_key = ctx.keys.require_key("migrate")
    result = ctx.store.rotate_and_migrate(old_key, new_key, timeout=request.timeout_sec, actor=request.actor)
    return RotateResponse(
        previous_key_id=rotation.previous_key_id,
        new_key_id=rotation.new_key_id,
        version=rotation.version,
        migration=MigrationResponse(**vars(result))
    )


@app.post("/key/migrate", response_model=List[MigrationResponse])
def resume_migration_endpoint(request: RotateRequest, ctx: AppContext = Depends(get_context)):
    results = resume_migration(ctx.store, ctx.keys, timeout=request.timeout_sec, actor=request.actor)
    return [MigrationResponse(**vars(r)) for r in results]


@app.post("/key/backup", response_model=KeyBackupResponse)
def backup_key_endpoint(request: KeyBackupRequest, ctx: AppContext = Depends(get_context)):
    backup = ctx.keys.backup_key(request.backup_secret, actor=request.actor)
    return KeyBackupResponse(key_id=backup.key_id, created_at=backup.created_at, expires_at=backup.expires_at)


@app.get("/key/backups", response_model=List[KeyBackupResponse])
def list_key_backups_endpoint(ctx: AppContext = Depends(get_context)):
    return [KeyBackupResponse(key_id=b.key_id, created_at=b.created_at, expires_at=b.expires_at)
            for b in ctx.keys.list_key_backups()]


@app.post("/key/restore", response_model=UnlockResponse)
def restore_key_endpoint(request: KeyRestoreRequest, ctx: AppContext = Depends(get_context)):
    """Recover the key from a backup when the PIN is lost."""
    key_id = ctx.keys.restore_key_from_backup(request.backup_secret, key_id=request.key_id, actor=request.actor)
    active = ctx.keys.get_active_version()
    return UnlockResponse(key_id=key_id, device_id=ctx.keys.device_id, version=active.version if active else 0)


@app.post("/key/degraded")
def enter_degraded_endpoint(request: DegradedModeRequest, ctx: AppContext = Depends(get_context)):
    ctx.keys.enter_degraded_mode(request.reason, actor=request.actor)
    return ctx.keys.degraded_status()


@app.delete("/key/degraded")
def exit_degraded_endpoint(ctx: AppContext = Depends(get_context)):
    ctx.keys.exit_degraded_mode(actor="user")
    return ctx.keys.degraded_status()


# Sessions. Fixed paths are declared before /sessions/{session_id}.

@app.post("/sessions", response_model=SessionResponse)
def create_session_endpoint(request: SessionCreateRequest, ctx: AppContext = Depends(get_context)):
    details = request.model_dump(exclude={'patient_ref', 'actor'}, exclude_none=True)
    session = ctx.sessions.create_session(patient_ref=request.patient_ref, actor=request.actor, **details)
    return _session_response(session)


@app.get("/sessions", response_model=List[SessionResponse])
def list_sessions_endpoint(status: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    return [_session_response(s) for s in ctx.sessions.list_sessions(status=status)]


@app.get("/sessions/queue", response_model=SessionQueueResponse)
def session_queue_endpoint(ctx: AppContext = Depends(get_context)):
    queues = ctx.sessions.get_open_sessions_by_priority()
    return SessionQueueResponse(**{p: [_session_response(s) for s in sessions] for p, sessions in queues.items()})


@app.get("/sessions/stats")
def session_stats_endpoint(ctx: AppContext = Depends(get_context)):
    return ctx.sessions.get_session_stats()


@app.get("/sessions/{session_id}", response_model=SessionResponse)
def get_session_endpoint(session_id: str, ctx: AppContext = Depends(get_context)):
    session = ctx.sessions.load_session(session_id)
    if not session:
        raise HTTPException(status_code=404, detail="Session not found")
    return _session_response(session)


@app.patch("/sessions/{session_id}", response_model=SessionResponse)
def update_session_endpoint(session_id: str, request: SessionUpdateRequest, ctx: AppContext = Depends(get_context)):
    fields = request.model_dump(exclude_unset=True)
    if not fields:
        raise HTTPException(status_code=400, detail="No fields to update")
    return _session_response(ctx.sessions.update_session(session_id, fields, actor="nurse"))


@app.post("/sessions/{session_id}/advance", response_model=SessionTransitionResponse)
def advance_stage_endpoint(session_id: str, request: StageAdvanceRequest, ctx: AppContext = Depends(get_context)):
    change = ctx.sessions.advance_stage(session_id, request.stage, actor=request.actor)
    return SessionTransitionResponse(allowed=change.allowed, kind=change.result.kind, reason=change.result.reason,
                                     session=_session_response(change.session))


@app.post("/sessions/{session_id}/complete", response_model=SessionTransitionResponse)
def complete_session_endpoint(session_id: str, request: SessionCompleteRequest, ctx: AppContext = Depends(get_context)):
    change = ctx.sessions.complete_session(session_id, request.status, actor=request.actor)
    return SessionTransitionResponse(allowed=change.allowed, kind=change.result.kind, reason=change.result.reason,
                                     session=_session_response(change.session))


@app.post("/sessions/{session_id}/forms", response_model=SessionResponse)
def link_form_endpoint(session_id: str, request: LinkFormRequest, ctx: AppContext = Depends(get_context)):
    return _session_response(ctx.sessions.link_form_to_session(session_id, request.form_instance_id, actor=request.actor))


@app.put("/sessions/{session_id}/triage", response_model=SessionResponse)
def update_triage_endpoint(session_id: str, request: TriageUpdateRequest, ctx: AppContext = Depends(get_context)):
    return _session_response(ctx.sessions.update_session_triage(session_id, request.triage, actor=request.actor))


@app.get("/sessions/{session_id}/timeline")
def session_timeline_endpoint(session_id: str, ctx: AppContext = Depends(get_context)):
    return {
        "events": ctx.audit.session_timeline(session_id),
        "summary": ctx.audit.timeline_summary(session_id)
    }


# Form instances

@app.get("/schemas", response_model=List[str])
def list_schemas_endpoint(ctx: AppContext = Depends(get_context)):
    return ctx.schemas.list_schemas()


@app.get("/schemas/{schema_id}")
def get_schema_endpoint(schema_id: str, ctx: AppContext = Depends(get_context)):
    return ctx.forms.load_schema(schema_id).model_dump(by_alias=True)


@app.post("/forms", response_model=FormInstanceResponse)
def create_form_endpoint(request: FormCreateRequest, ctx: AppContext = Depends(get_context)):
    if ctx.sessions.load_session(request.session_id) is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _instance_response(ctx.forms.create_instance(request.schema_id, request.session_id, actor=request.actor))


@app.get("/forms/latest", response_model=Optional[FormInstanceResponse])
def latest_form_endpoint(schema_id: str, session_id: str, ctx: AppContext = Depends(get_context)):
    instance = ctx.forms.get_latest_instance_by_session(schema_id, session_id)
    return _instance_response(instance) if instance else None


@app.get("/forms/{instance_id}", response_model=FormInstanceResponse)
def get_form_endpoint(instance_id: str, ctx: AppContext = Depends(get_context)):
    instance = ctx.forms.load_instance(instance_id)
    if not instance:
        raise HTTPException(status_code=404, detail="Form instance not found")
    return _instance_response(instance)


@app.put("/forms/{instance_id}/fields/{field_id}", response_model=SaveFieldResponse)
def save_field_endpoint(instance_id: str, field_id: str, request: FieldValueRequest,
                        ctx: AppContext = Depends(get_context)):
    result = ctx.forms.save_field_value(instance_id, field_id, request.value, actor=request.actor)
    return SaveFieldResponse(
        success=result.success,
        instance=_instance_response(result.instance),
        validation=ValidationFailedResponse(**result.validation.to_dict()) if result.validation else None,
        warnings=result.warnings
    )


@app.post("/forms/{instance_id}/validate-transition", response_model=TransitionValidationResponse)
def validate_transition_endpoint(instance_id: str, request: TransitionRequest, ctx: AppContext = Depends(get_context)):
    validation = ctx.forms.validate_transition(instance_id, request.target_state_id)
    return TransitionValidationResponse(valid=validation.valid, errors=validation.errors)


@app.post("/forms/{instance_id}/transition", response_model=FormTransitionResponse)
def transition_endpoint(instance_id: str, request: TransitionRequest, ctx: AppContext = Depends(get_context)):
    transition = ctx.forms.transition_state(instance_id, request.target_state_id, actor=request.actor)
    return FormTransitionResponse(
        allowed=transition.allowed,
        kind=transition.result.kind,
        reason=transition.reason,
        errors=transition.errors,
        instance=_instance_response(transition.instance)
    )


# Storage diagnostics

@app.get("/diagnostics/corrupted")
def corrupted_documents_endpoint(ctx: AppContext = Depends(get_context)):
    return {
        "summary": ctx.store.corruption_summary(),
        "records": [r.to_dict() for r in ctx.store.list_corrupted()]
    }


@app.delete("/diagnostics/corrupted")
def clear_corrupted_endpoint(ctx: AppContext = Depends(get_context)):
    return {"cleared": ctx.store.clear_corrupted(actor="operator")}


@app.post("/diagnostics/integrity", response_model=IntegrityReportResponse)
def integrity_endpoint(sample_size: Optional[int] = None, ctx: AppContext = Depends(get_context)):
    key = ctx.keys.require_key("read")
    report = ctx.checksums.verify_all(ctx.store, key, sample_size=sample_size)
    return IntegrityReportResponse(**report.to_dict())


@app.get("/diagnostics/degraded")
def degraded_documents_endpoint(ctx: AppContext = Depends(get_context)):
    return {"degraded": ctx.keys.degraded_status(), "documents": ctx.store.list_degraded()}


@app.post("/diagnostics/reconcile")
def reconcile_endpoint(ctx: AppContext = Depends(get_context)):
    key = ctx.keys.require_key("write")
    return {"reconciled": ctx.store.reconcile_degraded(key, actor="operator")}


@app.get("/audit/recent", response_model=List[Dict[str, Any]])
def recent_audit_endpoint(limit: int = 50, category: Optional[str] = None, ctx: AppContext = Depends(get_context)):
    if not debug_enabled():
        raise HTTPException(status_code=403, detail="Audit endpoint requires debug mode")
    return ctx.audit.recent_events(limit=limit, category=category)


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"kind": "InvalidRequest", "detail": str(exc)})
