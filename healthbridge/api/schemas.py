"""
Request and response models for the local HTTP surface.
"""

from pydantic import BaseModel, field_validator
from typing import Optional, List, Dict, Any
from datetime import datetime

from ..core.schema import SESSION_STAGES, TERMINAL_STATUSES, TRIAGE_LEVELS


class UnlockRequest(BaseModel):
    secret: str
    actor: str = "nurse"


class UnlockResponse(BaseModel):
    key_id: str
    device_id: str
    version: int


class KeyStatusResponse(BaseModel):
    state: str
    key_id: Optional[str] = None
    degraded: bool
    degraded_reason: Optional[str] = None
    key_age_seconds: Optional[float] = None
    rotation: Dict[str, Any]


class DegradedModeRequest(BaseModel):
    reason: str
    actor: str = "system"

    @field_validator('reason')
    @classmethod
    def reason_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('reason cannot be empty')
        return v


class KeyBackupRequest(BaseModel):
    backup_secret: str
    actor: str = "system"


class KeyRestoreRequest(BaseModel):
    backup_secret: str
    key_id: Optional[str] = None
    actor: str = "system"


class KeyBackupResponse(BaseModel):
    key_id: str
    created_at: datetime
    expires_at: datetime


class MigrationResponse(BaseModel):
    new_key_id: str
    migrated: int
    skipped: int
    failed: int
    completed: bool
    interrupted: Optional[str] = None
    errors: List[str] = []


class RotateRequest(BaseModel):
    actor: str = "system"
    timeout_sec: Optional[float] = None


class RotateResponse(BaseModel):
    previous_key_id: str
    new_key_id: str
    version: int
    migration: MigrationResponse


class SessionCreateRequest(BaseModel):
    patient_ref: Optional[str] = None
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None
    triage: str = "unknown"
    actor: str = "nurse"

    @field_validator('triage')
    @classmethod
    def triage_must_be_valid(cls, v):
        if v not in TRIAGE_LEVELS:
            raise ValueError(f'triage must be one of: {TRIAGE_LEVELS}')
        return v


class SessionUpdateRequest(BaseModel):
    patient_ref: Optional[str] = None
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None


class SessionResponse(BaseModel):
    id: str
    stage: str
    status: str
    triage: str
    patient_ref: Optional[str] = None
    form_instance_ids: List[str]
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class StageAdvanceRequest(BaseModel):
    stage: str
    actor: str = "nurse"

    @field_validator('stage')
    @classmethod
    def stage_must_be_known(cls, v):
        if v not in SESSION_STAGES:
            raise ValueError(f'stage must be one of: {SESSION_STAGES}')
        return v


class SessionCompleteRequest(BaseModel):
    status: str
    actor: str = "nurse"

    @field_validator('status')
    @classmethod
    def status_must_be_terminal(cls, v):
        if v not in TERMINAL_STATUSES:
            raise ValueError(f'status must be one of: {TERMINAL_STATUSES}')
        return v


class LinkFormRequest(BaseModel):
    form_instance_id: str
    actor: str = "nurse"


class TriageUpdateRequest(BaseModel):
    triage: str
    actor: str = "nurse"

    @field_validator('triage')
    @classmethod
    def triage_must_be_valid(cls, v):
        if v not in TRIAGE_LEVELS:
            raise ValueError(f'triage must be one of: {TRIAGE_LEVELS}')
        return v


class SessionTransitionResponse(BaseModel):
    allowed: bool
    kind: Optional[str] = None
    reason: Optional[str] = None
    session: SessionResponse


class SessionQueueResponse(BaseModel):
    red: List[SessionResponse]
    yellow: List[SessionResponse]
    green: List[SessionResponse]
    unknown: List[SessionResponse]


class FormCreateRequest(BaseModel):
    schema_id: str
    session_id: str
    actor: str = "nurse"


class FormInstanceResponse(BaseModel):
    id: str
    schema_id: str
    schema_version: Optional[str] = None
    session_id: str
    status: str
    current_state_id: str
    answers: Dict[str, Any]
    calculated: Dict[str, Any]
    created_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class FieldValueRequest(BaseModel):
    value: Any = None
    actor: str = "nurse"


class ValidationFailedResponse(BaseModel):
    kind: str
    field_id: str
    message: str


class SaveFieldResponse(BaseModel):
    success: bool
    instance: FormInstanceResponse
    validation: Optional[ValidationFailedResponse] = None
    warnings: List[str] = []


class TransitionRequest(BaseModel):
    target_state_id: str
    actor: str = "nurse"


class TransitionValidationResponse(BaseModel):
    valid: bool
    errors: List[str]


class FormTransitionResponse(BaseModel):
    allowed: bool
    kind: Optional[str] = None
    reason: Optional[str] = None
    errors: List[str] = []
    instance: FormInstanceResponse


class IntegrityReportResponse(BaseModel):
    total: int
    verified: int
    failed: int
    missing: int
    failed_ids: List[str]
    checked_at: datetime


class HealthResponse(BaseModel):
    status: str
    version: str
    db_health: bool
    document_count: int
    key_state: str
    degraded: bool
