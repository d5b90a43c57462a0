"""
Record types - session keys, key versions, document envelopes, corruption records,
clinical sessions and form instances.
"""

from dataclasses import dataclass, field, asdict
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

SESSION_STAGES = ['registration', 'assessment', 'treatment', 'discharge']
SESSION_STATUSES = ['open', 'completed', 'referred', 'cancelled']
TERMINAL_STATUSES = ['completed', 'referred', 'cancelled']
TRIAGE_LEVELS = ['red', 'yellow', 'green', 'unknown']
FORM_STATUSES = ['draft', 'completed', 'error']

SESSION_ID_PREFIX = "session_"
FORM_ID_PREFIX = "form_"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _format_ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SessionKey:
    """The live symmetric key. key_bytes is owned by KeyManager and zeroed on clear."""
    key_bytes: bytearray = field(repr=False)
    key_id: str
    created_at: datetime
    device_id: str

    def is_zeroed(self) -> bool:
        return not any(self.key_bytes)


@dataclass
class KeyVersion:
    key_id: str
    version: int
    created_at: datetime
    rotated_by: str  # initial, manual, automatic, migration
    key_hash: str
    is_active: bool
    rotated_at: Optional[datetime] = None
    usage_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = _format_ts(self.created_at)
        data['rotated_at'] = _format_ts(self.rotated_at)
        return data

    @classmethod
    def from_row(cls, row) -> 'KeyVersion':
        return cls(
            key_id=row['key_id'],
            version=row['version'],
            created_at=_parse_ts(row['created_at']),
            rotated_by=row['rotated_by'],
            key_hash=row['key_hash'],
            is_active=bool(row['is_active']),
            rotated_at=_parse_ts(row['rotated_at']),
            usage_count=row['usage_count'] or 0,
        )


@dataclass
class EncryptedDocument:
    """Stored envelope. For degraded writes ciphertext holds plaintext JSON."""
    id: str
    revision: int
    ciphertext: str
    integrity_tag: Optional[str]
    key_id: Optional[str]
    encrypted: bool = True
    degraded: bool = False
    degraded_reason: Optional[str] = None
    encrypted_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row) -> 'EncryptedDocument':
        return cls(
            id=row['id'],
            revision=row['revision'],
            ciphertext=row['ciphertext'],
            integrity_tag=row['integrity_tag'],
            key_id=row['key_id'],
            encrypted=bool(row['encrypted']),
            degraded=bool(row['degraded']),
            degraded_reason=row['degraded_reason'],
            encrypted_at=_parse_ts(row['encrypted_at']),
            updated_at=_parse_ts(row['updated_at']),
        )

    def to_dict(self) -> Dict[str, Any]:
        """Export form used by an external sync layer."""
        data = asdict(self)
        data['encrypted_at'] = _format_ts(self.encrypted_at)
        data['updated_at'] = _format_ts(self.updated_at)
        return data


@dataclass
class CorruptedDocumentRecord:
    id: str
    encrypted_at: Optional[datetime]
    error_summary: str
    recoverable: bool
    key_id: Optional[str] = None
    first_seen: Optional[datetime] = None
    last_seen: Optional[datetime] = None
    occurrences: int = 1

    @classmethod
    def from_row(cls, row) -> 'CorruptedDocumentRecord':
        return cls(
            id=row['id'],
            encrypted_at=_parse_ts(row['encrypted_at']),
            error_summary=row['error_summary'],
            recoverable=bool(row['recoverable']),
            key_id=row['key_id'],
            first_seen=_parse_ts(row['first_seen']),
            last_seen=_parse_ts(row['last_seen']),
            occurrences=row['occurrences'],
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        for name in ('encrypted_at', 'first_seen', 'last_seen'):
            data[name] = _format_ts(getattr(self, name))
        return data


@dataclass
class BulkResult:
    """Outcome of one document in EncryptedStore.put_many."""
    id: Optional[str]
    ok: bool
    revision: Optional[int] = None
    error: Optional[str] = None


@dataclass
class KeyBackup:
    """A session key wrapped under a key derived from a separate backup secret."""
    key_id: str
    wrapped_key: str = field(repr=False)
    integrity_tag: str = field(repr=False)
    salt: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = _format_ts(self.created_at)
        data['expires_at'] = _format_ts(self.expires_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'KeyBackup':
        return cls(
            key_id=data['key_id'],
            wrapped_key=data['wrapped_key'],
            integrity_tag=data['integrity_tag'],
            salt=data['salt'],
            created_at=_parse_ts(data['created_at']),
            expires_at=_parse_ts(data['expires_at']),
        )


@dataclass
class MigrationResult:
    """Progress of a rotate_and_migrate pass. Re-running an interrupted pass resumes it."""
    new_key_id: str
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    errors: List[str] = field(default_factory=list)
    completed: bool = False
    interrupted: Optional[str] = None  # timeout | cancelled


@dataclass
class IntegrityReport:
    total: int = 0
    verified: int = 0
    failed: int = 0
    missing: int = 0
    failed_ids: List[str] = field(default_factory=list)
    checked_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['checked_at'] = _format_ts(self.checked_at)
        return data


@dataclass
class ClinicalSession:
    id: str
    stage: str
    status: str
    created_at: datetime
    updated_at: datetime
    patient_ref: Optional[str] = None
    triage: str = 'unknown'
    form_instance_ids: List[str] = field(default_factory=list)
    patient_name: Optional[str] = None
    date_of_birth: Optional[str] = None
    gender: Optional[str] = None
    chief_complaint: Optional[str] = None
    notes: Optional[str] = None
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = _format_ts(self.created_at)
        data['updated_at'] = _format_ts(self.updated_at)
        data['completed_at'] = _format_ts(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClinicalSession':
        data = dict(data)
        data.pop('doc_type', None)
        data['created_at'] = _parse_ts(data['created_at'])
        data['updated_at'] = _parse_ts(data['updated_at'])
        data['completed_at'] = _parse_ts(data.get('completed_at'))
        data['form_instance_ids'] = list(data.get('form_instance_ids') or [])
        return cls(**data)


@dataclass
class ClinicalFormInstance:
    id: str
    schema_id: str
    session_id: str
    status: str
    current_state_id: str
    created_at: datetime
    updated_at: datetime
    schema_version: Optional[str] = None
    answers: Dict[str, Any] = field(default_factory=dict)
    calculated: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None
    audit_log: List[Dict[str, Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['created_at'] = _format_ts(self.created_at)
        data['updated_at'] = _format_ts(self.updated_at)
        data['completed_at'] = _format_ts(self.completed_at)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ClinicalFormInstance':
        data = dict(data)
        data.pop('doc_type', None)
        data['created_at'] = _parse_ts(data['created_at'])
        data['updated_at'] = _parse_ts(data['updated_at'])
        data['completed_at'] = _parse_ts(data.get('completed_at'))
        return cls(**data)
