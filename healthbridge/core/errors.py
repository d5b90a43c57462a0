"""
Error taxonomy - hard failures are exceptions; expected validation outcomes are values.
"""

from dataclasses import dataclass
from typing import Optional

# Result kinds for soft (non-exceptional) outcomes
INVALID_TRANSITION = "InvalidTransition"
ASSESSMENT_REQUIRED = "AssessmentRequired"
VALIDATION_FAILED = "ValidationFailed"


class HealthBridgeError(Exception):
    """Base class for all core failures."""
    kind = "HealthBridgeError"


class NoKeyAvailable(HealthBridgeError):
    """No session key is loaded."""
    kind = "NoKeyAvailable"


class NoKeyMaterial(HealthBridgeError):
    """Rotation requested without a loaded key."""
    kind = "NoKeyMaterial"


class KeyExpired(HealthBridgeError):
    """The session key is older than the configured maximum age."""
    kind = "KeyExpired"


class DegradedModeViolation(HealthBridgeError):
    """A non-recovery operation was attempted while degraded."""
    kind = "DegradedModeViolation"


class WeakSecret(HealthBridgeError):
    kind = "WeakSecret"


class KeyDerivationTimeout(HealthBridgeError):
    kind = "KeyDerivationTimeout"


class SecretMismatch(HealthBridgeError):
    """The derived key does not match the active key version on this device."""
    kind = "SecretMismatch"


class DocumentCorrupted(HealthBridgeError):
    """A stored document failed to decrypt or authenticate."""
    kind = "DocumentCorrupted"

    def __init__(self, doc_id: str, recoverable: bool, reason: str = ""):
        self.doc_id = doc_id
        self.recoverable = recoverable
        self.reason = reason
        super().__init__(f"Document {doc_id} is corrupted ({'recoverable' if recoverable else 'unrecoverable'}): {reason}")


class DegradedWriteRejected(HealthBridgeError):
    kind = "DegradedWriteRejected"


class NotFound(HealthBridgeError):
    kind = "NotFound"


class SessionNotFound(NotFound):
    pass


class FormInstanceNotFound(NotFound):
    pass


class SchemaNotFound(NotFound):
    pass


class SchemaError(HealthBridgeError):
    """A form schema was rejected at load time."""
    kind = "SchemaError"


@dataclass(frozen=True)
class ValidationFailed:
    """Structured field validation failure returned by save_field_value."""
    field_id: str
    message: str
    kind: str = VALIDATION_FAILED

    def to_dict(self):
        return {"kind": self.kind, "field_id": self.field_id, "message": self.message}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a stage advance, session completion or workflow transition."""
    allowed: bool
    kind: Optional[str] = None
    reason: Optional[str] = None

    @classmethod
    def ok(cls) -> 'TransitionResult':
        return cls(allowed=True)

    @classmethod
    def rejected(cls, kind: str, reason: str) -> 'TransitionResult':
        return cls(allowed=False, kind=kind, reason=reason)
