"""
Clinical form engine - schema-bound form instances with field-level validation,
derived calculations, workflow-state transitions and triage on completion.
"""

import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from .errors import INVALID_TRANSITION, FormInstanceNotFound, TransitionResult, ValidationFailed
from .form_schema import (
    CalculatedField,
    ClinicalFormSchema,
    FieldDefinition,
    SchemaRegistry,
    evaluate_condition,
)
from .schema import FORM_ID_PREFIX, ClinicalFormInstance, utc_now
from .store import DocumentEngine, EncryptedStore
from util.logging import logger, audit_event

DOC_TYPE = "clinical_form_instance"

# Returns an error message, or None when the value is acceptable
FieldValidator = Callable[[Any, Dict[str, Any]], Optional[str]]

TRIAGE_ORDER = ['red', 'yellow', 'green']
TRIAGE_KEYS = ('triage_priority', 'triage_classification', 'triage_actions', 'triage_rule_id')


@dataclass
class SaveResult:
    success: bool
    instance: ClinicalFormInstance
    validation: Optional[ValidationFailed] = None
    warnings: List[str] = field(default_factory=list)


@dataclass
class TransitionValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)


@dataclass
class FormTransition:
    result: TransitionResult
    instance: ClinicalFormInstance
    errors: List[str] = field(default_factory=list)

    @property
    def allowed(self) -> bool:
        return self.result.allowed

    @property
    def reason(self) -> Optional[str]:
        return self.result.reason


def is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, dict)):
        return len(value) == 0
    return False


def compute_calculations(schema: ClinicalFormSchema, answers: Dict[str, Any]) -> Dict[str, Any]:
    """Evaluate every calculation in declaration order; later ones may use earlier results."""
    values = dict(answers)
    results = {}
    for calculation in schema.calculations:
        results[calculation.id] = values[calculation.id] = calculation.evaluate(values)
    for f in schema.fields:
        if isinstance(f, CalculatedField):
            results[f.id] = results.get(f.calculation)
    return results


def compute_triage(schema: ClinicalFormSchema, values: Dict[str, Any]) -> Dict[str, Any]:
    """Highest-priority matching triage rule; green when rules exist but none match."""
    if not schema.triage_logic:
        return {}
    for priority in TRIAGE_ORDER:
        for rule in schema.triage_logic:
            if rule.priority == priority and rule.matches(values):
                return {
                    "triage_priority": rule.priority,
                    "triage_classification": rule.name,
                    "triage_actions": list(rule.actions),
                    "triage_rule_id": rule.id,
                }
    return {
        "triage_priority": "green",
        "triage_classification": "No triage rule matched",
        "triage_actions": [],
        "triage_rule_id": None,
    }


def is_field_visible(schema: ClinicalFormSchema, field_def: FieldDefinition, values: Dict[str, Any]) -> bool:
    return field_def.visible_if is None or evaluate_condition(field_def.visible_if, values)


def check_transition(schema: ClinicalFormSchema, instance: ClinicalFormInstance, target_state_id: str) -> List[str]:
    """Reasons a transition is not allowed (empty when it is)."""
    current = schema.get_state(instance.current_state_id)
    if current is None:
        return [f"Current state '{instance.current_state_id}' is not part of schema {schema.id}"]
    if not current.allowed_transitions:
        return [f"No transitions are allowed from '{current.id}'"]
    if instance.status == 'completed' or current.completion:
        return [f"Form is completed in '{current.id}'; no further transitions are allowed"]
    if target_state_id not in current.allowed_transitions:
        return [f"Transition from '{current.id}' to '{target_state_id}' is not allowed"]

    target = schema.get_state(target_state_id)
    if target is None:
        return [f"Unknown workflow state '{target_state_id}'"]

    values = {**instance.answers, **instance.calculated}
    errors = []
    for field_id in target.required_fields:
        field_def = schema.get_field(field_id)
        if is_empty(values.get(field_id)):
            label = field_def.label if field_def is not None else field_id
            message = field_def.required_message if field_def is not None and field_def.required_message else None
            errors.append(message or f"{label} is required")

    guard = current.transition_guard
    if guard is not None and not evaluate_condition(guard.condition, values):
        errors.append(guard.message)
    return errors


class FormEngine(DocumentEngine):
    """Owns ClinicalFormInstance documents bound to a session by id."""

    def __init__(self, store: EncryptedStore, key_manager, schemas: Optional[SchemaRegistry] = None,
                 degraded_writes: bool = False, clock: Callable[[], datetime] = utc_now):
        super().__init__(store, key_manager, degraded_writes)
        self.schemas = schemas or SchemaRegistry()
        self._validators: Dict[str, List[FieldValidator]] = {}
        self._clock = clock

    def register_validator(self, field_id: str, validator: FieldValidator):
        """Add a validator run (after the schema's own checks) whenever field_id is saved."""
        self._validators.setdefault(field_id, []).append(validator)

    def unregister_validators(self, field_id: str):
        self._validators.pop(field_id, None)

    def load_schema(self, schema_id: str) -> ClinicalFormSchema:
        return self.schemas.load_schema(schema_id)

    # -- persistence ----------------------------------------------------------------

    def _save(self, instance: ClinicalFormInstance, actor: str):
        doc = instance.to_dict()
        doc['doc_type'] = DOC_TYPE
        self._persist(doc, actor)

    def _log_entry(self, action: str, actor: str, now: datetime, **details) -> Dict[str, Any]:
        return dict(action=action, actor=actor, timestamp=now.isoformat(), **details)

    def load_instance(self, instance_id: str) -> Optional[ClinicalFormInstance]:
        if not instance_id.startswith(FORM_ID_PREFIX):
            return None
        doc = self.store.get(instance_id, self._read_key())
        if doc is None or doc.get('doc_type') != DOC_TYPE:
            return None
        return ClinicalFormInstance.from_dict(doc)

    def _require_instance(self, instance_id: str) -> ClinicalFormInstance:
        instance = self.load_instance(instance_id)
        if instance is None:
            raise FormInstanceNotFound(f"Form instance {instance_id} not found")
        return instance

    # -- operations -----------------------------------------------------------------

    def create_instance(self, schema_id: str, session_id: str, actor: str = "system") -> ClinicalFormInstance:
        """New draft instance in the schema's initial workflow state, with field defaults applied."""
        schema = self.load_schema(schema_id)
        now = self._clock()
        answers = {
            f.id: f.default_value for f in schema.fields
            if f.default_value is not None and not isinstance(f, CalculatedField)
        }
        instance = ClinicalFormInstance(
            id=f"{FORM_ID_PREFIX}{uuid.uuid4().hex}",
            schema_id=schema.id,
            schema_version=schema.version,
            session_id=session_id,
            status='draft',
            current_state_id=schema.initial_state_id,
            created_at=now,
            updated_at=now,
            answers=answers,
            calculated=compute_calculations(schema, answers),
            audit_log=[self._log_entry("form_create", actor, now, state=schema.initial_state_id)],
        )
        self._save(instance, actor)

        logger.log_form_event("create", instance.id, details={"schema_id": schema.id, "session_id": session_id})
        audit_event("form.started", {"instance_id": instance.id, "schema_id": schema.id,
                                     "schema_version": schema.version, "session_id": session_id}, actor=actor)
        self._notify({"event_type": "form.started", "instance": instance.to_dict()})
        return instance

    def save_field_value(self, instance_id: str, field_id: str, value: Any, actor: str = "system") -> SaveResult:
        """Validate and store one answer.

        An invalid value is not persisted; the result carries ValidationFailed instead
        of raising.
        """
        with self.store.document_lock(instance_id):
            instance = self._require_instance(instance_id)
            schema = self.load_schema(instance.schema_id)
            failure = self._validate_field(schema, instance, field_id, value)
            if failure is not None:
                logger.log_form_event("field_rejected", instance_id, status="rejected",
                                      details={"field_id": field_id, "message": failure.message})
                audit_event("form.field_change", {"instance_id": instance_id, "session_id": instance.session_id,
                                                  "field_id": field_id, "reason": failure.message},
                            actor=actor, outcome="failure")
                return SaveResult(success=False, instance=instance, validation=failure)

            field_def = schema.get_field(field_id)
            warnings = field_def.constraint_warnings(value)
            now = self._clock()
            answers = dict(instance.answers)
            previous = answers.get(field_id)
            if value is None:
                answers.pop(field_id, None)
            else:
                answers[field_id] = value

            calculated = {k: v for k, v in instance.calculated.items() if k in TRIAGE_KEYS}
            calculated.update(compute_calculations(schema, answers))
            updated = replace(
                instance,
                answers=answers,
                calculated=calculated,
                updated_at=now,
                audit_log=instance.audit_log + [self._log_entry(
                    "field_change", actor, now, field_id=field_id, old_value=previous, new_value=value)],
            )
            self._save(updated, actor)

        logger.log_form_event("field_change", instance_id, details={"field_id": field_id, "warnings": len(warnings)})
        audit_event("form.field_change", {"instance_id": instance_id, "session_id": instance.session_id,
                                          "field_id": field_id, "warnings": len(warnings)}, actor=actor)
        return SaveResult(success=True, instance=updated, warnings=warnings)

    def _validate_field(self, schema: ClinicalFormSchema, instance: ClinicalFormInstance,
                        field_id: str, value: Any) -> Optional[ValidationFailed]:
        if instance.status == 'completed':
            return ValidationFailed(field_id, "Form is completed and can no longer be edited")

        field_def = schema.get_field(field_id)
        if field_def is None:
            return ValidationFailed(field_id, f"Unknown field '{field_id}' for schema {schema.id}")
        if isinstance(field_def, CalculatedField):
            return ValidationFailed(field_id, f"{field_def.label} is calculated and cannot be set")

        errors = field_def.validate_value(value)
        if errors:
            return ValidationFailed(field_id, errors[0])

        for validator in self._validators.get(field_id, []):
            message = validator(value, instance.answers)
            if message:
                return ValidationFailed(field_id, message)
        return None

    def validate_transition(self, instance_id: str, target_state_id: str) -> TransitionValidation:
        instance = self._require_instance(instance_id)
        errors = check_transition(self.load_schema(instance.schema_id), instance, target_state_id)
        return TransitionValidation(valid=not errors, errors=errors)

    def transition_state(self, instance_id: str, target_state_id: str, actor: str = "system") -> FormTransition:
        """Move to another workflow state after re-validating.

        Reaching a completion state marks the instance completed, stamps completed_at
        and records the triage outcome in `calculated`.
        """
        with self.store.document_lock(instance_id):
            instance = self._require_instance(instance_id)
            schema = self.load_schema(instance.schema_id)
            errors = check_transition(schema, instance, target_state_id)
            if errors:
                reason = "; ".join(errors)
                logger.log_form_event("transition_rejected", instance_id, status="rejected",
                                      details={"from": instance.current_state_id, "to": target_state_id})
                audit_event("form.state_transition", {"instance_id": instance_id, "session_id": instance.session_id,
                                                      "from_state": instance.current_state_id,
                                                      "to_state": target_state_id, "reason": reason},
                            severity="warning", actor=actor, outcome="failure")
                return FormTransition(TransitionResult.rejected(INVALID_TRANSITION, reason), instance, errors)

            now = self._clock()
            target = schema.get_state(target_state_id)
            changes: Dict[str, Any] = {"current_state_id": target_state_id, "updated_at": now}
            if target.is_completion:
                calculated = compute_calculations(schema, instance.answers)
                calculated.update(compute_triage(schema, {**instance.answers, **calculated}))
                changes.update(status='completed', completed_at=now, calculated=calculated)

            updated = replace(
                instance,
                audit_log=instance.audit_log + [self._log_entry(
                    "state_transition", actor, now, from_state=instance.current_state_id, to_state=target_state_id)],
                **changes
            )
            self._save(updated, actor)

        logger.log_form_event("state_transition", instance_id,
                              details={"from": instance.current_state_id, "to": target_state_id})
        audit_event("form.state_transition", {"instance_id": instance_id, "session_id": instance.session_id,
                                              "from_state": instance.current_state_id, "to_state": target_state_id},
                    actor=actor)
        if updated.status == 'completed':
            audit_event("form.completed", {"instance_id": instance_id, "session_id": instance.session_id,
                                           "schema_id": instance.schema_id,
                                           "triage_priority": updated.calculated.get("triage_priority")},
                        actor=actor)
        self._notify({"event_type": "form.state_transition", "instance": updated.to_dict()})
        return FormTransition(TransitionResult.ok(), updated)

    # -- queries --------------------------------------------------------------------

    def list_instances(self, session_id: Optional[str] = None,
                       schema_id: Optional[str] = None) -> List[ClinicalFormInstance]:
        docs = self.store.all_docs(self._read_key(), prefix=FORM_ID_PREFIX)
        instances = [ClinicalFormInstance.from_dict(doc) for doc in docs if doc.get('doc_type') == DOC_TYPE]
        if session_id is not None:
            instances = [i for i in instances if i.session_id == session_id]
        if schema_id is not None:
            instances = [i for i in instances if i.schema_id == schema_id]
        return instances

    def get_latest_instance_by_session(self, schema_id: str, session_id: str) -> Optional[ClinicalFormInstance]:
        """Most recently updated instance for the pair; ties go to the greater id."""
        instances = self.list_instances(session_id=session_id, schema_id=schema_id)
        if not instances:
            return None
        return max(instances, key=lambda i: (i.updated_at, i.id))

    def get_section_fields(self, schema_id: str, section_id: str,
                           instance: Optional[ClinicalFormInstance] = None) -> List[FieldDefinition]:
        """Field definitions of a section, filtered by visibility when an instance is given."""
        schema = self.load_schema(schema_id)
        section = schema.get_section(section_id)
        if section is None:
            return []
        fields = [schema.get_field(field_id) for field_id in section.fields]
        if instance is None:
            return fields
        values = {**instance.answers, **instance.calculated}
        return [f for f in fields if is_field_visible(schema, f, values)]
