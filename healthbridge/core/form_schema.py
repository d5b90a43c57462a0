"""
Clinical form schemas - tagged-variant field, condition, workflow and triage models,
checked once at load time, plus the registry that serves them by id.
"""

import json
import re
from datetime import date, time as dt_time
from pathlib import Path
from typing import Annotated, Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator
from pydantic.alias_generators import to_camel

from .config import get_schema_dir
from .errors import SchemaError, SchemaNotFound
from util.logging import logger

COMPARISON_OPERATORS = ('eq', 'neq', 'gt', 'lt', 'gte', 'lte', 'in', 'nin')


class SchemaModel(BaseModel):
    """Immutable schema node; accepts camelCase keys from JSON and snake_case from Python."""
    model_config = ConfigDict(frozen=True, extra='ignore', alias_generator=to_camel, populate_by_name=True)


# -- conditions -------------------------------------------------------------------

class ComparisonCondition(SchemaModel):
    operator: Literal['eq', 'neq', 'gt', 'lt', 'gte', 'lte', 'in', 'nin']
    field: str
    value: Any = None

    @model_validator(mode='after')
    def membership_needs_list(self):
        if self.operator in ('in', 'nin') and not isinstance(self.value, list):
            raise ValueError(f"operator '{self.operator}' requires a list value")
        return self


class CompositeCondition(SchemaModel):
    operator: Literal['and', 'or', 'not']
    conditions: List['Condition']

    @model_validator(mode='after')
    def check_arity(self):
        if self.operator == 'not' and len(self.conditions) != 1:
            raise ValueError("'not' takes exactly one condition")
        if not self.conditions:
            raise ValueError(f"'{self.operator}' needs at least one condition")
        return self


Condition = Annotated[Union[ComparisonCondition, CompositeCondition], Field(discriminator='operator')]
CompositeCondition.model_rebuild()


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _check_pattern(pattern: Optional[str]) -> Optional[str]:
    if pattern is not None:
        try:
            re.compile(pattern)
        except re.error as e:
            raise ValueError(f"invalid pattern {pattern!r}: {e}") from e
    return pattern


def evaluate_condition(condition: Condition, values: Dict[str, Any]) -> bool:
    if isinstance(condition, CompositeCondition):
        if condition.operator == 'and':
            return all(evaluate_condition(c, values) for c in condition.conditions)
        if condition.operator == 'or':
            return any(evaluate_condition(c, values) for c in condition.conditions)
        return not evaluate_condition(condition.conditions[0], values)

    actual = values.get(condition.field)
    expected = condition.value
    op = condition.operator

    if op == 'eq':
        return actual == expected
    if op == 'neq':
        return actual != expected
    if op in ('in', 'nin'):
        if isinstance(actual, list):
            found = any(item in expected for item in actual)
        else:
            found = actual in expected
        return found if op == 'in' else not found

    if not (_is_number(actual) and _is_number(expected)):
        return False
    if op == 'gt':
        return actual > expected
    if op == 'lt':
        return actual < expected
    if op == 'gte':
        return actual >= expected
    return actual <= expected


def condition_fields(condition: Optional[Condition]) -> List[str]:
    if condition is None:
        return []
    if isinstance(condition, CompositeCondition):
        fields = []
        for child in condition.conditions:
            fields.extend(condition_fields(child))
        return fields
    return [condition.field]


# -- fields -------------------------------------------------------------------------

class FieldConstraint(SchemaModel):
    """range/length/pattern reject a value; clinical only warns."""
    type: Literal['range', 'length', 'pattern', 'clinical']
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None
    message: str

    @field_validator('pattern')
    @classmethod
    def pattern_must_compile(cls, v):
        return _check_pattern(v)

    def violated(self, value: Any) -> bool:
        if value is None:
            return False
        if self.type in ('range', 'clinical'):
            if not _is_number(value):
                return False
            return (self.min is not None and value < self.min) or (self.max is not None and value > self.max)
        if self.type == 'length':
            length = len(value) if isinstance(value, (str, list)) else 0
            return (self.min is not None and length < self.min) or (self.max is not None and length > self.max)
        return isinstance(value, str) and self.pattern is not None and re.fullmatch(self.pattern, value) is None


class FieldBase(SchemaModel):
    id: str
    label: str
    description: Optional[str] = None
    required: bool = False
    required_message: Optional[str] = None
    visible_if: Optional[Condition] = None
    enabled_if: Optional[Condition] = None
    default_value: Any = None
    constraints: Optional[FieldConstraint] = None

    @field_validator('id')
    @classmethod
    def id_must_not_be_empty(cls, v):
        if not v.strip():
            raise ValueError('field id cannot be empty')
        return v

    def validate_value(self, value: Any) -> List[str]:
        """Hard errors for a candidate value; None clears the field and is always accepted."""
        if value is None:
            return []
        errors = self._type_errors(value)
        if not errors and self.constraints is not None and self.constraints.type != 'clinical':
            if self.constraints.violated(value):
                errors.append(self.constraints.message)
        return errors

    def constraint_warnings(self, value: Any) -> List[str]:
        if self.constraints is not None and self.constraints.type == 'clinical' and self.constraints.violated(value):
            return [self.constraints.message]
        return []

    def _type_errors(self, value: Any) -> List[str]:
        return []


class TextField(FieldBase):
    type: Literal['text', 'textarea']
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    pattern: Optional[str] = None

    @field_validator('pattern')
    @classmethod
    def pattern_must_compile(cls, v):
        return _check_pattern(v)

    def _type_errors(self, value):
        if not isinstance(value, str):
            return [f"{self.label} must be text"]
        if self.min_length is not None and len(value) < self.min_length:
            return [f"{self.label} must be at least {self.min_length} characters"]
        if self.max_length is not None and len(value) > self.max_length:
            return [f"{self.label} must be at most {self.max_length} characters"]
        if self.pattern is not None and re.fullmatch(self.pattern, value) is None:
            return [f"{self.label} has an invalid format"]
        return []


class NumberField(FieldBase):
    type: Literal['number']
    min: Optional[float] = None
    max: Optional[float] = None
    step: Optional[float] = None
    unit: Optional[str] = None

    def _type_errors(self, value):
        if not _is_number(value):
            return [f"{self.label} must be a number"]
        if self.min is not None and value < self.min:
            return [f"{self.label} must be at least {self.min:g}"]
        if self.max is not None and value > self.max:
            return [f"{self.label} must be at most {self.max:g}"]
        return []


class BooleanField(FieldBase):
    type: Literal['boolean']

    def _type_errors(self, value):
        return [] if isinstance(value, bool) else [f"{self.label} must be yes or no"]


class ChoiceField(FieldBase):
    type: Literal['radio', 'select']
    options: List[str]
    allow_multiple: bool = False

    def _type_errors(self, value):
        chosen = value if isinstance(value, list) and self.allow_multiple else [value]
        invalid = [v for v in chosen if v not in self.options]
        if invalid:
            return [f"{self.label}: '{invalid[0]}' is not one of {self.options}"]
        return []


class CheckboxField(FieldBase):
    """A single yes/no box, or a set of boxes when options are given."""
    type: Literal['checkbox']
    options: List[str] = []

    def _type_errors(self, value):
        if not self.options:
            return [] if isinstance(value, bool) else [f"{self.label} must be checked or unchecked"]
        if not isinstance(value, list):
            return [f"{self.label} must be a list of options"]
        invalid = [v for v in value if v not in self.options]
        return [f"{self.label}: '{invalid[0]}' is not one of {self.options}"] if invalid else []


class DateField(FieldBase):
    type: Literal['date']

    def _type_errors(self, value):
        try:
            date.fromisoformat(value)
        except (TypeError, ValueError):
            return [f"{self.label} must be a date (YYYY-MM-DD)"]
        return []


class TimeField(FieldBase):
    type: Literal['time']

    def _type_errors(self, value):
        try:
            dt_time.fromisoformat(value)
        except (TypeError, ValueError):
            return [f"{self.label} must be a time (HH:MM)"]
        return []


class TimerField(FieldBase):
    """Elapsed seconds recorded by a countdown timer."""
    type: Literal['timer']
    duration: int

    def _type_errors(self, value):
        if not _is_number(value) or value < 0:
            return [f"{self.label} must be a non-negative number of seconds"]
        return []


class CalculatedField(FieldBase):
    """Read-only; its value comes from the named calculation."""
    type: Literal['calculated']
    calculation: str


FieldDefinition = Annotated[
    Union[TextField, NumberField, BooleanField, ChoiceField, CheckboxField,
          DateField, TimeField, TimerField, CalculatedField],
    Field(discriminator='type')
]


# -- sections, workflow, calculations, triage -------------------------------------------------

class FormSection(SchemaModel):
    id: str
    title: str = ""
    description: Optional[str] = None
    fields: List[str] = []
    depends_on: Optional[Condition] = None


class TransitionGuard(SchemaModel):
    condition: Condition
    message: str


class WorkflowState(SchemaModel):
    id: str
    name: Optional[str] = None
    allowed_transitions: List[str] = []
    required_fields: List[str] = []
    transition_guard: Optional[TransitionGuard] = None
    completion: bool = False

    @property
    def is_completion(self) -> bool:
        """Completion states are flagged explicitly or have no way out."""
        return self.completion or not self.allowed_transitions


class CalculationCase(SchemaModel):
    when: Condition
    then: Any


class Calculation(SchemaModel):
    id: str
    name: Optional[str] = None
    cases: List[CalculationCase] = []
    default: Any = None

    def evaluate(self, values: Dict[str, Any]) -> Any:
        for case in self.cases:
            if evaluate_condition(case.when, values):
                return case.then
        return self.default


class TriageRule(SchemaModel):
    id: str
    name: str
    priority: Literal['red', 'yellow', 'green']
    conditions: List[Condition]
    actions: List[str] = []

    def matches(self, values: Dict[str, Any]) -> bool:
        return all(evaluate_condition(c, values) for c in self.conditions)


class ClinicalFormSchema(SchemaModel):
    id: str
    version: str
    title: Optional[str] = None
    description: Optional[str] = None
    sections: List[FormSection] = []
    fields: List[FieldDefinition] = []
    workflow: List[WorkflowState]
    initial_state: Optional[str] = None
    calculations: List[Calculation] = []
    triage_logic: List[TriageRule] = []

    @model_validator(mode='before')
    @classmethod
    def lift_inline_section_fields(cls, data):
        """Sections may carry full field definitions; move them to the top-level field list."""
        if not isinstance(data, dict) or not isinstance(data.get('sections'), list):
            return data
        data = dict(data)
        fields = list(data.get('fields') or [])
        sections = []
        for section in data['sections']:
            if isinstance(section, dict) and any(isinstance(f, dict) for f in section.get('fields', [])):
                section = dict(section)
                ids = []
                for entry in section['fields']:
                    if isinstance(entry, dict):
                        fields.append(entry)
                        ids.append(entry.get('id'))
                    else:
                        ids.append(entry)
                section['fields'] = ids
            sections.append(section)
        data['sections'] = sections
        data['fields'] = fields
        return data

    @field_validator('version', mode='before')
    @classmethod
    def version_as_string(cls, v):
        return str(v) if isinstance(v, (int, float)) else v

    @model_validator(mode='after')
    def check_references(self):
        if not self.workflow:
            raise ValueError("workflow must declare at least one state")

        field_ids = [f.id for f in self.fields]
        state_ids = [s.id for s in self.workflow]
        calculation_ids = [c.id for c in self.calculations]
        for label, ids in (("field", field_ids), ("workflow state", state_ids),
                           ("section", [s.id for s in self.sections]), ("calculation", calculation_ids)):
            duplicates = sorted({i for i in ids if ids.count(i) > 1})
            if duplicates:
                raise ValueError(f"duplicate {label} ids: {duplicates}")

        known_values = set(field_ids) | set(calculation_ids)
        errors = []

        for section in self.sections:
            errors += [f"section '{section.id}' references unknown field '{f}'" for f in section.fields if f not in field_ids]
            errors += [f"section '{section.id}' condition uses unknown field '{f}'"
                       for f in condition_fields(section.depends_on) if f not in known_values]

        for state in self.workflow:
            errors += [f"state '{state.id}' allows transition to unknown state '{t}'"
                       for t in state.allowed_transitions if t not in state_ids]
            errors += [f"state '{state.id}' requires unknown field '{f}'" for f in state.required_fields if f not in field_ids]
            if state.transition_guard is not None:
                errors += [f"state '{state.id}' guard uses unknown field '{f}'"
                           for f in condition_fields(state.transition_guard.condition) if f not in known_values]

        for f in self.fields:
            for condition in (f.visible_if, f.enabled_if):
                errors += [f"field '{f.id}' condition uses unknown field '{ref}'"
                           for ref in condition_fields(condition) if ref not in known_values]
            if isinstance(f, CalculatedField) and f.calculation not in calculation_ids:
                errors.append(f"field '{f.id}' uses unknown calculation '{f.calculation}'")

        for calculation in self.calculations:
            for case in calculation.cases:
                errors += [f"calculation '{calculation.id}' uses unknown field '{ref}'"
                           for ref in condition_fields(case.when) if ref not in known_values]

        for rule in self.triage_logic:
            for condition in rule.conditions:
                errors += [f"triage rule '{rule.id}' uses unknown field '{ref}'"
                           for ref in condition_fields(condition) if ref not in known_values]

        if self.initial_state is not None and self.initial_state not in state_ids:
            errors.append(f"initial state '{self.initial_state}' is not a workflow state")

        if errors:
            raise ValueError("; ".join(errors))
        return self

    @property
    def initial_state_id(self) -> str:
        return self.initial_state or self.workflow[0].id

    def get_field(self, field_id: str) -> Optional[FieldDefinition]:
        return next((f for f in self.fields if f.id == field_id), None)

    def get_state(self, state_id: str) -> Optional[WorkflowState]:
        return next((s for s in self.workflow if s.id == state_id), None)

    def get_section(self, section_id: str) -> Optional[FormSection]:
        return next((s for s in self.sections if s.id == section_id), None)


def parse_schema(data: Dict[str, Any]) -> ClinicalFormSchema:
    """Validate a raw schema document; raises SchemaError describing every problem found."""
    try:
        return ClinicalFormSchema.model_validate(data)
    except ValidationError as e:
        schema_id = data.get('id', '<unknown>') if isinstance(data, dict) else '<unknown>'
        logger.log_operation("schema.load", "rejected", {"schema_id": schema_id, "error_count": e.error_count()})
        raise SchemaError(f"Schema {schema_id} is invalid: {e}") from e


class SchemaRegistry:
    """Serves form schemas by id from registered objects or <schema_dir>/<schema_id>.json."""

    def __init__(self, schema_dir: Optional[str] = None):
        self.schema_dir = Path(schema_dir or get_schema_dir())
        self._schemas: Dict[str, ClinicalFormSchema] = {}

    def register(self, schema: Union[ClinicalFormSchema, Dict[str, Any]]) -> ClinicalFormSchema:
        if not isinstance(schema, ClinicalFormSchema):
            schema = parse_schema(schema)
        self._schemas[schema.id] = schema
        logger.log_operation("schema.register", "success", {"schema_id": schema.id, "version": schema.version})
        return schema

    def load_schema(self, schema_id: str) -> ClinicalFormSchema:
        schema = self._schemas.get(schema_id)
        if schema is not None:
            return schema

        path = self.schema_dir / f"{schema_id}.json"
        if not path.is_file():
            raise SchemaNotFound(f"Schema {schema_id} not found")
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except ValueError as e:
            raise SchemaError(f"Schema file {path} is not valid JSON: {e}") from e

        schema = parse_schema(data)
        if schema.id != schema_id:
            raise SchemaError(f"Schema file {path} declares id '{schema.id}'")
        return self.register(schema)

    def list_schemas(self) -> List[str]:
        ids = set(self._schemas)
        if self.schema_dir.is_dir():
            ids.update(p.stem for p in self.schema_dir.glob("*.json"))
        return sorted(ids)

    def versions(self) -> Dict[str, str]:
        """Versions of the schemas loaded so far."""
        return {schema_id: schema.version for schema_id, schema in self._schemas.items()}
