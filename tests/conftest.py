"""
Shared fixtures - temporary databases, a controllable clock, unlocked key managers
and a pediatric assessment schema used across the suite.
"""

import json
from datetime import datetime, timedelta, timezone

import pytest

from healthbridge.core.form_schema import SchemaRegistry
from healthbridge.core.forms import FormEngine
from healthbridge.core.keys import KeyManager
from healthbridge.core.sessions import SessionEngine
from healthbridge.core.store import EncryptedStore

TEST_PIN = "2468"
TEST_ITERATIONS = 1000

ASSESSMENT_SCHEMA = {
    "id": "pediatric_assessment",
    "version": 2,
    "title": "Pediatric danger sign assessment",
    "initialState": "intake",
    "sections": [
        {
            "id": "vitals",
            "title": "Vitals",
            "fields": [
                {"id": "patient_age_months", "type": "number", "label": "Age (months)", "min": 0, "max": 216},
                {"id": "temperature", "type": "number", "label": "Temperature", "unit": "C",
                 "constraints": {"type": "clinical", "min": 35, "max": 39.5,
                                 "message": "Temperature outside normal range"}},
                {"id": "resp_rate", "type": "number", "label": "Respiratory rate"},
            ],
        },
        {
            "id": "symptoms",
            "title": "Symptoms",
            "fields": ["danger_signs", "has_cough", "cough_days", "fast_breathing", "notes"],
        },
    ],
    "fields": [
        {"id": "danger_signs", "type": "checkbox", "label": "Danger signs", "defaultValue": [],
         "options": ["convulsions", "unable_to_drink", "lethargic", "vomiting_everything"]},
        {"id": "has_cough", "type": "boolean", "label": "Cough",
         "requiredMessage": "Record whether the child has a cough"},
        {"id": "cough_days", "type": "number", "label": "Days of cough", "min": 0,
         "visibleIf": {"operator": "eq", "field": "has_cough", "value": True}},
        {"id": "fast_breathing", "type": "calculated", "label": "Fast breathing", "calculation": "fast_breathing_calc"},
        {"id": "notes", "type": "textarea", "label": "Notes", "maxLength": 200},
    ],
    "calculations": [
        {"id": "fast_breathing_calc", "default": False,
         "cases": [{"when": {"operator": "gte", "field": "resp_rate", "value": 50}, "then": True}]},
    ],
    "workflow": [
        {"id": "intake", "allowedTransitions": ["assessment"]},
        {"id": "assessment", "requiredFields": ["patient_age_months", "temperature"],
         "allowedTransitions": ["review"],
         "transitionGuard": {"condition": {"operator": "or", "conditions": [
             {"operator": "neq", "field": "has_cough", "value": True},
             {"operator": "gte", "field": "cough_days", "value": 0}]},
             "message": "Record how many days the cough has lasted"}},
        {"id": "review", "requiredFields": ["has_cough"], "completion": True},
    ],
    "triageLogic": [
        {"id": "danger", "name": "Danger sign present", "priority": "red", "actions": ["Refer urgently"],
         "conditions": [{"operator": "in", "field": "danger_signs",
                         "value": ["convulsions", "unable_to_drink", "lethargic", "vomiting_everything"]}]},
        {"id": "pneumonia", "name": "Pneumonia", "priority": "yellow", "actions": ["Give oral amoxicillin"],
         "conditions": [{"operator": "eq", "field": "has_cough", "value": True},
                        {"operator": "eq", "field": "fast_breathing_calc", "value": True}]},
    ],
}


class FakeClock:
    """Epoch-seconds clock that only moves when told to."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


class TickingClock:
    """Datetime clock that moves one second per reading, so orderings are deterministic."""

    def __init__(self, start: datetime = datetime(2024, 3, 1, 8, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        self.current += timedelta(seconds=1)
        return self.current


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / "healthbridge.db")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def key_manager(db_path, clock):
    keys = KeyManager(db_path, iterations=TEST_ITERATIONS, clock=clock)
    yield keys
    keys.clear()


@pytest.fixture
def unlocked(key_manager):
    key_manager.initialize_from_secret(TEST_PIN)
    return key_manager


@pytest.fixture
def store(db_path):
    return EncryptedStore(db_path)


@pytest.fixture
def schema_dir(tmp_path):
    path = tmp_path / "schemas"
    path.mkdir()
    (path / "pediatric_assessment.json").write_text(json.dumps(ASSESSMENT_SCHEMA), encoding="utf-8")
    return str(path)


@pytest.fixture
def schemas(schema_dir):
    return SchemaRegistry(schema_dir)


@pytest.fixture
def sessions(store, unlocked):
    return SessionEngine(store, unlocked, clock=TickingClock())


@pytest.fixture
def forms(store, unlocked, schemas):
    return FormEngine(store, unlocked, schemas, clock=TickingClock())
