"""
Form schema tests - tagged field variants, conditions and load-time reference checks.
"""

import copy
import json

import pytest

from healthbridge.core.errors import SchemaError, SchemaNotFound
from healthbridge.core.form_schema import (
    CheckboxField,
    ChoiceField,
    CompositeCondition,
    NumberField,
    SchemaRegistry,
    TextField,
    evaluate_condition,
    parse_schema,
)

from conftest import ASSESSMENT_SCHEMA


def minimal_schema(**overrides):
    data = {
        "id": "mini",
        "version": "1",
        "fields": [{"id": "age", "type": "number", "label": "Age"}],
        "workflow": [{"id": "start", "allowedTransitions": ["done"]}, {"id": "done"}],
    }
    data.update(overrides)
    return data


class TestParsing:

    def test_assessment_schema(self):
        schema = parse_schema(ASSESSMENT_SCHEMA)

        assert schema.version == "2"
        assert schema.initial_state_id == "intake"
        assert isinstance(schema.get_field("patient_age_months"), NumberField)
        assert isinstance(schema.get_field("danger_signs"), CheckboxField)
        assert isinstance(schema.get_field("notes"), TextField)
        # Inline section fields are lifted to the field list
        assert schema.get_section("vitals").fields == ["patient_age_months", "temperature", "resp_rate"]
        assert schema.get_state("review").is_completion
        assert not schema.get_state("intake").is_completion

    def test_initial_state_defaults_to_first(self):
        assert parse_schema(minimal_schema()).initial_state_id == "start"

    def test_snake_case_keys_accepted(self):
        schema = parse_schema(minimal_schema(workflow=[{"id": "start", "allowed_transitions": ["done"]}, {"id": "done"}]))
        assert schema.get_state("start").allowed_transitions == ["done"]

    def test_unknown_field_type(self):
        with pytest.raises(SchemaError):
            parse_schema(minimal_schema(fields=[{"id": "age", "type": "slider", "label": "Age"}]))

    @pytest.mark.parametrize("overrides", [
        {"workflow": []},
        {"workflow": [{"id": "start", "allowedTransitions": ["nowhere"]}]},
        {"workflow": [{"id": "start", "requiredFields": ["missing"]}]},
        {"initialState": "elsewhere"},
        {"fields": [{"id": "age", "type": "number", "label": "Age"}, {"id": "age", "type": "text", "label": "Again"}]},
        {"fields": [{"id": "score", "type": "calculated", "label": "Score", "calculation": "nope"}]},
        {"fields": [{"id": "age", "type": "number", "label": "Age",
                     "visibleIf": {"operator": "eq", "field": "ghost", "value": 1}}]},
        {"triageLogic": [{"id": "r", "name": "R", "priority": "red",
                          "conditions": [{"operator": "gt", "field": "ghost", "value": 1}]}]},
        {"triageLogic": [{"id": "r", "name": "R", "priority": "orange", "conditions": []}]},
        {"fields": [{"id": "mrn", "type": "text", "label": "MRN", "pattern": "["}]},
        {"fields": [{"id": "mrn", "type": "text", "label": "MRN",
                     "constraints": {"type": "pattern", "pattern": "(\\d+", "message": "Digits only"}}]},
    ])
    def test_rejected_at_load(self, overrides):
        with pytest.raises(SchemaError):
            parse_schema(minimal_schema(**overrides))

    def test_membership_condition_needs_list(self):
        bad = minimal_schema(fields=[{"id": "age", "type": "number", "label": "Age",
                                      "visibleIf": {"operator": "in", "field": "age", "value": 3}}])
        with pytest.raises(SchemaError):
            parse_schema(bad)

    def test_not_takes_one_condition(self):
        bad = minimal_schema(fields=[{"id": "age", "type": "number", "label": "Age",
                                      "visibleIf": {"operator": "not", "conditions": []}}])
        with pytest.raises(SchemaError):
            parse_schema(bad)


class TestFieldValidation:

    def test_number(self):
        field = parse_schema(ASSESSMENT_SCHEMA).get_field("patient_age_months")

        assert field.validate_value(12) == []
        assert field.validate_value(None) == []
        assert field.validate_value("twelve") == ["Age (months) must be a number"]
        assert field.validate_value(True) == ["Age (months) must be a number"]
        assert field.validate_value(-1) == ["Age (months) must be at least 0"]

    def test_clinical_constraint_only_warns(self):
        field = parse_schema(ASSESSMENT_SCHEMA).get_field("temperature")

        assert field.validate_value(41.2) == []
        assert field.constraint_warnings(41.2) == ["Temperature outside normal range"]
        assert field.constraint_warnings(37.0) == []

    def test_choice(self):
        field = ChoiceField(id="sex", type="radio", label="Sex", options=["female", "male"])

        assert field.validate_value("female") == []
        assert field.validate_value(["female"]) != []
        assert "not one of" in field.validate_value("other")[0]

    def test_checkbox_set(self):
        field = parse_schema(ASSESSMENT_SCHEMA).get_field("danger_signs")

        assert field.validate_value(["lethargic"]) == []
        assert field.validate_value("lethargic") == ["Danger signs must be a list of options"]
        assert field.validate_value(["sneezing"]) != []

    def test_text_length(self):
        field = parse_schema(ASSESSMENT_SCHEMA).get_field("notes")
        assert field.validate_value("x" * 201) == ["Notes must be at most 200 characters"]

    def test_text_pattern(self):
        schema = parse_schema(minimal_schema(fields=[
            {"id": "mrn", "type": "text", "label": "MRN", "pattern": r"[A-Z]{2}\d{4}"},
        ]))
        field = schema.get_field("mrn")

        assert field.validate_value("AB1234") == []
        assert field.validate_value("abc") == ["MRN has an invalid format"]

    def test_date_and_time(self):
        schema = parse_schema(minimal_schema(fields=[
            {"id": "dob", "type": "date", "label": "Date of birth"},
            {"id": "seen", "type": "time", "label": "Seen at"},
        ]))
        assert schema.get_field("dob").validate_value("2023-02-28") == []
        assert schema.get_field("dob").validate_value("28/02/2023") != []
        assert schema.get_field("seen").validate_value("14:30") == []
        assert schema.get_field("seen").validate_value(1430) != []


class TestConditions:

    def test_composite(self):
        schema = parse_schema(minimal_schema(fields=[{
            "id": "age", "type": "number", "label": "Age",
            "visibleIf": {"operator": "or", "conditions": [
                {"operator": "lt", "field": "age", "value": 2},
                {"operator": "not", "conditions": [{"operator": "lte", "field": "age", "value": 60}]},
            ]},
        }]))
        condition = schema.get_field("age").visible_if

        assert isinstance(condition, CompositeCondition)
        assert evaluate_condition(condition, {"age": 1})
        assert evaluate_condition(condition, {"age": 70})
        assert not evaluate_condition(condition, {"age": 30})

    def test_numeric_comparison_with_missing_value_is_false(self):
        condition = parse_schema(ASSESSMENT_SCHEMA).calculations[0].cases[0].when
        assert not evaluate_condition(condition, {})
        assert evaluate_condition(condition, {"resp_rate": 55})


class TestSchemaRegistry:

    def test_load_from_directory(self, schemas):
        schema = schemas.load_schema("pediatric_assessment")

        assert schema.title == "Pediatric danger sign assessment"
        assert schemas.load_schema("pediatric_assessment") is schema
        assert schemas.list_schemas() == ["pediatric_assessment"]
        assert schemas.versions() == {"pediatric_assessment": "2"}

    def test_missing_schema(self, schemas):
        with pytest.raises(SchemaNotFound):
            schemas.load_schema("nope")

    def test_invalid_json(self, schema_dir):
        with open(f"{schema_dir}/broken.json", "w", encoding="utf-8") as f:
            f.write("{not json")
        with pytest.raises(SchemaError):
            SchemaRegistry(schema_dir).load_schema("broken")

    def test_id_must_match_file_name(self, schema_dir):
        data = copy.deepcopy(ASSESSMENT_SCHEMA)
        with open(f"{schema_dir}/renamed.json", "w", encoding="utf-8") as f:
            json.dump(data, f)
        with pytest.raises(SchemaError):
            SchemaRegistry(schema_dir).load_schema("renamed")

    def test_register_in_memory(self, tmp_path):
        registry = SchemaRegistry(str(tmp_path / "empty"))
        registry.register(minimal_schema())
        assert registry.load_schema("mini").version == "1"

    def test_register_rejects_uncompilable_pattern(self, tmp_path):
        registry = SchemaRegistry(str(tmp_path / "empty"))
        bad = minimal_schema(fields=[{"id": "mrn", "type": "text", "label": "MRN", "pattern": "["}])

        with pytest.raises(SchemaError, match="invalid pattern"):
            registry.register(bad)
        assert registry.list_schemas() == []
