"""
End-to-end clinical scenario across key manager, store, session and form engines.
"""

import pytest

from healthbridge.core.errors import INVALID_TRANSITION, WeakSecret
from healthbridge.core.keys import KeyManager

from conftest import TEST_ITERATIONS


def assert_cannot_return_to_registration(sessions, session_id):
    change = sessions.advance_stage(session_id, 'registration')
    assert not change.allowed
    assert change.result.kind == INVALID_TRANSITION


def test_session_lifecycle_with_assessment(sessions, forms):
    session = sessions.create_session(patient_ref="MRN-100")
    assert session.stage == 'registration'
    assert_cannot_return_to_registration(sessions, session.id)

    instance = forms.create_instance("pediatric_assessment", session.id)
    for field_id, value in (("patient_age_months", 30), ("temperature", 37.4), ("has_cough", False)):
        assert forms.save_field_value(instance.id, field_id, value).success
    assert forms.transition_state(instance.id, "assessment").allowed
    completed = forms.transition_state(instance.id, "review")
    assert completed.instance.status == 'completed'
    assert_cannot_return_to_registration(sessions, session.id)

    sessions.link_form_to_session(session.id, instance.id)
    for stage in ('assessment', 'treatment', 'discharge'):
        assert sessions.advance_stage(session.id, stage).allowed
        assert_cannot_return_to_registration(sessions, session.id)

    assert sessions.complete_session(session.id, 'completed').allowed
    final = sessions.load_session(session.id)
    assert final.status == 'completed'
    assert final.stage == 'discharge'
    assert final.form_instance_ids == [instance.id]
    assert_cannot_return_to_registration(sessions, session.id)

    # Completing again with the same status changes nothing
    assert sessions.complete_session(session.id, 'completed').allowed
    assert sessions.load_session(session.id) == final


def test_secret_scenario(db_path, clock):
    keys = KeyManager(db_path, iterations=TEST_ITERATIONS, clock=clock)

    with pytest.raises(WeakSecret):
        keys.initialize_from_secret("12")

    first = keys.initialize_from_secret("validsecret")
    second = keys.initialize_from_secret("validsecret")

    assert first == second
    keys.clear()
