"""
Operator script tests - diagnostics and key rotation entry points.
"""

import json
from unittest.mock import patch

import pytest

from healthbridge.core import config
from healthbridge.core.keys import KeyManager
from healthbridge.core.store import EncryptedStore
from scripts.diagnostics import main as diagnostics_main
from scripts.rotate_key import main as rotate_main

from conftest import TEST_ITERATIONS, TEST_PIN


@pytest.fixture
def populated_db(db_path, monkeypatch):
    monkeypatch.setattr(config, "KEY_DERIVATION_ITERATIONS", TEST_ITERATIONS)
    keys = KeyManager(db_path)
    store = EncryptedStore(db_path)
    with keys.key_session(TEST_PIN):
        key = keys.require_key("write")
        for i in range(3):
            store.put({"id": f"note_{i}", "n": i}, key)
    return db_path


class TestDiagnostics:

    def test_no_action_prints_help(self, populated_db):
        assert diagnostics_main(["--db", populated_db]) == 1

    def test_corruption_json(self, populated_db, capsys):
        assert diagnostics_main(["--db", populated_db, "--corruption", "--rotation-status", "--json"]) == 0

        output = json.loads(capsys.readouterr().out)
        assert output["corruption"]["corruption_level"] == "healthy"
        assert output["rotation"]["version"] == 1

    def test_verify(self, populated_db, capsys):
        with patch('scripts.diagnostics.getpass.getpass', return_value=TEST_PIN):
            assert diagnostics_main(["--db", populated_db, "--verify"]) == 0

        assert "Verified 3/3" in capsys.readouterr().out

    def test_verify_wrong_pin(self, populated_db, capsys):
        with patch('scripts.diagnostics.getpass.getpass', return_value="0000"):
            assert diagnostics_main(["--db", populated_db, "--verify"]) == 1

        assert "SecretMismatch" in capsys.readouterr().err


class TestRotateKey:

    def test_rotate_and_migrate(self, populated_db, capsys):
        with patch('scripts.rotate_key.getpass.getpass', return_value=TEST_PIN):
            assert rotate_main(["--db", populated_db]) == 0

        assert "Migrated 3, skipped 0, failed 0" in capsys.readouterr().out
        keys = KeyManager(populated_db, iterations=TEST_ITERATIONS)
        assert keys.get_active_version().version == 2

    def test_if_due_skips_fresh_key(self, populated_db, capsys):
        with patch('scripts.rotate_key.getpass.getpass', return_value=TEST_PIN):
            assert rotate_main(["--db", populated_db, "--if-due"]) == 0

        assert "No rotation performed" in capsys.readouterr().out
