"""
Configuration - environment-driven settings for key lifecycle, encrypted storage and forms.
Values are read once at import; getter functions re-read the environment where callers
need to flip a setting at runtime.
"""

import os
from pathlib import Path
from typing import List

# Database path configuration
DB_PATH = os.getenv("DB_PATH", "./data/healthbridge.db")

DEBUG = os.getenv("DEBUG", "true").lower() == "true"
API_ENABLED = os.getenv("API_ENABLED", "true").lower() == "true"

# Key lifecycle
KEY_MIN_SECRET_LENGTH = int(os.getenv("KEY_MIN_SECRET_LENGTH", "4"))
KEY_MAX_AGE_SEC = int(os.getenv("KEY_MAX_AGE_SEC", "86400"))  # 24 hours
KEY_DERIVATION_ITERATIONS = int(os.getenv("KEY_DERIVATION_ITERATIONS", "100000"))
KEY_DERIVATION_TIMEOUT_SEC = float(os.getenv("KEY_DERIVATION_TIMEOUT_SEC", "10"))
KEY_ROTATION_INTERVAL_DAYS = int(os.getenv("KEY_ROTATION_INTERVAL_DAYS", "30"))
KEY_MAX_USAGE = int(os.getenv("KEY_MAX_USAGE", "1000"))
KEY_BACKUP_EXPIRY_DAYS = int(os.getenv("KEY_BACKUP_EXPIRY_DAYS", "90"))

# Encrypted store and integrity tracking
MIGRATION_TIMEOUT_SEC = float(os.getenv("MIGRATION_TIMEOUT_SEC", "300"))
DEGRADED_WRITES_ENABLED = os.getenv("DEGRADED_WRITES_ENABLED", "true").lower() == "true"
CHECKSUM_MAX_ENTRIES = int(os.getenv("CHECKSUM_MAX_ENTRIES", "1000"))
CHECKSUM_MAX_FAILURES = int(os.getenv("CHECKSUM_MAX_FAILURES", "100"))

# Audit trail
AUDIT_MAX_EVENTS = int(os.getenv("AUDIT_MAX_EVENTS", "500"))

# Clinical form schemas
SCHEMA_DIR = os.getenv("SCHEMA_DIR", "./schemas")

# Well-known names for persisted, non-secret key material
SALT_RECORD_NAME = "healthbridge_key_salt"
DEVICE_ID_RECORD_NAME = "healthbridge_device_id"
ROTATION_CHAIN_RECORD_NAME = "healthbridge_rotation_chain"
KEY_BACKUP_RECORD_NAME = "healthbridge_key_backups"

# Version string
VERSION = "1.0.0"


def get_db_path() -> str:
    """Current database path (honours DB_PATH changes made after import)."""
    return os.getenv("DB_PATH", DB_PATH)


def get_schema_dir() -> str:
    return os.getenv("SCHEMA_DIR", SCHEMA_DIR)


def debug_enabled():
    """Check if debug mode is enabled."""
    return os.getenv("DEBUG", "true").lower() == "true"


def degraded_writes_enabled():
    """Check if plaintext writes are permitted while the key manager is degraded."""
    return os.getenv("DEGRADED_WRITES_ENABLED", "true" if DEGRADED_WRITES_ENABLED else "false").lower() == "true"


def ensure_db_directory(db_path: str = None):
    """Ensure the database directory exists."""
    Path(db_path or get_db_path()).parent.mkdir(parents=True, exist_ok=True)


def validate_config() -> List[str]:
    """Validate configuration values, returning a list of issues (empty when valid)."""
    issues = []

    if KEY_MIN_SECRET_LENGTH < 4:
        issues.append("KEY_MIN_SECRET_LENGTH must be at least 4")

    if KEY_MAX_AGE_SEC <= 0:
        issues.append("KEY_MAX_AGE_SEC must be positive")

    if KEY_DERIVATION_ITERATIONS < 1000:
        issues.append("KEY_DERIVATION_ITERATIONS must be at least 1000")

    if KEY_DERIVATION_TIMEOUT_SEC <= 0:
        issues.append("KEY_DERIVATION_TIMEOUT_SEC must be positive")

    if MIGRATION_TIMEOUT_SEC <= 0:
        issues.append("MIGRATION_TIMEOUT_SEC must be positive")

    if KEY_ROTATION_INTERVAL_DAYS < 1:
        issues.append("KEY_ROTATION_INTERVAL_DAYS must be at least 1")

    if KEY_MAX_USAGE < 1:
        issues.append("KEY_MAX_USAGE must be at least 1")

    if KEY_BACKUP_EXPIRY_DAYS < 1:
        issues.append("KEY_BACKUP_EXPIRY_DAYS must be at least 1")

    if CHECKSUM_MAX_ENTRIES < 1 or CHECKSUM_MAX_FAILURES < 1:
        issues.append("checksum caps must be at least 1")

    if AUDIT_MAX_EVENTS < 1:
        issues.append("AUDIT_MAX_EVENTS must be at least 1")

    return issues
