"""
SQLite persistence - connection factory and table bootstrap for encrypted documents,
key-store records, integrity checksums and the audit trail.
"""

import sqlite3
from contextlib import contextmanager
from typing import Generator, Optional
from .config import get_db_path, ensure_db_directory

REQUIRED_TABLES = [
    'documents',
    'corrupted_documents',
    'key_store',
    'key_versions',
    'checksums',
    'checksum_failures',
    'integrity_visits',
    'audit_events',
]


@contextmanager
def get_db(db_path: Optional[str] = None) -> Generator[sqlite3.Connection, None, None]:
    """Get a SQLite database connection."""
    conn = sqlite3.connect(db_path or get_db_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    try:
        yield conn
    finally:
        conn.close()


def init_db(db_path: Optional[str] = None):
    """Initialize the database with required tables."""
    ensure_db_directory(db_path)
    with get_db(db_path) as conn:
        cursor = conn.cursor()

        # Encrypted document envelopes; ciphertext holds plaintext JSON only for degraded writes
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS documents (
                id TEXT PRIMARY KEY,
                revision INTEGER NOT NULL DEFAULT 1,
                ciphertext TEXT NOT NULL,
                integrity_tag TEXT,
                key_id TEXT,
                encrypted BOOLEAN DEFAULT TRUE,
                degraded BOOLEAN DEFAULT FALSE,
                degraded_reason TEXT,
                encrypted_at TEXT,
                updated_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS corrupted_documents (
                id TEXT PRIMARY KEY,
                encrypted_at TEXT,
                error_summary TEXT,
                recoverable BOOLEAN DEFAULT FALSE,
                key_id TEXT,
                first_seen TEXT NOT NULL,
                last_seen TEXT NOT NULL,
                occurrences INTEGER DEFAULT 1
            )
        ''')

        # Non-secret key material: install salt, device id, rotation chain
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS key_store (
                name TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS key_versions (
                key_id TEXT PRIMARY KEY,
                version INTEGER NOT NULL UNIQUE,
                created_at TEXT NOT NULL,
                rotated_at TEXT,
                rotated_by TEXT NOT NULL,
                key_hash TEXT NOT NULL,
                is_active BOOLEAN DEFAULT FALSE,
                usage_count INTEGER DEFAULT 0
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS checksums (
                doc_id TEXT PRIMARY KEY,
                checksum TEXT NOT NULL,
                algorithm TEXT DEFAULT 'SHA-256',
                revision INTEGER,
                updated_at TEXT NOT NULL,
                verified_at TEXT
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS checksum_failures (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                doc_id TEXT NOT NULL,
                expected TEXT,
                actual TEXT,
                detected_at TEXT NOT NULL
            )
        ''')

        # Last time the rolling integrity pass reached each document, whatever the outcome
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS integrity_visits (
                doc_id TEXT PRIMARY KEY,
                visited_at TEXT NOT NULL
            )
        ''')

        cursor.execute('''
            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                ts TEXT NOT NULL,
                event_type TEXT NOT NULL,
                category TEXT NOT NULL,
                severity TEXT NOT NULL,
                actor TEXT,
                outcome TEXT NOT NULL,
                session_id TEXT,
                details TEXT
            )
        ''')

        cursor.execute('CREATE INDEX IF NOT EXISTS idx_documents_key_id ON documents(key_id)')
        cursor.execute('CREATE INDEX IF NOT EXISTS idx_audit_session_ts ON audit_events(session_id, ts DESC)')

        conn.commit()


def health_check(db_path: Optional[str] = None):
    """Check database health."""
    try:
        with get_db(db_path) as conn:
            cursor = conn.cursor()
            cursor.execute("SELECT name FROM sqlite_master WHERE type='table';")
            table_names = [row[0] for row in cursor.fetchall()]
            return all(table in table_names for table in REQUIRED_TABLES)
    except sqlite3.Error:
        return False


def get_document_count(db_path: Optional[str] = None) -> int:
    """Count stored document envelopes."""
    with get_db(db_path) as conn:
        return conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
