"""
Document checksums - SHA-256 fingerprints of decrypted documents and a rolling
verification pass that reports verified vs. failed counts without touching documents.
"""

import json
from typing import Any, Dict, List, Optional

from . import config
from .db import get_db, init_db
from .errors import DocumentCorrupted
from .schema import IntegrityReport, utc_now
from .crypto import calculate_checksum
from util.logging import logger, audit_event

ALGORITHM = "SHA-256"


def calculate_object_checksum(obj: Any) -> str:
    """Checksum of a JSON-serialisable object, independent of key order."""
    canonical = json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)
    return calculate_checksum(canonical.encode("utf-8"))


class ChecksumTracker:
    """Stores one checksum per document id and verifies documents against them."""

    def __init__(self, db_path: Optional[str] = None, max_entries: Optional[int] = None,
                 max_failures: Optional[int] = None):
        self.db_path = db_path
        self.max_entries = max_entries or config.CHECKSUM_MAX_ENTRIES
        self.max_failures = max_failures or config.CHECKSUM_MAX_FAILURES
        init_db(db_path)

    def store_checksum(self, doc_id: str, doc: Dict[str, Any], revision: Optional[int] = None) -> str:
        checksum = calculate_object_checksum(doc)
        with get_db(self.db_path) as conn:
            conn.execute(
                '''INSERT OR REPLACE INTO checksums (doc_id, checksum, algorithm, revision, updated_at, verified_at)
                   VALUES (?, ?, ?, ?, ?, NULL)''',
                (doc_id, checksum, ALGORITHM, revision, utc_now().isoformat())
            )
            # Keep the most recently written entries only
            conn.execute(
                '''DELETE FROM checksums WHERE doc_id NOT IN (
                       SELECT doc_id FROM checksums ORDER BY updated_at DESC LIMIT ?)''',
                (self.max_entries,)
            )
            conn.commit()
        return checksum

    def get_checksum(self, doc_id: str) -> Optional[str]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT checksum FROM checksums WHERE doc_id = ?", (doc_id,)).fetchone()
        return row['checksum'] if row else None

    def remove_checksum(self, doc_id: str):
        with get_db(self.db_path) as conn:
            conn.execute("DELETE FROM checksums WHERE doc_id = ?", (doc_id,))
            conn.execute("DELETE FROM integrity_visits WHERE doc_id = ?", (doc_id,))
            conn.commit()

    def verify_checksum(self, doc_id: str, doc: Dict[str, Any]) -> Optional[bool]:
        """True/False against the stored checksum, None when none is stored."""
        expected = self.get_checksum(doc_id)
        if expected is None:
            return None

        actual = calculate_object_checksum(doc)
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE checksums SET verified_at = ? WHERE doc_id = ?", (utc_now().isoformat(), doc_id))
            conn.commit()

        if actual != expected:
            self._record_failure(doc_id, expected, actual)
            return False
        return True

    def verify_all(self, store, key, sample_size: Optional[int] = None, actor: str = "system") -> IntegrityReport:
        """Verify stored documents against their checksums.

        With sample_size, only the least recently visited documents are checked,
        so repeated calls walk the whole store.
        """
        doc_ids = self._verification_order(store.document_ids())
        if sample_size is not None:
            doc_ids = doc_ids[:sample_size]

        report = IntegrityReport(total=len(doc_ids))
        visited = []
        for doc_id in doc_ids:
            try:
                doc = store.get(doc_id, key)
            except DocumentCorrupted:
                visited.append(doc_id)
                report.failed += 1
                report.failed_ids.append(doc_id)
                continue
            if doc is None:
                report.total -= 1
                continue

            visited.append(doc_id)

            outcome = self.verify_checksum(doc_id, doc)
            if outcome is None:
                report.missing += 1
            elif outcome:
                report.verified += 1
            else:
                report.failed += 1
                report.failed_ids.append(doc_id)
        self._record_visits(visited)

        logger.log_operation("integrity.verify_all", "completed" if report.failed == 0 else "failures",
                             {"total": report.total, "verified": report.verified, "failed": report.failed,
                              "missing": report.missing})
        audit_event("integrity.verify", {"total": report.total, "verified": report.verified,
                                         "failed": report.failed, "missing": report.missing},
                    severity="warning" if report.failed else "info", actor=actor,
                    outcome="failure" if report.failed else "success")
        return report

    def _verification_order(self, doc_ids: List[str]) -> List[str]:
        """Never-visited documents first, then the least recently visited."""
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT doc_id, visited_at FROM integrity_visits").fetchall()
        last_visited = {row['doc_id']: row['visited_at'] for row in rows}
        return sorted(doc_ids, key=lambda doc_id: (last_visited.get(doc_id, ""), doc_id))

    def _record_visits(self, doc_ids: List[str]):
        if not doc_ids:
            return
        with get_db(self.db_path) as conn:
            for doc_id in doc_ids:
                conn.execute("INSERT OR REPLACE INTO integrity_visits (doc_id, visited_at) VALUES (?, ?)",
                             (doc_id, utc_now().isoformat()))
            conn.commit()

    def _record_failure(self, doc_id: str, expected: str, actual: str):
        logger.log_document_event("checksum", doc_id, status="mismatch")
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT INTO checksum_failures (doc_id, expected, actual, detected_at) VALUES (?, ?, ?, ?)",
                (doc_id, expected, actual, utc_now().isoformat())
            )
            conn.execute(
                '''DELETE FROM checksum_failures WHERE id NOT IN (
                       SELECT id FROM checksum_failures ORDER BY id DESC LIMIT ?)''',
                (self.max_failures,)
            )
            conn.commit()

    def get_failures(self, limit: int = 100) -> List[Dict[str, Any]]:
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                "SELECT doc_id, expected, actual, detected_at FROM checksum_failures ORDER BY id DESC LIMIT ?",
                (limit,)
            ).fetchall()
        return [dict(row) for row in rows]

    def clear_failures(self) -> int:
        with get_db(self.db_path) as conn:
            cursor = conn.execute("DELETE FROM checksum_failures")
            conn.commit()
            return cursor.rowcount

    def get_status(self) -> Dict[str, Any]:
        with get_db(self.db_path) as conn:
            total = conn.execute("SELECT COUNT(*) FROM checksums").fetchone()[0]
            failures = conn.execute("SELECT COUNT(*) FROM checksum_failures").fetchone()[0]
        recent = self.get_failures(limit=10)
        return {
            "algorithm": ALGORITHM,
            "total_checksums": total,
            "failure_count": failures,
            "last_failure": recent[0] if recent else None,
            "recent_failures": recent,
        }

    def export_checksums(self) -> Dict[str, Dict[str, Any]]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT doc_id, checksum, algorithm, revision, updated_at FROM checksums").fetchall()
        return {row['doc_id']: {k: row[k] for k in ('checksum', 'algorithm', 'revision', 'updated_at')} for row in rows}

    def import_checksums(self, data: Dict[str, Dict[str, Any]]) -> int:
        """Merge exported checksums; existing entries for the same id are replaced."""
        imported = 0
        with get_db(self.db_path) as conn:
            for doc_id, entry in data.items():
                if not entry.get('checksum'):
                    continue
                conn.execute(
                    '''INSERT OR REPLACE INTO checksums (doc_id, checksum, algorithm, revision, updated_at, verified_at)
                       VALUES (?, ?, ?, ?, ?, NULL)''',
                    (doc_id, entry['checksum'], entry.get('algorithm', ALGORITHM), entry.get('revision'),
                     entry.get('updated_at') or utc_now().isoformat())
                )
                imported += 1
            conn.commit()
        return imported
