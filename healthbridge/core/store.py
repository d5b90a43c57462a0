"""
Encrypted document store - encrypt-on-write / decrypt-on-read over SQLite with
corruption bookkeeping and resumable key migration.

The store holds no key material. Every call that touches ciphertext takes the
SessionKey as an argument, obtained by the caller from KeyManager.require_key().
"""

import binascii
import json
import threading
import time
import weakref
from datetime import timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from cryptography.exceptions import InvalidTag

from . import config
from .checksum import ChecksumTracker
from .crypto import decrypt_document, document_aad, encrypt_document
from .db import get_db, init_db
from .errors import DegradedWriteRejected, DocumentCorrupted, NoKeyAvailable
from .schema import (
    BulkResult,
    CorruptedDocumentRecord,
    EncryptedDocument,
    MigrationResult,
    SessionKey,
    utc_now,
)
from util.logging import logger, audit_event

ReencryptFn = Callable[[Dict[str, Any]], Dict[str, Any]]

# Corruption thresholds for the health summary: (total, last 24h)
HEALTHY_LIMITS = (10, 3)
WARNING_LIMITS = (50, 10)

PROGRESS_LOG_EVERY = 100


def _serialize(doc: Dict[str, Any]) -> bytes:
    return json.dumps(doc, sort_keys=True, separators=(",", ":")).encode("utf-8")


class EncryptedStore:
    """Document store keyed by id; a pure function of (document id, key) on every call."""

    def __init__(self, db_path: Optional[str] = None, checksums: Optional[ChecksumTracker] = None):
        self.db_path = db_path
        init_db(db_path)
        self.checksums = checksums or ChecksumTracker(db_path)
        self._locks: "weakref.WeakValueDictionary[str, threading.RLock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    def document_lock(self, doc_id: str) -> threading.RLock:
        """Per-document lock; hold it across a read-modify-write of one document.

        Locks live only while someone holds a reference, so ids that are no longer
        in use do not accumulate.
        """
        with self._locks_guard:
            lock = self._locks.get(doc_id)
            if lock is None:
                lock = self._locks[doc_id] = threading.RLock()
            return lock

    # -- writes ------------------------------------------------------------------

    def put(self, doc: Dict[str, Any], key: SessionKey) -> EncryptedDocument:
        """Encrypt and store a document under doc['id'], bumping its revision."""
        doc_id = doc.get('id')
        if not doc_id:
            raise ValueError("Document must carry an 'id'")
        self._check_key(key)

        with self.document_lock(doc_id):
            return self._write_encrypted(doc_id, doc, key)

    def put_many(self, docs: Iterable[Dict[str, Any]], key: SessionKey) -> List[BulkResult]:
        """Encrypt and store several documents, reporting each one separately.

        A document that cannot be stored does not stop the rest; a missing key
        still fails the whole batch.
        """
        self._check_key(key)
        results = []
        for doc in docs:
            doc_id = doc.get('id') if isinstance(doc, dict) else None
            try:
                envelope = self.put(doc, key)
            except (ValueError, TypeError, AttributeError) as e:
                logger.log_document_event("put", doc_id or "<missing>", status="failed", details={"error": str(e)})
                results.append(BulkResult(id=doc_id, ok=False, error=str(e)))
            else:
                results.append(BulkResult(id=doc_id, ok=True, revision=envelope.revision))

        failed = sum(1 for r in results if not r.ok)
        logger.log_operation("store.put_many", "completed" if failed == 0 else "partial",
                             {"total": len(results), "failed": failed})
        return results

    def _check_key(self, key: Optional[SessionKey]):
        if key is None or key.is_zeroed():
            raise NoKeyAvailable("A live session key is required for encrypted storage")

    def _write_encrypted(self, doc_id: str, doc: Dict[str, Any], key: SessionKey) -> EncryptedDocument:
        ciphertext, tag = encrypt_document(_serialize(doc), key.key_bytes, document_aad(doc_id, key.key_id))
        now = utc_now()
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT revision FROM documents WHERE id = ?", (doc_id,)).fetchone()
            revision = (row['revision'] + 1) if row else 1
            conn.execute(
                '''INSERT OR REPLACE INTO documents
                   (id, revision, ciphertext, integrity_tag, key_id, encrypted, degraded, degraded_reason, encrypted_at, updated_at)
                   VALUES (?, ?, ?, ?, ?, 1, 0, NULL, ?, ?)''',
                (doc_id, revision, ciphertext, tag, key.key_id, now.isoformat(), now.isoformat())
            )
            conn.commit()

        self.checksums.store_checksum(doc_id, doc, revision)
        logger.log_document_event("put", doc_id, details={"revision": revision, "key_id": key.key_id})
        return EncryptedDocument(id=doc_id, revision=revision, ciphertext=ciphertext, integrity_tag=tag,
                                 key_id=key.key_id, encrypted=True, degraded=False, encrypted_at=now, updated_at=now)

    def put_degraded(self, doc: Dict[str, Any], reason: str, actor: str = "system") -> EncryptedDocument:
        """Store a document without encryption while the key manager is degraded.

        The record is tagged so reconcile_degraded() can encrypt it once a key is back.
        """
        if not config.degraded_writes_enabled():
            raise DegradedWriteRejected("Plaintext writes are disabled (DEGRADED_WRITES_ENABLED=false)")
        doc_id = doc.get('id')
        if not doc_id:
            raise ValueError("Document must carry an 'id'")

        with self.document_lock(doc_id):
            now = utc_now()
            with get_db(self.db_path) as conn:
                row = conn.execute("SELECT revision FROM documents WHERE id = ?", (doc_id,)).fetchone()
                revision = (row['revision'] + 1) if row else 1
                conn.execute(
                    '''INSERT OR REPLACE INTO documents
                       (id, revision, ciphertext, integrity_tag, key_id, encrypted, degraded, degraded_reason, encrypted_at, updated_at)
                       VALUES (?, ?, ?, NULL, NULL, 0, 1, ?, NULL, ?)''',
                    (doc_id, revision, _serialize(doc).decode("utf-8"), reason, now.isoformat())
                )
                conn.commit()
            self.checksums.store_checksum(doc_id, doc, revision)

        logger.log_document_event("put_degraded", doc_id, status="degraded", details={"reason": reason})
        audit_event("document.degraded_write", {"doc_id": doc_id, "revision": revision, "reason": reason},
                    severity="warning", actor=actor)
        return EncryptedDocument(id=doc_id, revision=revision, ciphertext="", integrity_tag=None, key_id=None,
                                 encrypted=False, degraded=True, degraded_reason=reason, updated_at=now)

    def purge(self, doc_id: str, actor: str = "system") -> bool:
        """Permanently delete a document."""
        with self.document_lock(doc_id):
            with get_db(self.db_path) as conn:
                cursor = conn.execute("DELETE FROM documents WHERE id = ?", (doc_id,))
                conn.commit()
                deleted = cursor.rowcount > 0
            if deleted:
                self.checksums.remove_checksum(doc_id)
        if deleted:
            audit_event("document.purge", {"doc_id": doc_id}, severity="warning", actor=actor)
        return deleted

    # -- reads -------------------------------------------------------------------

    def _fetch(self, doc_id: str) -> Optional[EncryptedDocument]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM documents WHERE id = ?", (doc_id,)).fetchone()
        return EncryptedDocument.from_row(row) if row else None

    def get_envelope(self, doc_id: str) -> Optional[EncryptedDocument]:
        """The stored envelope without decrypting it."""
        return self._fetch(doc_id)

    def document_ids(self, prefix: Optional[str] = None) -> List[str]:
        with get_db(self.db_path) as conn:
            if prefix:
                rows = conn.execute("SELECT id FROM documents WHERE substr(id, 1, length(?)) = ? ORDER BY id", (prefix, prefix)).fetchall()
            else:
                rows = conn.execute("SELECT id FROM documents ORDER BY id").fetchall()
        return [row['id'] for row in rows]

    def get(self, doc_id: str, key: Optional[SessionKey]) -> Optional[Dict[str, Any]]:
        """Decrypt one document.

        Returns None when the id is unknown; raises DocumentCorrupted (after recording
        it) when the envelope does not decrypt under `key`. With key=None only
        degraded plaintext documents can be read.
        """
        envelope = self._fetch(doc_id)
        if envelope is None:
            return None
        if envelope.encrypted:
            self._check_key(key)
        return self._open(envelope, key)

    def all_docs(self, key: Optional[SessionKey], prefix: Optional[str] = None) -> List[Dict[str, Any]]:
        """Every document readable with `key`; undecryptable ones are recorded and skipped.

        With key=None only degraded plaintext documents are returned.
        """
        if key is not None:
            self._check_key(key)
        with get_db(self.db_path) as conn:
            if prefix:
                rows = conn.execute("SELECT * FROM documents WHERE substr(id, 1, length(?)) = ? ORDER BY id", (prefix, prefix)).fetchall()
            else:
                rows = conn.execute("SELECT * FROM documents ORDER BY id").fetchall()

        docs = []
        for row in rows:
            if key is None and row["encrypted"]:
                continue
            try:
                docs.append(self._open(EncryptedDocument.from_row(row), key))
            except DocumentCorrupted:
                continue
        return docs

    def _open(self, envelope: EncryptedDocument, key: SessionKey) -> Dict[str, Any]:
        if not envelope.encrypted:
            return json.loads(envelope.ciphertext)

        if envelope.key_id != key.key_id:
            raise self._record_corruption(
                envelope, f"encrypted under key {envelope.key_id}, offered key {key.key_id}", recoverable=True)

        try:
            plaintext = decrypt_document(envelope.ciphertext, envelope.integrity_tag or "", key.key_bytes,
                                         document_aad(envelope.id, envelope.key_id))
        except InvalidTag:
            raise self._record_corruption(envelope, "authentication failed", recoverable=False)
        except (ValueError, binascii.Error) as e:
            raise self._record_corruption(envelope, f"malformed envelope: {e}", recoverable=False)

        try:
            return json.loads(plaintext.decode("utf-8"))
        except ValueError:
            raise self._record_corruption(envelope, "decrypted payload is not a JSON document", recoverable=False)

    # -- corruption bookkeeping -----------------------------------------------------

    def _record_corruption(self, envelope: EncryptedDocument, summary: str, recoverable: bool) -> DocumentCorrupted:
        now = utc_now().isoformat()
        encrypted_at = envelope.encrypted_at.isoformat() if envelope.encrypted_at else None
        with get_db(self.db_path) as conn:
            conn.execute(
                '''INSERT INTO corrupted_documents
                   (id, encrypted_at, error_summary, recoverable, key_id, first_seen, last_seen, occurrences)
                   VALUES (?, ?, ?, ?, ?, ?, ?, 1)
                   ON CONFLICT(id) DO UPDATE SET
                       encrypted_at = excluded.encrypted_at,
                       error_summary = excluded.error_summary,
                       recoverable = excluded.recoverable,
                       key_id = excluded.key_id,
                       last_seen = excluded.last_seen,
                       occurrences = corrupted_documents.occurrences + 1''',
                (envelope.id, encrypted_at, summary, int(recoverable), envelope.key_id, now, now)
            )
            conn.commit()

        logger.log_document_event("decrypt", envelope.id, status="corrupted",
                                  details={"recoverable": recoverable, "error": summary})
        audit_event("document.corrupted", {"doc_id": envelope.id, "key_id": envelope.key_id,
                                           "recoverable": recoverable, "error": summary},
                    severity="error", outcome="failure")
        return DocumentCorrupted(envelope.id, recoverable, summary)

    def list_corrupted(self) -> List[CorruptedDocumentRecord]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM corrupted_documents ORDER BY last_seen DESC").fetchall()
        return [CorruptedDocumentRecord.from_row(row) for row in rows]

    def clear_corrupted(self, ids: Optional[Iterable[str]] = None, actor: str = "operator") -> int:
        """Operator action: drop corruption records (all, or the given ids)."""
        with get_db(self.db_path) as conn:
            if ids is None:
                cursor = conn.execute("DELETE FROM corrupted_documents")
            else:
                ids = list(ids)
                cursor = conn.executemany("DELETE FROM corrupted_documents WHERE id = ?", [(i,) for i in ids])
            conn.commit()
            cleared = cursor.rowcount
        audit_event("document.corruption_cleared", {"cleared": cleared, "scope": "all" if ids is None else "selected"},
                    actor=actor)
        return cleared

    def corruption_summary(self) -> Dict[str, Any]:
        records = self.list_corrupted()
        cutoff = utc_now() - timedelta(hours=24)
        recent = [r for r in records if r.last_seen and r.last_seen >= cutoff]
        total = len(records)

        if total < HEALTHY_LIMITS[0] and len(recent) < HEALTHY_LIMITS[1]:
            level = "healthy"
        elif total < WARNING_LIMITS[0] and len(recent) < WARNING_LIMITS[1]:
            level = "warning"
        else:
            level = "critical"

        return {
            "total": total,
            "recoverable": sum(1 for r in records if r.recoverable),
            "unrecoverable": sum(1 for r in records if not r.recoverable),
            "recent_24h": len(recent),
            "corruption_level": level,
            "latest": records[0].to_dict() if records else None,
        }

    # -- degraded reconciliation -------------------------------------------------------

    def list_degraded(self) -> List[str]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT id FROM documents WHERE degraded = 1 ORDER BY id").fetchall()
        return [row['id'] for row in rows]

    def reconcile_degraded(self, key: SessionKey, actor: str = "system") -> int:
        """Encrypt every document written while degraded."""
        self._check_key(key)
        reconciled = 0
        for doc_id in self.list_degraded():
            with self.document_lock(doc_id):
                envelope = self._fetch(doc_id)
                if envelope is None or not envelope.degraded:
                    continue
                self._write_encrypted(doc_id, json.loads(envelope.ciphertext), key)
                reconciled += 1
        if reconciled:
            audit_event("document.reconcile", {"reconciled": reconciled, "key_id": key.key_id}, actor=actor)
        return reconciled

    # -- rotation ----------------------------------------------------------------

    def pending_key_ids(self, current_key_id: str) -> Dict[str, int]:
        """Key ids other than the current one still tagging stored documents, with counts."""
        with get_db(self.db_path) as conn:
            rows = conn.execute(
                '''SELECT key_id, COUNT(*) AS n FROM documents
                   WHERE encrypted = 1 AND key_id != ? GROUP BY key_id''',
                (current_key_id,)
            ).fetchall()
        return {row['key_id']: row['n'] for row in rows}

    def rotate_and_migrate(self, old_key: SessionKey, new_key: SessionKey,
                           reencrypt_fn: Optional[ReencryptFn] = None,
                           cancel_event: Optional[threading.Event] = None,
                           timeout: Optional[float] = None, actor: str = "system") -> MigrationResult:
        """Re-encrypt every document from old_key to new_key.

        Documents already tagged with new_key's id are skipped, so an interrupted
        pass (timeout, cancellation, crash) is resumed by calling this again.
        Degraded plaintext documents are encrypted under new_key on the way.
        """
        self._check_key(old_key)
        self._check_key(new_key)
        deadline = time.monotonic() + (timeout if timeout is not None else config.MIGRATION_TIMEOUT_SEC)
        result = MigrationResult(new_key_id=new_key.key_id)

        audit_event("key.migrate", {"old_key_id": old_key.key_id, "new_key_id": new_key.key_id, "phase": "start"},
                    actor=actor)

        for doc_id in self.document_ids():
            if cancel_event is not None and cancel_event.is_set():
                result.interrupted = "cancelled"
                break
            if time.monotonic() > deadline:
                result.interrupted = "timeout"
                break

            with self.document_lock(doc_id):
                envelope = self._fetch(doc_id)
                if envelope is None:
                    continue
                if envelope.encrypted and envelope.key_id == new_key.key_id:
                    result.skipped += 1
                    continue
                if envelope.encrypted and envelope.key_id != old_key.key_id:
                    result.failed += 1
                    result.errors.append(f"{doc_id}: encrypted under key {envelope.key_id}")
                    continue

                try:
                    doc = self._open(envelope, old_key)
                except DocumentCorrupted as e:
                    result.failed += 1
                    result.errors.append(f"{doc_id}: {e.reason}")
                    continue

                if reencrypt_fn is not None:
                    doc = reencrypt_fn(doc)
                self._write_encrypted(doc_id, doc, new_key)
                result.migrated += 1

            if result.migrated and result.migrated % PROGRESS_LOG_EVERY == 0:
                logger.log_migration_progress(result.migrated, result.skipped, result.failed)

        result.completed = result.interrupted is None and result.failed == 0
        status = "completed" if result.completed else (result.interrupted and "interrupted") or "partial"
        logger.log_migration_progress(result.migrated, result.skipped, result.failed, status=status,
                                      details={"new_key_id": new_key.key_id})
        audit_event("key.migrate", {"old_key_id": old_key.key_id, "new_key_id": new_key.key_id, "phase": status,
                                    "migrated": result.migrated, "skipped": result.skipped, "failed": result.failed},
                    severity="info" if result.completed else "warning", actor=actor,
                    outcome="success" if result.completed else "failure")
        return result

    def info(self) -> Dict[str, Any]:
        with get_db(self.db_path) as conn:
            total = conn.execute("SELECT COUNT(*) FROM documents").fetchone()[0]
            degraded = conn.execute("SELECT COUNT(*) FROM documents WHERE degraded = 1").fetchone()[0]
            key_ids = [row[0] for row in conn.execute(
                "SELECT DISTINCT key_id FROM documents WHERE key_id IS NOT NULL ORDER BY key_id").fetchall()]
            corrupted = conn.execute("SELECT COUNT(*) FROM corrupted_documents").fetchone()[0]
        return {
            "document_count": total,
            "degraded_count": degraded,
            "corrupted_count": corrupted,
            "key_ids": key_ids,
        }


def resume_migration(store: EncryptedStore, key_manager, cancel_event: Optional[threading.Event] = None,
                     timeout: Optional[float] = None, actor: str = "system") -> List[MigrationResult]:
    """Migrate every document still tagged with a retired key to the current key."""
    current = key_manager.require_key("migrate")
    results = []
    for key_id in store.pending_key_ids(current.key_id):
        retired = key_manager.retired_key(key_id)
        if retired is None:
            logger.warning(f"No retired key available for {key_id}; documents remain under that key")
            continue
        results.append(store.rotate_and_migrate(retired, current, cancel_event=cancel_event,
                                                timeout=timeout, actor=actor))
    return results


class DocumentEngine:
    """Shared plumbing for engines that persist documents through the key gate.

    With degraded_writes=True an engine keeps working while the key manager is
    degraded: writes go through put_degraded() and reads see only degraded
    plaintext documents.
    """

    def __init__(self, store: EncryptedStore, key_manager, degraded_writes: bool = False):
        self.store = store
        self.key_manager = key_manager
        self.degraded_writes = degraded_writes
        self._listeners: List[Callable[[Dict[str, Any]], None]] = []

    def subscribe(self, callback: Callable[[Dict[str, Any]], None]) -> Callable[[], None]:
        """Receive change notifications; returns an unsubscribe function."""
        self._listeners.append(callback)

        def unsubscribe():
            if callback in self._listeners:
                self._listeners.remove(callback)
        return unsubscribe

    def _notify(self, notification: Dict[str, Any]):
        for callback in list(self._listeners):
            try:
                callback(notification)
            except Exception as e:
                logger.error(f"Change listener failed for {notification.get('event_type')}: {e}")

    def _bypassing_encryption(self) -> bool:
        return self.degraded_writes and self.key_manager.degraded_mode

    def _read_key(self) -> Optional[SessionKey]:
        if self._bypassing_encryption():
            return None
        return self.key_manager.require_key("read")

    def _persist(self, doc: Dict[str, Any], actor: str):
        if self._bypassing_encryption():
            return self.store.put_degraded(doc, self.key_manager.degraded_reason or "degraded", actor=actor)
        return self.store.put(doc, self.key_manager.require_key("write"))
