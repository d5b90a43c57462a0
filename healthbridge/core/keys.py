"""
Session key lifecycle - derivation from a PIN, rotation, expiry, degraded mode and zeroing.

A KeyManager is the single owner of key bytes in the process. It is constructed
explicitly, handed to the engines that need a key, initialised on unlock and
cleared on logout or teardown:

    with KeyManager(db_path) as keys:
        keys.initialize_from_secret(pin)
        engine = SessionEngine(store, keys)

Non-secret state (install salt, device id, rotation chain, key versions) is kept in
SQLite so the same secret re-derives the same key after a restart.
"""

import json
import secrets
import threading
import time
import weakref
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from cryptography.exceptions import InvalidTag

from . import config
from .crypto import (
    decrypt_document,
    derive_key_from_secret,
    derive_rotated_key,
    encrypt_document,
    generate_salt,
    key_fingerprint,
    key_backup_aad,
    key_id_for,
    zero_buffer,
)
from .db import get_db, init_db
from .errors import (
    DegradedModeViolation,
    KeyDerivationTimeout,
    KeyExpired,
    NoKeyAvailable,
    NoKeyMaterial,
    SecretMismatch,
    WeakSecret,
)
from .schema import KeyBackup, KeyVersion, SessionKey
from util.logging import logger, audit_event

RECOVERY_OPERATION = "recovery"
WRITE_OPERATIONS = ("write", "rotate", "migrate")


@dataclass
class KeyValidation:
    valid: bool
    reason: Optional[str] = None  # no_key | expired | degraded
    key_id: Optional[str] = None


@dataclass
class KeyRotation:
    previous_key_id: str
    new_key_id: str
    version: int


def _zero_all(buffers: List[bytearray]) -> None:
    for buffer in buffers:
        zero_buffer(buffer)
    buffers.clear()


class KeyManager:
    """Owns the one live SessionKey and gates every cryptographic operation."""

    def __init__(self, db_path: Optional[str] = None, min_secret_length: Optional[int] = None,
                 max_age_sec: Optional[int] = None, iterations: Optional[int] = None,
                 derivation_timeout: Optional[float] = None, clock: Callable[[], float] = time.time):
        self.db_path = db_path
        self.min_secret_length = min_secret_length if min_secret_length is not None else config.KEY_MIN_SECRET_LENGTH
        self.max_age_sec = max_age_sec if max_age_sec is not None else config.KEY_MAX_AGE_SEC
        self.iterations = iterations if iterations is not None else config.KEY_DERIVATION_ITERATIONS
        self.derivation_timeout = derivation_timeout if derivation_timeout is not None else config.KEY_DERIVATION_TIMEOUT_SEC
        self._clock = clock

        self._lock = threading.RLock()
        self._key: Optional[SessionKey] = None
        self._key_created_ts: Optional[float] = None
        self._retired: Dict[str, SessionKey] = {}
        self._buffers: List[bytearray] = []
        self._degraded = False
        self._degraded_reason: Optional[str] = None
        self._cleared = False
        self._expiry_reported = False

        # Zero key buffers even if clear() is never reached
        self._finalizer = weakref.finalize(self, _zero_all, self._buffers)

        init_db(db_path)

    def __enter__(self) -> 'KeyManager':
        return self

    def __exit__(self, exc_type, exc, tb):
        self.clear()
        return False

    # -- state -----------------------------------------------------------------

    @property
    def state(self) -> str:
        """uninitialized | active | expired | degraded | cleared"""
        with self._lock:
            if self._key is None:
                return "cleared" if self._cleared else "uninitialized"
            if self._degraded:
                return "degraded"
            if self._is_expired():
                return "expired"
            return "active"

    @property
    def degraded_mode(self) -> bool:
        return self._degraded

    @property
    def degraded_reason(self) -> Optional[str]:
        return self._degraded_reason

    @property
    def key_id(self) -> Optional[str]:
        key = self._key
        return key.key_id if key else None

    @property
    def device_id(self) -> str:
        return self._load_or_create_device_id()

    def has_key(self) -> bool:
        return self._key is not None

    def key_age_seconds(self) -> Optional[float]:
        if self._key_created_ts is None:
            return None
        return self._clock() - self._key_created_ts

    def _is_expired(self) -> bool:
        age = self.key_age_seconds()
        return age is not None and age > self.max_age_sec

    # -- derivation --------------------------------------------------------------

    def initialize_from_secret(self, secret: str, min_length: Optional[int] = None, actor: str = "system") -> str:
        """Derive the session key from a PIN or password and make it active.

        Replays the persisted rotation chain so the key matches the one the store
        was last migrated to. Returns the key id.
        """
        required = min_length if min_length is not None else self.min_secret_length
        if secret is None or len(secret) < required:
            audit_event("key.derive", {"reason": "weak_secret", "min_length": required},
                        severity="warning", actor=actor, outcome="failure")
            raise WeakSecret(f"Secret must be at least {required} characters")

        with self._lock:
            salt = self._load_or_create_salt()
            device_id = self._load_or_create_device_id()
            chain = self._load_rotation_chain()

            keys = [self._derive_with_timeout(secret, salt)]
            for rotation_salt in chain:
                keys.append(derive_rotated_key(keys[-1], bytes.fromhex(rotation_salt)))

            current_id = key_id_for(keys[-1])
            active = self.get_active_version()
            if active is not None and active.key_id != current_id:
                for buffer in keys:
                    zero_buffer(buffer)
                audit_event("key.derive", {"reason": "secret_mismatch"},
                            severity="warning", actor=actor, outcome="failure")
                raise SecretMismatch("Secret does not match the key protecting this device's data")

            self._release_keys()
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            sessions = [SessionKey(key_bytes=k, key_id=key_id_for(k), created_at=now, device_id=device_id) for k in keys]
            self._buffers.extend(keys)
            self._key = sessions[-1]
            self._retired = {s.key_id: s for s in sessions[:-1]}
            self._key_created_ts = self._clock()
            self._cleared = False
            self._expiry_reported = False

            version = active if active is not None else self._record_version(self._key, "initial")

        logger.log_key_event("derive", current_id, details={"version": version.version, "chain_length": len(chain)})
        audit_event("key.derive", {"key_id": current_id, "version": version.version, "device_id": device_id},
                    actor=actor)
        return current_id

    def _derive_with_timeout(self, secret: str, salt: bytes) -> bytearray:
        executor = ThreadPoolExecutor(max_workers=1)
        try:
            future = executor.submit(derive_key_from_secret, secret, salt, self.iterations)
            return future.result(timeout=self.derivation_timeout)
        except FutureTimeoutError:
            audit_event("key.derive", {"reason": "timeout", "timeout_sec": self.derivation_timeout},
                        severity="error", outcome="failure")
            raise KeyDerivationTimeout(f"Key derivation exceeded {self.derivation_timeout}s")
        finally:
            executor.shutdown(wait=False)

    # -- gate --------------------------------------------------------------------

    def validate_key_for_operation(self, operation: str) -> KeyValidation:
        """Check whether the current key may be used for an operation, without raising."""
        with self._lock:
            if self._degraded and operation != RECOVERY_OPERATION:
                return KeyValidation(False, "degraded", self.key_id)
            if self._key is None:
                return KeyValidation(False, "no_key")
            if self._is_expired():
                return KeyValidation(False, "expired", self._key.key_id)
            return KeyValidation(True, None, self._key.key_id)

    def require_key(self, operation: str = "read") -> SessionKey:
        """Return the active key or raise the failure that blocks the operation."""
        with self._lock:
            validation = self.validate_key_for_operation(operation)
            if validation.valid:
                key = self._key
                if operation in WRITE_OPERATIONS:
                    self.record_key_usage(key.key_id)
                return key
            degraded_reason = self._degraded_reason

        if validation.reason == "degraded":
            raise DegradedModeViolation(
                f"Operation '{operation}' not permitted in degraded mode: {degraded_reason}")
        if validation.reason == "expired":
            self._report_expiry()
            raise KeyExpired("Session key expired; re-enter secret to continue")
        raise NoKeyAvailable("No session key loaded; unlock first")

    def _report_expiry(self):
        with self._lock:
            if self._expiry_reported:
                return
            self._expiry_reported = True
        logger.log_key_event("expire", self.key_id, status="expired", details={"max_age_sec": self.max_age_sec})
        audit_event("key.expire", {"key_id": self.key_id, "max_age_sec": self.max_age_sec}, severity="warning")

    # -- rotation ----------------------------------------------------------------

    def rotate_key(self, rotated_by: str = "manual", actor: str = "system") -> KeyRotation:
        """Derive the next key from the current key and a fresh salt.

        The caller must follow up with EncryptedStore.rotate_and_migrate; the
        previous key stays available through retired_key() until clear().
        """
        with self._lock:
            if self._key is None:
                raise NoKeyMaterial("Cannot rotate without a loaded key")
            validation = self.validate_key_for_operation("rotate")
            if not validation.valid:
                if validation.reason == "degraded":
                    raise DegradedModeViolation("Key rotation not permitted in degraded mode")
                raise KeyExpired("Cannot rotate an expired key; re-enter secret first")

            previous = self._key
            rotation_salt = generate_salt()
            new_bytes = derive_rotated_key(previous.key_bytes, rotation_salt)
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            new_key = SessionKey(key_bytes=new_bytes, key_id=key_id_for(new_bytes),
                                 created_at=now, device_id=previous.device_id)

            chain = self._load_rotation_chain()
            chain.append(rotation_salt.hex())
            version = self._record_version(new_key, rotated_by, chain=chain, rotated_at=now)

            self._buffers.append(new_bytes)
            self._retired[previous.key_id] = previous
            self._key = new_key
            self._key_created_ts = self._clock()
            self._expiry_reported = False

        logger.log_key_event("rotate", new_key.key_id, details={"previous_key_id": previous.key_id, "version": version.version})
        audit_event("key.rotate", {"previous_key_id": previous.key_id, "new_key_id": new_key.key_id,
                                   "version": version.version, "rotated_by": rotated_by}, actor=actor)
        return KeyRotation(previous_key_id=previous.key_id, new_key_id=new_key.key_id, version=version.version)

    def retired_key(self, key_id: str) -> Optional[SessionKey]:
        """A key superseded by rotation, kept until clear() for resuming migrations."""
        return self._retired.get(key_id)

    def retired_key_ids(self) -> List[str]:
        return list(self._retired.keys())

    # -- key backup ----------------------------------------------------------------

    def backup_key(self, backup_secret: str, actor: str = "system") -> KeyBackup:
        """Wrap the active key under a key derived from a separate backup secret.

        The backup lets the key be recovered when the PIN is lost. Backups expire
        after KEY_BACKUP_EXPIRY_DAYS; expired ones are dropped on the next backup.
        """
        if backup_secret is None or len(backup_secret) < self.min_secret_length:
            audit_event("key.backup", {"reason": "weak_secret", "min_length": self.min_secret_length},
                        severity="warning", actor=actor, outcome="failure")
            raise WeakSecret(f"Backup secret must be at least {self.min_secret_length} characters")

        with self._lock:
            validation = self.validate_key_for_operation(RECOVERY_OPERATION)
            if validation.reason == "no_key":
                raise NoKeyMaterial("No key loaded to back up")
            if validation.reason == "expired":
                raise KeyExpired("Cannot back up an expired key; re-enter secret first")
            key = self._key
            salt = generate_salt()
            wrapping_key = self._derive_with_timeout(backup_secret, salt)
            try:
                wrapped, tag = encrypt_document(key.key_bytes, wrapping_key, key_backup_aad(key.key_id))
            finally:
                zero_buffer(wrapping_key)

            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            backup = KeyBackup(key_id=key.key_id, wrapped_key=wrapped, integrity_tag=tag, salt=salt.hex(),
                               created_at=now, expires_at=now + timedelta(days=config.KEY_BACKUP_EXPIRY_DAYS))
            backups = [b for b in self.list_key_backups(include_expired=True) if not b.is_expired(now)]
            backups.append(backup)
            self._save_backups(backups)

        logger.log_key_event("backup", backup.key_id, details={"expires_at": backup.expires_at.isoformat()})
        audit_event("key.backup", {"key_id": backup.key_id, "expires_at": backup.expires_at.isoformat(),
                                   "backups_kept": len(backups)}, actor=actor)
        return backup

    def list_key_backups(self, include_expired: bool = False) -> List[KeyBackup]:
        stored = self._get_record(config.KEY_BACKUP_RECORD_NAME)
        backups = [KeyBackup.from_dict(item) for item in json.loads(stored)] if stored else []
        if include_expired:
            return backups
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return [b for b in backups if not b.is_expired(now)]

    def restore_key_from_backup(self, backup_secret: str, key_id: Optional[str] = None,
                                actor: str = "system") -> str:
        """Unwrap a backed-up key and load it without the PIN.

        Restores the backup of key_id, or of the active key version when omitted.
        The active version's key becomes the session key; an older key is kept as a
        retired key so an interrupted migration can finish. Returns the key id.
        """
        target = key_id
        if target is None:
            active = self.get_active_version()
            target = active.key_id if active is not None else None
        candidates = [b for b in self.list_key_backups() if b.key_id == target]
        if not candidates:
            audit_event("key.restore", {"key_id": target, "reason": "no_backup"},
                        severity="warning", actor=actor, outcome="failure")
            raise NoKeyMaterial(f"No unexpired backup for key {target}")
        backup = max(candidates, key=lambda b: b.created_at)

        wrapping_key = self._derive_with_timeout(backup_secret, bytes.fromhex(backup.salt))
        try:
            key_bytes = bytearray(decrypt_document(backup.wrapped_key, backup.integrity_tag,
                                                   wrapping_key, key_backup_aad(backup.key_id)))
        except InvalidTag:
            audit_event("key.restore", {"key_id": backup.key_id, "reason": "secret_mismatch"},
                        severity="warning", actor=actor, outcome="failure")
            raise SecretMismatch("Backup secret does not unlock this key backup")
        finally:
            zero_buffer(wrapping_key)

        if key_id_for(key_bytes) != backup.key_id:
            zero_buffer(key_bytes)
            raise SecretMismatch(f"Backup for key {backup.key_id} holds a different key")

        with self._lock:
            now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
            restored = SessionKey(key_bytes=key_bytes, key_id=backup.key_id, created_at=now,
                                  device_id=self._load_or_create_device_id())
            self._buffers.append(key_bytes)
            active = self.get_active_version()
            became_active = active is not None and active.key_id == backup.key_id
            if became_active:
                if self._key is not None and self._key.key_id != restored.key_id:
                    self._retired[self._key.key_id] = self._key
                self._key = restored
                self._key_created_ts = self._clock()
                self._cleared = False
                self._expiry_reported = False
            else:
                self._retired[restored.key_id] = restored

        logger.log_key_event("restore", backup.key_id, details={"active": became_active})
        audit_event("key.restore", {"key_id": backup.key_id, "active": became_active}, actor=actor)
        return backup.key_id

    def _save_backups(self, backups: List[KeyBackup]):
        with get_db(self.db_path) as conn:
            conn.execute(
                "INSERT OR REPLACE INTO key_store (name, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                (config.KEY_BACKUP_RECORD_NAME, json.dumps([b.to_dict() for b in backups]))
            )
            conn.commit()

    # -- degraded mode -------------------------------------------------------------

    def enter_degraded_mode(self, reason: str, actor: str = "system"):
        with self._lock:
            self._degraded = True
            self._degraded_reason = reason
        logger.log_key_event("degrade", self.key_id, status="degraded", details={"reason": reason})
        audit_event("key.degrade", {"reason": reason, "key_id": self.key_id}, severity="warning", actor=actor)

    def exit_degraded_mode(self, actor: str = "system"):
        with self._lock:
            was_degraded = self._degraded
            reason = self._degraded_reason
            self._degraded = False
            self._degraded_reason = None
        if was_degraded:
            logger.log_key_event("recover", self.key_id, details={"previous_reason": reason})
            audit_event("key.recover", {"previous_reason": reason, "key_id": self.key_id}, actor=actor)

    def degraded_status(self) -> Dict[str, Optional[str]]:
        return {"degraded": self._degraded, "reason": self._degraded_reason}

    # -- teardown ------------------------------------------------------------------

    def clear(self, actor: str = "system"):
        """Zero every key buffer and reset all key state."""
        with self._lock:
            had_key = self._key is not None
            key_id = self.key_id
            self._release_keys()
            self._degraded = False
            self._degraded_reason = None
            self._cleared = True
        if had_key:
            logger.log_key_event("clear", key_id)
            audit_event("key.clear", {"key_id": key_id}, actor=actor)

    def _release_keys(self):
        _zero_all(self._buffers)
        self._key = None
        self._key_created_ts = None
        self._retired = {}

    @contextmanager
    def key_session(self, secret: str, actor: str = "system"):
        """Unlock for the duration of a block; the key is zeroed on exit, including on error."""
        key_id = self.initialize_from_secret(secret, actor=actor)
        try:
            yield key_id
        finally:
            self.clear(actor=actor)

    # -- key versions --------------------------------------------------------------

    def get_key_versions(self) -> List[KeyVersion]:
        with get_db(self.db_path) as conn:
            rows = conn.execute("SELECT * FROM key_versions ORDER BY version ASC").fetchall()
        return [KeyVersion.from_row(row) for row in rows]

    def get_active_version(self) -> Optional[KeyVersion]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT * FROM key_versions WHERE is_active = 1").fetchone()
        return KeyVersion.from_row(row) if row else None

    def record_key_usage(self, key_id: str):
        with get_db(self.db_path) as conn:
            conn.execute("UPDATE key_versions SET usage_count = usage_count + 1 WHERE key_id = ?", (key_id,))
            conn.commit()

    def should_rotate(self) -> bool:
        """True once the active key is older than the rotation interval or over its usage cap."""
        active = self.get_active_version()
        if active is None:
            return False
        age = datetime.fromtimestamp(self._clock(), tz=timezone.utc) - active.created_at
        if age >= timedelta(days=config.KEY_ROTATION_INTERVAL_DAYS):
            return True
        return active.usage_count >= config.KEY_MAX_USAGE

    def get_rotation_status(self) -> Dict[str, object]:
        active = self.get_active_version()
        versions = self.get_key_versions()
        if active is None:
            return {
                "current_key_id": None,
                "version": 0,
                "key_age_days": None,
                "usage_count": 0,
                "next_rotation_due": None,
                "should_rotate": False,
                "history_size": len(versions),
            }
        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        return {
            "current_key_id": active.key_id,
            "version": active.version,
            "key_age_days": (now - active.created_at).days,
            "usage_count": active.usage_count,
            "next_rotation_due": (active.created_at + timedelta(days=config.KEY_ROTATION_INTERVAL_DAYS)).isoformat(),
            "should_rotate": self.should_rotate(),
            "history_size": len(versions),
        }

    def _record_version(self, key: SessionKey, rotated_by: str, chain: Optional[List[str]] = None,
                        rotated_at: Optional[datetime] = None) -> KeyVersion:
        """Append a KeyVersion and make it the only active one (and persist the chain in the same transaction)."""
        with get_db(self.db_path) as conn:
            cursor = conn.cursor()
            row = cursor.execute("SELECT MAX(version) FROM key_versions").fetchone()
            next_version = (row[0] or 0) + 1
            cursor.execute(
                "UPDATE key_versions SET is_active = 0, rotated_at = ? WHERE is_active = 1",
                ((rotated_at or key.created_at).isoformat(),)
            )
            version = KeyVersion(
                key_id=key.key_id,
                version=next_version,
                created_at=key.created_at,
                rotated_by=rotated_by,
                key_hash=key_fingerprint(key.key_bytes),
                is_active=True,
            )
            cursor.execute(
                '''INSERT INTO key_versions (key_id, version, created_at, rotated_at, rotated_by, key_hash, is_active, usage_count)
                   VALUES (?, ?, ?, NULL, ?, ?, 1, 0)''',
                (version.key_id, version.version, version.created_at.isoformat(), version.rotated_by, version.key_hash)
            )
            if chain is not None:
                cursor.execute(
                    "INSERT OR REPLACE INTO key_store (name, value, updated_at) VALUES (?, ?, CURRENT_TIMESTAMP)",
                    (config.ROTATION_CHAIN_RECORD_NAME, json.dumps(chain))
                )
            conn.commit()
        return version

    # -- persisted non-secret records ---------------------------------------------------

    def _get_record(self, name: str) -> Optional[str]:
        with get_db(self.db_path) as conn:
            row = conn.execute("SELECT value FROM key_store WHERE name = ?", (name,)).fetchone()
        return row['value'] if row else None

    def _create_record_once(self, name: str, value: str) -> str:
        """Insert a record unless one exists; returns whichever value is stored."""
        with get_db(self.db_path) as conn:
            conn.execute("INSERT OR IGNORE INTO key_store (name, value) VALUES (?, ?)", (name, value))
            conn.commit()
            row = conn.execute("SELECT value FROM key_store WHERE name = ?", (name,)).fetchone()
        return row['value']

    def _load_or_create_salt(self) -> bytes:
        stored = self._get_record(config.SALT_RECORD_NAME)
        if stored is None:
            stored = self._create_record_once(config.SALT_RECORD_NAME, generate_salt().hex())
            logger.log_key_event("salt_created")
        return bytes.fromhex(stored)

    def _load_or_create_device_id(self) -> str:
        stored = self._get_record(config.DEVICE_ID_RECORD_NAME)
        if stored is None:
            stored = self._create_record_once(config.DEVICE_ID_RECORD_NAME, f"device_{secrets.token_hex(8)}")
        return stored

    def _load_rotation_chain(self) -> List[str]:
        stored = self._get_record(config.ROTATION_CHAIN_RECORD_NAME)
        return json.loads(stored) if stored else []


# The process-wide key context handed to the store and engines
KeyManagerContext = KeyManager
