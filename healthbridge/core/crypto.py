"""
Cryptographic primitives - key derivation, AES-256-GCM document envelopes and fingerprints.
"""

import base64
import hashlib
import os
import secrets
from typing import Tuple, Union

from cryptography.hazmat.primitives import hashes, hmac
from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

SALT_BYTES = 32
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16

KEY_ID_CONTEXT = b"healthbridge.key-id.v1"

BytesLike = Union[bytes, bytearray, memoryview]


def generate_salt() -> bytes:
    return secrets.token_bytes(SALT_BYTES)


def derive_key_from_secret(secret: str, salt: bytes, iterations: int) -> bytearray:
    """Derive the base session key from a PIN/password using PBKDF2-HMAC-SHA256."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=KEY_BYTES,
        salt=salt,
        iterations=iterations,
    )
    return bytearray(kdf.derive(secret.encode("utf-8")))


def derive_rotated_key(current_key: BytesLike, rotation_salt: bytes) -> bytearray:
    """Derive the next key in a rotation chain as HMAC-SHA256(current_key, rotation_salt)."""
    mac = hmac.HMAC(bytes(current_key), hashes.SHA256())
    mac.update(rotation_salt)
    return bytearray(mac.finalize())


def key_id_for(key: BytesLike) -> str:
    """Stable, non-reversible 16-byte hex identifier of a key."""
    digest = hashlib.sha256(KEY_ID_CONTEXT + bytes(key)).digest()
    return digest[:16].hex()


def key_fingerprint(key: BytesLike) -> str:
    """Hex of the first 8 bytes of SHA-256 over the key, stored on KeyVersion records."""
    return hashlib.sha256(bytes(key)).digest()[:8].hex()


def encrypt_document(plaintext: bytes, key: BytesLike, associated_data: bytes) -> Tuple[str, str]:
    """Encrypt with AES-256-GCM.

    Returns (ciphertext, integrity_tag) as base64 strings; the nonce is prefixed to
    the ciphertext.
    """
    nonce = os.urandom(NONCE_BYTES)
    cipher = Cipher(algorithms.AES(bytes(key)), modes.GCM(nonce))
    encryptor = cipher.encryptor()
    encryptor.authenticate_additional_data(associated_data)

    ciphertext = encryptor.update(plaintext) + encryptor.finalize()

    return (
        base64.b64encode(nonce + ciphertext).decode("ascii"),
        base64.b64encode(encryptor.tag).decode("ascii"),
    )


def decrypt_document(ciphertext: str, integrity_tag: str, key: BytesLike, associated_data: bytes) -> bytes:
    """Decrypt an AES-256-GCM envelope produced by encrypt_document.

    Raises ValueError for malformed envelopes and cryptography's InvalidTag when
    authentication fails.
    """
    raw = base64.b64decode(ciphertext, validate=True)
    tag = base64.b64decode(integrity_tag, validate=True)
    if len(raw) < NONCE_BYTES or len(tag) != TAG_BYTES:
        raise ValueError("Encrypted envelope too short")

    nonce, body = raw[:NONCE_BYTES], raw[NONCE_BYTES:]
    cipher = Cipher(algorithms.AES(bytes(key)), modes.GCM(nonce, tag))
    decryptor = cipher.decryptor()
    decryptor.authenticate_additional_data(associated_data)
    return decryptor.update(body) + decryptor.finalize()


def document_aad(doc_id: str, key_id: str) -> bytes:
    """Associated data binding a ciphertext to its document id and key id."""
    return f"{doc_id}|{key_id}".encode("utf-8")


def key_backup_aad(key_id: str) -> bytes:
    """Associated data binding a wrapped key to the key id it claims to hold."""
    return f"key-backup|{key_id}".encode("utf-8")


def calculate_checksum(data: bytes) -> str:
    """Calculate SHA-256 checksum of data."""
    return hashlib.sha256(data).hexdigest()


def zero_buffer(buffer: bytearray) -> None:
    """Overwrite a mutable key buffer in place."""
    for i in range(len(buffer)):
        buffer[i] = 0
