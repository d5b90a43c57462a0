"""
Cryptographic primitives - AES-256-GCM envelopes, key ids and key derivation.
"""

import os

import pytest
from cryptography.exceptions import InvalidTag

from healthbridge.core.crypto import (
    KEY_BYTES,
    calculate_checksum,
    decrypt_document,
    derive_key_from_secret,
    derive_rotated_key,
    document_aad,
    encrypt_document,
    key_fingerprint,
    key_id_for,
    zero_buffer,
)


class TestEnvelopes:

    def test_encrypt_decrypt_round_trip(self):
        key = os.urandom(KEY_BYTES)
        aad = document_aad("session_1", "abc")

        ciphertext, tag = encrypt_document(b'{"stage":"registration"}', key, aad)

        assert decrypt_document(ciphertext, tag, key, aad) == b'{"stage":"registration"}'
        assert "registration" not in ciphertext

    def test_fresh_nonce_per_encryption(self):
        key = os.urandom(KEY_BYTES)
        aad = document_aad("session_1", "abc")

        first, _ = encrypt_document(b"same", key, aad)
        second, _ = encrypt_document(b"same", key, aad)

        assert first != second

    def test_wrong_key_fails_authentication(self):
        aad = document_aad("session_1", "abc")
        ciphertext, tag = encrypt_document(b"secret", os.urandom(KEY_BYTES), aad)

        with pytest.raises(InvalidTag):
            decrypt_document(ciphertext, tag, os.urandom(KEY_BYTES), aad)

    def test_ciphertext_bound_to_document_id(self):
        """A ciphertext copied onto another document id does not open."""
        key = os.urandom(KEY_BYTES)
        ciphertext, tag = encrypt_document(b"secret", key, document_aad("session_1", "abc"))

        with pytest.raises(InvalidTag):
            decrypt_document(ciphertext, tag, key, document_aad("session_2", "abc"))

    def test_truncated_envelope_rejected(self):
        with pytest.raises(ValueError):
            decrypt_document("AAAA", "AAAA", os.urandom(KEY_BYTES), b"x")


class TestKeyMaterial:

    def test_derivation_is_deterministic(self):
        salt = os.urandom(32)
        assert derive_key_from_secret("2468", salt, 1000) == derive_key_from_secret("2468", salt, 1000)
        assert derive_key_from_secret("2468", salt, 1000) != derive_key_from_secret("2469", salt, 1000)

    def test_rotated_key_depends_on_salt(self):
        key = derive_key_from_secret("2468", os.urandom(32), 1000)
        salt = os.urandom(32)

        assert derive_rotated_key(key, salt) == derive_rotated_key(bytes(key), salt)
        assert derive_rotated_key(key, salt) != derive_rotated_key(key, os.urandom(32))
        assert len(derive_rotated_key(key, salt)) == KEY_BYTES

    def test_key_id_and_fingerprint_do_not_reveal_key(self):
        key = os.urandom(KEY_BYTES)

        assert len(key_id_for(key)) == 32
        assert len(key_fingerprint(key)) == 16
        assert key_id_for(key) != key_fingerprint(key)
        assert key.hex()[:32] != key_id_for(key)

    def test_zero_buffer(self):
        buffer = bytearray(os.urandom(KEY_BYTES))
        zero_buffer(buffer)
        assert buffer == bytearray(KEY_BYTES)

    def test_checksum(self):
        assert calculate_checksum(b"test data") == "916f0027a575074ce72a331777c3478d6513f786a591bd892da1a577bf2335f9"
