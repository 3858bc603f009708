"""Tests for the PIN-based encryption gate."""

import base64

import pytest

from fieldsync.errors import DecryptionIntegrityFailure, EncryptionKeyNotInitialized
from fieldsync.security.encryption import (
    SENSITIVE_FIELDS,
    EncryptionGate,
    generate_salt,
    is_encrypted,
    sensitive_fields_for,
)
from fieldsync.types import EncryptedData

TEST_ITERATIONS = 1000


@pytest.fixture
def unlocked(gate):
    gate.initialize_with_pin("1234")
    return gate


class TestKeyLifecycle:
    def test_locked_by_default(self, gate):
        assert not gate.is_initialized()
        with pytest.raises(EncryptionKeyNotInitialized):
            gate.encrypt("secret")

    def test_short_pin_rejected(self, gate):
        with pytest.raises(ValueError):
            gate.initialize_with_pin("123")
        assert not gate.is_initialized()

    def test_clear_key(self, unlocked):
        data = unlocked.encrypt("secret")
        unlocked.clear_encryption_key()
        assert not unlocked.is_initialized()
        with pytest.raises(EncryptionKeyNotInitialized):
            unlocked.decrypt(data)

    def test_short_salt_rejected(self):
        with pytest.raises(ValueError):
            EncryptionGate(b"short")


class TestEncryptDecrypt:
    def test_roundtrip(self, unlocked):
        data = unlocked.encrypt("Calle 10 # 5-20")
        assert unlocked.decrypt(data) == "Calle 10 # 5-20"

    def test_fresh_iv_per_call(self, unlocked):
        a = unlocked.encrypt("same")
        b = unlocked.encrypt("same")
        assert a.iv != b.iv
        assert a.ciphertext != b.ciphertext
        assert len(base64.b64decode(a.iv)) == 12

    def test_envelope_carries_salt(self, unlocked):
        assert unlocked.encrypt("x").salt == unlocked.salt_b64

    def test_tampered_ciphertext_detected(self, unlocked):
        data = unlocked.encrypt("secret")
        raw = bytearray(base64.b64decode(data.ciphertext))
        raw[0] ^= 0x01
        tampered = EncryptedData(base64.b64encode(bytes(raw)).decode(), data.iv, data.salt)
        with pytest.raises(DecryptionIntegrityFailure):
            unlocked.decrypt(tampered)

    def test_wrong_pin_detected(self):
        salt = generate_salt()
        writer = EncryptionGate(salt, iterations=TEST_ITERATIONS)
        writer.initialize_with_pin("1234")
        reader = EncryptionGate(salt, iterations=TEST_ITERATIONS)
        reader.initialize_with_pin("9999")
        with pytest.raises(DecryptionIntegrityFailure):
            reader.decrypt(writer.encrypt("secret"))

    def test_same_pin_and_salt_decrypts(self):
        salt = generate_salt()
        writer = EncryptionGate(salt, iterations=TEST_ITERATIONS)
        writer.initialize_with_pin("1234")
        reader = EncryptionGate(salt, iterations=TEST_ITERATIONS)
        reader.initialize_with_pin("1234")
        assert reader.decrypt(writer.encrypt("secret")) == "secret"

    def test_foreign_salt_rejected(self, unlocked):
        other = EncryptionGate(generate_salt(), iterations=TEST_ITERATIONS)
        other.initialize_with_pin("1234")
        with pytest.raises(DecryptionIntegrityFailure):
            unlocked.decrypt(other.encrypt("secret"))


class TestSensitiveFields:
    def test_allow_list_covers_every_entity(self):
        assert "numero_documento" in SENSITIVE_FIELDS["clientes"]
        assert sensitive_fields_for("pagos") == ()
        with pytest.raises(ValueError):
            sensitive_fields_for("unknown")

    def test_encrypts_only_listed_fields(self, unlocked):
        record = {"id": "c1", "nombre": "Ana", "telefono": "3001234567", "direccion": None}
        sealed = unlocked.encrypt_sensitive_fields(record, "clientes")
        assert sealed["nombre"] == "Ana"
        assert is_encrypted(sealed["telefono"])
        assert sealed["direccion"] is None
        assert record["telefono"] == "3001234567"

    def test_empty_values_left_alone(self, unlocked):
        sealed = unlocked.encrypt_sensitive_fields({"telefono": ""}, "clientes")
        assert sealed["telefono"] == ""

    def test_already_encrypted_not_reencrypted(self, unlocked):
        once = unlocked.encrypt_sensitive_fields({"telefono": "300"}, "clientes")
        twice = unlocked.encrypt_sensitive_fields(once, "clientes")
        assert twice["telefono"] == once["telefono"]

    def test_non_string_rejected(self, unlocked):
        with pytest.raises(TypeError):
            unlocked.encrypt_sensitive_fields({"telefono": 3001234567}, "clientes")

    def test_decrypt_fields(self, unlocked):
        sealed = unlocked.encrypt_sensitive_fields(
            {"telefono": "300", "barrio": "Centro"}, "clientes"
        )
        assert unlocked.has_encrypted_fields(sealed, "clientes")
        opened = unlocked.decrypt_sensitive_fields(sealed, "clientes")
        assert opened == {"telefono": "300", "barrio": "Centro"}


class TestSealAndOpen:
    def test_seal_without_sensitive_values_needs_no_key(self, gate):
        record = {"id": "c1", "nombre": "Ana"}
        assert gate.seal(record, "clientes") == record
        assert gate.open_record(record, "clientes") == record

    def test_seal_with_sensitive_values_needs_key(self, gate):
        with pytest.raises(EncryptionKeyNotInitialized):
            gate.seal({"telefono": "300"}, "clientes")

    def test_open_encrypted_record_needs_key(self, unlocked):
        sealed = unlocked.seal({"telefono": "300"}, "clientes")
        unlocked.clear_encryption_key()
        with pytest.raises(EncryptionKeyNotInitialized):
            unlocked.open_record(sealed, "clientes")


def test_is_encrypted():
    assert is_encrypted({"ciphertext": "a", "iv": "b", "salt": "c"})
    assert not is_encrypted("plain")
    assert not is_encrypted({"ciphertext": "a"})
