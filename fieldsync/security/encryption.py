"""
Encryption gate for sensitive record fields.

Provides PIN-based AES-256-GCM encryption:
- Key derivation from a PIN with PBKDF2-HMAC-SHA256 over an installation salt
- Authenticated encrypt/decrypt with a fresh 96-bit IV per call
- Per-entity allow-lists of fields that must be encrypted at rest

The derived key lives only in memory and is dropped by
``clear_encryption_key()``.
"""

import base64
import logging
import os
import threading
from typing import Any, Dict, Optional, Tuple

from fieldsync.errors import (
    DecryptionIntegrityFailure,
    EncryptionError,
    EncryptionKeyNotInitialized,
)
from fieldsync.storage.schema import ENTITY_TABLES
from fieldsync.types import EncryptedData

logger = logging.getLogger(__name__)

KEY_LENGTH = 32  # AES-256
IV_LENGTH = 12
SALT_LENGTH = 16
DEFAULT_ITERATIONS = 100_000
MIN_PIN_LENGTH = 4

CLIENT_SENSITIVE_FIELDS = (
    "numero_documento",
    "telefono",
    "telefono_2",
    "telefono_fiador",
    "direccion",
    "barrio",
    "referencia",
    "nombre_fiador",
)

SENSITIVE_FIELDS: Dict[str, Tuple[str, ...]] = {name: () for name in ENTITY_TABLES}
SENSITIVE_FIELDS.update(
    {
        "clientes": CLIENT_SENSITIVE_FIELDS,
        "users": ("telefono",),
    }
)


def generate_salt() -> bytes:
    return os.urandom(SALT_LENGTH)


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


def _unb64(data: str) -> bytes:
    return base64.b64decode(data)


def is_encrypted(value: Any) -> bool:
    """True when ``value`` looks like an EncryptedData envelope."""
    return isinstance(value, dict) and {"ciphertext", "iv", "salt"} <= set(value)


def sensitive_fields_for(entity_type: str) -> Tuple[str, ...]:
    try:
        return SENSITIVE_FIELDS[entity_type]
    except KeyError:
        raise ValueError(f"Unknown entity type: {entity_type}") from None


class EncryptionGate:
    """Holds the PIN-derived key for one installation.

    Args:
        salt: Per-installation PBKDF2 salt (persisted by the caller).
        iterations: PBKDF2 iteration count.
    """

    def __init__(self, salt: bytes, iterations: int = DEFAULT_ITERATIONS):
        if len(salt) < 8:
            raise ValueError("Salt must be at least 8 bytes")
        self._salt = salt
        self._iterations = iterations
        self._key: Optional[bytes] = None
        self._lock = threading.Lock()

    @property
    def salt_b64(self) -> str:
        return _b64(self._salt)

    def _derive_key(self, pin: str) -> bytes:
        try:
            from cryptography.hazmat.primitives import hashes
            from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC
        except ImportError:
            raise EncryptionError(
                "cryptography package not installed. Install with: pip install cryptography"
            )
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=KEY_LENGTH,
            salt=self._salt,
            iterations=self._iterations,
        )
        return kdf.derive(pin.encode("utf-8"))

    def initialize_with_pin(self, pin: str) -> None:
        """Derive and hold the key for ``pin``.

        Raises:
            ValueError: PIN shorter than 4 characters.
        """
        if not isinstance(pin, str) or len(pin) < MIN_PIN_LENGTH:
            raise ValueError(f"PIN must be at least {MIN_PIN_LENGTH} characters")
        key = self._derive_key(pin)
        with self._lock:
            self._key = key
        logger.info("Encryption key initialized")

    def clear_encryption_key(self) -> None:
        with self._lock:
            self._key = None
        logger.info("Encryption key cleared")

    def is_initialized(self) -> bool:
        return self._key is not None

    def _aesgcm(self):
        with self._lock:
            key = self._key
        if key is None:
            raise EncryptionKeyNotInitialized()
        try:
            from cryptography.hazmat.primitives.ciphers.aead import AESGCM
        except ImportError:
            raise EncryptionError(
                "cryptography package not installed. Install with: pip install cryptography"
            )
        return AESGCM(key)

    def encrypt(self, plaintext: str) -> EncryptedData:
        """Encrypt a string with a fresh IV.

        Raises:
            EncryptionKeyNotInitialized: no PIN has been supplied.
        """
        aesgcm = self._aesgcm()
        iv = os.urandom(IV_LENGTH)
        ciphertext = aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        return EncryptedData(ciphertext=_b64(ciphertext), iv=_b64(iv), salt=self.salt_b64)

    def decrypt(self, data: EncryptedData) -> str:
        """Decrypt and authenticate.

        Raises:
            EncryptionKeyNotInitialized: no PIN has been supplied.
            DecryptionIntegrityFailure: tampered ciphertext, wrong key or
                data encrypted under a different salt.
        """
        aesgcm = self._aesgcm()
        if data.salt != self.salt_b64:
            raise DecryptionIntegrityFailure("Data was encrypted under a different salt")
        from cryptography.exceptions import InvalidTag

        try:
            plaintext = aesgcm.decrypt(_unb64(data.iv), _unb64(data.ciphertext), None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionIntegrityFailure("Ciphertext failed authentication") from e
        return plaintext.decode("utf-8")

    def encrypt_sensitive_fields(self, obj: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        """Return a copy with every allow-listed field encrypted.

        Missing, None and empty values are left alone; values that are
        already encrypted are not encrypted twice.

        Raises:
            ValueError: unknown entity type.
            TypeError: a sensitive field holds a non-string value.
        """
        fields = sensitive_fields_for(entity_type)
        result = dict(obj)
        for name in fields:
            value = result.get(name)
            if value is None or value == "" or is_encrypted(value):
                continue
            if not isinstance(value, str):
                raise TypeError(f"Sensitive field '{name}' must be a string")
            result[name] = self.encrypt(value).to_dict()
        return result

    def decrypt_sensitive_fields(self, obj: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        """Return a copy with every encrypted allow-listed field decrypted."""
        fields = sensitive_fields_for(entity_type)
        result = dict(obj)
        for name in fields:
            value = result.get(name)
            if is_encrypted(value):
                result[name] = self.decrypt(EncryptedData.from_dict(value))
        return result

    def has_encrypted_fields(self, obj: Dict[str, Any], entity_type: str) -> bool:
        return any(is_encrypted(obj.get(name)) for name in sensitive_fields_for(entity_type))

    def seal(self, obj: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        """Prepare a record for storage; needs the key only if it holds sensitive values."""
        if not any(obj.get(name) for name in sensitive_fields_for(entity_type)):
            return obj
        return self.encrypt_sensitive_fields(obj, entity_type)

    def open_record(self, obj: Dict[str, Any], entity_type: str) -> Dict[str, Any]:
        """Inverse of ``seal``; needs the key only if something is encrypted."""
        if not self.has_encrypted_fields(obj, entity_type):
            return obj
        return self.decrypt_sensitive_fields(obj, entity_type)
