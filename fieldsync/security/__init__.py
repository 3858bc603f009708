"""At-rest encryption for sensitive fields."""

from fieldsync.security.encryption import (
    SENSITIVE_FIELDS,
    EncryptionGate,
    generate_salt,
    is_encrypted,
)

__all__ = ["EncryptionGate", "SENSITIVE_FIELDS", "generate_salt", "is_encrypted"]
