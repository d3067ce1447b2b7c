"""Secret handling for stackweave.

Core Components:
    - SecretCipher: Fernet encryption of secret outputs in persisted state
    - SecretRedactor / RedactingFilter: scrub secret values from text and logs
    - SecretProvider / EnvVarSecretProvider: secret literals for declarations
    - SecretAuditLog: record of deliberate plaintext reveals
"""

from .audit import SecretAccessEvent, SecretAuditLog
from .cipher import SecretCipher
from .exceptions import SecretDecryptionError, SecretError, SecretNotFoundError
from .provider import EnvVarSecretProvider, SecretProvider
from .redactor import RedactingFilter, SecretRedactor

__all__ = [
    "SecretError",
    "SecretNotFoundError",
    "SecretDecryptionError",
    "SecretCipher",
    "SecretProvider",
    "EnvVarSecretProvider",
    "SecretRedactor",
    "RedactingFilter",
    "SecretAccessEvent",
    "SecretAuditLog",
]
