"""Symmetric encryption of secret outputs at rest.

Secret-tagged outputs are written to the state document as opaque Fernet
tokens (AES-128-CBC + HMAC-SHA256 from the cryptography package). The
plaintext never reaches the state file.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from .exceptions import SecretError

logger = logging.getLogger(__name__)


class SecretCipher:
    """Encrypts JSON-serializable values into Fernet tokens and back.

    Example:
        >>> cipher = SecretCipher(SecretCipher.generate_key())
        >>> token = cipher.encrypt({"arn": "arn:aws:iam::123:role/alb"})
        >>> cipher.decrypt(token)
        {'arn': 'arn:aws:iam::123:role/alb'}
    """

    def __init__(self, key: bytes | str) -> None:
        """
        Args:
            key: url-safe base64-encoded 32-byte Fernet key
        """
        if isinstance(key, str):
            key = key.encode()
        self._fernet = Fernet(key)

    @staticmethod
    def generate_key() -> bytes:
        """Create a fresh random key."""
        return Fernet.generate_key()

    @classmethod
    def from_key_file(cls, path: Path) -> SecretCipher:
        """
        Load the key from path, creating it (mode 0600) if absent.

        Used when STACKWEAVE_STATE_KEY is not set.
        """
        if path.exists():
            return cls(path.read_bytes().strip())

        key = cls.generate_key()
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(key)
        logger.info(f"Generated new state encryption key: {path}")
        return cls(key)

    def encrypt(self, value: Any) -> str:  # noqa: ANN401
        """Serialize value as JSON and encrypt it."""
        payload = json.dumps(value, sort_keys=True, default=str).encode()
        return self._fernet.encrypt(payload).decode()

    def decrypt(self, token: str) -> Any:  # noqa: ANN401
        """
        Decrypt a token produced by encrypt().

        Raises:
            SecretError: If the token is invalid for this key
        """
        try:
            payload = self._fernet.decrypt(token.encode())
        except InvalidToken as e:
            raise SecretError("Invalid ciphertext for configured state key") from e
        return json.loads(payload)


__all__ = ["SecretCipher"]
