"""Exceptions for secret handling.

Exception Hierarchy:
    SecretError (base)
    ├── SecretNotFoundError (secret literal not configured)
    └── SecretDecryptionError (stored ciphertext cannot be opened)
"""


class SecretError(Exception):
    """Base exception for all secret-related errors."""

    pass


class SecretNotFoundError(SecretError):
    """A secret literal referenced by a declaration is not configured.

    Attributes:
        key: The secret key that was not found
        provider_hint: Optional hint about where to configure the secret
    """

    def __init__(self, key: str, provider_hint: str | None = None) -> None:
        self.key = key
        self.provider_hint = provider_hint

        message = f"Secret '{key}' not found"
        if provider_hint:
            message += f". {provider_hint}"

        super().__init__(message)


class SecretDecryptionError(SecretError):
    """Persisted ciphertext could not be decrypted (wrong key or corrupted state).

    Attributes:
        node_id: Resource whose stored output failed to decrypt
        output: Output name
    """

    def __init__(self, node_id: str, output: str) -> None:
        self.node_id = node_id
        self.output = output
        super().__init__(
            f"Cannot decrypt stored secret output '{node_id}.{output}'. "
            "Check that STACKWEAVE_STATE_KEY matches the key used when the state was written."
        )
