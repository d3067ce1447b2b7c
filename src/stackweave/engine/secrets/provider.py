"""Sources of secret literals used in stack declarations.

A declaration writes ``{{secrets.db_password}}`` where a value must come from
outside the declaration and be treated as secret from the start. The loader
asks a SecretProvider for the value and wraps it in a Secret input, so the
value is tainted before any resource sees it.
"""

import os
from abc import ABC, abstractmethod

from .exceptions import SecretNotFoundError


class SecretProvider(ABC):
    """Looks up secret literals by name."""

    @abstractmethod
    def get_secret(self, key: str) -> str:
        """Value of the named secret.

        Raises:
            SecretNotFoundError: No secret of that name is configured
        """

    @abstractmethod
    def list_secret_keys(self) -> list[str]:
        """Names of the configured secrets (never their values)."""


class EnvVarSecretProvider(SecretProvider):
    """Secrets taken from ``STACKWEAVE_SECRET_<NAME>`` environment variables.

    Names are case-insensitive: ``{{secrets.db_password}}`` reads
    STACKWEAVE_SECRET_DB_PASSWORD.

    Usage:
        >>> os.environ["STACKWEAVE_SECRET_DB_PASSWORD"] = "s3cret-value"
        >>> EnvVarSecretProvider().get_secret("db_password")
        's3cret-value'
    """

    def __init__(self, prefix: str = "STACKWEAVE_SECRET_") -> None:
        self.prefix = prefix

    def variable_for(self, key: str) -> str:
        return self.prefix + key.upper()

    def get_secret(self, key: str) -> str:
        variable = self.variable_for(key)
        try:
            return os.environ[variable]
        except KeyError:
            raise SecretNotFoundError(key, provider_hint=f"Set {variable}") from None

    def list_secret_keys(self) -> list[str]:
        return sorted(
            name[len(self.prefix) :].lower() for name in os.environ if name.startswith(self.prefix)
        )
