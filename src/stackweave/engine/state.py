"""Durable record of the last applied stack.

StackState maps node id to the record of what was last applied for it: the
resource kind, a hash of the resolved inputs, the provider resource id, the
outputs and the stored dependency edges (needed to order deletions of nodes
that are no longer declared). It is a pure ledger; the engine decides what
a record means.

When the id output itself is secret (a node fed by a secret input, or one
declaring id secret) the plaintext resource_id is left empty and the id is
recovered from the sealed output when the resource is updated or deleted.

Secret outputs are sealed with the configured SecretCipher before they are
placed in a record, so neither the in-memory nor the on-disk representation
ever holds their plaintext.

Persistence format (version 1):
    {
      "version": 1,
      "stack": "demo",
      "nodes": {
        "cluster": {
          "kind": "eks_cluster",
          "input_hash": "9f2c...",
          "resource_id": "clu-1",
          "outputs": {
            "id": {"value": "clu-1", "secret": false},
            "oidc_url": {"ciphertext": "gAAAAA...", "secret": true}
          },
          "dependencies": ["network"],
          "updated_at": "2026-10-19T08:00:00+00:00"
        }
      }
    }
"""

from __future__ import annotations

import hashlib
import json
from datetime import UTC, datetime
from typing import Any

from pydantic import BaseModel, Field, model_validator

from .exceptions import StateError
from .node import ID_OUTPUT
from .secrets.cipher import SecretCipher
from .secrets.exceptions import SecretDecryptionError, SecretError

STATE_VERSION = 1


class StoredOutput(BaseModel):
    """One persisted output value: plaintext, or ciphertext when secret."""

    value: Any = None
    ciphertext: str | None = None
    secret: bool = False

    @model_validator(mode="after")
    def _secret_has_no_plaintext(self) -> StoredOutput:
        if self.secret and self.value is not None:
            raise ValueError("secret outputs must be stored as ciphertext")
        return self

    @classmethod
    def seal(cls, value: Any, secret: bool, cipher: SecretCipher) -> StoredOutput:  # noqa: ANN401
        """Build a stored output, encrypting the value if it is secret."""
        if secret:
            return cls(ciphertext=cipher.encrypt(value), secret=True)
        return cls(value=value)

    def open(self, cipher: SecretCipher) -> Any:  # noqa: ANN401
        """Return the plaintext value (decrypting secrets)."""
        if not self.secret:
            return self.value
        if self.ciphertext is None:
            raise SecretError("secret output has no ciphertext")
        return cipher.decrypt(self.ciphertext)


class NodeRecord(BaseModel):
    """Last applied state of one node."""

    kind: str
    input_hash: str
    resource_id: str | None = None
    outputs: dict[str, StoredOutput] = Field(default_factory=dict)
    dependencies: list[str] = Field(default_factory=list)
    updated_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())

    @model_validator(mode="after")
    def _secret_id_stays_sealed(self) -> NodeRecord:
        stored = self.outputs.get(ID_OUTPUT)
        if stored is not None and stored.secret and self.resource_id is not None:
            raise ValueError("a secret resource id must only be stored sealed")
        return self

    def covers(self, output_names: set[str] | frozenset[str]) -> bool:
        """True if every named output is stored."""
        return all(name in self.outputs for name in output_names)

    def open_resource_id(self, node_id: str, cipher: SecretCipher) -> str:
        """
        Provider resource id, decrypting the sealed id output when it is secret.

        Raises:
            SecretDecryptionError: If the sealed id cannot be decrypted
            StateError: If the record holds no id at all
        """
        if self.resource_id is not None:
            return self.resource_id
        stored = self.outputs.get(ID_OUTPUT)
        if stored is None:
            raise StateError(f"Record of '{node_id}' has no resource id")
        try:
            return str(stored.open(cipher))
        except SecretError as e:
            raise SecretDecryptionError(node_id, ID_OUTPUT) from e

    def open_outputs(self, node_id: str, cipher: SecretCipher) -> dict[str, tuple[Any, bool]]:
        """
        Decrypt stored outputs.

        Returns:
            Mapping of output name to (value, secret)

        Raises:
            SecretDecryptionError: If a secret output cannot be decrypted
        """
        opened: dict[str, tuple[Any, bool]] = {}
        for name, stored in self.outputs.items():
            try:
                opened[name] = (stored.open(cipher), stored.secret)
            except SecretError as e:
                raise SecretDecryptionError(node_id, name) from e
        return opened


class StackState(BaseModel):
    """Versioned document of every applied node in a stack."""

    version: int = STATE_VERSION
    stack: str = ""
    nodes: dict[str, NodeRecord] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _supported_version(self) -> StackState:
        if self.version != STATE_VERSION:
            raise ValueError(
                f"unsupported state version {self.version} (expected {STATE_VERSION})"
            )
        return self

    @classmethod
    def empty(cls, stack: str = "") -> StackState:
        return cls(stack=stack)

    @property
    def is_empty(self) -> bool:
        return not self.nodes

    def get(self, node_id: str) -> NodeRecord | None:
        return self.nodes.get(node_id)

    def put(self, node_id: str, record: NodeRecord) -> None:
        self.nodes[node_id] = record

    def remove(self, node_id: str) -> None:
        self.nodes.pop(node_id, None)


def canonical_json(value: Any) -> str:  # noqa: ANN401
    """Deterministic JSON encoding (sorted keys, no whitespace)."""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str)


def compute_input_hash(kind: str, inputs: Any) -> str:  # noqa: ANN401
    """SHA-256 over the canonical JSON of {kind, resolved inputs}."""
    document = canonical_json({"kind": kind, "inputs": inputs})
    return hashlib.sha256(document.encode()).hexdigest()


__all__ = [
    "STATE_VERSION",
    "StoredOutput",
    "NodeRecord",
    "StackState",
    "canonical_json",
    "compute_input_hash",
]
