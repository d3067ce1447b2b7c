"""State directory configuration and management.

Provides centralized state directory management based on current working directory.
Uses SHA256 hash of CWD for path-based isolation across different projects.

Architecture:
    ~/.stackweave/
      states/
        <hash-of-cwd>/
          state.key         # Fernet key for secret outputs (mode 0600)
          demo-stack.json   # StackState document per stack
"""

from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path

from .secrets.cipher import SecretCipher

STATE_DIR_ENV = "STACKWEAVE_STATE_DIR"
STATE_KEY_ENV = "STACKWEAVE_STATE_KEY"

_SAFE_NAME = re.compile(r"[^A-Za-z0-9_.-]")


class StateConfig:
    """State directory configuration for stackweave.

    Each project (working directory) has its own state directory, so two
    checkouts of the same stack never share resources by accident.
    STACKWEAVE_STATE_DIR overrides the location entirely.

    Example:
        >>> StateConfig.get_state_path("demo-stack")
        Path('/home/user/.stackweave/states/a1b2c3d4e5f6a7b8/demo-stack.json')
    """

    @staticmethod
    def get_state_dir() -> Path:
        """Get (and create) the state directory for the current working directory."""
        override = os.getenv(STATE_DIR_ENV)
        if override:
            state_dir = Path(override).expanduser()
        else:
            cwd_hash = hashlib.sha256(str(Path.cwd()).encode()).hexdigest()[:16]
            state_dir = Path.home() / ".stackweave" / "states" / cwd_hash

        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    @staticmethod
    def get_state_path(stack_name: str) -> Path:
        """Path of the JSON state document for a stack."""
        safe_name = _SAFE_NAME.sub("_", stack_name) or "default"
        return StateConfig.get_state_dir() / f"{safe_name}.json"

    @staticmethod
    def get_key_path() -> Path:
        """Path of the generated state encryption key."""
        return StateConfig.get_state_dir() / "state.key"

    @staticmethod
    def get_state_key() -> str | None:
        """Explicit state key from STACKWEAVE_STATE_KEY, if set."""
        return os.getenv(STATE_KEY_ENV) or None


def load_state_cipher() -> SecretCipher:
    """
    Cipher for secret outputs in state files.

    Uses STACKWEAVE_STATE_KEY when set, otherwise the key file in the state
    directory (generated on first use), so every engine over the same state
    directory can read what the previous run sealed.

    Raises:
        ValueError: If STACKWEAVE_STATE_KEY is not a valid Fernet key
    """
    key = StateConfig.get_state_key()
    if key is None:
        return SecretCipher.from_key_file(StateConfig.get_key_path())
    return SecretCipher(key)


__all__ = ["StateConfig", "load_state_cipher", "STATE_DIR_ENV", "STATE_KEY_ENV"]
