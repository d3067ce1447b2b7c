"""Secret redaction for error messages, results and logs.

Export and persistence never see plaintext because they check the taint bit
on each value cell. Free-form text is different: a provider error message
may echo an input, and a log line may include such a message. The
SecretRedactor learns every secret value resolved during a run and scrubs
those values from any string, dict or list before it leaves the engine.

Example:
    >>> redactor = SecretRedactor()
    >>> redactor.add_secret("https://oidc.eks.example.com/id/ABCDEF")
    >>> redactor.redact({"error": "bad principal https://oidc.eks.example.com/id/ABCDEF"})
    {'error': 'bad principal <redacted>'}
"""

from __future__ import annotations

import logging
import re
from typing import Any


class SecretRedactor:
    """Redacts known secret values from data structures.

    Security Features:
        - Strings from MIN_TOKEN_LENGTH up are scrubbed; shorter ones would shred text
        - Short secrets (under MIN_SECRET_LENGTH) only match as whole tokens
        - Numbers only learned from MIN_SECRET_LENGTH digits up
        - Regex escaping to handle special characters
        - Longest secrets matched first
        - Type preservation (dict/list/tuple structure maintained)

    Attributes:
        MIN_SECRET_LENGTH: Length from which a secret is also matched inside longer words
        MIN_TOKEN_LENGTH: Shortest string that is learned at all
        REDACTION_MARKER: Replacement text for secret values
    """

    MIN_SECRET_LENGTH = 8
    MIN_TOKEN_LENGTH = 4

    REDACTION_MARKER = "<redacted>"

    def __init__(self) -> None:
        self._secrets: set[str] = set()
        self.redaction_patterns: list[re.Pattern[str]] = []

    def add_secret(self, value: Any) -> None:  # noqa: ANN401
        """Register a secret value (strings found anywhere inside it are scrubbed)."""
        added = False
        for text, numeric in _leaves(value):
            if text in self._secrets or len(text) < self.MIN_TOKEN_LENGTH:
                continue
            if numeric and len(text) < self.MIN_SECRET_LENGTH:
                continue
            self._secrets.add(text)
            added = True
        if added:
            self._compile_redaction_patterns()

    def _compile_redaction_patterns(self) -> None:
        # Longest first so a secret containing another secret is matched whole
        ordered = sorted(self._secrets, key=len, reverse=True)
        self.redaction_patterns = [_pattern(secret, self.MIN_SECRET_LENGTH) for secret in ordered]

    def redact(self, data: Any) -> Any:  # noqa: ANN401
        """Redact secrets from any data structure, preserving its shape."""
        if isinstance(data, str):
            return self._redact_string(data)
        if isinstance(data, dict):
            return {key: self.redact(value) for key, value in data.items()}
        if isinstance(data, list):
            return [self.redact(item) for item in data]
        if isinstance(data, tuple):
            return tuple(self.redact(item) for item in data)
        return data

    def _redact_string(self, text: str) -> str:
        for pattern in self.redaction_patterns:
            text = pattern.sub(self.REDACTION_MARKER, text)
        return text

    @property
    def secret_count(self) -> int:
        """Number of distinct values being redacted."""
        return len(self._secrets)


class RedactingFilter(logging.Filter):
    """Logging filter that scrubs known secrets from every record it sees.

    Example:
        handler.addFilter(RedactingFilter(engine.redactor))
    """

    def __init__(self, redactor: SecretRedactor) -> None:
        super().__init__()
        self.redactor = redactor

    def filter(self, record: logging.LogRecord) -> bool:
        if self.redactor.secret_count:
            record.msg = self.redactor.redact(record.getMessage())
            record.args = None
        return True


# Characters that continue a token (words, hostnames, paths, ARNs, emails)
_TOKEN_CHARS = r"\w.:/@+-"


def _pattern(secret: str, min_length: int) -> re.Pattern[str]:
    escaped = re.escape(secret)
    if len(secret) >= min_length:
        return re.compile(escaped)
    return re.compile(rf"(?<![{_TOKEN_CHARS}]){escaped}(?![{_TOKEN_CHARS}])")


def _leaves(value: Any) -> list[tuple[str, bool]]:  # noqa: ANN401
    """Strings inside value, each flagged True when it came from a number."""
    if isinstance(value, str):
        return [(value, False)]
    if isinstance(value, dict):
        return [leaf for item in value.values() for leaf in _leaves(item)]
    if isinstance(value, (list, tuple)):
        return [leaf for item in value for leaf in _leaves(item)]
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return [(str(value), True)]
    return []


__all__ = ["SecretRedactor", "RedactingFilter"]
