"""Centralized secret redaction for log output."""

import logging
import os
import re

# Env vars / env-file keys whose values should be redacted from all output
_SECRET_ENV_VARS = [
    "JWT_SECRET",
    "JWT_REFRESH_SECRET",
    "DB_PASS",
    "MINIO_ROOT_PASSWORD",
    "MINIO_SECRET_KEY",
]

_MIN_SECRET_LENGTH = 8  # skip short values to avoid false positives

# Values registered at runtime (e.g. loaded from the .env file)
_registered: set[str] = set()


def _collect_secret_values() -> set[str]:
    values = set()
    for var in _SECRET_ENV_VARS:
        val = os.environ.get(var, "")
        if len(val) >= _MIN_SECRET_LENGTH:
            values.add(val)
    values.update(_registered)
    return values


def _build_patterns(values: set[str]) -> list[re.Pattern]:
    # Sort by length descending so longer values match first
    return [re.compile(re.escape(v)) for v in sorted(values, key=len, reverse=True)]


# Lazy-initialized module cache
_patterns: list[re.Pattern] | None = None


def _get_patterns() -> list[re.Pattern]:
    global _patterns
    if _patterns is None:
        _patterns = _build_patterns(_collect_secret_values())
    return _patterns


def register_secrets(values: dict[str, str]) -> None:
    """Register secret values from a loaded config mapping for redaction.

    Only keys listed in _SECRET_ENV_VARS are considered.
    """
    global _patterns
    for key in _SECRET_ENV_VARS:
        val = values.get(key) or ""
        if len(val) >= _MIN_SECRET_LENGTH:
            _registered.add(val)
    _patterns = None


def redact_secrets(text: str) -> str:
    """Replace known secret values with '***'."""
    for pattern in _get_patterns():
        text = pattern.sub("***", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Logging filter that replaces secret values in log records with '***'.

    Attaches to the root handler so all records benefit.
    Handles both f-string messages (msg is pre-formatted) and
    %-style messages (msg + args).
    """

    def filter(self, record: logging.LogRecord) -> bool:
        if _get_patterns():
            record.msg = redact_secrets(str(record.msg))
            if record.args:
                if isinstance(record.args, dict):
                    record.args = {k: redact_secrets(v) if isinstance(v, str) else v for k, v in record.args.items()}
                elif isinstance(record.args, tuple):
                    record.args = tuple(redact_secrets(a) if isinstance(a, str) else a for a in record.args)
        return True
