"""CLI logging setup: level-tagged message format for the deploy command."""

import logging
import sys

from hostdeploy.redact import SecretRedactingFilter

_LEVEL_TAGS = {
    logging.DEBUG: "DEBUG",
    logging.INFO: "INFO",
    logging.WARNING: "WARN",
    logging.ERROR: "ERROR",
    logging.CRITICAL: "ERROR",
}


class LevelTagFormatter(logging.Formatter):
    """Prefix each message with a short tag such as [INFO] or [WARN]."""

    def format(self, record: logging.LogRecord) -> str:
        tag = _LEVEL_TAGS.get(record.levelno, record.levelname)
        return f"[{tag}] {super().format(record)}"


def setup_cli_logging(verbose=False):
    """Configure root logger for the CLI.

    All output goes to stdout so that the deploy log reads top to bottom
    in one stream.
    """
    root = logging.getLogger()
    root.setLevel(logging.DEBUG if verbose else logging.INFO)
    root.handlers.clear()
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(LevelTagFormatter("%(message)s"))
    handler.addFilter(SecretRedactingFilter())
    root.addHandler(handler)
