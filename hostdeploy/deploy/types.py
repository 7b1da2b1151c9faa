"""Step results and errors shared by the deploy stages."""

import enum
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


class Severity(enum.Enum):
    OK = "ok"
    SKIPPED = "skipped"
    WARNING = "warning"
    FATAL = "fatal"


class DeployError(Exception):
    """A fatal deployment condition. Stops the run."""

    def __init__(self, step, message):
        super().__init__(message)
        self.step = step
        self.message = message

    def __str__(self):
        return f"{self.step}: {self.message}"


@dataclass(frozen=True)
class StepResult:
    """Outcome of one provisioning action, tagged with its severity."""

    step: str
    severity: Severity
    message: str = ""

    @classmethod
    def ok(cls, step, message=""):
        return cls(step, Severity.OK, message)

    @classmethod
    def skipped(cls, step, message=""):
        return cls(step, Severity.SKIPPED, message)

    @classmethod
    def warning(cls, step, message):
        return cls(step, Severity.WARNING, message)

    @classmethod
    def fatal(cls, step, message):
        return cls(step, Severity.FATAL, message)


def report(results):
    """Log a batch of step results; raise DeployError on the first fatal one.

    Returns the results unchanged so callers can inspect them.
    """
    for result in results:
        if result.severity in (Severity.OK, Severity.SKIPPED):
            if result.message:
                logger.info(result.message)
        elif result.severity is Severity.WARNING:
            logger.warning(result.message)
        else:
            raise DeployError(result.step, result.message)
    return results
