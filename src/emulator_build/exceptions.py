"""Exceptions raised while building an emulator.

Every build outcome other than success is one of these. The orchestrator turns any
`EmulatorBuildError` raised by a stage into the terminal `Failed(stage, cause)` state.
"""

from __future__ import annotations


class EmulatorBuildError(Exception):
    """Base class for all emulator build errors."""


class InvalidSpecError(EmulatorBuildError, ValueError):
    """The emulator specification is malformed."""


class InvalidDomainError(InvalidSpecError):
    """A parameter domain (or sample request) is empty, inverted or not finite."""


####################################################################################################################
# Solver execution
####################################################################################################################
class ExecutionError(EmulatorBuildError):
    """Solver invocation failed.

    Attributes:
        message: Description of the failure.
        kind: Either "transient" or "permanent".
    """

    kind = "unknown"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class TransientExecutionError(ExecutionError):
    """Retryable failure (timeout, infrastructure hiccup, ...)."""

    kind = "transient"


class PermanentExecutionError(ExecutionError):
    """The solver rejects the parameter point. Retrying will not help."""

    kind = "permanent"


####################################################################################################################
# Training set, training and evaluation
####################################################################################################################
class TrainingSetDegradedError(EmulatorBuildError):
    """Too many samples failed to evaluate to train on the rest."""

    def __init__(self, message: str, n_failed: int = 0, n_total: int = 0) -> None:
        super().__init__(message)
        self.n_failed = n_failed
        self.n_total = n_total


class TrainingError(EmulatorBuildError):
    """Model fitting failed."""


class TrainingSetTooSmallError(TrainingError):
    """Not enough examples to fit (or evaluate) the declared model."""


class TrainingDivergedError(TrainingError):
    """The training objective diverged or never improved."""


class AccuracyBelowThresholdError(EmulatorBuildError):
    """The trained emulator does not meet the declared accuracy bound."""

    def __init__(self, message: str, max_relative_error: float = float("nan")) -> None:
        super().__init__(message)
        self.max_relative_error = max_relative_error


# Name used in the build documentation and reports
AccuracyBelowThreshold = AccuracyBelowThresholdError


class BuildCancelledError(EmulatorBuildError):
    """The build was cancelled cooperatively."""


####################################################################################################################
# Artifacts
####################################################################################################################
class PackagingIOError(EmulatorBuildError, OSError):
    """Writing (or reading) an artifact failed."""


class ArtifactIntegrityError(EmulatorBuildError):
    """An artifact's contents do not match its identity."""


class ArtifactNotFoundError(EmulatorBuildError, KeyError):
    """No artifact matches the requested identifier."""

    def __str__(self) -> str:
        # KeyError quotes its message by default
        return str(self.args[0]) if self.args else ""
