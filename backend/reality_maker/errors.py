"""
Exception hierarchy for the Reality Maker pipeline.

Every error carries a ``retryable`` flag that the job dispatcher reads when a stage
executor raises:

- retryable errors (external tool hiccups) go back to the queue with backoff
- everything else fails the job permanently and drives the project to FAILED
"""

from __future__ import annotations

import errno
from typing import Iterable, Optional


class PipelineError(Exception):
    """Base class for all pipeline errors."""

    retryable: bool = False


class CollaboratorError(PipelineError):
    """An external tool (detector, transcriber, model, encoder) failed."""

    retryable = True


# --- Generation -------------------------------------------------------------

class NarrativeParseError(PipelineError):
    """The generative backend returned text that is not a JSON object."""


class NarrativeValidationError(PipelineError):
    """A parsed narrative is missing required fields."""

    def __init__(self, problems: Iterable[str]):
        self.problems = list(problems)
        super().__init__("; ".join(self.problems) or "Invalid narrative")


class NarrativeGenerationError(PipelineError):
    """No valid narrative after the configured number of attempts."""

    def __init__(self, attempts: int, last_error: Optional[Exception] = None):
        self.attempts = attempts
        self.last_error = last_error
        message = f"Failed to generate valid narrative after {attempts} attempts"
        if last_error is not None:
            message += f": {last_error}"
        super().__init__(message)


# --- Preconditions ----------------------------------------------------------

class PreconditionError(PipelineError):
    """The request cannot be served in the current state. Never retried."""


class ProjectNotFoundError(PreconditionError):
    def __init__(self, project_id: str):
        self.project_id = project_id
        super().__init__(f"Project {project_id} not found")


class ProjectTerminalError(PreconditionError):
    def __init__(self, project_id: str, status: str):
        self.project_id = project_id
        self.status = status
        super().__init__(f"Project {project_id} is already {status}")


class InvalidTransitionError(PreconditionError):
    def __init__(self, project_id: str, current: str, target: str):
        self.project_id = project_id
        self.current = current
        self.target = target
        super().__init__(f"Project {project_id}: cannot move from {current} to {target}")


class UnknownStageError(PreconditionError):
    def __init__(self, stage: str):
        self.stage = stage
        super().__init__(f"Queue {stage} not found")


class InvalidPayloadError(PreconditionError):
    """Job payloads may only carry identifiers."""


class SceneConflictError(PreconditionError):
    """A scene already carries different transcript data."""


# --- Resources --------------------------------------------------------------

class ResourceError(PipelineError):
    """Missing files, full disks. Never retried."""


def is_retryable(exc: BaseException) -> bool:
    """
    Classify an exception raised inside a stage executor.

    Unknown exceptions are treated as transient, the same way the queue retried
    any thrown error.
    """
    if isinstance(exc, PipelineError):
        return exc.retryable
    if isinstance(exc, FileNotFoundError):
        return False
    if isinstance(exc, OSError) and exc.errno in (errno.ENOSPC, errno.EDQUOT):
        return False
    return True
