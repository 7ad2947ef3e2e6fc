from __future__ import annotations

from typing import Any, Dict


class PipelineError(Exception):
    """Base class for failures that end a generation job."""

    def __init__(self, message: str, debug_data: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.debug_data = debug_data


class InputError(PipelineError):
    """Missing or invalid user data needed to start a run."""


class GenerationError(PipelineError):
    """The generation service was unreachable or returned an unusable payload."""

    def __init__(self, stage: str, message: str, raw_response: str | None = None) -> None:
        super().__init__(message)
        self.stage = stage
        self.raw_response = raw_response

    def as_debug_payload(self) -> Dict[str, Any]:
        return {
            "stage": self.stage,
            "error": self.message,
            "raw_response": self.raw_response,
        }


class PersistenceError(PipelineError):
    """A datastore write needed by the plan did not go through."""


class JobTransitionError(Exception):
    """Raised when a job status change would move the state machine backwards."""

    def __init__(self, job_id: str, current: str, requested: str) -> None:
        super().__init__(f"Job {job_id} cannot move from '{current}' to '{requested}'")
        self.job_id = job_id
        self.current = current
        self.requested = requested


class BatchPrepConflictError(Exception):
    """A batch prep transformation is already generating for the plan."""


class BatchPrepUnavailableError(Exception):
    """The plan has no day-of prep schedule to transform."""
