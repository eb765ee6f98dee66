"""
Error classes for the job controller.

Validation and state errors are raised straight to the caller (the API layer
maps them to HTTP status codes). Skill failures are wrapped in ExecutionError
and caught at the step boundary, where they become the step's log.

Error handling contract:
- Checks happen before any write, so a raised error means no state change
- Retries are always caller-initiated, never automatic
"""

from typing import Optional


class ControllerError(Exception):
    """Base exception for the job controller."""
    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ControllerError):
    """
    Malformed input.

    Examples:
    - Plan with no steps
    - Step bound to an unknown skill
    - Unknown plan id on dispatch
    - Invalid skill policy value
    """
    status_code = 422


class NotFoundError(ControllerError):
    """Unknown job, approval, skill or step number."""
    status_code = 404


class ConflictError(ControllerError):
    """Request conflicts with current state (e.g. approval already resolved)."""
    status_code = 409


class InvalidStateError(ConflictError):
    """
    Operation attempted against a JobStep or Job not in the required state.

    Retrying a step that is not failed raises this; it is a ConflictError so
    callers that only distinguish conflicts still handle it.
    """
    status_code = 409


class ExecutionError(ControllerError):
    """
    Skill Executor failure, wrapping the underlying cause.

    Never escapes the orchestrator: the step is marked failed and the
    message becomes the step log.
    """
    status_code = 502

    def __init__(self, skill_id: str, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.skill_id = skill_id
        self.cause = cause
