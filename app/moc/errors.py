"""
Workflow error taxonomy.

Every engine operation fails with one of these. They are local and
synchronous; the engine never retries them (ConcurrentModification is raised
only after the engine's own retries are exhausted). The HTTP layer maps
`status_code`/`code` onto the JSON error body.
"""

from __future__ import annotations


class WorkflowError(Exception):
    status_code = 400
    code = "workflow_error"

    def __init__(self, message: str = "") -> None:
        super().__init__(message or self.code)
        self.message = message or self.code

    def to_dict(self) -> dict:
        return {"error": self.code, "message": self.message}


class NotFound(WorkflowError):
    status_code = 404
    code = "not_found"


class UnknownActor(NotFound):
    code = "unknown_actor"


class PermissionDenied(WorkflowError):
    status_code = 403
    code = "permission_denied"


class InvalidTransition(WorkflowError):
    status_code = 409
    code = "invalid_transition"


class StepAlreadyDecided(WorkflowError):
    status_code = 409
    code = "step_already_decided"


class ValidationError(WorkflowError):
    status_code = 400
    code = "validation_error"


class ConcurrentModification(WorkflowError):
    status_code = 409
    code = "concurrent_modification"
