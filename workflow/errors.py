"""Error kinds raised by the request workflow.

Pre-condition failures (NotFound, Forbidden, IllegalTransition,
ValidationFailed) and Conflict are raised before anything is written.
SideEffectFailed is raised after the status change has been committed and
carries the committed record.
"""


class WorkflowError(Exception):
    code = "WORKFLOW_ERROR"
    http_status = 400

    def __init__(self, message=None, *, record=None, details=None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.record = record
        self.details = details or {}

    def to_dict(self):
        payload = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class NotFound(WorkflowError):
    code = "NOT_FOUND"
    http_status = 404


class UnknownKind(NotFound):
    code = "UNKNOWN_KIND"


class Forbidden(WorkflowError):
    code = "FORBIDDEN"
    http_status = 403


class IllegalTransition(WorkflowError):
    code = "ILLEGAL_TRANSITION"
    http_status = 409


class Conflict(WorkflowError):
    code = "CONFLICT"
    http_status = 409


class ValidationFailed(WorkflowError):
    code = "VALIDATION_FAILED"
    http_status = 422


class SideEffectFailed(WorkflowError):
    code = "SIDE_EFFECT_FAILED"
    http_status = 502
