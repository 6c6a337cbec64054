from __future__ import annotations


class WorkflowError(RuntimeError):
    """Base for every failure the workflow layer reports to callers.

    ``code`` is stable and meant for branching; ``message`` is for humans.
    """

    code = "WORKFLOW_ERROR"
    status = 500

    def __init__(self, message: str = "", *, details: dict | None = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details = dict(details or {})

    def to_payload(self) -> dict:
        payload = {
            "ok": False,
            "error": self.code,
            "message": self.message,
            "status": int(self.status),
        }
        if self.details:
            payload["details"] = self.details
        return payload


class InvalidInput(WorkflowError):
    code = "INVALID_INPUT"
    status = 400


class Unauthorized(WorkflowError):
    code = "UNAUTHORIZED"
    status = 401


class Forbidden(WorkflowError):
    code = "FORBIDDEN"
    status = 403


class NotFound(WorkflowError):
    code = "NOT_FOUND"
    status = 404


class InvalidTransition(WorkflowError):
    code = "INVALID_TRANSITION"
    status = 409


class IdempotencyConflict(InvalidTransition):
    """An idempotency key was reused for a different action or actor."""

    code = "IDEMPOTENCY_CONFLICT"


class PaymentNotVerified(WorkflowError):
    code = "PAYMENT_NOT_VERIFIED"
    status = 409


class StorageFailure(WorkflowError):
    """Commit failed; nothing was persisted and the call may be retried."""

    code = "STORAGE_FAILURE"
    status = 500
