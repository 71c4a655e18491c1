"""
Error taxonomy for the analysis pipeline.

Every error carries a machine-readable ``code`` and the HTTP status the API
layer renders it with. ``retryable`` marks the classes the orchestrator (or a
provider chain) is allowed to retry.
"""
from __future__ import annotations


class PipelineError(Exception):
    """Base class for all pipeline errors."""
    code: str = "INTERNAL_ERROR"
    status_code: int = 500
    retryable: bool = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict[str, str]:
        return {"error": self.message, "code": self.code}


class ConflictError(PipelineError):
    """Another job for the same (account, subject) is still in flight."""
    code = "DUPLICATE_ANALYSIS"
    status_code = 409

    def __init__(self, message: str = "Analysis already in progress for this profile", existing_job_id: str | None = None):
        super().__init__(message)
        self.existing_job_id = existing_job_id

    def to_dict(self) -> dict[str, str]:
        data = super().to_dict()
        if self.existing_job_id:
            data["existing_job_id"] = self.existing_job_id
        return data


class PaymentRequiredError(PipelineError):
    code = "INSUFFICIENT_BALANCE"
    status_code = 402


class ReservationRefundedError(PipelineError):
    """The job's credits were already refunded; it must not run again."""
    code = "RESERVATION_REFUNDED"
    status_code = 409


class NotFoundError(PipelineError):
    code = "NOT_FOUND"
    status_code = 404


class ProviderPermanentError(PipelineError):
    """Subject-level condition (private, missing, forbidden). Aborts the fetch chain."""
    code = "PROFILE_UNAVAILABLE"
    status_code = 422


class ProviderTransientError(PipelineError):
    """Retryable fetch failure (timeout, 5xx, empty payload)."""
    code = "PROVIDER_UNAVAILABLE"
    status_code = 503
    retryable = True


class SchemaValidationError(PipelineError):
    """Generated output did not match the score schema."""
    code = "INVALID_MODEL_OUTPUT"
    status_code = 502


class InternalError(PipelineError):
    code = "INTERNAL_ERROR"
    status_code = 500


class ResultNotReadyError(PipelineError):
    code = "TOO_EARLY"
    status_code = 425


class InvalidRequestError(PipelineError):
    code = "INVALID_REQUEST"
    status_code = 400


# ─── Progress Actor ──────────────────────────────────────────────────────────

class AlreadyInitializedError(PipelineError):
    code = "PROGRESS_ALREADY_INITIALIZED"
    status_code = 409


class NotInitializedError(PipelineError):
    code = "PROGRESS_NOT_INITIALIZED"
    status_code = 404


class JobCancelledError(PipelineError):
    code = "JOB_CANCELLED"
    status_code = 409
