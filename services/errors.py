# User value: This file gives every coordination failure a stable code so users see one clear outcome per job.
from typing import Optional


class CoordinatorError(Exception):
    error_code = "COORDINATOR_ERROR"
    retryable = False

    def __init__(self, error_message: str = "", *, job_id: Optional[str] = None, error_code: Optional[str] = None):
        self.error_message = error_message or self.__class__.__name__
        self.job_id = job_id
        if error_code:
            self.error_code = error_code
        super().__init__(self.error_message)

    def to_detail(self) -> dict:
        detail = {"error_code": self.error_code, "error_message": self.error_message}
        if self.job_id:
            detail["job_id"] = self.job_id
        return detail


class TransientDispatchError(CoordinatorError):
    """Processor unreachable, 5xx or 429. Retried, then surfaced."""

    error_code = "DISPATCH_TRANSIENT"
    retryable = True

    def __init__(self, error_message: str = "", *, job_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(error_message, job_id=job_id)
        self.status_code = status_code


class DispatchRejected(CoordinatorError):
    error_code = "DISPATCH_REJECTED"

    def __init__(self, error_message: str = "", *, job_id: Optional[str] = None, status_code: Optional[int] = None):
        super().__init__(error_message, job_id=job_id)
        self.status_code = status_code


class EligibilityDenied(CoordinatorError):
    error_code = "ELIGIBILITY_DENIED"

    def __init__(self, error_message: str = "", *, reason: str = "", credits_required: int = 0, credits_available: int = 0):
        super().__init__(error_message or "Analysis not available")
        self.reason = reason
        self.credits_required = credits_required
        self.credits_available = credits_available

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail.update(
            reason=self.reason,
            credits_required=self.credits_required,
            credits_available=self.credits_available,
        )
        return detail


class InvalidResult(CoordinatorError):
    """Job says completed but the payload is empty. No credit is charged."""

    error_code = "INVALID_RESULT"


class JobFailed(CoordinatorError):
    error_code = "JOB_FAILED"


class ReclaimedJob(CoordinatorError):
    """The job record disappeared, normally because the reaper deleted it."""

    error_code = "JOB_RECLAIMED"


class NotificationChannelDegraded(CoordinatorError):
    error_code = "PUSH_DEGRADED"
    retryable = True


class JobNotFound(CoordinatorError):
    error_code = "JOB_NOT_FOUND"


class StateConflict(CoordinatorError):
    error_code = "STATE_CONFLICT"
