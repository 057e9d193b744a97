"""
Error taxonomy for job orchestration.

Every error carries a stable ``kind`` that callers can branch on and a
human-readable message. The HTTP layer maps kinds to status codes.
"""


class JobError(Exception):
    """Base exception for all job orchestration failures."""

    kind = "job_error"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class NotConfiguredError(JobError):
    """Raised when a required collaborator (object store, engine) is unavailable."""

    kind = "not_configured"

    def __init__(self, component: str, hint: str | None = None):
        self.component = component
        message = f"{component} is not configured"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class JobNotFoundError(JobError):
    """Raised when a job does not exist or is not visible to the caller."""

    kind = "not_found"

    def __init__(self, job_id):
        self.job_id = str(job_id)
        super().__init__(f"Job not found: {self.job_id}")


class ObjectNotFoundError(JobError):
    """Raised when an expected blob is absent from the object store."""

    kind = "not_found"

    def __init__(self, key: str):
        self.key = key
        super().__init__(
            f"No uploaded object found at '{key}'. "
            "The direct upload may not have completed; retry the confirmation once it has."
        )


class ConflictError(JobError):
    """Raised when an operation is not allowed in the job's current state."""

    kind = "conflict"

    def __init__(self, job_id, current_status: str, operation: str):
        self.job_id = str(job_id)
        self.current_status = current_status
        self.operation = operation
        super().__init__(f"Cannot {operation} job {self.job_id} while it is {current_status}")


class InvalidRequestError(JobError):
    """Raised for disallowed file types, content types or profiles."""

    kind = "validation_error"


class UpstreamError(JobError):
    """Raised when the object store or transcoding engine fails."""

    kind = "upstream_failure"

    def __init__(self, component: str, reason: str):
        self.component = component
        self.reason = reason
        super().__init__(f"{component} failure: {reason}")
