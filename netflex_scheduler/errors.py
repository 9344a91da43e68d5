from typing import Optional


class SchedulerError(Exception):
    """Base error for the scheduler bridge. Carries the HTTP status it maps to."""

    status_code = 500
    reason = "error"

    def __init__(self, message: str, job_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.job_id = job_id


class AuthenticationFailure(SchedulerError):
    status_code = 400
    reason = "authentication"


class VerificationFailure(AuthenticationFailure):
    NO_MATCHING_KEY = "NoMatchingKey"
    EXPIRED = "Expired"
    MALFORMED = "Malformed"

    def __init__(self, kind: str, message: str, job_id: Optional[str] = None):
        super().__init__(message, job_id=job_id)
        self.kind = kind


class ReplayDetected(SchedulerError):
    status_code = 400
    reason = "replay"


class StaleRequest(SchedulerError):
    status_code = 400
    reason = "stale"


class DeserializationFailure(SchedulerError):
    reason = "deserialization"


class ExecutionFailure(SchedulerError):
    reason = "execution"


class DispatchFailure(SchedulerError):
    status_code = 502
    reason = "dispatch"


class ConfigurationFailure(SchedulerError):
    reason = "configuration"
