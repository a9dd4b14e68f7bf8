from typing import Any


class AdmissionError(Exception):
    """A generation request rejected before any job was created."""

    code = "ADMISSION_ERROR"
    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message, "details": self.details}


class InvalidInput(AdmissionError):
    code = "INVALID_INPUT"
    status_code = 400


class Unauthenticated(AdmissionError):
    code = "UNAUTHENTICATED"
    status_code = 401


class InsufficientCredits(AdmissionError):
    code = "NO_CREDITS"
    status_code = 402


class Forbidden(AdmissionError):
    code = "FORBIDDEN"
    status_code = 403


class NotFound(AdmissionError):
    code = "NOT_FOUND"
    status_code = 404


class RateLimitExceeded(AdmissionError):
    code = "RATE_LIMIT_EXCEEDED"
    status_code = 429

    def __init__(self, message: str, details: dict[str, Any], headers: dict[str, str]) -> None:
        super().__init__(message, details)
        self.headers = headers
