from __future__ import annotations

from typing import Any


class ServiceError(Exception):
    """Base for every failure that maps onto a stable error envelope.

    ``message`` is the user-facing text and never carries internal detail;
    anything worth diagnosing belongs in the log line, not here.
    """

    status_code = 500
    code = "INTERNAL"
    message = "Something went wrong. Please try again."

    def __init__(self, message: str | None = None, errors: list[Any] | None = None):
        if message:
            self.message = message
        self.errors = errors
        super().__init__(self.message)


class ValidationError(ServiceError):
    status_code = 400
    code = "VALIDATION_ERROR"
    message = "Invalid request."


class DuplicateEmail(ServiceError):
    status_code = 400
    code = "DUPLICATE_EMAIL"
    message = "Email already registered"


class InvalidCredentials(ServiceError):
    status_code = 401
    code = "INVALID_CREDENTIALS"
    message = "Invalid credentials"


class Unauthenticated(ServiceError):
    status_code = 401
    code = "UNAUTHENTICATED"
    message = "Authentication required. Please log in again."


class MissingFile(ServiceError):
    status_code = 400
    code = "MISSING_FILE"
    message = "Resume file required"


class MissingJobDescription(ServiceError):
    status_code = 400
    code = "MISSING_JOB_DESCRIPTION"
    message = "Job description required"


class JobDescriptionTooShort(ServiceError):
    status_code = 400
    code = "JOB_DESCRIPTION_TOO_SHORT"
    message = "Job description too short (min 50 characters)"


class UnsupportedFileType(ServiceError):
    status_code = 400
    code = "UNSUPPORTED_FILE_TYPE"
    message = "Invalid file type. Upload a PDF or DOCX resume."


class FileTooLarge(ServiceError):
    status_code = 413
    code = "FILE_TOO_LARGE"
    message = "File too large (max 5 MB)"


class QuotaExhausted(ServiceError):
    status_code = 403
    code = "QUOTA_EXHAUSTED"
    message = "No credits remaining. Please upgrade to Pro."


class ExtractionFailed(ServiceError):
    status_code = 400
    code = "EXTRACTION_FAILED"
    message = "Unable to read this file. Upload a valid PDF or DOCX resume."


class NoTextExtracted(ServiceError):
    status_code = 400
    code = "NO_TEXT_EXTRACTED"
    message = "Could not extract text from file"


class ScoringUnavailable(ServiceError):
    status_code = 502
    code = "SCORING_UNAVAILABLE"
    message = "Analysis service is unavailable right now. Please try again."


class MalformedScoreResponse(ServiceError):
    status_code = 502
    code = "MALFORMED_SCORE_RESPONSE"
    message = "Analysis failed"


class InternalError(ServiceError):
    pass
