from typing import Any, Dict, List, Optional
from graph.models import SubmissionStage

class IntakeError(Exception):
    """Base class for every failure the intake flow reports to its callers."""

    code = "INTAKE_ERROR"
    status_code = 500

    def __init__(self, message: str, stage: Optional[SubmissionStage] = None):
        super().__init__(message)
        self.message = message
        self.stage = stage

    def to_dict(self) -> Dict[str, Any]:
        body = {
            "status": "error",
            "code": self.code,
            "stage": self.stage.value if self.stage else None,
            "message": self.message,
        }
        return body

# Token errors: terminal for the token, never retried

class TokenError(IntakeError):
    code = "INVALID_TOKEN"
    status_code = 401

class TokenNotFound(TokenError):
    code = "TOKEN_NOT_FOUND"
    status_code = 404

class TokenExpired(TokenError):
    code = "TOKEN_EXPIRED"
    status_code = 410

class TokenAlreadyConsumed(TokenError):
    code = "TOKEN_ALREADY_CONSUMED"
    status_code = 409

# Validation errors: caller mistakes, never retried

class FormValidationError(IntakeError):
    code = "VALIDATION_ERROR"
    status_code = 422

class PhoneMismatch(FormValidationError):
    code = "PHONE_MISMATCH"
    status_code = 403

class MissingRequiredField(FormValidationError):
    code = "MISSING_REQUIRED_FIELD"

    def __init__(self, fields: List[str], stage: Optional[SubmissionStage] = None):
        super().__init__(f"Missing required fields: {', '.join(fields)}", stage)
        self.fields = fields

class InvalidFieldValue(FormValidationError):
    code = "INVALID_FIELD_VALUE"

    def __init__(self, field: str, reason: str, stage: Optional[SubmissionStage] = None):
        super().__init__(f"Invalid value for {field}: {reason}", stage)
        self.field = field

class InvalidPhoneNumber(FormValidationError):
    code = "INVALID_PHONE_NUMBER"

# Store errors: reported with the stage reached, safe to retry the whole submission

class StoreError(IntakeError):
    code = "STORE_ERROR"
    status_code = 503

    def __init__(self, message: str, store: str, stage: Optional[SubmissionStage] = None):
        super().__init__(message, stage)
        self.store = store

    def to_dict(self) -> Dict[str, Any]:
        body = super().to_dict()
        body["store"] = self.store
        return body

class StoreUnavailable(StoreError):
    code = "STORE_UNAVAILABLE"

class StoreConflict(StoreError):
    code = "STORE_CONFLICT"
    status_code = 409

# Classification errors: processing bugs, partial writes are not rolled back

class ClassificationError(IntakeError):
    code = "CLASSIFICATION_ERROR"

class MalformedInput(ClassificationError):
    code = "MALFORMED_INPUT"
