"""
Domain Errors

Every service in the package raises a TeachSparkError subclass. The API layer
turns them into the standard error envelope:

    {"success": false, "error": {"message": ..., "code": ..., "userMessage": ..., "details": ...}}
"""

from typing import Any, Dict, Optional


USER_MESSAGES = {
    "VALIDATION_ERROR": "Please check your input and try again.",
    "NOT_FOUND": "The requested resource was not found.",
    "BATCH_NOT_FOUND": "Batch edit not found.",
    "LESSON_NOT_FOUND": "Lesson not found.",
    "SLIDE_NOT_FOUND": "Slide not found.",
    "CONFIG_NOT_FOUND": "Saved configuration not found.",
    "MISSING_NAME": "Please give the configuration a name.",
    "MISSING_AGE_GROUP": "Please choose an age group.",
    "MISSING_FORM_VALUES": "Please fill in the generation form first.",
    "GENERATION_LIMIT_REACHED": "You have reached your generation limit.",
    "CONFIG_ERROR": "Service configuration error. Please contact support.",
    "PARSE_ERROR": "Failed to process AI response. Please try again.",
    "GENERATION_ERROR": "Failed to generate content. Please try again.",
    "INVALID_SIGNATURE": "Invalid payment signature.",
}


class TeachSparkError(Exception):
    """Base error carrying an HTTP status and a machine-readable code."""

    status_code = 500
    code = "INTERNAL_ERROR"

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        if code:
            self.code = code
        if status_code:
            self.status_code = status_code
        self.details = details

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, "An unexpected error occurred.")

    def to_dict(self) -> Dict[str, Any]:
        error = {"message": self.message, "code": self.code, "userMessage": self.user_message}
        if self.details is not None:
            error["details"] = self.details
        return {"success": False, "error": error}


class ValidationError(TeachSparkError):
    status_code = 400
    code = "VALIDATION_ERROR"


class NotFoundError(TeachSparkError):
    status_code = 404
    code = "NOT_FOUND"


class GenerationLimitError(TeachSparkError):
    status_code = 403
    code = "GENERATION_LIMIT_REACHED"


class ConfigurationError(TeachSparkError):
    status_code = 500
    code = "CONFIG_ERROR"


class ParseError(TeachSparkError):
    status_code = 500
    code = "PARSE_ERROR"


class GenerationError(TeachSparkError):
    status_code = 500
    code = "GENERATION_ERROR"


class PaymentSignatureError(TeachSparkError):
    status_code = 400
    code = "INVALID_SIGNATURE"
