"""Custom exception classes for the geocoding feedback service."""

from typing import Optional, Dict, Any


class FeedbackServiceError(Exception):
    """Base exception for feedback service errors."""

    ERROR_CODE = "FEEDBACK_001"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        """Initialize exception with message, code, and optional details.

        Args:
            message: Error message
            error_code: Optional error code override
            details: Optional dictionary with additional error details
        """
        super().__init__(message)
        self.error_code = error_code or self.ERROR_CODE
        self.details = details or {}


class ValidationError(FeedbackServiceError):
    """Raised when caller input is rejected (for example an unknown user domain)."""

    ERROR_CODE = "VALIDATION_001"


class NotFoundError(FeedbackServiceError):
    """Raised when a request id is unknown, expired or already claimed."""

    ERROR_CODE = "NOT_FOUND_001"


class StoreUnavailableError(FeedbackServiceError):
    """Raised when the Redis store cannot be reached."""

    ERROR_CODE = "STORE_UNAVAILABLE_001"


class OperationTimeoutError(FeedbackServiceError, TimeoutError):
    """Raised when a store call exceeds the configured connection timeout."""

    ERROR_CODE = "TIMEOUT_001"


class PublishError(FeedbackServiceError):
    """Raised when a feedback record could not be handed to Kafka."""

    ERROR_CODE = "PUBLISH_001"

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        request_id: Optional[str] = None,
        record: Optional[Dict[str, Any]] = None
    ):
        """Initialize with the record that failed to publish."""
        super().__init__(message, error_code)
        self.request_id = request_id
        self.record = record
        self.details["request_id"] = request_id
        self.details["record"] = record


class ConfigurationError(FeedbackServiceError):
    """Raised when configuration is invalid."""

    ERROR_CODE = "CONFIG_001"
