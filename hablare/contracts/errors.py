"""
Error taxonomy for generation requests.

Every failure that crosses the orchestration boundary is a ServiceError
subclass tagged with a closed ErrorKind. Retry behaviour is decided from the
kind through an explicit table, never by matching on messages.

Exceptions that are not ServiceErrors are treated as retryable (fail open).
"""

from __future__ import annotations

from enum import Enum


class ErrorCategory(str, Enum):
    CONFIGURATION = "configuration"
    NETWORK = "network"
    PROVIDER = "provider"
    DATA = "data"
    STORAGE = "storage"
    OPERATION = "operation"


class ErrorKind(str, Enum):
    CONFIGURATION = "configuration"
    INVALID_API_KEY = "invalid_api_key"
    MISSING_CREDENTIALS = "missing_credentials"
    NETWORK = "network"
    TIMEOUT = "timeout"
    CONNECTION_FAILED = "connection_failed"
    PROVIDER = "provider"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    AUTHENTICATION_FAILED = "authentication_failed"
    INVALID_REQUEST = "invalid_request"
    VALIDATION = "validation"
    UNEXPECTED_RESPONSE_FORMAT = "unexpected_response_format"
    DATA_CONVERSION = "data_conversion"
    DATA_BINDING = "data_binding"
    PERSISTENCE = "persistence"
    MODEL_NOT_FOUND = "model_not_found"
    UNSUPPORTED_OPERATION = "unsupported_operation"
    CANCELLED = "cancelled"


# Retry classification. Provider errors are treated as possibly transient;
# this is a tunable policy, not a guarantee about the provider.
RETRYABLE_KINDS: dict[ErrorKind, bool] = {
    ErrorKind.NETWORK: True,
    ErrorKind.RATE_LIMIT_EXCEEDED: True,
    ErrorKind.TIMEOUT: True,
    ErrorKind.CONNECTION_FAILED: True,
    ErrorKind.PERSISTENCE: True,
    ErrorKind.MODEL_NOT_FOUND: True,
    ErrorKind.PROVIDER: True,
    ErrorKind.CONFIGURATION: False,
    ErrorKind.INVALID_API_KEY: False,
    ErrorKind.MISSING_CREDENTIALS: False,
    ErrorKind.AUTHENTICATION_FAILED: False,
    ErrorKind.VALIDATION: False,
    ErrorKind.UNSUPPORTED_OPERATION: False,
    ErrorKind.INVALID_REQUEST: False,
    ErrorKind.DATA_BINDING: False,
    ErrorKind.UNEXPECTED_RESPONSE_FORMAT: False,
    ErrorKind.DATA_CONVERSION: False,
    ErrorKind.CANCELLED: False,
}

_CATEGORIES: dict[ErrorKind, ErrorCategory] = {
    ErrorKind.CONFIGURATION: ErrorCategory.CONFIGURATION,
    ErrorKind.INVALID_API_KEY: ErrorCategory.CONFIGURATION,
    ErrorKind.MISSING_CREDENTIALS: ErrorCategory.CONFIGURATION,
    ErrorKind.NETWORK: ErrorCategory.NETWORK,
    ErrorKind.TIMEOUT: ErrorCategory.NETWORK,
    ErrorKind.CONNECTION_FAILED: ErrorCategory.NETWORK,
    ErrorKind.PROVIDER: ErrorCategory.PROVIDER,
    ErrorKind.RATE_LIMIT_EXCEEDED: ErrorCategory.PROVIDER,
    ErrorKind.AUTHENTICATION_FAILED: ErrorCategory.PROVIDER,
    ErrorKind.INVALID_REQUEST: ErrorCategory.PROVIDER,
    ErrorKind.VALIDATION: ErrorCategory.DATA,
    ErrorKind.UNEXPECTED_RESPONSE_FORMAT: ErrorCategory.DATA,
    ErrorKind.DATA_CONVERSION: ErrorCategory.DATA,
    ErrorKind.DATA_BINDING: ErrorCategory.DATA,
    ErrorKind.PERSISTENCE: ErrorCategory.STORAGE,
    ErrorKind.MODEL_NOT_FOUND: ErrorCategory.STORAGE,
    ErrorKind.UNSUPPORTED_OPERATION: ErrorCategory.OPERATION,
    ErrorKind.CANCELLED: ErrorCategory.OPERATION,
}

_RECOVERABLE_KINDS = frozenset(
    {
        ErrorKind.TIMEOUT,
        ErrorKind.CONNECTION_FAILED,
        ErrorKind.NETWORK,
        ErrorKind.RATE_LIMIT_EXCEEDED,
    }
)

_FAILURE_REASONS: dict[ErrorKind, str] = {
    ErrorKind.CONFIGURATION: "Provider is not properly configured",
    ErrorKind.INVALID_API_KEY: "API key is invalid or has been revoked",
    ErrorKind.MISSING_CREDENTIALS: "Required credentials are not available",
    ErrorKind.NETWORK: "Network request failed",
    ErrorKind.TIMEOUT: "Request timed out",
    ErrorKind.CONNECTION_FAILED: "Could not connect to service",
    ErrorKind.PROVIDER: "Service provider returned an error",
    ErrorKind.RATE_LIMIT_EXCEEDED: "API rate limit has been exceeded",
    ErrorKind.AUTHENTICATION_FAILED: "Authentication with service failed",
    ErrorKind.INVALID_REQUEST: "Request format or parameters are invalid",
    ErrorKind.VALIDATION: "Data validation failed",
    ErrorKind.UNEXPECTED_RESPONSE_FORMAT: "Response format is unexpected",
    ErrorKind.DATA_CONVERSION: "Could not convert data to expected type",
    ErrorKind.DATA_BINDING: "Could not bind data to model property",
    ErrorKind.PERSISTENCE: "Storage operation failed",
    ErrorKind.MODEL_NOT_FOUND: "Referenced model does not exist",
    ErrorKind.UNSUPPORTED_OPERATION: "Operation is not supported",
    ErrorKind.CANCELLED: "Request was cancelled",
}


class ServiceError(Exception):
    """Base class for every orchestration-level failure."""

    kind: ErrorKind = ErrorKind.PROVIDER

    def __init__(self, message: str = "") -> None:
        super().__init__(message)
        self.message = message

    @property
    def category(self) -> ErrorCategory:
        return _CATEGORIES[self.kind]

    @property
    def is_retryable(self) -> bool:
        return RETRYABLE_KINDS[self.kind]

    @property
    def is_recoverable(self) -> bool:
        """Whether simply trying again later is likely to succeed."""
        return self.kind in _RECOVERABLE_KINDS

    @property
    def retry_delay(self) -> float | None:
        """Suggested wait before retrying, in seconds, if the kind has one."""
        if self.kind in (ErrorKind.TIMEOUT, ErrorKind.CONNECTION_FAILED):
            return 5.0
        if self.kind == ErrorKind.NETWORK:
            return 2.0
        return None

    @property
    def failure_reason(self) -> str:
        return _FAILURE_REASONS[self.kind]

    @property
    def recovery_suggestion(self) -> str:
        if self.category == ErrorCategory.CONFIGURATION:
            return "Check the provider configuration and API key"
        if self.kind in (ErrorKind.NETWORK, ErrorKind.CONNECTION_FAILED):
            return "Check the network connection and try again"
        if self.kind == ErrorKind.TIMEOUT:
            return "The request is taking longer than expected. Try again or use a shorter prompt"
        if self.kind == ErrorKind.AUTHENTICATION_FAILED:
            return "Verify the API key is correct and has not expired"
        if self.kind == ErrorKind.INVALID_REQUEST:
            return "Check the request parameters and try again"
        if self.kind == ErrorKind.UNEXPECTED_RESPONSE_FORMAT:
            return "The service may have changed its response format"
        if self.category == ErrorCategory.DATA:
            return "Verify the data format matches requirements"
        if self.category == ErrorCategory.STORAGE:
            return "Check the storage backend and try again"
        if self.kind == ErrorKind.PROVIDER:
            return "Check the service status and your configuration"
        if self.kind == ErrorKind.CANCELLED:
            return "Submit the request again if the result is still needed"
        return "This operation is not yet implemented"

    def to_dict(self) -> dict[str, str | bool | None]:
        return {
            "kind": self.kind.value,
            "category": self.category.value,
            "message": self.message,
            "retryable": self.is_retryable,
        }

    def __str__(self) -> str:
        return f"{self.category.value}: {self.message}"

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.message!r})"


class ConfigurationError(ServiceError):
    kind = ErrorKind.CONFIGURATION


class InvalidAPIKeyError(ServiceError):
    kind = ErrorKind.INVALID_API_KEY


class MissingCredentialsError(ServiceError):
    kind = ErrorKind.MISSING_CREDENTIALS


class NetworkError(ServiceError):
    kind = ErrorKind.NETWORK


class RequestTimeoutError(ServiceError):
    kind = ErrorKind.TIMEOUT


class ConnectionFailedError(ServiceError):
    kind = ErrorKind.CONNECTION_FAILED


class ProviderError(ServiceError):
    kind = ErrorKind.PROVIDER

    def __init__(self, message: str = "", code: str | None = None) -> None:
        super().__init__(message)
        self.code = code


class RateLimitExceededError(ServiceError):
    kind = ErrorKind.RATE_LIMIT_EXCEEDED

    def __init__(self, message: str = "", retry_after: float | None = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after

    @property
    def retry_delay(self) -> float | None:
        return self.retry_after

    @property
    def recovery_suggestion(self) -> str:
        if self.retry_after is not None:
            return f"Wait {int(self.retry_after)} seconds before trying again"
        return "Wait a moment before trying again"


class AuthenticationFailedError(ServiceError):
    kind = ErrorKind.AUTHENTICATION_FAILED


class InvalidRequestError(ServiceError):
    kind = ErrorKind.INVALID_REQUEST


class DataValidationError(ServiceError):
    kind = ErrorKind.VALIDATION


class UnexpectedResponseFormatError(ServiceError):
    kind = ErrorKind.UNEXPECTED_RESPONSE_FORMAT


class DataConversionError(ServiceError):
    kind = ErrorKind.DATA_CONVERSION


class DataBindingError(ServiceError):
    kind = ErrorKind.DATA_BINDING


class PersistenceError(ServiceError):
    kind = ErrorKind.PERSISTENCE


class ModelNotFoundError(ServiceError):
    kind = ErrorKind.MODEL_NOT_FOUND


class UnsupportedOperationError(ServiceError):
    kind = ErrorKind.UNSUPPORTED_OPERATION


class RequestCancelledError(ServiceError):
    kind = ErrorKind.CANCELLED


def is_retryable(error: BaseException) -> bool:
    """Classify any exception for retry; unknown exception types are retryable."""
    if isinstance(error, ServiceError):
        return error.is_retryable
    return True


def as_service_error(error: BaseException) -> ServiceError:
    """Wrap a foreign exception so it can be reported through the taxonomy."""
    if isinstance(error, ServiceError):
        return error
    return NetworkError(str(error) or type(error).__name__)
