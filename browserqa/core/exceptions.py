"""
Base exception classes for browserqa.

Provides a hierarchy of exceptions for the error categories that can occur
while running browser tests: configuration problems, provider transport
failures, exhausted rate budgets, invalid requests, and persistence issues.
"""

from typing import Optional, Dict, Any


class BrowserQAError(Exception):
    """Base exception class for all browserqa errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class ConfigurationError(BrowserQAError):
    """Raised when a required credential or setting is missing. Never retried."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        setting: Optional[str] = None,
    ):
        super().__init__(message, "CONFIGURATION_ERROR")
        self.provider = provider
        self.setting = setting
        self.context.update(
            {
                "provider": provider,
                "setting": setting,
            }
        )


class ProviderError(BrowserQAError):
    """Raised when a remote automation provider cannot be reached or rejects a call."""

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
    ):
        super().__init__(message, "PROVIDER_ERROR")
        self.provider = provider
        self.status_code = status_code
        self.context.update(
            {
                "provider": provider,
                "status_code": status_code,
            }
        )


class RateLimitError(BrowserQAError):
    """Raised when a caller exceeds the request budget for an operation."""

    def __init__(
        self,
        message: str,
        key: Optional[str] = None,
        limit: Optional[int] = None,
        window_seconds: Optional[float] = None,
    ):
        super().__init__(message, "RATE_LIMITED")
        self.key = key
        self.limit = limit
        self.window_seconds = window_seconds
        self.context.update(
            {
                "key": key,
                "limit": limit,
                "window_seconds": window_seconds,
            }
        )


class ValidationError(BrowserQAError):
    """Raised when validation fails."""

    def __init__(
        self,
        message: str,
        validation_type: Optional[str] = None,
        violations: Optional[list] = None,
    ):
        super().__init__(message, "VALIDATION_FAILED")
        self.validation_type = validation_type
        self.violations = violations or []
        self.context.update(
            {
                "validation_type": validation_type,
                "violations": violations,
            }
        )


class NotFoundError(BrowserQAError):
    """Raised when a referenced project, account, or run does not exist."""

    def __init__(
        self,
        message: str,
        resource_type: Optional[str] = None,
        resource_id: Optional[str] = None,
    ):
        super().__init__(message, "NOT_FOUND")
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.context.update(
            {
                "resource_type": resource_type,
                "resource_id": resource_id,
            }
        )


class StateStoreError(BrowserQAError):
    """Raised when team state cannot be loaded or saved."""

    def __init__(
        self,
        message: str,
        team_id: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message, "STATE_STORE_FAILED")
        self.team_id = team_id
        self.operation = operation
        self.context.update(
            {
                "team_id": team_id,
                "operation": operation,
            }
        )


class ModelError(BrowserQAError):
    """Raised when the text-generation model fails or returns unusable output."""

    def __init__(
        self,
        message: str,
        model_name: Optional[str] = None,
        task_type: Optional[str] = None,
    ):
        super().__init__(message, "MODEL_ERROR")
        self.model_name = model_name
        self.task_type = task_type
        self.context.update(
            {
                "model_name": model_name,
                "task_type": task_type,
            }
        )
