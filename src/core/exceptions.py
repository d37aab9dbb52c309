"""
Core Exceptions
================

Custom exceptions for the application following clean architecture principles.

These exceptions define domain-specific errors that can be caught and handled
appropriately at the application boundaries.
"""

from typing import Optional


class ApplicationException(Exception):
    """Base exception for all application errors."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, details: Optional[dict] = None):
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict:
        """Error body for API responses."""
        body = {"code": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return {"error": body}


class DomainException(ApplicationException):
    """Base exception for domain logic violations."""


class RepositoryException(ApplicationException):
    """Base exception for repository/data access errors."""

    code = "DATABASE_ERROR"


class ValidationException(DomainException):
    """Exception for validation errors."""

    code = "VALIDATION_ERROR"
    status_code = 400


class InvalidStatusTransitionException(ValidationException):
    """Requested status is not a legal successor of the current one."""

    code = "INVALID_STATUS_TRANSITION"

    def __init__(self, current_status: str, requested_status: str):
        self.current_status = current_status
        self.requested_status = requested_status
        super().__init__(
            f"Invalid status transition from '{current_status}' to '{requested_status}'",
            {"from": current_status, "to": requested_status}
        )


class ResourceNotFoundException(ApplicationException):
    """Exception when a requested resource is not found."""

    code = "NOT_FOUND"
    status_code = 404

    def __init__(
        self,
        resource_type: str,
        resource_id: Optional[str] = None,
        details: Optional[dict] = None
    ):
        self.resource_type = resource_type
        self.resource_id = resource_id
        message = f"{resource_type}"
        if resource_id:
            message += f" with id '{resource_id}'"
        message += " not found"
        super().__init__(message, details)


class UnauthorizedException(ApplicationException):
    """Caller identity or shared secret missing or wrong."""

    code = "UNAUTHORIZED"
    status_code = 401


class ForbiddenException(ApplicationException):
    """Role-based rejection of an operation."""

    code = "FORBIDDEN"
    status_code = 403


class ConcurrencyConflictException(RepositoryException):
    """Another writer updated the record since it was read."""

    code = "CONFLICT"
    status_code = 409

    def __init__(self, resource_type: str, resource_id: str, expected_version: int):
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected_version = expected_version
        super().__init__(
            f"{resource_type} '{resource_id}' was modified concurrently",
            {"expected_version": expected_version}
        )


class ConfigurationException(ApplicationException):
    """Exception for configuration errors."""


class ExternalServiceException(ApplicationException):
    """Base exception for external service failures."""

    code = "EXTERNAL_SERVICE_ERROR"
    status_code = 502

    def __init__(
        self,
        service_name: str,
        message: str,
        details: Optional[dict] = None
    ):
        self.service_name = service_name
        super().__init__(f"{service_name}: {message}", details)


class EventSinkException(ExternalServiceException):
    """Exception for domain event delivery failures."""

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__("Event Sink", message, details)
