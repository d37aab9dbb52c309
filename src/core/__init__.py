"""
Core Module
============

Exception hierarchy shared by every layer of the escalation service.

Each exception carries an error code and an HTTP status so the API layer
can render it without knowing which layer raised it.
"""

from src.core.exceptions import (
    ApplicationException,
    DomainException,
    RepositoryException,
    ValidationException,
    InvalidStatusTransitionException,
    ResourceNotFoundException,
    UnauthorizedException,
    ForbiddenException,
    ConcurrencyConflictException,
    ConfigurationException,
    ExternalServiceException,
    EventSinkException,
)

__all__ = [
    "ApplicationException",
    "DomainException",
    "RepositoryException",
    "ValidationException",
    "InvalidStatusTransitionException",
    "ResourceNotFoundException",
    "UnauthorizedException",
    "ForbiddenException",
    "ConcurrencyConflictException",
    "ConfigurationException",
    "ExternalServiceException",
    "EventSinkException",
]
