"""
Custom exceptions for the personalization API.
Provides consistent error handling across the application.
"""
from fastapi import HTTPException, status


class PersonalizationException(Exception):
    """Base exception for the personalization backend"""
    def __init__(self, message: str = "An error occurred"):
        self.message = message
        super().__init__(self.message)


class NotFoundError(PersonalizationException):
    """Resource not found"""
    def __init__(self, resource: str = "Resource", resource_id: str = None):
        message = f"{resource} not found"
        if resource_id:
            message = f"{resource} with id '{resource_id}' not found"
        super().__init__(message)


class ValidationError(PersonalizationException):
    """Validation failed"""
    def __init__(self, message: str = "Validation failed", field: str = None):
        if field:
            message = f"Validation failed for field '{field}': {message}"
        super().__init__(message)


class ExternalServiceError(PersonalizationException):
    """External service call failed"""
    def __init__(self, service: str = "External service", message: str = None):
        msg = f"{service} call failed"
        if message:
            msg = f"{msg}: {message}"
        super().__init__(msg)


class CapabilityError(ExternalServiceError):
    """A capability port (intent, generation, judge) failed or timed out"""
    def __init__(self, capability: str = "Capability", message: str = None):
        self.capability = capability
        super().__init__(capability, message)


class PipelineError(PersonalizationException):
    """Generation pipeline could not produce a variation"""
    pass


# HTTP Exception helpers
def raise_not_found(resource: str = "Resource", resource_id: str = None):
    """Raise 404 HTTPException"""
    err = NotFoundError(resource, resource_id)
    raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=err.message)


def raise_bad_request(message: str = "Validation failed", field: str = None):
    """Raise 400 HTTPException for malformed input"""
    err = ValidationError(message, field)
    raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=err.message)


def raise_missing_fields(*fields: str):
    """Raise 400 HTTPException listing missing required fields"""
    raise HTTPException(
        status_code=status.HTTP_400_BAD_REQUEST,
        detail=f"Missing required fields: {', '.join(fields)}",
    )


def raise_generation_failed(error: str, message: str):
    """Raise 500 HTTPException for a failed generation pipeline"""
    raise HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={"error": error, "message": message},
    )
