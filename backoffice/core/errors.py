from __future__ import annotations


class LifecycleError(ValueError):
    """Base class for domain failures surfaced to API callers as `{"error": ...}`."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(LifecycleError):
    status_code = 400


class AuthorizationError(LifecycleError):
    status_code = 403


class NotFoundError(LifecycleError):
    status_code = 404


class ConflictError(LifecycleError):
    status_code = 409
