"""
Service-wide exception hierarchy.

Every service raises one of these types; blueprints register handlers
against them once and get consistent HTTP status codes everywhere.

Usage:
    from qapflow.core.exceptions import NotFoundError, PreconditionError

    raise NotFoundError(resource="QAP", resource_id=qap_id)
    raise PreconditionError("QAP is not awaiting final comments",
                            details={"status": "level-4"})

HTTP mapping (see qapflow.blueprints.register_error_handlers):
    ValidationError     → 400
    AuthenticationError → 401
    AuthorizationError  → 403
    NotFoundError       → 404
    PreconditionError   → 409
    StorageError        → 500 (generic message, cause logged)
"""


class NotFoundError(Exception):
    """Raised when a requested QAP (or other resource) does not exist.

    Args:
        resource: Human-readable entity name (e.g. "QAP").
        resource_id: The key that was looked up. Included in logs and body.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is malformed or violates a field-level rule.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown. Keys are field names.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the caller's role, identity or plant does not permit the action."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthenticationError(AuthorizationError):
    """Raised when no caller identity could be resolved for the request."""


class PreconditionError(Exception):
    """Raised when the QAP is not in a state that allows the transition.

    The QAP is left unchanged; the caller may retry once the workflow
    reaches the expected state.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class StorageError(Exception):
    """Raised when the unit of work could not be committed.

    The transaction has already been rolled back when this is raised.
    The original database exception is chained as ``__cause__``.
    """
