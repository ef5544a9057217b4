"""
Workflow-wide exception hierarchy.

Services raise these; the blueprint layer registers one handler per type
(see ``bire.blueprints.register_error_handlers``) and turns them into the
``{"success": false, "error": ...}`` result with a consistent HTTP status.

Usage:
    from bire.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Application", resource_id=42)
    raise ValidationError("Score must be between 0 and 100", details={"score": 140})
"""


class NotFoundError(Exception):
    """Raised when a referenced application, reviewer or DD record does not exist.

    Args:
        resource: Human-readable entity name (e.g. "Application", "Reviewer").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" {resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is well-formed but violates a business rule.

    Score out of range, comment below minimum length, unknown criterion.
    Always raised before any persistence write.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when an operation would create a duplicate unique constraint violation.

    Args:
        resource: Model name.
        field: The unique field that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class StateConflictError(Exception):
    """Raised when an action is attempted in a state that does not allow it.

    Scoring a locked application, approving a DD record that is no longer
    awaiting approval, reviewing twice.  Re-checked at write time.

    Args:
        message: Human-readable explanation.
        current_status: The status observed when the action was refused.
    """

    def __init__(self, message: str, current_status: str | None = None) -> None:
        self.current_status = current_status
        super().__init__(message)
