"""
Service-layer exception hierarchy.

Services raise these types; blueprints register handlers against them once
and get consistent HTTP status codes everywhere. Routing outcomes that are
valid states (a stalled report with no resolvable approver) are returned
as data and never raised.

Usage:
    from app.core.exceptions import NotFoundError, ForbiddenError

    raise NotFoundError(resource="NptReport", resource_id=42)
    raise ForbiddenError("User is not the current approver of this report")
"""


class NotFoundError(Exception):
    """Raised when a referenced report, workflow or step does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable model/entity name (e.g. "NptReport").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ForbiddenError(Exception):
    """Raised when the acting user is not the report's currently routed approver.

    Maps to HTTP 403. No audit record is written when this is raised.
    """

    def __init__(self, message: str, user_id: str | None = None) -> None:
        self.user_id = user_id
        super().__init__(message)


class ValidationError(Exception):
    """Raised when input fails business-rule validation in the service layer.

    Distinct from HTTP 400 (malformed input, caught in blueprint): this
    exception signals that the data was well-formed but violated a business
    rule (e.g. acting on an APPROVED report, unknown decision action).

    Maps to HTTP 422 in blueprint error handlers.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class ConflictError(Exception):
    """Raised when the stored state moved underneath the caller.

    Covers a decision submitted for a step the report has already left and
    optimistic-lock failures on the report row. Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose value no longer matches.
        value: The value the caller expected.
    """

    def __init__(self, resource: str, field: str, value: str | int | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} {field} is no longer {value!r}"
        super().__init__(msg)


class WorkflowStateError(Exception):
    """Precondition violation inside the routing engine.

    Signals a programming error by the caller (e.g. advancing a pending
    report that has no current step). Not user-recoverable; maps to HTTP 500.
    """
