"""
Typed exceptions for the leave workflow.

Every error carries a ``code`` class attribute so callers (and the HTTP
layer) can branch on the kind of failure instead of parsing messages.

    LeaveWorkflowError
    +-- TransitionError
    |   +-- InvalidTransition      no row for (state, event)
    |   +-- GuardViolation         row exists, a guard failed
    +-- DataUnavailable            conflict / balance data could not be read
    +-- ValidationError
    |   +-- LeaveRequestValidationError
    +-- NotFoundError
    |   +-- LeaveRequestNotFound
    |   +-- EmployeeNotFound
    |   +-- ConflictRuleNotFound
    |   +-- SubstitutionNotFound
    +-- ConcurrentModification     stale version on save
"""

from __future__ import annotations

from typing import Any


class LeaveWorkflowError(Exception):
    """Base exception for all leave workflow errors."""

    code: str = "LEAVE_WORKFLOW_ERROR"

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": str(self)}


class TransitionError(LeaveWorkflowError):
    """Base exception for rejected state transitions."""

    code: str = "TRANSITION_ERROR"


class InvalidTransition(TransitionError):
    """No transition row exists for the requested event from the current state."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, state: Any, event: Any):
        self.state = state
        self.event = event
        super().__init__(f"Invalid transition: {_value(event)} from state {_value(state)}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "state": _value(self.state), "event": _value(self.event)}


class GuardViolation(TransitionError):
    """A transition exists but one of its guards evaluated false."""

    code: str = "GUARD_VIOLATION"

    def __init__(self, guard_name: str, state: Any = None, event: Any = None, message: str = ""):
        self.guard_name = guard_name
        self.state = state
        self.event = event
        self.message = message
        detail = f": {message}" if message else ""
        super().__init__(f"Guard failed: {guard_name}{detail}")

    def to_dict(self) -> dict[str, Any]:
        return {
            **super().to_dict(),
            "guard": self.guard_name,
            "state": _value(self.state),
            "event": _value(self.event),
        }


class DataUnavailable(LeaveWorkflowError):
    """The data source backing a workflow decision could not be reached."""

    code: str = "DATA_UNAVAILABLE"

    def __init__(self, operation: str, cause: BaseException | str | None = None):
        self.operation = operation
        self.cause = cause
        reason = f": {cause}" if cause else ""
        super().__init__(f"Data unavailable for {operation}{reason}")

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "operation": self.operation}


class ValidationError(LeaveWorkflowError):
    """Input failed boundary validation."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, errors: list[str], prefix: str = "Invalid input"):
        self.errors = list(errors)
        super().__init__(f"{prefix}: " + "; ".join(self.errors))

    def to_dict(self) -> dict[str, Any]:
        return {**super().to_dict(), "errors": self.errors}


class LeaveRequestValidationError(ValidationError):
    """A leave request failed validation before entering the workflow."""

    def __init__(self, errors: list[str]):
        super().__init__(errors, prefix="Invalid leave request")


class NotFoundError(LeaveWorkflowError):
    """Base exception for missing entities."""

    code: str = "NOT_FOUND"
    entity: str = "Entity"

    def __init__(self, entity_id: str):
        self.entity_id = entity_id
        super().__init__(f"{self.entity} not found: {entity_id}")


class LeaveRequestNotFound(NotFoundError):
    code: str = "LEAVE_REQUEST_NOT_FOUND"
    entity: str = "Leave request"


class EmployeeNotFound(NotFoundError):
    code: str = "EMPLOYEE_NOT_FOUND"
    entity: str = "Employee"


class ConflictRuleNotFound(NotFoundError):
    code: str = "CONFLICT_RULE_NOT_FOUND"
    entity: str = "Conflict rule"


class SubstitutionNotFound(NotFoundError):
    code: str = "SUBSTITUTION_NOT_FOUND"
    entity: str = "Substitution"


class ConcurrentModification(LeaveWorkflowError):
    """The request was changed by another writer since it was loaded."""

    code: str = "CONCURRENT_MODIFICATION"

    def __init__(self, request_id: str, expected_version: int, actual_version: int):
        self.request_id = request_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Leave request {request_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})"
        )


def _value(item: Any) -> Any:
    return getattr(item, "value", item)
