"""Failure taxonomy shared by the order stores and the orchestrator.

Stores raise these at their boundary instead of leaking driver exceptions;
the orchestrator turns them into an `OrderFailure` on its result type.
"""

from enum import Enum


class ErrorKind(str, Enum):
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    DEPENDENCY_UNAVAILABLE = "dependency_unavailable"
    CONSTRAINT_VIOLATION = "constraint_violation"
    CONFLICT = "conflict"


class OrderError(Exception):
    """Base class for every failure the order workflow reports."""

    kind: ErrorKind = ErrorKind.DEPENDENCY_UNAVAILABLE
    retryable: bool = False

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class InvalidOrderRequest(OrderError):
    """Malformed identifier, non-positive amount, oversized description."""

    kind = ErrorKind.VALIDATION

    def __init__(self, message: str, errors: list[str] | None = None) -> None:
        super().__init__(message)
        self.errors = errors or [message]


class EntityNotFound(OrderError):
    kind = ErrorKind.NOT_FOUND


class DependencyUnavailable(OrderError):
    """A store or the event channel could not be reached in time."""

    kind = ErrorKind.DEPENDENCY_UNAVAILABLE
    retryable = True

    def __init__(self, dependency: str, message: str) -> None:
        super().__init__(f"{dependency} unavailable: {message}")
        self.dependency = dependency


class ConstraintViolation(OrderError):
    """The system of record refused a write (uniqueness, reference, range)."""

    kind = ErrorKind.CONSTRAINT_VIOLATION


class CreationInProgress(OrderError):
    """Another attempt holds the reservation for this fingerprint."""

    kind = ErrorKind.CONFLICT
    retryable = True

    def __init__(self, order_id: str, message: str = "order creation already in progress") -> None:
        super().__init__(message)
        self.order_id = order_id
