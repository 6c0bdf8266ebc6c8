"""
Typed failures surfaced by the grading core.

Callers branch on the exception class or its ``kind``; messages are for humans only.
"""
from enum import Enum
from typing import Any, Dict


class ErrorKind(str, Enum):
    INVALID_INPUT = "invalid_input"
    NOT_FOUND = "not_found"
    UNAUTHORIZED = "unauthorized"
    CONFLICT = "conflict"


class GradingError(Exception):
    """Base class for the four client-visible failure kinds."""

    kind: ErrorKind
    status_code: int = 400

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context

    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.kind.value, "message": self.message, **self.context}


class InvalidInputError(GradingError):
    kind = ErrorKind.INVALID_INPUT
    status_code = 422


class NotFoundError(GradingError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class UnauthorizedError(GradingError):
    kind = ErrorKind.UNAUTHORIZED
    status_code = 403


class ConflictError(GradingError):
    """Attempt already graded. ``score`` is the winning submission's score when known."""

    kind = ErrorKind.CONFLICT
    status_code = 409

    def __init__(self, message: str, attempt_id: str, score: float | None = None):
        super().__init__(message, attempt_id=attempt_id, score=score)
        self.attempt_id = attempt_id
        self.score = score
