"""Typed action results returned to the presentation layer."""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel


class ErrorKind(str, Enum):
    """Failure categories surfaced to callers."""

    AUTHORIZATION = "authorization"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    NOT_FOUND = "not_found"
    COLLABORATOR = "collaborator"


class ActionResult(BaseModel):
    """Outcome of a booking engine action."""

    success: bool
    data: Optional[Any] = None
    message: Optional[str] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None

    @classmethod
    def ok(cls, data: Any = None, message: Optional[str] = None) -> "ActionResult":
        return cls(success=True, data=data, message=message)

    @classmethod
    def fail(cls, kind: ErrorKind, error: str) -> "ActionResult":
        return cls(success=False, error=error, error_kind=kind)
