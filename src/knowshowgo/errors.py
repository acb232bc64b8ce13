"""
Structured errors raised by the KnowShowGo core.

Every error carries a `kind` discriminant, a human readable message and,
where it applies, the offending field, so an outer API layer can render it
without ever seeing backend internals.
"""
from typing import Any, Dict, Optional


class KnowShowGoError(Exception):
    kind = "KnowShowGoError"

    def __init__(self, message: str, field: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.field = field

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": self.kind, "message": self.message, "field": self.field}

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(kind={self.kind!r}, message={self.message!r}, field={self.field!r})"


class MissingFieldError(KnowShowGoError, ValueError):
    """A required input is absent."""

    kind = "MissingField"


class OutOfRangeError(KnowShowGoError, ValueError):
    """A numeric or enumerated field is outside its declared domain."""

    kind = "OutOfRange"


class NotFoundError(KnowShowGoError, LookupError):
    """A write referenced a UUID that does not resolve."""

    kind = "NotFound"


class InvariantViolationError(KnowShowGoError):
    """The operation would break a structural invariant of the graph."""

    kind = "InvariantViolation"


class StorageError(KnowShowGoError):
    kind = "Storage"
