"""Error taxonomy shared by the coordination handlers.

Every caller-visible failure carries a stable ``code`` so the host can map
it onto whatever surface it exposes (callable response, bot reply, log
line).  Scheduled jobs only ever surface ``Internal``-class failures.
"""

from __future__ import annotations

from typing import Any


class CoordinatorError(Exception):
    """Base class for all typed coordinator failures."""

    code: str = "unknown"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        """Serialize for a caller-facing response."""
        return {"code": self.code, "message": self.message, "context": self.context}


class InvalidArgument(CoordinatorError):
    """A request is missing required fields."""

    code = "invalid-argument"


class NotFound(CoordinatorError):
    """A referenced household or member record does not exist."""

    code = "not-found"


class PermissionDenied(CoordinatorError):
    """The presented QR token is stale or was never issued."""

    code = "permission-denied"


class Internal(CoordinatorError):
    """The identity service or the store failed downstream."""

    code = "internal"


class AlreadyExists(CoordinatorError):
    """A create-only write hit an existing record."""

    code = "already-exists"


class RecordDecodeError(CoordinatorError):
    """A stored record does not match its entity schema."""

    code = "data-loss"

    def __init__(self, path: str, detail: str) -> None:
        super().__init__(f"Malformed record at {path}: {detail}", context={"path": path})
        self.path = path
