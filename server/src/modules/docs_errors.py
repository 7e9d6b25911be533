from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorKind(str, Enum):
    VALIDATION = "VALIDATION"
    CONFLICT = "CONFLICT"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CYCLE = "CYCLE"


class DocsError(Exception):
    """Typed failure raised by the hierarchy, access and autosave layers."""

    kind: ErrorKind = ErrorKind.VALIDATION
    status_code: int = 400

    def __init__(self, code: str, detail: str = "", **extra: Any):
        super().__init__(detail or code)
        self.code = code
        self.detail = detail or code
        self.extra = extra

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"error": self.kind.value, "code": self.code, "detail": self.detail}
        if self.extra:
            payload.update(self.extra)
        return payload


class ValidationFailed(DocsError):
    kind = ErrorKind.VALIDATION
    status_code = 400


class Conflict(DocsError):
    kind = ErrorKind.CONFLICT
    status_code = 409


class ScopeMismatch(DocsError):
    kind = ErrorKind.SCOPE_MISMATCH
    status_code = 422


class NotFound(DocsError):
    kind = ErrorKind.NOT_FOUND
    status_code = 404


class Forbidden(DocsError):
    kind = ErrorKind.FORBIDDEN
    status_code = 403


class Cycle(DocsError):
    kind = ErrorKind.CYCLE
    status_code = 409


def slug_taken(scope: str, slug: str) -> Conflict:
    return Conflict("SLUG_TAKEN", f"A {scope} with slug '{slug}' already exists", slug=slug)
