"""Importer error hierarchy.

Every failure raised by an import stage is an ``ImporterError`` carrying an
``ErrorKind`` so callers can react without parsing messages.
"""

from __future__ import annotations

import enum


class ErrorKind(str, enum.Enum):
    DUPLICATE_ID = "DUPLICATE_ID"
    MISSING_ID = "MISSING_ID"
    CYCLIC_REFERENCE = "CYCLIC_REFERENCE"
    SCHEMA_CONFLICT = "SCHEMA_CONFLICT"
    IO_FAILURE = "IO_FAILURE"
    PERMISSION_FAILURE = "PERMISSION_FAILURE"
    INVALID_VALUE = "INVALID_VALUE"


class ImporterError(Exception):
    """Base exception for importer errors."""

    kind: ErrorKind = ErrorKind.IO_FAILURE

    def __init__(self, message: str, *, kind: ErrorKind | None = None):
        super().__init__(message)
        if kind is not None:
            self.kind = kind


class DuplicateIdError(ImporterError):
    """Raised when the ADD policy meets ids that already exist."""

    kind = ErrorKind.DUPLICATE_ID


class MissingIdError(ImporterError):
    """Raised when the UPDATE policy meets ids that do not exist."""

    kind = ErrorKind.MISSING_ID


class CyclicReferenceError(ImporterError):
    """Raised when rows of one entity reference each other in a cycle."""

    kind = ErrorKind.CYCLIC_REFERENCE

    def __init__(self, message: str, *, cycle: list[object] | None = None):
        super().__init__(message)
        self.cycle = list(cycle or [])


class SchemaConflictError(ImporterError):
    """Raised when an entity cannot be created or extended."""

    kind = ErrorKind.SCHEMA_CONFLICT


class RepositoryIOError(ImporterError):
    """Raised when a repository or source fails unrecoverably."""

    kind = ErrorKind.IO_FAILURE


class PermissionFailureError(ImporterError):
    """Raised when the permission hook refuses a grant."""

    kind = ErrorKind.PERMISSION_FAILURE


class InvalidValueError(ImporterError):
    """Raised when a source value cannot be converted to its attribute type."""

    kind = ErrorKind.INVALID_VALUE


__all__ = [
    "ErrorKind",
    "ImporterError",
    "DuplicateIdError",
    "MissingIdError",
    "CyclicReferenceError",
    "SchemaConflictError",
    "RepositoryIOError",
    "PermissionFailureError",
    "InvalidValueError",
]
