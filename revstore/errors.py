"""
Error types for revstore.

This module defines every exception the document core raises:
- RevStoreError: Base exception
- ValidationError: Field value rejected before persistence
- ConflictError / StaleDocumentError: Revision race or non-current instance
- DocumentNotFound / InvalidUUIDError: No live document for the request
- AlreadyDeletedError: Second delete of the same document
- RedirectedError: Control signal carrying a canonical location
- PersistenceError / ConstraintError: Store failure inside an atomic write
- AccessDeniedError: Viewer lacks a capability flag
- RelationsNotLoadedError: Permission flags need relations that were not loaded

Invariants:
    - All errors inherit from RevStoreError
    - Errors carry a stable code and a details dict for callers
    - No error is retried or swallowed inside the core
"""

from __future__ import annotations

from typing import Any


class RevStoreError(Exception):
    """Base exception for all revstore errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "REVSTORE_ERROR"
        self.details = details or {}


class ValidationError(RevStoreError):
    """Field validation failed.

    Raised when:
    - Required field is missing
    - Field value has wrong type or is out of range
    - A multilingual value lacks the original-language key
    """

    def __init__(
        self,
        message: str,
        field_name: str | None = None,
        errors: list[str] | None = None,
    ) -> None:
        super().__init__(
            message,
            code="VALIDATION_ERROR",
            details={"field": field_name, "errors": errors or []},
        )
        self.field_name = field_name
        self.errors = errors or []


class ConflictError(RevStoreError):
    """A concurrent save already advanced the current revision.

    The caller should reload the document and retry; revisions are
    never merged.
    """

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        revision_id: str | None = None,
        code: str = "CONFLICT",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"document_id": document_id, "revision_id": revision_id},
        )
        self.document_id = document_id
        self.revision_id = revision_id


class StaleDocumentError(ConflictError):
    """Operation requires the current revision but got an older or saved one."""

    def __init__(
        self,
        message: str,
        document_id: str | None = None,
        revision_id: str | None = None,
    ) -> None:
        super().__init__(message, document_id, revision_id, code="STALE_DOCUMENT")


class DocumentNotFound(RevStoreError):
    """No live document matches the request.

    Covers documents that never existed, were superseded or were deleted.
    """

    def __init__(
        self,
        message: str,
        document_type: str | None = None,
        document_id: str | None = None,
        code: str = "NOT_FOUND",
    ) -> None:
        super().__init__(
            message,
            code=code,
            details={"document_type": document_type, "document_id": document_id},
        )
        self.document_type = document_type
        self.document_id = document_id


class InvalidUUIDError(DocumentNotFound):
    """Requested identifier is not a UUID."""

    def __init__(self, message: str, document_type: str | None = None, document_id: str | None = None) -> None:
        super().__init__(message, document_type, document_id, code="INVALID_UUID")


class AlreadyDeletedError(RevStoreError):
    """Document history has already been deleted."""

    def __init__(self, message: str, document_id: str | None = None) -> None:
        super().__init__(
            message,
            code="ALREADY_DELETED",
            details={"document_id": document_id},
        )
        self.document_id = document_id


class RedirectedError(RevStoreError):
    """Control signal: the request should be redirected.

    Not a failure. Callers turn this into a redirect response and do not
    log it as an error.

    Attributes:
        target: Location to redirect to, query string included
    """

    def __init__(self, target: str) -> None:
        super().__init__(
            f"Redirect to {target}",
            code="REDIRECT",
            details={"target": target},
        )
        self.target = target


class PersistenceError(RevStoreError):
    """Underlying store failed during a write.

    Raised after the enclosing transaction has been rolled back, so no
    partial rows are visible.
    """

    def __init__(
        self,
        message: str,
        operation: str | None = None,
        code: str = "PERSISTENCE_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"operation": operation})
        self.operation = operation


class ConstraintError(PersistenceError):
    """A uniqueness or foreign key constraint rejected the write."""

    def __init__(self, message: str, operation: str | None = None) -> None:
        super().__init__(message, operation, code="CONSTRAINT_VIOLATION")


class AccessDeniedError(RevStoreError):
    """Viewer lacks the capability required for an operation."""

    def __init__(self, viewer_id: str | None, document_id: str, capability: str) -> None:
        super().__init__(
            f"Access denied: {viewer_id or 'anonymous viewer'} lacks {capability} on {document_id}",
            code="ACCESS_DENIED",
            details={"viewer_id": viewer_id, "document_id": document_id, "capability": capability},
        )
        self.viewer_id = viewer_id
        self.document_id = document_id
        self.capability = capability


class RelationsNotLoadedError(RevStoreError):
    """Permissions were requested before the relations they read were loaded."""

    def __init__(self, message: str, document_id: str | None = None, relation: str | None = None) -> None:
        super().__init__(
            message,
            code="RELATIONS_NOT_LOADED",
            details={"document_id": document_id, "relation": relation},
        )
        self.document_id = document_id
        self.relation = relation
