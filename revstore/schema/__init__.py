"""
Schema module for revstore.

This module provides the field codec for revision-tracked documents:
- Type definitions (DocumentType, FieldDef, RelationDef)
- Document type registry
- Multilingual container helpers
- Row encoding and decoding

Invariants:
    - Field names are camelCase in memory and snake_case in storage
    - All document types are registered before a store is initialized
"""

from .codec import from_row, to_row, utcnow
from .multilingual import (
    STORAGE_LANGUAGES,
    VALID_LANGUAGES,
    ResolvedString,
    resolve,
    strip_html,
    validate_ml_value,
)
from .registry import (
    DocumentRegistry,
    DuplicateRegistrationError,
    RegistryFrozenError,
    UnknownDocumentTypeError,
)
from .types import DocumentType, FieldDef, FieldKind, RelationDef, camel_to_snake, field

__all__ = [
    # Types
    "DocumentType",
    "FieldDef",
    "FieldKind",
    "RelationDef",
    "camel_to_snake",
    "field",
    # Registry
    "DocumentRegistry",
    "DuplicateRegistrationError",
    "RegistryFrozenError",
    "UnknownDocumentTypeError",
    # Multilingual
    "STORAGE_LANGUAGES",
    "VALID_LANGUAGES",
    "ResolvedString",
    "resolve",
    "strip_html",
    "validate_ml_value",
    # Codec
    "from_row",
    "to_row",
    "utcnow",
]
