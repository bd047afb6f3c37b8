"""
Document type registry.

The DocumentRegistry is the authority for all document kinds a store
knows about. It provides:
- Registration of document types
- Lookup by name
- Cross-type consistency checks (relation targets)
- Freeze mechanism to prevent runtime modifications

Invariants:
    - Registry is mutable during startup, frozen before serving
    - Once frozen, no new types can be registered
    - Type names and table names are unique

How to change safely:
    - Register all types before calling freeze()
    - Register relation targets in the same registry as their owners

Example:
    >>> registry = DocumentRegistry()
    >>> registry.register(USER_TYPE)
    >>> registry.freeze()
    >>> registry.get("user").table
    'users'
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator

from .types import DocumentType

logger = logging.getLogger(__name__)


class RegistryFrozenError(Exception):
    """Raised when attempting to modify a frozen registry."""

    pass


class DuplicateRegistrationError(Exception):
    """Raised when attempting to register a duplicate type name or table."""

    pass


class UnknownDocumentTypeError(KeyError):
    """Raised when looking up a type name that was never registered."""

    pass


class DocumentRegistry:
    """Registry of document type definitions.

    Thread-safety:
        - Registration is thread-safe (uses internal lock)
        - Lookups after freeze are lock-free
        - Freeze is atomic and irreversible
    """

    def __init__(self) -> None:
        """Initialize an empty, mutable registry."""
        self._types: dict[str, DocumentType] = {}
        self._tables: dict[str, str] = {}
        self._frozen = False
        self._lock = threading.Lock()

    @property
    def frozen(self) -> bool:
        """Whether the registry is frozen."""
        return self._frozen

    def register(self, doc_type: DocumentType) -> DocumentType:
        """Register a document type definition.

        Args:
            doc_type: The document type to register

        Returns:
            The registered type (so definitions can be registered inline)

        Raises:
            RegistryFrozenError: If registry is frozen
            DuplicateRegistrationError: If name or table is already registered
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError(
                    f"Cannot register document type '{doc_type.name}': registry is frozen"
                )
            if doc_type.name in self._types:
                raise DuplicateRegistrationError(
                    f"Document type '{doc_type.name}' is already registered"
                )
            if doc_type.table in self._tables:
                raise DuplicateRegistrationError(
                    f"Table '{doc_type.table}' already used by '{self._tables[doc_type.table]}'"
                )

            self._types[doc_type.name] = doc_type
            self._tables[doc_type.table] = doc_type.name
            logger.debug(f"Registered document type: {doc_type.name} (table={doc_type.table})")
            return doc_type

    def get(self, name: str) -> DocumentType:
        """Get a document type by name.

        Raises:
            UnknownDocumentTypeError: If no such type is registered
        """
        try:
            return self._types[name]
        except KeyError:
            raise UnknownDocumentTypeError(name) from None

    def __contains__(self, name: object) -> bool:
        return name in self._types

    def types(self) -> Iterator[DocumentType]:
        """Iterate over all registered document types."""
        return iter(list(self._types.values()))

    def validate_all(self) -> list[str]:
        """Validate all registered types for consistency.

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        join_tables: dict[str, tuple[str, str]] = {}
        for doc_type in self._types.values():
            for relation in doc_type.relations:
                if relation.target_type not in self._types:
                    errors.append(
                        f"Relation '{relation.name}' of '{doc_type.name}' targets "
                        f"unknown document type '{relation.target_type}'"
                    )
                columns = tuple(sorted((relation.source_column, relation.target_column)))
                seen = join_tables.setdefault(relation.join_table, columns)
                if seen != columns:
                    errors.append(
                        f"Join table '{relation.join_table}' is declared with different "
                        f"columns {seen} and {columns}"
                    )
        return errors

    def freeze(self) -> None:
        """Freeze the registry after checking consistency.

        Raises:
            RegistryFrozenError: If already frozen
            ValueError: If validate_all() reports problems
        """
        with self._lock:
            if self._frozen:
                raise RegistryFrozenError("Registry is already frozen")
            errors = self.validate_all()
            if errors:
                raise ValueError("Invalid document registry:\n  - " + "\n  - ".join(errors))
            self._frozen = True
            logger.info(f"Document registry frozen with {len(self._types)} document types")
