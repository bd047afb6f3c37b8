"""
Core type definitions for revstore documents.

This module defines the declarative shape of every document kind:
- FieldDef: Individual content field of a document
- RelationDef: Many-to-many relation stored in a join table
- DocumentType: A revision-tracked document kind and its table

Invariants:
    - Field names are camelCase; column names are their snake_case form
    - Field names never collide with the revision bookkeeping columns
    - Every non-empty multilingual value carries the document's original
      language unless the field opts out with requires_original=False
    - Integers are never booleans, even though bool subclasses int

How to change safely:
    - Add new fields as optional; existing rows read them as None
    - Never rename a column; add a new field and migrate instead
    - Keep relation join tables set-valued (primary key on both ids)

Example:
    >>> from revstore.schema.types import DocumentType, field
    >>> Note = DocumentType(
    ...     name="note",
    ...     table="notes",
    ...     fields=(
    ...         field("title", "multilingual", required=True, max_length=128),
    ...         field("originalLanguage", "language", required=True),
    ...     ),
    ... )
"""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass
from dataclasses import field as dataclass_field
from datetime import datetime
from enum import Enum
from typing import Any

from .multilingual import is_valid_language, validate_ml_value

REVISION_COLUMNS = frozenset(
    {
        "rev_id",
        "id",
        "old_rev_of",
        "parent_rev_id",
        "stale",
        "deleted",
        "rev_user",
        "rev_date",
        "rev_tags",
    }
)

_CAMEL_BOUNDARY = re.compile(r"(?<=[a-z0-9])(?=[A-Z])|(?<=[A-Z])(?=[A-Z][a-z])")


def camel_to_snake(name: str) -> str:
    """Convert a camelCase field name to its snake_case column name.

    >>> camel_to_snake("starRating")
    'star_rating'
    >>> camel_to_snake("thingID")
    'thing_id'
    """
    return _CAMEL_BOUNDARY.sub("_", name).lower()


class FieldKind(Enum):
    """Supported field types.

    These map to storage representations and validation rules.
    """

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATETIME = "datetime"  # Stored as Unix milliseconds
    UUID = "uuid"
    LANGUAGE = "language"  # Storage language code
    JSON = "json"  # Arbitrary JSON object
    STRING_LIST = "string_list"
    MULTILINGUAL = "multilingual"  # language -> string
    MULTILINGUAL_LIST = "multilingual_list"  # language -> list of strings
    RICH_TEXT = "rich_text"  # {"text": {...}, "html": {...}}

    @classmethod
    def from_str(cls, value: str) -> FieldKind:
        """Convert string representation to FieldKind.

        Raises:
            ValueError: If value is not a valid field kind
        """
        for kind in cls:
            if kind.value == value:
                return kind
        valid = [k.value for k in cls]
        raise ValueError(f"Invalid field kind '{value}'. Valid kinds: {valid}")

    @property
    def is_multilingual(self) -> bool:
        return self in (FieldKind.MULTILINGUAL, FieldKind.MULTILINGUAL_LIST, FieldKind.RICH_TEXT)


def _is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


@dataclass(frozen=True)
class FieldDef:
    """Definition of a single content field.

    Attributes:
        name: camelCase field name used in memory
        kind: The data type of the field
        required: Whether the field must be set before save
        default: Value assigned when a first revision is created
        max_length: Maximum string length (strings and multilingual values)
        min_value: Inclusive lower bound for numeric kinds
        max_value: Inclusive upper bound for numeric kinds
        choices: Allowed values for STRING fields
        requires_original: Multilingual value must contain the original language
        column: snake_case column name (derived from name if empty)
        description: Human-readable description
    """

    name: str
    kind: FieldKind
    required: bool = False
    default: Any = None
    max_length: int | None = None
    min_value: int | float | None = None
    max_value: int | float | None = None
    choices: tuple[str, ...] | None = None
    requires_original: bool = True
    column: str = ""
    description: str = ""

    def __post_init__(self) -> None:
        """Validate field definition."""
        if not self.name:
            raise ValueError("Field name cannot be empty")
        if not self.column:
            object.__setattr__(self, "column", camel_to_snake(self.name))
        if self.column in REVISION_COLUMNS:
            raise ValueError(f"Field '{self.name}' collides with revision column '{self.column}'")
        if (
            self.min_value is not None
            and self.max_value is not None
            and self.min_value > self.max_value
        ):
            raise ValueError(f"min_value > max_value for field '{self.name}'")
        if self.choices is not None and self.kind != FieldKind.STRING:
            raise ValueError(f"choices only apply to string fields ('{self.name}')")

    def validate_value(self, value: Any) -> tuple[bool, str | None]:
        """Validate a value against this field definition.

        Args:
            value: The value to validate

        Returns:
            Tuple of (is_valid, error_message)
        """
        if value is None:
            if self.required:
                return False, f"Field '{self.name}' is required"
            return True, None

        validators = {
            FieldKind.STRING: lambda v: isinstance(v, str),
            FieldKind.INTEGER: lambda v: isinstance(v, int) and not isinstance(v, bool),
            FieldKind.NUMBER: lambda v: isinstance(v, (int, float)) and not isinstance(v, bool),
            FieldKind.BOOLEAN: lambda v: isinstance(v, bool),
            FieldKind.DATETIME: lambda v: isinstance(v, datetime),
            FieldKind.UUID: _is_uuid,
            FieldKind.LANGUAGE: lambda v: isinstance(v, str) and is_valid_language(v),
            FieldKind.JSON: lambda v: isinstance(v, (dict, list)),
            FieldKind.STRING_LIST: lambda v: isinstance(v, list)
            and all(isinstance(i, str) for i in v),
        }

        if self.kind.is_multilingual:
            problems = self._validate_multilingual(value)
            if problems:
                return False, f"Field '{self.name}': " + "; ".join(problems)
            return True, None

        validator = validators[self.kind]
        if not validator(value):
            return False, f"Field '{self.name}' has invalid value for kind {self.kind.value}"

        if self.kind in (FieldKind.INTEGER, FieldKind.NUMBER):
            if self.min_value is not None and value < self.min_value:
                return False, f"Field '{self.name}' must be >= {self.min_value}, got {value}"
            if self.max_value is not None and value > self.max_value:
                return False, f"Field '{self.name}' must be <= {self.max_value}, got {value}"

        if self.kind == FieldKind.STRING:
            if self.max_length is not None and len(value) > self.max_length:
                return False, f"Field '{self.name}' exceeds maximum length of {self.max_length}"
            if self.choices and value not in self.choices:
                return False, f"Field '{self.name}' must be one of {self.choices}, got '{value}'"

        if self.kind == FieldKind.STRING_LIST and self.max_length is not None:
            if any(len(item) > self.max_length for item in value):
                return False, f"Field '{self.name}' item exceeds maximum length of {self.max_length}"

        return True, None

    def _validate_multilingual(self, value: Any) -> list[str]:
        if self.kind == FieldKind.RICH_TEXT:
            if not isinstance(value, dict):
                return ["must be an object with 'text' and 'html' containers"]
            unknown = set(value) - {"text", "html"}
            if unknown:
                return [f"unknown rich text keys {sorted(unknown)}"]
            problems: list[str] = []
            for part in ("text", "html"):
                problems.extend(validate_ml_value(value.get(part), max_length=self.max_length))
            return problems
        return validate_ml_value(
            value,
            array=self.kind == FieldKind.MULTILINGUAL_LIST,
            max_length=self.max_length,
        )

    def missing_original(self, value: Any, original_language: str | None) -> bool:
        """True if a multilingual value lacks the original language.

        An empty container only counts as missing for required fields.
        """
        if not self.kind.is_multilingual or not self.requires_original:
            return False
        if not original_language or not isinstance(value, dict):
            return False
        container = value.get("text") if self.kind == FieldKind.RICH_TEXT else value
        if not container:
            return self.required
        return original_language not in container


def field(
    name: str,
    kind: str | FieldKind,
    *,
    required: bool = False,
    default: Any = None,
    max_length: int | None = None,
    min_value: int | float | None = None,
    max_value: int | float | None = None,
    choices: tuple[str, ...] | None = None,
    requires_original: bool = True,
    column: str = "",
    description: str = "",
) -> FieldDef:
    """Convenience function to create a FieldDef.

    This is the preferred way to define fields in document types.

    Example:
        >>> rating = field("starRating", "integer", required=True, min_value=1, max_value=5)
        >>> label = field("label", "multilingual", max_length=256)
    """
    if isinstance(kind, str):
        kind = FieldKind.from_str(kind)
    return FieldDef(
        name=name,
        kind=kind,
        required=required,
        default=default,
        max_length=max_length,
        min_value=min_value,
        max_value=max_value,
        choices=choices,
        requires_original=requires_original,
        column=column,
        description=description,
    )


@dataclass(frozen=True)
class RelationDef:
    """Many-to-many relation stored in a join table.

    The join table is independent of revisions: rows reference document
    ids, never revision ids.

    Attributes:
        name: Relation name on the owning document (e.g. "members")
        join_table: Join table name
        source_column: Column holding the owning document id
        target_column: Column holding the related document id
        target_type: Name of the related document type
        timestamp_column: Column recording when the pair was added
    """

    name: str
    join_table: str
    source_column: str
    target_column: str
    target_type: str
    timestamp_column: str = "created_on"

    @property
    def load_flag(self) -> str:
        """Keyword used by get_with_data, e.g. ``with_members``."""
        return f"with_{camel_to_snake(self.name)}"


@dataclass(frozen=True)
class DocumentType:
    """Definition of a revision-tracked document kind.

    Attributes:
        name: Type name (e.g. "review")
        table: Table holding every revision of every document of this type
        fields: Content field definitions
        relations: Join-table relations owned by this type
        description: Human-readable description
    """

    name: str
    table: str
    fields: tuple[FieldDef, ...] = dataclass_field(default_factory=tuple)
    relations: tuple[RelationDef, ...] = dataclass_field(default_factory=tuple)
    description: str = ""

    def __post_init__(self) -> None:
        """Validate document type definition."""
        if not self.name:
            raise ValueError("Document type name cannot be empty")
        if not self.table.isidentifier():
            raise ValueError(f"Invalid table name '{self.table}'")

        field_names = [f.name for f in self.fields]
        if len(field_names) != len(set(field_names)):
            raise ValueError(f"Duplicate field name in document type '{self.name}'")
        columns = [f.column for f in self.fields]
        if len(columns) != len(set(columns)):
            raise ValueError(f"Duplicate column in document type '{self.name}'")
        relation_names = [r.name for r in self.relations]
        if len(relation_names) != len(set(relation_names)):
            raise ValueError(f"Duplicate relation name in document type '{self.name}'")

    def get_field(self, name: str) -> FieldDef | None:
        """Get a field by camelCase name."""
        for f in self.fields:
            if f.name == name:
                return f
        return None

    def get_relation(self, name: str) -> RelationDef | None:
        """Get a relation by name."""
        for r in self.relations:
            if r.name == name:
                return r
        return None

    @property
    def date_field(self) -> str | None:
        """Field used for default feed ordering."""
        return "createdOn" if self.get_field("createdOn") else None

    def defaults(self) -> dict[str, Any]:
        """Initial payload for a first revision."""
        return {f.name: f.default for f in self.fields if f.default is not None}

    def validate_payload(self, payload: dict[str, Any]) -> tuple[bool, list[tuple[str, str]]]:
        """Validate a payload against this document type.

        Args:
            payload: Dictionary of field values keyed by camelCase name

        Returns:
            Tuple of (is_valid, list of (field_name, error) pairs)
        """
        errors: list[tuple[str, str]] = []

        known_names = {f.name for f in self.fields}
        for name in sorted(set(payload) - known_names):
            errors.append((name, f"Unknown field '{name}'"))

        original_language = payload.get("originalLanguage")
        for f in self.fields:
            value = payload.get(f.name)
            is_valid, error = f.validate_value(value)
            if not is_valid and error:
                errors.append((f.name, error))
            elif f.missing_original(value, original_language):
                errors.append(
                    (
                        f.name,
                        f"Field '{f.name}' is missing text in original language "
                        f"'{original_language}'",
                    )
                )

        return len(errors) == 0, errors
