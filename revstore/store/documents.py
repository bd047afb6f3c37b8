"""
Revision engine for documents.

Every document type is stored in one table holding all of its revisions.
Editing never updates content in place: a new revision is branched from
the current one and saved, and the predecessor is marked stale in the
same transaction.

Revision protocol:
    create_first_revision -> save           INSERT (parent_rev_id NULL)
    new_revision          -> save           UPDATE parent SET stale = 1
                                            WHERE rev_id = ? AND stale = 0
                                            AND deleted = 0; INSERT new row
    delete_all_revisions                    supersede current row, INSERT a
                                            deletion revision, flag every
                                            row of the id deleted

Invariants:
    - For each id at most one row has stale = 0 (the current row)
    - The conditional UPDATE and the INSERT share one transaction, so
      the first writer wins and later writers get ConflictError
    - parent_rev_id links each row to the revision it was branched from;
      walking it from the current row visits every revision once
    - No row is ever physically deleted

How to change safely:
    - Keep revision columns out of the payload (see REVISION_COLUMNS)
    - Never add an in-process document cache; every call loads fresh state
"""

from __future__ import annotations

import copy
import json
import logging
import sqlite3
import uuid
from collections.abc import Iterable, Mapping
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from ..errors import (
    AlreadyDeletedError,
    ConflictError,
    DocumentNotFound,
    InvalidUUIDError,
    StaleDocumentError,
    ValidationError,
)
from ..schema.codec import from_millis, from_row, to_millis, to_row, utcnow
from ..schema.types import DocumentType
from .database import Database
from .query import DocumentQuery

if TYPE_CHECKING:
    from .relations import AssociationManager

logger = logging.getLogger(__name__)


class RevisionState(Enum):
    """Lifecycle state of a stored revision row."""

    CURRENT = "current"
    SUPERSEDED = "superseded"
    DELETED = "deleted"


def user_id_of(user: Any) -> str | None:
    """Accept a user id string or anything with an ``id`` attribute."""
    if user is None or isinstance(user, str):
        return user
    return getattr(user, "id", None)


def is_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _plain(value: Any) -> Any:
    if isinstance(value, Document):
        return value.to_dict()
    if isinstance(value, list):
        return [_plain(item) for item in value]
    return value


class Document:
    """One revision of a document, held in memory.

    Content fields live in ``payload`` keyed by camelCase name and are
    reachable with item access (``review["starRating"]``). Revision
    metadata are plain attributes.

    Attributes:
        model: DocumentModel this document belongs to
        payload: Content field values
        id: Stable document identifier
        revision_id: Identifier of this revision row
        revision_user: Id of the user who created this revision
        revision_date: When this revision was created (UTC)
        revision_tags: Ordered labels such as "create", "edit", "delete"
        previous_revision_of: Document id if this row was superseded
        parent_revision_id: Revision this one was branched from
        stale: True once a newer revision superseded this row
        deleted: True once the document history was deleted
        relations: Loaded relation sets keyed by relation name
        virtual: Joined documents and computed values (never persisted)
        permissions: Viewer capability flags (never persisted)
    """

    def __init__(
        self,
        model: DocumentModel,
        payload: dict[str, Any],
        *,
        id: str,
        revision_id: str,
        revision_user: str | None,
        revision_date: datetime,
        revision_tags: list[str],
        previous_revision_of: str | None = None,
        parent_revision_id: str | None = None,
        stale: bool = False,
        deleted: bool = False,
        persisted: bool = False,
    ) -> None:
        self.model = model
        self.payload = payload
        self.id = id
        self.revision_id = revision_id
        self.revision_user = revision_user
        self.revision_date = revision_date
        self.revision_tags = revision_tags
        self.previous_revision_of = previous_revision_of
        self.parent_revision_id = parent_revision_id
        self.stale = stale
        self.deleted = deleted
        self.relations: dict[str, list[Any]] = {}
        self.virtual: dict[str, Any] = {}
        self.permissions: dict[str, bool] = {}
        self._persisted = persisted

    def __repr__(self) -> str:
        return (
            f"<Document {self.doc_type.name} id={self.id} rev={self.revision_id} "
            f"state={self.state.value}>"
        )

    def __getitem__(self, name: str) -> Any:
        return self.payload[name]

    def __setitem__(self, name: str, value: Any) -> None:
        if self.doc_type.get_field(name) is None:
            raise KeyError(f"'{self.doc_type.name}' has no field '{name}'")
        self.payload[name] = value

    def __contains__(self, name: object) -> bool:
        return name in self.payload

    def get(self, name: str, default: Any = None) -> Any:
        return self.payload.get(name, default)

    def update(self, values: Mapping[str, Any]) -> None:
        """Set several content fields at once."""
        for name, value in values.items():
            self[name] = value

    @property
    def doc_type(self) -> DocumentType:
        return self.model.doc_type

    @property
    def is_new(self) -> bool:
        """True until the instance has been written to the store."""
        return not self._persisted

    @property
    def state(self) -> RevisionState:
        if self.deleted:
            return RevisionState.DELETED
        if self.stale:
            return RevisionState.SUPERSEDED
        return RevisionState.CURRENT

    def mark_saved(self) -> None:
        self._persisted = True

    def to_dict(self) -> dict[str, Any]:
        """Caller-facing representation (camelCase keys)."""
        result: dict[str, Any] = {
            "id": self.id,
            "revisionID": self.revision_id,
            "revisionUser": self.revision_user,
            "revisionDate": self.revision_date,
            "revisionTags": list(self.revision_tags),
            "previousRevisionOf": self.previous_revision_of,
            "stale": self.stale,
            "deleted": self.deleted,
        }
        result.update(self.payload)
        for name, related in self.relations.items():
            result[name] = [r.to_dict() if isinstance(r, Document) else r for r in related]
        for name, value in self.virtual.items():
            result[name] = _plain(value)
        result.update(self.permissions)
        return result

    async def save(self) -> Document:
        return await self.model.save(self)

    async def new_revision(self, user: Any, tags: Iterable[str] | None = None) -> Document:
        return await self.model.new_revision(self, user, tags=tags)

    async def delete_all_revisions(self, user: Any, tags: Iterable[str] | None = None) -> Document:
        return await self.model.delete_all_revisions(self, user, tags=tags)

    async def save_all(self, relations: Mapping[str, bool]) -> Document:
        return await self.model.save_all(self, relations)


class DocumentModel:
    """Revision-tracked access to one document type.

    Example:
        >>> reviews = DocumentModel(db, REVIEW_TYPE)
        >>> review = await reviews.create_first_revision(user, tags=["create"])
        >>> review.update({"starRating": 4, "title": {"en": "Good"}, ...})
        >>> await review.save()
        >>> edited = await review.new_revision(user)
        >>> edited["starRating"] = 5
        >>> await edited.save()
    """

    def __init__(self, db: Database, doc_type: DocumentType) -> None:
        self.db = db
        self.doc_type = doc_type
        self.associations: AssociationManager | None = None

    @property
    def table(self) -> str:
        return self.doc_type.table

    # ------------------------------------------------------------------
    # Row mapping
    # ------------------------------------------------------------------

    def row_to_document(self, row: sqlite3.Row) -> Document:
        return Document(
            self,
            from_row(self.doc_type, row),
            id=row["id"],
            revision_id=row["rev_id"],
            revision_user=row["rev_user"],
            revision_date=from_millis(row["rev_date"]),
            revision_tags=json.loads(row["rev_tags"]),
            previous_revision_of=row["old_rev_of"],
            parent_revision_id=row["parent_rev_id"],
            stale=bool(row["stale"]),
            deleted=bool(row["deleted"]),
            persisted=True,
        )

    def _insert_row(self, conn: sqlite3.Connection, doc: Document) -> None:
        content = to_row(self.doc_type, doc.payload)
        columns = [
            "rev_id",
            "id",
            "old_rev_of",
            "parent_rev_id",
            "stale",
            "deleted",
            "rev_user",
            "rev_date",
            "rev_tags",
            *content.keys(),
        ]
        values = [
            doc.revision_id,
            doc.id,
            None,
            doc.parent_revision_id,
            0,
            1 if doc.deleted else 0,
            doc.revision_user,
            to_millis(doc.revision_date),
            json.dumps(doc.revision_tags),
            *content.values(),
        ]
        placeholders = ", ".join("?" for _ in columns)
        conn.execute(
            f"INSERT INTO {self.table} ({', '.join(columns)}) VALUES ({placeholders})",
            values,
        )

    # ------------------------------------------------------------------
    # Creating and saving revisions
    # ------------------------------------------------------------------

    def acting_user(self, user: Any) -> str:
        user_id = user_id_of(user)
        if not user_id:
            raise ValidationError(
                f"A revision of '{self.doc_type.name}' requires an acting user",
                field_name="revisionUser",
                errors=["Acting user id is missing"],
            )
        return user_id

    async def create_first_revision(
        self,
        user: Any,
        tags: Iterable[str] | None = None,
        date: datetime | None = None,
    ) -> Document:
        """Start a new document.

        Args:
            user: Acting user (id string or object with ``id``)
            tags: Revision tags (default ``["create"]``)
            date: Revision date (default now)

        Returns:
            Unsaved Document with fresh id and revision id; content fields
            hold only their declared defaults
        """
        return Document(
            self,
            self.doc_type.defaults(),
            id=str(uuid.uuid4()),
            revision_id=str(uuid.uuid4()),
            revision_user=self.acting_user(user),
            revision_date=date or utcnow(),
            revision_tags=list(tags) if tags is not None else ["create"],
        )

    def validate(self, doc: Document) -> None:
        """Check content and revision metadata before any write.

        Raises:
            ValidationError: Naming the first offending field, with every
                problem listed in ``errors``
        """
        is_valid, problems = self.doc_type.validate_payload(doc.payload)
        if not doc.revision_user:
            problems.insert(0, ("revisionUser", "Acting user id is missing"))
            is_valid = False
        if not is_valid:
            field_name, message = problems[0]
            raise ValidationError(
                f"Invalid {self.doc_type.name}: {message}",
                field_name=field_name,
                errors=[m for _, m in problems],
            )

    def write_revision(self, conn: sqlite3.Connection, doc: Document) -> None:
        """Write an unsaved revision inside an open transaction.

        Raises:
            ConflictError: If the parent revision is no longer current, or a
                first revision reuses an existing id
        """
        if doc.parent_revision_id is not None:
            cursor = conn.execute(
                f"""
                UPDATE {self.table} SET stale = 1, old_rev_of = id
                WHERE rev_id = ? AND id = ? AND stale = 0 AND deleted = 0
                """,
                (doc.parent_revision_id, doc.id),
            )
            if cursor.rowcount == 0:
                raise ConflictError(
                    f"{self.doc_type.name} {doc.id} was changed by another save; "
                    "reload it and try again",
                    document_id=doc.id,
                    revision_id=doc.parent_revision_id,
                )
            self._insert_row(conn, doc)
            return

        try:
            self._insert_row(conn, doc)
        except sqlite3.IntegrityError as exc:
            raise ConflictError(
                f"{self.doc_type.name} {doc.id} already exists",
                document_id=doc.id,
                revision_id=doc.revision_id,
            ) from exc

    def ensure_current(self, conn: sqlite3.Connection, doc: Document) -> None:
        """Raise ConflictError unless doc is still the live current revision."""
        row = conn.execute(
            f"SELECT rev_id FROM {self.table} WHERE id = ? AND stale = 0 AND deleted = 0",
            (doc.id,),
        ).fetchone()
        if row is None or row["rev_id"] != doc.revision_id:
            raise ConflictError(
                f"{self.doc_type.name} {doc.id} is no longer at revision {doc.revision_id}",
                document_id=doc.id,
                revision_id=doc.revision_id,
            )

    def ensure_unsaved(self, doc: Document) -> None:
        """Raise StaleDocumentError if doc was already saved."""
        if not doc.is_new:
            raise StaleDocumentError(
                f"{self.doc_type.name} revision {doc.revision_id} is already saved; "
                "create a new revision to edit it",
                document_id=doc.id,
                revision_id=doc.revision_id,
            )

    async def save(self, doc: Document) -> Document:
        """Validate and persist an unsaved revision.

        Raises:
            ValidationError: If a field is invalid
            ConflictError: If a concurrent save advanced the document first
            StaleDocumentError: If this instance was already saved
        """
        self.ensure_unsaved(doc)
        self.validate(doc)

        with self.db.transaction(f"save {self.doc_type.name}") as conn:
            self.write_revision(conn, doc)
        doc.mark_saved()

        logger.debug(
            "Saved revision",
            extra={
                "document_type": self.doc_type.name,
                "document_id": doc.id,
                "revision_id": doc.revision_id,
                "parent_revision_id": doc.parent_revision_id,
            },
        )
        return doc

    async def new_revision(
        self,
        doc: Document,
        user: Any,
        tags: Iterable[str] | None = None,
    ) -> Document:
        """Branch an unsaved revision from a current document.

        Args:
            doc: Saved, current, non-deleted revision
            user: Acting user
            tags: Revision tags (default ``["edit"]``)

        Raises:
            StaleDocumentError: If doc is unsaved, stale or deleted
        """
        if doc.is_new or doc.stale or doc.deleted:
            raise StaleDocumentError(
                f"Cannot create a new revision of {self.doc_type.name} {doc.id}: "
                f"revision {doc.revision_id} is {'unsaved' if doc.is_new else doc.state.value}",
                document_id=doc.id,
                revision_id=doc.revision_id,
            )
        revision = Document(
            self,
            copy.deepcopy(doc.payload),
            id=doc.id,
            revision_id=str(uuid.uuid4()),
            revision_user=self.acting_user(user),
            revision_date=utcnow(),
            revision_tags=list(tags) if tags is not None else ["edit"],
            parent_revision_id=doc.revision_id,
        )
        revision.relations = {name: list(items) for name, items in doc.relations.items()}
        return revision

    async def save_all(self, doc: Document, relations: Mapping[str, bool]) -> Document:
        if self.associations is None:
            raise RuntimeError(f"No association manager configured for '{self.doc_type.name}'")
        return await self.associations.save_all(doc, relations)

    # ------------------------------------------------------------------
    # Deletion
    # ------------------------------------------------------------------

    def delete_in(
        self,
        conn: sqlite3.Connection,
        document_id: str,
        user_id: str,
        tags: Iterable[str] = (),
    ) -> Document:
        """Delete a document's history inside an open transaction.

        Returns:
            The deletion revision

        Raises:
            DocumentNotFound: If the id has no rows
            AlreadyDeletedError: If the history is already deleted
        """
        row = conn.execute(
            f"SELECT * FROM {self.table} WHERE id = ? AND stale = 0",
            (document_id,),
        ).fetchone()
        if row is None:
            raise DocumentNotFound(
                f"{self.doc_type.name} {document_id} not found",
                document_type=self.doc_type.name,
                document_id=document_id,
            )
        if row["deleted"]:
            raise AlreadyDeletedError(
                f"{self.doc_type.name} {document_id} has already been deleted",
                document_id=document_id,
            )

        current = self.row_to_document(row)
        deletion = Document(
            self,
            current.payload,
            id=document_id,
            revision_id=str(uuid.uuid4()),
            revision_user=user_id,
            revision_date=utcnow(),
            revision_tags=["delete", *tags],
            parent_revision_id=current.revision_id,
            deleted=True,
        )
        conn.execute(
            f"UPDATE {self.table} SET stale = 1, old_rev_of = id WHERE rev_id = ?",
            (current.revision_id,),
        )
        self._insert_row(conn, deletion)
        conn.execute(f"UPDATE {self.table} SET deleted = 1 WHERE id = ?", (document_id,))
        deletion.mark_saved()
        return deletion

    async def delete_all_revisions(
        self,
        doc: Document,
        user: Any,
        tags: Iterable[str] | None = None,
    ) -> Document:
        """Soft-delete every revision of a document.

        The current row is superseded by a deletion revision recording the
        acting user and tags ``["delete", *tags]``; all rows of the id are
        flagged deleted. Nothing is physically removed.

        Returns:
            The deletion revision

        Raises:
            AlreadyDeletedError: If the document was already deleted
        """
        user_id = self.acting_user(user)
        with self.db.transaction(f"delete {self.doc_type.name}") as conn:
            deletion = self.delete_in(conn, doc.id, user_id, tags or ())
        doc.deleted = True

        logger.info(
            f"Deleted {self.doc_type.name} {doc.id}",
            extra={"document_id": doc.id, "revision_user": user_id},
        )
        return deletion

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def check_id(self, document_id: Any) -> None:
        if not is_uuid(document_id):
            raise InvalidUUIDError(
                f"'{document_id}' is not a valid {self.doc_type.name} id",
                document_type=self.doc_type.name,
                document_id=str(document_id),
            )

    def _not_found(self, document_id: str) -> DocumentNotFound:
        return DocumentNotFound(
            f"{self.doc_type.name} {document_id} not found",
            document_type=self.doc_type.name,
            document_id=document_id,
        )

    async def get(self, document_id: str) -> Document:
        """Load the latest row for an id, even if it is deleted.

        Raises:
            DocumentNotFound: If the id has no rows
        """
        self.check_id(document_id)
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE id = ? AND stale = 0",
                (document_id,),
            ).fetchone()
        if row is None:
            raise self._not_found(document_id)
        return self.row_to_document(row)

    async def get_revision(self, revision_id: str) -> Document:
        """Load one specific revision row."""
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE rev_id = ?", (revision_id,)
            ).fetchone()
        if row is None:
            raise DocumentNotFound(
                f"{self.doc_type.name} revision {revision_id} not found",
                document_type=self.doc_type.name,
            )
        return self.row_to_document(row)

    async def get_revisions(self, document_id: str) -> list[Document]:
        """Full history of a document, newest first."""
        self.check_id(document_id)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} WHERE id = ? ORDER BY rev_date DESC, rowid DESC",
                (document_id,),
            ).fetchall()
        return [self.row_to_document(row) for row in rows]

    async def get_not_stale_or_deleted(self, document_id: str) -> Document:
        """Load the current, live revision of a document.

        Raises:
            DocumentNotFound: If the document never existed or was deleted
            InvalidUUIDError: If document_id is not a UUID
        """
        self.check_id(document_id)
        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {self.table} WHERE id = ? AND stale = 0 AND deleted = 0",
                (document_id,),
            ).fetchone()
        if row is None:
            raise self._not_found(document_id)
        return self.row_to_document(row)

    async def get_multiple_not_stale_or_deleted(self, document_ids: Iterable[str]) -> list[Document]:
        """Load several live documents, in the order requested; unknown ids are skipped."""
        ids = [i for i in dict.fromkeys(document_ids) if is_uuid(i)]
        if not ids:
            return []
        placeholders = ", ".join("?" for _ in ids)
        with self.db.connection() as conn:
            rows = conn.execute(
                f"""
                SELECT * FROM {self.table}
                WHERE id IN ({placeholders}) AND stale = 0 AND deleted = 0
                """,
                ids,
            ).fetchall()
        by_id = {row["id"]: self.row_to_document(row) for row in rows}
        return [by_id[i] for i in ids if i in by_id]

    def filter_not_stale_or_deleted(self) -> DocumentQuery:
        """Lazy query over current, live documents."""
        return DocumentQuery(self)

    def filter_where(self, **criteria: Any) -> DocumentQuery:
        return self.filter_not_stale_or_deleted().filter_where(**criteria)
