"""
Human-readable names (slugs) for documents.

Slug rows map a URL-safe name to a document id. A document's canonical
name is recorded in its own ``canonicalSlugName`` field; every older name
keeps its row and resolves by redirecting to the canonical one.

Resolution outcomes for a candidate name:
    match     candidate is the document's canonical slug -> document
    redirect  candidate is a UUID or an older name       -> RedirectedError
    not found no slug row has that name                  -> DocumentNotFound

Invariants:
    - Slug rows are never deleted or renamed
    - A name belongs to exactly one document (primary key on name)
    - Reserved names are always qualified ("new" -> "new-2")
    - Qualified names count up from the latest qualifier for the base name
"""

from __future__ import annotations

import html
import logging
import re
import sqlite3
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from urllib.parse import quote

from .errors import DocumentNotFound, RedirectedError
from .schema.codec import from_millis, to_millis, utcnow
from .schema.multilingual import resolve
from .store.database import Database, slug_foreign_key, slug_table
from .store.documents import Document, DocumentModel, is_uuid

logger = logging.getLogger(__name__)

RESERVED_SLUGS = frozenset(
    {
        "register",
        "actions",
        "signin",
        "login",
        "teams",
        "user",
        "new",
        "signout",
        "logout",
        "api",
        "faq",
        "static",
        "terms",
    }
)

_REMOVED_CHARS = re.compile(r"[?<>:\"″'`‘’‛′“”‹›«»]")
_HYPHENATED_CHARS = re.compile(r"[ _/]")
_HYPHEN_RUNS = re.compile(r"-{2,}")


def generate_slug_name(text: str) -> str:
    """Normalize a string into a URL-safe slug.

    Unescapes HTML entities, lowercases, turns ampersands, spaces,
    underscores and slashes into hyphens, drops quote-like punctuation and
    collapses hyphen runs. Non-ASCII letters are kept.

    >>> generate_slug_name("B&B Hotel")
    'b-b-hotel'
    >>> generate_slug_name("Café Münchën")
    'café-münchën'

    Raises:
        ValueError: If the input is not a string, is empty, or the result
            is empty or a UUID
    """
    if not isinstance(text, str):
        raise ValueError("Source string is undefined or not a string.")
    trimmed = text.strip()
    if not trimmed:
        raise ValueError("Source string cannot be empty.")

    slug = html.unescape(trimmed).strip().lower()
    slug = slug.replace("&", "-")
    slug = _REMOVED_CHARS.sub("", slug)
    slug = _HYPHENATED_CHARS.sub("-", slug)
    slug = _HYPHEN_RUNS.sub("-", slug)

    if not slug:
        raise ValueError("Source string cannot be converted to a valid slug.")
    if is_uuid(slug):
        raise ValueError("Source string cannot be a UUID.")
    return slug


@dataclass(frozen=True)
class SlugRecord:
    """A stored slug row.

    Attributes:
        name: Full slug name (e.g. "dune-2")
        document_id: Document the name points to
        base_name: Name before qualification (e.g. "dune")
        qualifier_part: Numeric suffix, or None for an unqualified name
        created_on: When the row was created
        created_by: User who caused the row to be created
    """

    name: str
    document_id: str
    base_name: str
    qualifier_part: str | None
    created_on: datetime
    created_by: str | None


class SlugStore:
    """Slug rows of one sluggable document type."""

    def __init__(self, db: Database, model: DocumentModel) -> None:
        self.db = db
        self.model = model
        self.table = slug_table(model.doc_type)
        self.foreign_key = slug_foreign_key(model.doc_type)

    def _record(self, row: sqlite3.Row) -> SlugRecord:
        return SlugRecord(
            name=row["name"],
            document_id=row[self.foreign_key],
            base_name=row["base_name"],
            qualifier_part=row["qualifier_part"],
            created_on=from_millis(row["created_on"]),
            created_by=row["created_by"],
        )

    def _find(self, conn: sqlite3.Connection, name: str) -> SlugRecord | None:
        row = conn.execute(f"SELECT * FROM {self.table} WHERE name = ?", (name,)).fetchone()
        return self._record(row) if row else None

    def _insert(
        self,
        conn: sqlite3.Connection,
        name: str,
        base_name: str,
        qualifier: str | None,
        document_id: str,
        user_id: str | None,
    ) -> SlugRecord:
        created_on = utcnow()
        conn.execute(
            f"""
            INSERT INTO {self.table}
                (name, {self.foreign_key}, base_name, qualifier_part, created_on, created_by)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (name, document_id, base_name, qualifier, to_millis(created_on), user_id),
        )
        return SlugRecord(name, document_id, base_name, qualifier, created_on, user_id)

    async def get_by_name(self, name: str) -> SlugRecord | None:
        with self.db.connection() as conn:
            return self._find(conn, name)

    async def get_for_document(self, document_id: str) -> list[SlugRecord]:
        """Every name ever given to a document, oldest first."""
        with self.db.connection() as conn:
            rows = conn.execute(
                f"SELECT * FROM {self.table} WHERE {self.foreign_key} = ? "
                "ORDER BY created_on ASC, rowid ASC",
                (document_id,),
            ).fetchall()
        return [self._record(row) for row in rows]

    def claim(
        self, conn: sqlite3.Connection, base_name: str, document_id: str, user_id: str | None
    ) -> SlugRecord:
        """Claim base_name for a document inside an open transaction.

        Returns the existing row when the document already owns the name
        (or a qualified form of it).
        """
        if base_name not in RESERVED_SLUGS:
            existing = self._find(conn, base_name)
            if existing is None:
                return self._insert(conn, base_name, base_name, None, document_id, user_id)
            if existing.document_id == document_id:
                return existing

        row = conn.execute(
            f"""
            SELECT * FROM {self.table}
            WHERE base_name = ? AND {self.foreign_key} = ?
            ORDER BY created_on DESC, rowid DESC LIMIT 1
            """,
            (base_name, document_id),
        ).fetchone()
        if row is not None:
            return self._record(row)

        row = conn.execute(
            f"""
            SELECT qualifier_part FROM {self.table}
            WHERE base_name = ? AND qualifier_part IS NOT NULL
            ORDER BY created_on DESC, rowid DESC LIMIT 1
            """,
            (base_name,),
        ).fetchone()
        qualifier = int(row["qualifier_part"]) + 1 if row else 2

        while True:
            name = f"{base_name}-{qualifier}"
            existing = self._find(conn, name)
            if existing is None:
                return self._insert(conn, name, base_name, str(qualifier), document_id, user_id)
            if existing.document_id == document_id:
                return existing
            qualifier += 1

    async def qualified_save(self, base_name: str, document_id: str, user_id: str | None) -> SlugRecord:
        """Claim base_name for a document, qualifying it if necessary."""
        with self.db.transaction(f"save {self.table}") as conn:
            return self.claim(conn, base_name, document_id, user_id)

    def base_name_for(self, doc: Document, source_field: str, language: str | None = None) -> str | None:
        """Slug the text of source_field would produce, or None if there is none.

        Only the document's original language produces a slug.
        """
        original_language = doc.get("originalLanguage") or "en"
        if (language or original_language) != original_language:
            return None
        resolved = resolve(original_language, doc.get(source_field))
        if resolved is None or not resolved.text.strip():
            return None
        try:
            return generate_slug_name(resolved.text)
        except ValueError:
            return None

    def assign(
        self,
        conn: sqlite3.Connection,
        doc: Document,
        user_id: str | None,
        source_field: str,
        language: str | None = None,
    ) -> bool:
        """Set ``doc["canonicalSlugName"]`` from source_field inside an open transaction.

        Returns:
            True if the canonical slug changed
        """
        base_name = self.base_name_for(doc, source_field, language)
        if base_name is None or base_name == doc.get("canonicalSlugName"):
            return False
        record = self.claim(conn, base_name, doc.id, user_id)
        if record.name == doc.get("canonicalSlugName"):
            return False
        doc["canonicalSlugName"] = record.name
        logger.debug(
            "Updated canonical slug",
            extra={"document_id": doc.id, "slug": record.name, "table": self.table},
        )
        return True

    async def update_slug(
        self,
        doc: Document,
        user_id: str | None,
        source_field: str,
        language: str | None = None,
    ) -> Document:
        """Save an unsaved revision with a canonical slug derived from source_field.

        The slug row and the revision are written in one transaction: a
        revision that loses a save race leaves no slug row behind. Old slug
        rows stay in place so old links keep redirecting.

        Returns:
            The saved revision

        Raises:
            ValidationError: If a field is invalid
            ConflictError: If a concurrent save advanced the document first
            StaleDocumentError: If doc was already saved
        """
        self.model.ensure_unsaved(doc)
        self.model.validate(doc)
        previous = doc.get("canonicalSlugName")
        try:
            with self.db.transaction(f"save {self.model.doc_type.name} with slug") as conn:
                changed = self.assign(conn, doc, user_id, source_field, language)
                self.model.write_revision(conn, doc)
        except BaseException:
            if previous is None:
                doc.payload.pop("canonicalSlugName", None)
            else:
                doc["canonicalSlugName"] = previous
            raise
        doc.mark_saved()

        logger.debug(
            "Saved revision with slug",
            extra={
                "document_id": doc.id,
                "revision_id": doc.revision_id,
                "slug": doc.get("canonicalSlugName"),
                "slug_changed": changed,
            },
        )
        return doc


class SlugResolver:
    """Resolve a slug or id in a request path to a loaded document.

    Attributes:
        slugs: Slug rows of the document type
        base_path: Path prefix of document URLs ("/" for things, "/team/" for teams)
        load: Coroutine loading a live document by id
    """

    def __init__(
        self,
        slugs: SlugStore,
        base_path: str,
        load: Callable[[str], Awaitable[Document]] | None = None,
    ) -> None:
        self.slugs = slugs
        self.base_path = base_path
        self.load = load or slugs.model.get_not_stale_or_deleted

    def redirect_target(self, request_path: str, query_string: str, target_slug: str) -> str:
        """Path to the canonical slug, keeping any sub-path and the query string."""
        target = self.base_path + quote(target_slug, safe="!*'()")
        if request_path.startswith(self.base_path):
            rest = request_path[len(self.base_path) :]
            slash = rest.find("/")
            if slash != -1:
                target += rest[slash:]
        query_string = query_string.lstrip("?")
        if query_string:
            target += "?" + query_string
        return target

    async def resolve_and_load(self, request_path: str, query_string: str, candidate: str) -> Document:
        """Load the document named by candidate.

        Raises:
            RedirectedError: If candidate is an id or a non-canonical name
            DocumentNotFound: If no slug row or live document matches
        """
        if is_uuid(candidate):
            doc = await self.load(candidate)
            canonical = doc.get("canonicalSlugName")
            if canonical:
                raise RedirectedError(self.redirect_target(request_path, query_string, canonical))
            return doc

        slug = await self.slugs.get_by_name(candidate)
        if slug is None:
            raise DocumentNotFound(
                f"Slug '{candidate}' not found for {self.slugs.model.doc_type.name}",
                document_type=self.slugs.model.doc_type.name,
            )

        doc = await self.load(slug.document_id)
        canonical = doc.get("canonicalSlugName")
        if canonical == slug.name:
            return doc
        raise RedirectedError(self.redirect_target(request_path, query_string, canonical or doc.id))
