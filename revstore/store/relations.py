"""
Association manager: join-table relations and composite reads/writes.

Relations link documents by id (never by revision), so they survive new
revisions of either side. Each relation is a set: one row per pair.

Invariants:
    - save_all writes the anchor revision and every listed relation set in
      one transaction; a failure leaves none of it visible
    - Syncing a relation keeps rows that are still wanted (and their
      timestamps), deletes rows that are no longer wanted and inserts the
      rest with INSERT OR IGNORE
    - Duplicate targets in memory collapse to one row
    - get_with_data hydrates related documents that are current and live

How to change safely:
    - New relations are declared on the DocumentType, not here
    - Keep every multi-table write inside Database.transaction()
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import Iterable, Mapping
from typing import Any

from ..errors import DocumentNotFound, StaleDocumentError
from ..schema.codec import to_millis, utcnow
from ..schema.types import RelationDef
from .database import Database
from .documents import Document, DocumentModel, user_id_of

logger = logging.getLogger(__name__)


def target_ids(items: Iterable[Any]) -> list[str]:
    """Ids of related items (documents, id strings or objects with ``id``), deduplicated in order."""
    ids: dict[str, None] = {}
    for item in items:
        item_id = user_id_of(item)
        if not item_id:
            raise ValueError(f"Related item {item!r} has no id")
        ids[item_id] = None
    return list(ids)


class AssociationManager:
    """Multi-table saves and reads for documents with relations.

    Example:
        >>> team["name"] = {"en": "Readers"}
        >>> team.relations["members"] = [founder, alice, bob]
        >>> team.relations["moderators"] = [founder]
        >>> await associations.save_all(team, {"members": True, "moderators": True})
        >>> loaded = await associations.get_with_data("team", team.id, with_members=True)
    """

    def __init__(self, db: Database, models: Mapping[str, DocumentModel]) -> None:
        self.db = db
        self.models = models

    def _relation(self, doc: Document, name: str) -> RelationDef:
        relation = doc.doc_type.get_relation(name)
        if relation is None:
            raise ValueError(f"'{doc.doc_type.name}' has no relation '{name}'")
        return relation

    def sync_relation(
        self,
        conn: sqlite3.Connection,
        relation: RelationDef,
        source_id: str,
        wanted: list[str],
    ) -> tuple[int, int]:
        """Make the stored pairs for source_id equal wanted (inside a transaction).

        Returns:
            Tuple of (rows added, rows removed)
        """
        rows = conn.execute(
            f"SELECT {relation.target_column} FROM {relation.join_table} "
            f"WHERE {relation.source_column} = ?",
            (source_id,),
        ).fetchall()
        existing = {row[0] for row in rows}

        removed = [target for target in existing if target not in wanted]
        added = [target for target in wanted if target not in existing]

        conn.executemany(
            f"DELETE FROM {relation.join_table} "
            f"WHERE {relation.source_column} = ? AND {relation.target_column} = ?",
            [(source_id, target) for target in removed],
        )
        now = to_millis(utcnow())
        conn.executemany(
            f"INSERT OR IGNORE INTO {relation.join_table} "
            f"({relation.source_column}, {relation.target_column}, {relation.timestamp_column}) "
            "VALUES (?, ?, ?)",
            [(source_id, target, now) for target in added],
        )
        return len(added), len(removed)

    async def save_all(self, doc: Document, relations: Mapping[str, bool]) -> Document:
        """Persist a document and the listed relation sets atomically.

        An unsaved revision is written first (with the usual optimistic
        check). An already saved revision must still be current; only its
        relations are written.

        Args:
            doc: Anchor document with ``doc.relations`` populated
            relations: Relation names mapped to True to persist them

        Raises:
            ValidationError: If the anchor document is invalid
            ConflictError: If the anchor is no longer current
            PersistenceError: If the store fails; nothing is written
        """
        model = doc.model
        wanted = {
            name: (self._relation(doc, name), target_ids(doc.relations.get(name, [])))
            for name, enabled in relations.items()
            if enabled
        }
        is_new = doc.is_new
        if is_new:
            model.validate(doc)

        with self.db.transaction(f"save_all {doc.doc_type.name}") as conn:
            if is_new:
                model.write_revision(conn, doc)
            else:
                model.ensure_current(conn, doc)
            changes = {
                name: self.sync_relation(conn, relation, doc.id, ids)
                for name, (relation, ids) in wanted.items()
            }
        if is_new:
            doc.mark_saved()

        logger.debug(
            "Saved document with relations",
            extra={
                "document_type": doc.doc_type.name,
                "document_id": doc.id,
                "relations": {name: {"added": a, "removed": r} for name, (a, r) in changes.items()},
            },
        )
        return doc

    async def create(self, doc: Document, relations: Mapping[str, bool]) -> Document:
        """Combined create: first revision plus its relation rows, atomically."""
        if not doc.is_new:
            raise StaleDocumentError(
                f"{doc.doc_type.name} {doc.id} is already saved",
                document_id=doc.id,
                revision_id=doc.revision_id,
            )
        return await self.save_all(doc, relations)

    def add_pair(
        self, conn: sqlite3.Connection, relation: RelationDef, source_id: str, target_id: str
    ) -> bool:
        """Insert one pair inside an open transaction; False if it already existed."""
        cursor = conn.execute(
            f"INSERT OR IGNORE INTO {relation.join_table} "
            f"({relation.source_column}, {relation.target_column}, {relation.timestamp_column}) "
            "VALUES (?, ?, ?)",
            (source_id, target_id, to_millis(utcnow())),
        )
        return cursor.rowcount > 0

    async def add_relation(self, doc: Document, name: str, target: Any) -> bool:
        """Add one pair; returns False if it already existed."""
        relation = self._relation(doc, name)
        (target_id,) = target_ids([target])
        with self.db.transaction(f"add {name}") as conn:
            added = self.add_pair(conn, relation, doc.id, target_id)
        if added and name in doc.relations:
            doc.relations[name].append(target)
        return added

    async def remove_relation(self, doc: Document, name: str, target: Any) -> bool:
        """Remove one pair; returns False if it did not exist."""
        removed = await self.remove_from_relations(doc, [name], target)
        return removed[name]

    async def remove_from_relations(
        self, doc: Document, names: Iterable[str], target: Any
    ) -> dict[str, bool]:
        """Remove target from several relations of doc in one transaction.

        Returns:
            Relation name mapped to whether a pair was removed
        """
        relations = [self._relation(doc, name) for name in names]
        (target_id,) = target_ids([target])
        removed = {}
        with self.db.transaction(f"remove from {doc.doc_type.name}") as conn:
            for relation in relations:
                cursor = conn.execute(
                    f"DELETE FROM {relation.join_table} "
                    f"WHERE {relation.source_column} = ? AND {relation.target_column} = ?",
                    (doc.id, target_id),
                )
                removed[relation.name] = cursor.rowcount > 0
        for relation in relations:
            if relation.name in doc.relations:
                doc.relations[relation.name] = [
                    item for item in doc.relations[relation.name] if user_id_of(item) != target_id
                ]
        return removed

    def load_relations(
        self,
        conn: sqlite3.Connection,
        doc: Document,
        names: Iterable[str],
    ) -> None:
        """Hydrate relation sets of doc using an open connection."""
        for name in names:
            relation = self._relation(doc, name)
            target = self.models[relation.target_type]
            rows = conn.execute(
                f"""
                SELECT t.* FROM {target.table} t
                JOIN {relation.join_table} j ON j.{relation.target_column} = t.id
                WHERE j.{relation.source_column} = ? AND t.stale = 0 AND t.deleted = 0
                ORDER BY j.{relation.timestamp_column} ASC, t.id ASC
                """,
                (doc.id,),
            ).fetchall()
            doc.relations[name] = [target.row_to_document(row) for row in rows]

    async def get_with_data(self, type_name: str, document_id: str, **options: bool) -> Document:
        """Load a current document and the requested relation sets in one read.

        Args:
            type_name: Document type of the anchor
            document_id: Anchor id
            **options: ``with_<relation>=True`` flags, e.g. ``with_members``

        Raises:
            DocumentNotFound: If there is no live document with that id
            TypeError: If an option names no relation of the type
        """
        model = self.models[type_name]
        flags = {relation.load_flag: relation.name for relation in model.doc_type.relations}
        unknown = set(options) - set(flags)
        if unknown:
            raise TypeError(f"Unknown options for '{type_name}': {sorted(unknown)}")
        model.check_id(document_id)

        with self.db.connection() as conn:
            row = conn.execute(
                f"SELECT * FROM {model.table} WHERE id = ? AND stale = 0 AND deleted = 0",
                (document_id,),
            ).fetchone()
            if row is None:
                raise DocumentNotFound(
                    f"{type_name} {document_id} not found",
                    document_type=type_name,
                    document_id=document_id,
                )
            doc = model.row_to_document(row)
            self.load_relations(conn, doc, [flags[flag] for flag, wanted in options.items() if wanted])
        return doc
