"""
Lazy queries over current, live documents.

A DocumentQuery is an immutable description of a SELECT. Builder methods
return a new query; nothing touches the database until run(), first(),
count(), average(), page() or ``async for``. Every execution re-runs the
SELECT, so a query object can be iterated any number of times.

Invariants:
    - Only rows with stale = 0 AND deleted = 0 are ever returned
    - Column names come from the document type, never from caller strings
    - Pagination is keyed on a timestamp: a page holds rows strictly older
      than offset_date, newest first
"""

from __future__ import annotations

import logging
import sqlite3
from collections.abc import AsyncIterator, Iterable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import TYPE_CHECKING, Any

from ..schema.codec import encode_value, to_millis

if TYPE_CHECKING:
    from ..schema.types import RelationDef
    from .documents import Document, DocumentModel

logger = logging.getLogger(__name__)

_REVISION_FIELDS = {
    "id": "id",
    "revisionDate": "rev_date",
    "revisionUser": "rev_user",
}


@dataclass
class FeedPage:
    """One page of a timestamp-keyed feed.

    Attributes:
        items: Documents on this page, newest first
        offset_date: Pass back to fetch the next page; None on the last page
    """

    items: list[Document]
    offset_date: datetime | None = None


@dataclass(frozen=True)
class QueryState:
    conditions: tuple[str, ...] = ()
    params: tuple[Any, ...] = ()
    order: tuple[tuple[str, bool], ...] = ()
    limit: int | None = None


@dataclass(frozen=True)
class DocumentQuery:
    """Restartable query over one document type.

    Example:
        >>> query = reviews.filter_where(thingID=thing.id).order_by("createdOn").limit(10)
        >>> async for review in query:
        ...     print(review["title"])
    """

    model: DocumentModel
    state: QueryState = field(default_factory=QueryState)

    # ------------------------------------------------------------------
    # Builder
    # ------------------------------------------------------------------

    def _column(self, name: str) -> str:
        if name in _REVISION_FIELDS:
            return _REVISION_FIELDS[name]
        f = self.model.doc_type.get_field(name)
        if f is None:
            raise ValueError(f"'{self.model.doc_type.name}' has no field '{name}'")
        return f.column

    def _encode(self, name: str, value: Any) -> Any:
        if name in _REVISION_FIELDS:
            return to_millis(value) if isinstance(value, datetime) else value
        return encode_value(self.model.doc_type.get_field(name).kind, value)

    def _where(self, condition: str, *params: Any) -> DocumentQuery:
        state = replace(
            self.state,
            conditions=self.state.conditions + (condition,),
            params=self.state.params + params,
        )
        return replace(self, state=state)

    def filter_where(self, **criteria: Any) -> DocumentQuery:
        """Require field == value for each keyword (None matches NULL)."""
        query = self
        for name, value in criteria.items():
            column = self._column(name)
            if value is None:
                query = query._where(f"t.{column} IS NULL")
            else:
                query = query._where(f"t.{column} = ?", self._encode(name, value))
        return query

    def exclude(self, **criteria: Any) -> DocumentQuery:
        """Require field != value (or IS NOT NULL) for each keyword."""
        query = self
        for name, value in criteria.items():
            column = self._column(name)
            if value is None:
                query = query._where(f"t.{column} IS NOT NULL")
            else:
                query = query._where(
                    f"(t.{column} IS NULL OR t.{column} != ?)", self._encode(name, value)
                )
        return query

    def where_in(self, name: str, values: Iterable[Any]) -> DocumentQuery:
        """Require field to be one of values (an empty list matches nothing)."""
        values = list(values)
        if not values:
            return self._where("0")
        column = self._column(name)
        placeholders = ", ".join("?" for _ in values)
        return self._where(
            f"t.{column} IN ({placeholders})", *(self._encode(name, v) for v in values)
        )

    def where_related(self, name: str, other: DocumentModel, **criteria: Any) -> DocumentQuery:
        """Require field to reference a live document of another type matching criteria."""
        column = self._column(name)
        sub = other.filter_not_stale_or_deleted().filter_where(**criteria)
        sub_sql, sub_params = sub._build("t.id")
        return self._where(f"t.{column} IN ({sub_sql})", *sub_params)

    def where_contains(self, name: str, value: Any) -> DocumentQuery:
        """Require a list field (stored as JSON) to contain value."""
        column = self._column(name)
        return self._where(
            f"EXISTS (SELECT 1 FROM json_each(t.{column}) WHERE json_each.value = ?)", value
        )

    def linked_to(self, relation: RelationDef, source_id: str) -> DocumentQuery:
        """Require the document to be a target of source_id through relation."""
        return self._where(
            f"t.id IN (SELECT {relation.target_column} FROM {relation.join_table} "
            f"WHERE {relation.source_column} = ?)",
            source_id,
        )

    def before(self, name: str, date: datetime) -> DocumentQuery:
        """Require a date field to be strictly older than date."""
        return self._where(f"t.{self._column(name)} < ?", to_millis(date))

    def order_by(self, name: str, descending: bool = True) -> DocumentQuery:
        state = replace(
            self.state, order=self.state.order + ((self._column(name), descending),)
        )
        return replace(self, state=state)

    def limit(self, n: int) -> DocumentQuery:
        if n < 0:
            raise ValueError(f"limit must be >= 0, got {n}")
        return replace(self, state=replace(self.state, limit=n))

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _default_order(self) -> tuple[tuple[str, bool], ...]:
        date_field = self.model.doc_type.date_field
        return ((self._column(date_field) if date_field else "rev_date", True),)

    def _build(self, select: str = "t.*", ordered: bool = False) -> tuple[str, list[Any]]:
        conditions = ["t.stale = 0", "t.deleted = 0", *self.state.conditions]
        sql = f"SELECT {select} FROM {self.model.table} t WHERE {' AND '.join(conditions)}"
        if ordered:
            order = self.state.order or self._default_order()
            terms = [f"t.{column} {'DESC' if desc else 'ASC'}" for column, desc in order]
            terms.append("t.rowid DESC")
            sql += " ORDER BY " + ", ".join(terms)
            if self.state.limit is not None:
                sql += f" LIMIT {int(self.state.limit)}"
        return sql, list(self.state.params)

    def run_in(self, conn: sqlite3.Connection) -> list[Document]:
        """Execute the query on an open connection, e.g. inside a transaction."""
        sql, params = self._build(ordered=True)
        rows = conn.execute(sql, params).fetchall()
        return [self.model.row_to_document(row) for row in rows]

    async def run(self) -> list[Document]:
        """Execute the query and return every matching document."""
        with self.model.db.connection() as conn:
            return self.run_in(conn)

    async def __aiter__(self) -> AsyncIterator[Document]:
        for doc in await self.run():
            yield doc

    async def first(self) -> Document | None:
        docs = await self.limit(1).run()
        return docs[0] if docs else None

    async def count(self) -> int:
        sql, params = self._build("count(*)")
        with self.model.db.connection() as conn:
            return conn.execute(sql, params).fetchone()[0]

    async def average(self, name: str) -> float | None:
        """Average of a numeric field over matching documents (None if no rows)."""
        sql, params = self._build(f"avg(t.{self._column(name)})")
        with self.model.db.connection() as conn:
            return conn.execute(sql, params).fetchone()[0]

    async def page(
        self,
        limit: int,
        offset_date: datetime | None = None,
        date_field: str | None = None,
    ) -> FeedPage:
        """Fetch one page of a feed ordered by a date field, newest first.

        Args:
            limit: Maximum number of documents on the page
            offset_date: Only return documents strictly older than this
            date_field: Field to order and paginate on (default: createdOn,
                or the revision date for types without one)

        Returns:
            FeedPage whose offset_date is the oldest returned item's date
            when more documents remain, else None
        """
        date_field = date_field or self.model.doc_type.date_field or "revisionDate"
        query = replace(self, state=replace(self.state, order=()))
        query = query.order_by(date_field, descending=True).limit(limit + 1)
        if offset_date is not None:
            query = query.before(date_field, offset_date)

        items = await query.run()
        next_offset = None
        if len(items) > limit:
            items = items[:limit]
            last = items[-1]
            next_offset = last.revision_date if date_field == "revisionDate" else last[date_field]

        logger.debug(
            "Fetched feed page",
            extra={
                "document_type": self.model.doc_type.name,
                "count": len(items),
                "has_more": next_offset is not None,
            },
        )
        return FeedPage(items=items, offset_date=next_offset)
