"""
Things: the subjects of reviews.

A thing is identified to the outside world by its URLs and its slug.
Descriptive fields can be kept in sync with external sources (see
revstore.sync); which source owns which field is recorded in ``sync``.

Invariants:
    - urls is non-empty; the first URL is the primary one
    - Labels and slugs are derived from the original language only
    - A thing created through a review is written in the same transaction
      as the review (see ReviewService.create)
"""

from __future__ import annotations

import asyncio
import logging
import re
import sqlite3
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from ..config import SyncConfig
from ..permissions import Viewer, populate_user_info
from ..schema.codec import utcnow
from ..schema.multilingual import resolve
from ..schema.types import DocumentType, field
from ..slugs import SlugResolver, SlugStore
from ..store.documents import Document, user_id_of
from ..store.repository import DocumentStore
from ..sync import (
    AdapterRegistry,
    LookupResult,
    initialize_fields_from_adapter,
    safe_lookup,
    update_active_syncs,
)

logger = logging.getLogger(__name__)

THING_TYPE = DocumentType(
    name="thing",
    table="things",
    description="Reviewable subject identified by one or more URLs",
    fields=(
        field("urls", "string_list", required=True, max_length=2048),
        field("label", "multilingual", max_length=256),
        field("aliases", "multilingual_list", max_length=256),
        field("metadata", "json"),
        field("sync", "json"),
        field("originalLanguage", "language"),
        field("canonicalSlugName", "string", max_length=256),
        field("createdOn", "datetime", required=True),
        field("createdBy", "uuid", required=True),
    ),
)

_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)

USER_REVIEWS_LIMIT = 50


def prettify_url(url: str) -> str:
    """Short display form of a URL: no scheme, no ``www.``, no trailing slash."""
    pretty = _SCHEME.sub("", url)
    if pretty.startswith("www."):
        pretty = pretty[4:]
    return pretty.rstrip("/")


def get_label(thing: Document | None, language: str) -> str | None:
    """Best label for a thing in a language, falling back to its first URL."""
    if thing is None:
        return None
    resolved = resolve(language, thing.get("label"))
    if resolved and resolved.text:
        return resolved.text
    urls = thing.get("urls") or []
    if urls:
        return prettify_url(urls[0])
    return None


@dataclass
class ReviewMetrics:
    average_star_rating: float
    number_of_reviews: int


class ThingService:
    """Creation, lookup, slugs and metadata sync for things.

    Attributes:
        model: Thing document model
        slugs: Thing slug rows
        resolver: Resolves ``/<slug>`` paths to things
        adapters: Metadata adapters consulted for new and synced things
    """

    def __init__(
        self,
        store: DocumentStore,
        adapters: AdapterRegistry | None = None,
        sync_config: SyncConfig | None = None,
    ) -> None:
        self.store = store
        self.model = store.model("thing")
        self.reviews = store.model("review")
        self.adapters = adapters or AdapterRegistry()
        self.sync_config = sync_config or SyncConfig()
        self.slugs = SlugStore(store.db, self.model)
        self.resolver = SlugResolver(self.slugs, "/", load=self.get_with_data)

    async def lookup_by_url(self, url: str, user: Any = None) -> list[Document]:
        """Live things listing url among their URLs.

        If user is given, each thing gets that user's reviews of it (newest
        first, with permission flags) in ``thing.virtual["reviews"]``.
        """
        things = await self.model.filter_not_stale_or_deleted().where_contains("urls", url).run()
        user_id = user_id_of(user)
        if user_id is None or not things:
            return things

        reviews = (
            await self.reviews.filter_where(createdBy=user_id)
            .where_in("thingID", [thing.id for thing in things])
            .order_by("createdOn")
            .limit(USER_REVIEWS_LIMIT)
            .run()
        )
        viewer = user if isinstance(user, Viewer) else Viewer(user_id)
        by_thing: dict[str, list[Document]] = {}
        for review in reviews:
            populate_user_info(review, viewer)
            by_thing.setdefault(review["thingID"], []).append(review)
        for thing in things:
            thing.virtual["reviews"] = by_thing.get(thing.id, [])
        return things

    async def get_review_metrics(self, thing_id: str) -> ReviewMetrics:
        reviews = self.reviews.filter_where(thingID=thing_id)
        average, count = await asyncio.gather(reviews.average("starRating"), reviews.count())
        return ReviewMetrics(average_star_rating=average or 0.0, number_of_reviews=count)

    async def get_with_data(self, thing_id: str, with_review_metrics: bool = True) -> Document:
        """Load a live thing, with review metrics in ``thing.virtual``.

        Raises:
            DocumentNotFound: If there is no live thing with that id
        """
        thing = await self.model.get_not_stale_or_deleted(thing_id)
        if with_review_metrics:
            metrics = await self.get_review_metrics(thing.id)
            thing.virtual["averageStarRating"] = metrics.average_star_rating
            thing.virtual["numberOfReviews"] = metrics.number_of_reviews
        return thing

    async def lookup_adapters(self, url: str) -> LookupResult | None:
        """Ask every adapter supporting url; the first result with a label wins."""
        adapters = self.adapters.get_matching(url)
        results = await asyncio.gather(
            *(safe_lookup(a, url, self.sync_config.lookup_timeout_s) for a in adapters)
        )
        for result in results:
            if result is not None and result.data.get("label"):
                return result
        return None

    async def build(
        self,
        url: str,
        user: Any,
        original_language: str = "en",
        label: dict[str, str] | None = None,
        date: datetime | None = None,
        tags: Iterable[str] = ("create-via-review",),
    ) -> Document:
        """Prepare an unsaved thing for a URL, filled from adapter data.

        A label supplied by the user overrides the adapter's label when it
        has text in the original language.
        """
        date = date or utcnow()
        thing = await self.model.create_first_revision(user, tags=list(tags), date=date)
        thing.update(
            {
                "urls": [url],
                "createdOn": date,
                "createdBy": thing.revision_user,
                "originalLanguage": original_language,
            }
        )
        result = await self.lookup_adapters(url)
        if result is not None:
            initialize_fields_from_adapter(thing, result, self.adapters)
        if label and label.get(original_language):
            thing["label"] = label
        return thing

    def find_by_url_in(self, conn: sqlite3.Connection, url: str) -> Document | None:
        """Live thing listing url, read on an open connection."""
        found = self.model.filter_not_stale_or_deleted().where_contains("urls", url).limit(1).run_in(conn)
        return found[0] if found else None

    def write_new(self, conn: sqlite3.Connection, thing: Document) -> None:
        """Assign the slug and write a new thing inside an open transaction.

        The caller marks the thing saved after the transaction commits.
        """
        self.slugs.assign(conn, thing, thing.revision_user, "label")
        self.model.validate(thing)
        self.model.write_revision(conn, thing)

    async def create(self, thing: Document) -> Document:
        """Persist a thing from build() together with its slug."""
        with self.store.db.transaction("create thing") as conn:
            self.write_new(conn, thing)
        thing.mark_saved()
        logger.info(f"Created thing {thing.id}", extra={"document_id": thing.id})
        return thing

    async def find_or_create(
        self,
        url: str,
        user: Any,
        original_language: str = "en",
        label: dict[str, str] | None = None,
    ) -> Document:
        """Existing live thing for url, or a new one built from adapter data."""
        existing = await self.lookup_by_url(url)
        if existing:
            return existing[0]
        thing = await self.build(url, user, original_language=original_language, label=label)
        # Another writer may have created a thing for url since the lookup
        with self.store.db.transaction("create thing") as conn:
            found = self.find_by_url_in(conn, url)
            if found is None:
                self.write_new(conn, thing)
        if found is not None:
            return found
        thing.mark_saved()
        logger.info(f"Created thing {thing.id}", extra={"document_id": thing.id})
        return thing

    async def update_slug(self, thing: Document, user: Any, language: str | None = None) -> Document:
        """Save an unsaved revision, moving its slug to one derived from the label."""
        return await self.slugs.update_slug(thing, user_id_of(user), "label", language)

    async def update_active_syncs(self, thing: Document, user: Any) -> Document:
        """Refresh synced fields from their sources as a new revision.

        Returns the saved revision, or thing itself when no source returned
        data.
        """
        revision = await thing.new_revision(user, tags=["update-sync"])
        outcome = await update_active_syncs(revision, self.adapters, self.sync_config)
        if not outcome.updated_fields:
            return thing
        if outcome.label_changed:
            return await self.update_slug(revision, user)
        return await revision.save()

    async def resolve_and_load_thing(
        self, request_path: str, query_string: str, candidate: str
    ) -> Document:
        return await self.resolver.resolve_and_load(request_path, query_string, candidate)
