"""
Reviews of things.

A review belongs to exactly one thing (thingID) and may be tagged with
teams its author belongs to. One user reviews a thing at most once.

Invariants:
    - starRating is an integer in 1..5
    - Creating a review writes the review, its team tags and (if needed)
      a new thing with its slug in one transaction
    - Feeds are ordered by createdOn, newest first, and paginate on it
"""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from typing import Any

from ..config import FeedConfig
from ..errors import ConflictError, ValidationError
from ..schema.codec import utcnow
from ..schema.types import DocumentType, RelationDef, field
from ..store.documents import Document, user_id_of
from ..store.query import FeedPage
from ..store.relations import target_ids
from ..store.repository import DocumentStore
from .thing import ThingService

logger = logging.getLogger(__name__)

REVIEW_TYPE = DocumentType(
    name="review",
    table="reviews",
    description="A user's review of a thing",
    fields=(
        field("thingID", "uuid", required=True),
        field("title", "multilingual", required=True, max_length=255),
        field("text", "multilingual", required=True),
        field("html", "multilingual", required=True),
        field("starRating", "integer", required=True, min_value=1, max_value=5),
        field("createdOn", "datetime", required=True),
        field("createdBy", "uuid", required=True),
        field("originalLanguage", "language", required=True),
        field("socialImageID", "uuid"),
    ),
    relations=(RelationDef("teams", "review_teams", "review_id", "team_id", "team"),),
)


class AlreadyReviewedError(ConflictError):
    """The user already has a live review of this thing."""

    def __init__(self, message: str, review_id: str) -> None:
        super().__init__(message, document_id=review_id, code="ALREADY_REVIEWED")
        self.review_id = review_id


class ReviewService:
    """Review creation, feeds and deletion.

    Example:
        >>> review = await reviews.create(
        ...     {"title": {"en": "Great"}, "text": {"en": "..."}, "html": {"en": "<p>...</p>"},
        ...      "starRating": 5, "originalLanguage": "en"},
        ...     user,
        ...     url="https://example.com/book",
        ...     teams=[team],
        ... )
        >>> page = await reviews.get_feed(limit=10)
    """

    def __init__(
        self,
        store: DocumentStore,
        things: ThingService,
        feed_config: FeedConfig | None = None,
    ) -> None:
        self.store = store
        self.things = things
        self.feed_config = feed_config or FeedConfig()
        self.model = store.model("review")
        self.users = store.model("user")

    async def create(
        self,
        data: Mapping[str, Any],
        user: Any,
        *,
        thing: Document | None = None,
        url: str | None = None,
        label: dict[str, str] | None = None,
        teams: Iterable[Any] = (),
        tags: Iterable[str] | None = None,
        date: datetime | None = None,
    ) -> Document:
        """Create a review, its team tags and, if needed, its thing atomically.

        Args:
            data: Review fields (title, text, html, starRating,
                originalLanguage, socialImageID)
            user: Author
            thing: Existing thing being reviewed
            url: URL of the thing when none is given; an existing thing with
                that URL is reused, otherwise a new one is created
            label: User-supplied label for a new thing
            teams: Teams to tag the review with
            tags: Revision tags (default ``["create"]``)
            date: Creation date (default now)

        Raises:
            ValidationError: If the review or new thing is invalid
            AlreadyReviewedError: If the user already reviewed the thing
            PersistenceError: If the store fails; nothing is written
        """
        date = date or utcnow()
        author_id = user_id_of(user)
        original_language = data.get("originalLanguage") or "en"

        new_thing = None
        if thing is None:
            if not url:
                raise ValidationError("A review needs a thing or a URL", field_name="thingID")
            existing = await self.things.lookup_by_url(url)
            if existing:
                thing = existing[0]
            else:
                new_thing = thing = await self.things.build(
                    url, user, original_language=original_language, label=label, date=date
                )

        review = await self.model.create_first_revision(user, tags=tags, date=date)
        review.update(data)
        review.update({"thingID": thing.id, "createdOn": date, "createdBy": author_id})
        review.relations["teams"] = list(teams)
        self.model.validate(review)
        team_relation = REVIEW_TYPE.get_relation("teams")

        with self.store.db.transaction("create review") as conn:
            if new_thing is not None:
                # Reuse a thing another writer created for url since the lookup
                existing = self.things.find_by_url_in(conn, url)
                if existing is None:
                    self.things.write_new(conn, new_thing)
                else:
                    new_thing, thing = None, existing
                    review["thingID"] = thing.id
            row = conn.execute(
                f"SELECT id FROM {self.model.table} "
                "WHERE thing_id = ? AND created_by = ? AND stale = 0 AND deleted = 0 LIMIT 1",
                (thing.id, author_id),
            ).fetchone()
            if row is not None:
                raise AlreadyReviewedError(
                    f"User {author_id} has previously reviewed thing {thing.id}",
                    review_id=row["id"],
                )
            self.model.write_revision(conn, review)
            self.store.associations.sync_relation(
                conn, team_relation, review.id, target_ids(review.relations["teams"])
            )

        if new_thing is not None:
            new_thing.mark_saved()
        review.mark_saved()
        review.virtual["thing"] = thing

        logger.info(
            f"Created review {review.id}",
            extra={
                "document_id": review.id,
                "thing_id": thing.id,
                "new_thing": new_thing is not None,
                "teams": len(review.relations["teams"]),
            },
        )
        return review

    async def has_reviewed(self, thing_id: str, user: Any) -> bool:
        query = self.model.filter_where(thingID=thing_id, createdBy=user_id_of(user))
        return await query.count() > 0

    async def get_feed(
        self,
        limit: int | None = None,
        offset_date: datetime | None = None,
        *,
        thing_id: str | None = None,
        created_by: str | None = None,
        without_creator: str | None = None,
        only_trusted: bool = False,
        with_thing: bool = True,
        with_teams: bool = True,
        with_creator: bool = True,
    ) -> FeedPage:
        """One page of live reviews, newest first.

        Args:
            limit: Page size (default and upper bound from FeedConfig)
            offset_date: Only reviews created strictly before this date
            thing_id: Only reviews of this thing
            created_by: Only reviews by this user
            without_creator: Exclude reviews by this user
            only_trusted: Only reviews by trusted users
            with_thing: Attach each review's thing as ``virtual["thing"]``
            with_teams: Load the ``teams`` relation
            with_creator: Attach the author as ``virtual["creator"]``

        Raises:
            ValueError: If limit is not between 1 and the configured maximum
        """
        limit = self.feed_config.page_size if limit is None else limit
        if not 1 <= limit <= self.feed_config.max_page_size:
            raise ValueError(f"limit must be between 1 and {self.feed_config.max_page_size}")

        query = self.model.filter_not_stale_or_deleted()
        if thing_id:
            query = query.filter_where(thingID=thing_id)
        if created_by:
            query = query.filter_where(createdBy=created_by)
        if without_creator:
            query = query.exclude(createdBy=without_creator)
        if only_trusted:
            query = query.where_related("createdBy", self.users, isTrusted=True)

        page = await query.page(limit, offset_date=offset_date)
        if page.items:
            await self._hydrate(page.items, with_thing, with_teams, with_creator)
        return page

    async def _hydrate(
        self,
        reviews: list[Document],
        with_thing: bool,
        with_teams: bool,
        with_creator: bool,
    ) -> None:
        if with_thing:
            things = await self.things.model.get_multiple_not_stale_or_deleted(
                review["thingID"] for review in reviews
            )
            by_id = {thing.id: thing for thing in things}
            for review in reviews:
                review.virtual["thing"] = by_id.get(review["thingID"])
        if with_creator:
            users = await self.users.get_multiple_not_stale_or_deleted(
                review["createdBy"] for review in reviews
            )
            by_id = {user.id: user for user in users}
            for review in reviews:
                review.virtual["creator"] = by_id.get(review["createdBy"])
        if with_teams:
            with self.store.db.connection() as conn:
                for review in reviews:
                    self.store.associations.load_relations(conn, review, ["teams"])

    async def delete_all_revisions_with_thing(self, review: Document, user: Any) -> Document:
        """Delete a review and the thing it reviews in one transaction.

        Returns:
            The review's deletion revision

        Raises:
            AlreadyDeletedError: If the review or the thing is already deleted
        """
        user_id = self.model.acting_user(user)
        with self.store.db.transaction("delete review with thing") as conn:
            deletion = self.model.delete_in(conn, review.id, user_id, ["delete-with-thing"])
            self.things.model.delete_in(conn, review["thingID"], user_id, ["delete-via-review"])
        review.deleted = True
        thing = review.virtual.get("thing")
        if isinstance(thing, Document):
            thing.deleted = True

        logger.info(
            f"Deleted review {review.id} with thing {review['thingID']}",
            extra={"document_id": review.id, "thing_id": review["thingID"], "revision_user": user_id},
        )
        return deletion
