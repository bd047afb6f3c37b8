"""
Teams: groups of users who blog and tag reviews together.

The founder (createdBy) becomes the first member and moderator when the
team is created, in the same transaction as the team's first revision.
Membership and moderation are relations, so they survive edits of the
team document.

Teams with modApprovalToJoin take join requests instead of members. A
request is a revisioned document whose status moves from pending to
approved or rejected; approving it adds the member in the same
transaction.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from datetime import datetime
from enum import Enum
from typing import Any

from ..config import FeedConfig
from ..errors import DocumentNotFound, ValidationError
from ..schema.codec import to_millis, utcnow
from ..schema.types import DocumentType, RelationDef, field
from ..slugs import SlugResolver, SlugStore
from ..store.documents import Document, user_id_of
from ..store.repository import DocumentStore

logger = logging.getLogger(__name__)

TEAM_TYPE = DocumentType(
    name="team",
    table="teams",
    description="Group of users",
    fields=(
        field("name", "multilingual", required=True, max_length=100),
        field("motto", "multilingual", max_length=200),
        field("description", "rich_text"),
        field("rules", "rich_text"),
        field("modApprovalToJoin", "boolean", default=False),
        field("onlyModsCanBlog", "boolean", default=False),
        field("createdBy", "uuid", required=True),
        field("createdOn", "datetime", required=True),
        field("canonicalSlugName", "string", max_length=256),
        field("originalLanguage", "language", required=True),
        field("confersPermissions", "json"),
    ),
    relations=(
        RelationDef("members", "team_members", "team_id", "user_id", "user", "joined_on"),
        RelationDef("moderators", "team_moderators", "team_id", "user_id", "user", "appointed_on"),
        RelationDef("reviews", "review_teams", "team_id", "review_id", "review"),
    ),
)

TEAM_JOIN_REQUEST_TYPE = DocumentType(
    name="team_join_request",
    table="team_join_requests",
    description="A user's request to join a team that requires moderator approval",
    fields=(
        field("teamID", "uuid", required=True),
        field("userID", "uuid", required=True),
        field(
            "status",
            "string",
            required=True,
            default="pending",
            choices=("pending", "approved", "rejected"),
        ),
        field("requestDate", "datetime", required=True),
        field("requestMessage", "string", max_length=500),
        field("rejectedBy", "uuid"),
        field("rejectionDate", "datetime"),
        field("rejectionMessage", "string", max_length=500),
        field("rejectedUntil", "datetime"),
    ),
)


class JoinOutcome(Enum):
    """Result of TeamService.join()."""

    JOINED = "joined"
    REQUESTED = "requested"
    ALREADY_MEMBER = "already-member"
    ALREADY_REQUESTED = "already-requested"


class TeamService:
    """Team creation, membership, join requests and slugs."""

    def __init__(self, store: DocumentStore, feed_config: FeedConfig | None = None) -> None:
        self.store = store
        self.feed_config = feed_config or FeedConfig()
        self.model = store.model("team")
        self.reviews = store.model("review")
        self.users = store.model("user")
        self.join_requests = store.model("team_join_request")
        self.slugs = SlugStore(store.db, self.model)
        self.resolver = SlugResolver(self.slugs, "/team/", load=self.get_with_data)

    async def create(self, data: Mapping[str, Any], user: Any, date: datetime | None = None) -> Document:
        """Create a team; the founder becomes its first member and moderator.

        Raises:
            ValidationError: If a field is invalid
            PersistenceError: If the store fails; nothing is written
        """
        date = date or utcnow()
        team = await self.model.create_first_revision(user, date=date)
        team.update(data)
        team.update({"createdBy": team.revision_user, "createdOn": date})
        team.relations["members"] = [team.revision_user]
        team.relations["moderators"] = [team.revision_user]
        self.model.validate(team)

        with self.store.db.transaction("create team") as conn:
            self.slugs.assign(conn, team, team.revision_user, "name")
            self.model.write_revision(conn, team)
            for name in ("members", "moderators"):
                self.store.associations.sync_relation(
                    conn, TEAM_TYPE.get_relation(name), team.id, [team.revision_user]
                )
        team.mark_saved()

        logger.info(f"Created team {team.id}", extra={"document_id": team.id, "founder": team.revision_user})
        return team

    async def get_with_data(
        self,
        team_id: str,
        with_members: bool = True,
        with_moderators: bool = True,
        with_join_requests: bool = True,
        with_join_request_details: bool = False,
        with_reviews: bool = False,
        reviews_limit: int | None = None,
        reviews_offset_date: datetime | None = None,
    ) -> Document:
        """Load a live team with members, moderators, join requests and optionally reviews.

        Pending join requests land in ``team.virtual["joinRequests"]``.
        Reviews land in ``team.virtual["reviews"]`` with the next page's
        offset in ``team.virtual["reviewOffsetDate"]``.

        Raises:
            DocumentNotFound: If there is no live team with that id
        """
        team = await self.store.get_with_data(
            "team", team_id, with_members=with_members, with_moderators=with_moderators
        )
        if with_join_requests:
            team.virtual["joinRequests"] = await self.get_join_requests(
                team.id, with_details=with_join_request_details
            )
        if with_reviews:
            page = await (
                self.reviews.filter_not_stale_or_deleted()
                .linked_to(TEAM_TYPE.get_relation("reviews"), team.id)
                .page(reviews_limit or self.feed_config.page_size, offset_date=reviews_offset_date)
            )
            team.virtual["reviews"] = page.items
            team.virtual["reviewOffsetDate"] = page.offset_date
        return team

    async def join(self, team: Document, user: Any, message: str | None = None) -> JoinOutcome:
        """Add user as a member, or file a join request if moderators approve members.

        Args:
            team: Team to join
            user: Joining user
            message: Note for the moderators (join requests only)

        Raises:
            ValidationError: If an earlier request was rejected until a later date
        """
        if team.get("modApprovalToJoin"):
            outcome = await self._request_to_join(team, user, message)
        else:
            joined = await self.store.associations.add_relation(team, "members", user)
            outcome = JoinOutcome.JOINED if joined else JoinOutcome.ALREADY_MEMBER
        logger.debug(
            "Team join",
            extra={"document_id": team.id, "user_id": user_id_of(user), "outcome": outcome.value},
        )
        return outcome

    async def _request_to_join(self, team: Document, user: Any, message: str | None) -> JoinOutcome:
        date = utcnow()
        request = await self.join_requests.create_first_revision(user, date=date)
        request.update({"teamID": team.id, "userID": request.revision_user, "requestDate": date})
        if message:
            request["requestMessage"] = message
        self.join_requests.validate(request)
        user_id = request.revision_user
        members = TEAM_TYPE.get_relation("members")

        with self.store.db.transaction("request to join team") as conn:
            is_member = conn.execute(
                f"SELECT 1 FROM {members.join_table} "
                f"WHERE {members.source_column} = ? AND {members.target_column} = ?",
                (team.id, user_id),
            ).fetchone()
            if is_member:
                return JoinOutcome.ALREADY_MEMBER
            latest = conn.execute(
                f"SELECT status, rejected_until FROM {self.join_requests.table} "
                "WHERE team_id = ? AND user_id = ? AND stale = 0 AND deleted = 0 "
                "ORDER BY request_date DESC LIMIT 1",
                (team.id, user_id),
            ).fetchone()
            if latest is not None and latest["status"] == "pending":
                return JoinOutcome.ALREADY_REQUESTED
            if (
                latest is not None
                and latest["status"] == "rejected"
                and latest["rejected_until"] is not None
                and latest["rejected_until"] > to_millis(date)
            ):
                raise ValidationError(
                    f"User {user_id} cannot ask to join team {team.id} again yet",
                    field_name="rejectedUntil",
                )
            self.join_requests.write_revision(conn, request)
        request.mark_saved()

        if "joinRequests" in team.virtual:
            team.virtual["joinRequests"].append(request)
        logger.info(
            f"Filed join request {request.id}",
            extra={"document_id": request.id, "team_id": team.id, "user_id": user_id},
        )
        return JoinOutcome.REQUESTED

    async def get_join_requests(
        self, team_id: str, status: str | None = "pending", with_details: bool = False
    ) -> list[Document]:
        """Join requests for a team, oldest first.

        Args:
            team_id: Team id
            status: Only requests in this status (None for every status)
            with_details: Attach the requesting user as ``virtual["user"]``
        """
        query = self.join_requests.filter_where(teamID=team_id)
        if status is not None:
            query = query.filter_where(status=status)
        requests = await query.order_by("requestDate", descending=False).run()
        if with_details and requests:
            users = await self.users.get_multiple_not_stale_or_deleted(r["userID"] for r in requests)
            by_id = {u.id: u for u in users}
            for request in requests:
                request.virtual["user"] = by_id.get(request["userID"])
        return requests

    def _ensure_pending(self, request: Document) -> None:
        if request.get("status") != "pending":
            raise ValidationError(
                f"Join request {request.id} is {request.get('status')}, not pending",
                field_name="status",
            )

    async def approve_join_request(self, request: Document, moderator: Any) -> Document:
        """Approve a pending request and add its user as a member, atomically.

        Returns:
            The approved revision of the request

        Raises:
            ValidationError: If the request is not pending
            DocumentNotFound: If the team no longer exists
            ConflictError: If the request was decided concurrently
        """
        self._ensure_pending(request)
        revision = await request.new_revision(moderator, tags=["approve"])
        revision["status"] = "approved"
        self.join_requests.validate(revision)
        members = TEAM_TYPE.get_relation("members")

        with self.store.db.transaction("approve join request") as conn:
            team = conn.execute(
                f"SELECT 1 FROM {self.model.table} WHERE id = ? AND stale = 0 AND deleted = 0",
                (request["teamID"],),
            ).fetchone()
            if team is None:
                raise DocumentNotFound(
                    f"team {request['teamID']} not found",
                    document_type="team",
                    document_id=request["teamID"],
                )
            self.join_requests.write_revision(conn, revision)
            self.store.associations.add_pair(conn, members, request["teamID"], request["userID"])
        revision.mark_saved()

        logger.info(
            f"Approved join request {request.id}",
            extra={"document_id": request.id, "team_id": request["teamID"], "moderator": revision.revision_user},
        )
        return revision

    async def reject_join_request(
        self,
        request: Document,
        moderator: Any,
        message: str | None = None,
        until: datetime | None = None,
    ) -> Document:
        """Reject a pending request.

        Args:
            request: Pending join request
            moderator: Deciding moderator
            message: Reason shown to the user
            until: The user may not ask again before this date

        Raises:
            ValidationError: If the request is not pending
            ConflictError: If the request was decided concurrently
        """
        self._ensure_pending(request)
        revision = await request.new_revision(moderator, tags=["reject"])
        revision.update(
            {
                "status": "rejected",
                "rejectedBy": revision.revision_user,
                "rejectionDate": revision.revision_date,
            }
        )
        if message:
            revision["rejectionMessage"] = message
        if until is not None:
            revision["rejectedUntil"] = until
        return await revision.save()

    async def leave(self, team: Document, user: Any) -> bool:
        """Remove user from members and moderators; returns False if not a member.

        Raises:
            ValidationError: If user is the founder
        """
        user_id = user_id_of(user)
        if user_id == team.get("createdBy"):
            raise ValidationError(
                f"The founder cannot leave team {team.id}", field_name="createdBy"
            )
        removed = await self.store.associations.remove_from_relations(
            team, ["members", "moderators"], user_id
        )
        logger.debug("Team leave", extra={"document_id": team.id, "user_id": user_id, **removed})
        return removed["members"]

    async def update_slug(self, team: Document, user: Any, language: str | None = None) -> Document:
        """Save an unsaved revision, moving its slug to one derived from the name."""
        return await self.slugs.update_slug(team, user_id_of(user), "name", language)

    async def resolve_and_load_team(
        self, request_path: str, query_string: str, candidate: str
    ) -> Document:
        return await self.resolver.resolve_and_load(request_path, query_string, candidate)
