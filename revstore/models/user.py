"""
User documents.

A user's display name may contain any characters except a few that break
URLs; canonicalName is its uppercase form and is unique among live users.
Profile URLs use the display name with spaces replaced by underscores.
"""

from __future__ import annotations

import logging
import re
import sqlite3
from typing import Any

from ..errors import DocumentNotFound, ValidationError
from ..schema.codec import utcnow
from ..schema.types import DocumentType, RelationDef, field
from ..store.documents import Document
from ..store.repository import DocumentStore

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[<>;\"&?!./_]")

USER_TYPE = DocumentType(
    name="user",
    table="users",
    description="Registered user account",
    fields=(
        field("displayName", "string", required=True, max_length=128),
        field("canonicalName", "string", required=True, max_length=128),
        field("email", "string", max_length=128),
        field("isTrusted", "boolean", default=False),
        field("isSiteModerator", "boolean", default=False),
        field("isSuperUser", "boolean", default=False),
        field("registrationDate", "datetime", required=True),
    ),
    relations=(
        RelationDef("teams", "team_members", "user_id", "team_id", "team", "joined_on"),
        RelationDef("moderatorOf", "team_moderators", "user_id", "team_id", "team", "appointed_on"),
    ),
)


def canonicalize(name: str) -> str:
    return name.upper()


def url_name(display_name: str) -> str:
    """Name used in profile URLs."""
    return display_name.replace(" ", "_")


def set_name(user: Document, display_name: str) -> None:
    """Set displayName and canonicalName together.

    Raises:
        ValidationError: If the name is empty or contains forbidden characters
    """
    if not isinstance(display_name, str) or not display_name.strip():
        raise ValidationError("Username cannot be empty", field_name="displayName")
    display_name = display_name.strip()
    if _INVALID_NAME_CHARS.search(display_name):
        raise ValidationError(
            f"Username '{display_name}' contains invalid characters",
            field_name="displayName",
        )
    user["displayName"] = display_name
    user["canonicalName"] = canonicalize(display_name)


class UserService:
    """Account creation and lookup."""

    def __init__(self, store: DocumentStore) -> None:
        self.store = store
        self.model = store.model("user")

    def ensure_unique_in(self, conn: sqlite3.Connection, display_name: str) -> None:
        """Raise ValidationError if a live user already has this name.

        Run inside the transaction that writes the user so two concurrent
        registrations cannot both pass.
        """
        query = self.model.filter_where(canonicalName=canonicalize(display_name.strip())).limit(1)
        if query.run_in(conn):
            raise ValidationError(
                f"A user named '{display_name}' already exists",
                field_name="displayName",
            )

    async def create(self, display_name: str, email: str | None = None, **flags: Any) -> Document:
        """Register a new user; the user is the acting user of their first revision.

        Args:
            display_name: Requested name
            email: Optional contact address
            **flags: isTrusted / isSiteModerator / isSuperUser overrides
        """
        # The account does not exist yet, so its first revision is created
        # with a placeholder actor and re-attributed to the new id.
        user = await self.model.create_first_revision("system", tags=["create"])
        user.revision_user = user.id
        set_name(user, display_name)
        if email:
            user["email"] = email
        user.update(flags)
        user["registrationDate"] = utcnow()
        self.model.validate(user)
        with self.store.db.transaction("create user") as conn:
            self.ensure_unique_in(conn, display_name)
            self.model.write_revision(conn, user)
        user.mark_saved()
        logger.info(f"Created user {user.id}", extra={"document_id": user.id})
        return user

    async def find_by_url_name(self, name: str, with_teams: bool = False) -> Document:
        """Load a live user by the name in their profile URL.

        Raises:
            DocumentNotFound: If no live user has that name
        """
        display_name = name.replace("_", " ")
        user = await self.model.filter_where(canonicalName=canonicalize(display_name)).first()
        if user is None:
            raise DocumentNotFound(
                f"User '{name}' not found", document_type="user", document_id=None
            )
        if with_teams:
            return await self.get_with_teams(user.id)
        return user

    async def get_with_teams(self, user_id: str) -> Document:
        return await self.store.get_with_data(
            "user", user_id, with_teams=True, with_moderator_of=True
        )
