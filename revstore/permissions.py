"""
Permission engine: per-viewer capability flags.

populate_user_info() is a pure function of a loaded document, its
pre-loaded relation sets and an optional viewer. It performs no I/O and
never persists anything; the flags live on ``document.permissions`` for
the duration of a request.

Rules by document type:
    review: userIsAuthor; userCanEdit = author;
            userCanDelete = author or site moderator
    thing:  userIsAuthor; userCanEdit = author;
            userCanDelete = site moderator; userCanUpload = trusted
    team:   userIsFounder, userIsMember, userIsModerator;
            userCanEdit = founder or moderator;
            userCanBlog = moderator or (member and not onlyModsCanBlog);
            userCanJoin = not member and no pending join request;
            userCanLeave = member and not founder;
            userCanDelete = founder or site moderator
    user:   userCanEditMetadata = viewer is the user

Invariants:
    - Every flag of the document type is present, defaulting to False
    - An anonymous viewer gets False for every flag
    - Team flags read document.relations and the pending join requests in
      document.virtual["joinRequests"]; they are never fetched here

How to change safely:
    - Add a flag to FLAGS and to the rule function in the same change
    - Site moderators deliberately cannot edit other people's reviews or
      delete things; keep those cases covered by tests
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from .errors import AccessDeniedError, RelationsNotLoadedError
from .store.documents import Document, user_id_of

logger = logging.getLogger(__name__)

FLAGS: dict[str, tuple[str, ...]] = {
    "review": ("userIsAuthor", "userCanEdit", "userCanDelete"),
    "thing": ("userIsAuthor", "userCanEdit", "userCanDelete", "userCanUpload"),
    "team": (
        "userIsFounder",
        "userIsMember",
        "userIsModerator",
        "userCanEdit",
        "userCanBlog",
        "userCanJoin",
        "userCanLeave",
        "userCanDelete",
    ),
    "user": ("userCanEditMetadata",),
}


@dataclass(frozen=True)
class Viewer:
    """The acting user as seen by the permission engine.

    Attributes:
        id: User id
        is_site_moderator: Site-wide moderator role
        is_trusted: Trusted user (may upload files)
    """

    id: str
    is_site_moderator: bool = False
    is_trusted: bool = False

    @classmethod
    def from_document(cls, user: Document) -> Viewer:
        """Build a viewer from a loaded user document."""
        return cls(
            id=user.id,
            is_site_moderator=bool(user.get("isSiteModerator")),
            is_trusted=bool(user.get("isTrusted")),
        )


def _member_ids(document: Document, name: str) -> set[str]:
    related = document.relations.get(name)
    if related is None:
        raise RelationsNotLoadedError(
            f"{document.doc_type.name} {document.id}: '{name}' must be loaded "
            "before computing permissions",
            document_id=document.id,
            relation=name,
        )
    return {user_id_of(item) for item in related}


def _review_flags(document: Document, viewer: Viewer) -> dict[str, bool]:
    is_author = viewer.id == document.get("createdBy")
    return {
        "userIsAuthor": is_author,
        "userCanEdit": is_author,
        "userCanDelete": is_author or viewer.is_site_moderator,
    }


def _thing_flags(document: Document, viewer: Viewer) -> dict[str, bool]:
    is_author = viewer.id == document.get("createdBy")
    return {
        "userIsAuthor": is_author,
        "userCanEdit": is_author,
        "userCanDelete": viewer.is_site_moderator,
        "userCanUpload": viewer.is_trusted,
    }


def _has_pending_request(document: Document, user_id: str) -> bool:
    requests = document.virtual.get("joinRequests") or []
    return any(r.get("userID") == user_id and r.get("status") == "pending" for r in requests)


def _team_flags(document: Document, viewer: Viewer) -> dict[str, bool]:
    is_founder = viewer.id == document.get("createdBy")
    is_member = viewer.id in _member_ids(document, "members")
    is_moderator = viewer.id in _member_ids(document, "moderators")
    return {
        "userIsFounder": is_founder,
        "userIsMember": is_member,
        "userIsModerator": is_moderator,
        "userCanEdit": is_founder or is_moderator,
        "userCanBlog": is_moderator or (is_member and not document.get("onlyModsCanBlog", False)),
        "userCanJoin": not is_member and not _has_pending_request(document, viewer.id),
        "userCanLeave": is_member and not is_founder,
        "userCanDelete": is_founder or viewer.is_site_moderator,
    }


def _user_flags(document: Document, viewer: Viewer) -> dict[str, bool]:
    return {"userCanEditMetadata": viewer.id == document.id}


_RULES: dict[str, Callable[[Document, Viewer], dict[str, bool]]] = {
    "review": _review_flags,
    "thing": _thing_flags,
    "team": _team_flags,
    "user": _user_flags,
}


def _as_viewer(user: Any) -> Viewer | None:
    if user is None or isinstance(user, Viewer):
        return user
    if isinstance(user, Document):
        return Viewer.from_document(user)
    raise TypeError(f"Expected Viewer, user Document or None, got {type(user).__name__}")


def populate_user_info(document: Document, user: Viewer | Document | None) -> dict[str, bool]:
    """Compute the viewer's capability flags for a document.

    Args:
        document: Loaded document (teams need members and moderators loaded)
        user: Acting user, or None for an anonymous viewer

    Returns:
        The flags, also stored on ``document.permissions``

    Raises:
        RelationsNotLoadedError: If a team's relation sets are missing
        ValueError: If the document type has no permission rules
    """
    type_name = document.doc_type.name
    if type_name not in _RULES:
        raise ValueError(f"No permission rules for document type '{type_name}'")

    flags = dict.fromkeys(FLAGS[type_name], False)
    viewer = _as_viewer(user)
    if viewer is not None:
        flags.update(_RULES[type_name](document, viewer))

    document.permissions = flags
    return flags


def require(document: Document, capability: str, viewer: Viewer | None = None) -> None:
    """Raise AccessDeniedError unless populate_user_info granted capability.

    Raises:
        AccessDeniedError: If the flag is missing or False
    """
    if not document.permissions.get(capability, False):
        logger.debug(
            "Capability check failed",
            extra={"document_id": document.id, "capability": capability},
        )
        raise AccessDeniedError(viewer.id if viewer else None, document.id, capability)
