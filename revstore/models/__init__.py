"""
Built-in document types and their services.

Example:
    >>> store = DocumentStore.from_config(StorageConfig.from_env(), build_registry())
    >>> await store.initialize()
    >>> things = ThingService(store)
    >>> reviews = ReviewService(store, things)
"""

from ..schema.registry import DocumentRegistry
from .review import REVIEW_TYPE, AlreadyReviewedError, ReviewService
from .team import TEAM_JOIN_REQUEST_TYPE, TEAM_TYPE, JoinOutcome, TeamService
from .thing import THING_TYPE, ReviewMetrics, ThingService, get_label
from .user import USER_TYPE, UserService, set_name


def build_registry() -> DocumentRegistry:
    """Registry holding the built-in document types (not frozen)."""
    registry = DocumentRegistry()
    for doc_type in (USER_TYPE, THING_TYPE, REVIEW_TYPE, TEAM_TYPE, TEAM_JOIN_REQUEST_TYPE):
        registry.register(doc_type)
    return registry


__all__ = [
    "REVIEW_TYPE",
    "TEAM_JOIN_REQUEST_TYPE",
    "TEAM_TYPE",
    "THING_TYPE",
    "USER_TYPE",
    "AlreadyReviewedError",
    "JoinOutcome",
    "ReviewMetrics",
    "ReviewService",
    "TeamService",
    "ThingService",
    "UserService",
    "build_registry",
    "get_label",
    "set_name",
]
