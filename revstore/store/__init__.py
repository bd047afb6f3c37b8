"""
Storage layer for revstore.

- Database: SQLite file, connections and transactions
- DocumentModel / Document: the revision engine
- DocumentQuery: lazy queries and timestamp pagination
- AssociationManager: join-table relations
- DocumentStore: wiring for a registry of document types
"""

from .database import Database
from .documents import Document, DocumentModel, RevisionState
from .query import DocumentQuery, FeedPage
from .relations import AssociationManager
from .repository import DocumentStore

__all__ = [
    "AssociationManager",
    "Database",
    "Document",
    "DocumentModel",
    "DocumentQuery",
    "DocumentStore",
    "FeedPage",
    "RevisionState",
]
