"""
DocumentStore: one object wiring the database, models and associations.

Example:
    >>> store = DocumentStore(Database(data_dir), build_registry())
    >>> await store.initialize()
    >>> reviews = store.model("review")
"""

from __future__ import annotations

import logging
from typing import Any

from ..config import StorageConfig
from ..schema.registry import DocumentRegistry
from .database import Database
from .documents import Document, DocumentModel
from .relations import AssociationManager

logger = logging.getLogger(__name__)


class DocumentStore:
    """Models for every registered document type over one database.

    Attributes:
        db: Backing database
        registry: Document types served by this store
        associations: Shared association manager
    """

    def __init__(self, db: Database, registry: DocumentRegistry) -> None:
        self.db = db
        self.registry = registry
        self._models = {doc_type.name: DocumentModel(db, doc_type) for doc_type in registry.types()}
        self.associations = AssociationManager(db, self._models)
        for model in self._models.values():
            model.associations = self.associations

    @classmethod
    def from_config(cls, config: StorageConfig, registry: DocumentRegistry) -> DocumentStore:
        db = Database(
            data_dir=config.data_dir,
            db_file=config.db_file,
            wal_mode=config.wal_mode,
            busy_timeout_ms=config.busy_timeout_ms,
            cache_size_pages=config.cache_size_pages,
        )
        return cls(db, registry)

    async def initialize(self) -> None:
        """Freeze the registry (if needed) and create the schema."""
        if not self.registry.frozen:
            self.registry.freeze()
        await self.db.initialize(self.registry)

    def model(self, name: str) -> DocumentModel:
        """Model for a registered document type."""
        try:
            return self._models[name]
        except KeyError:
            raise KeyError(f"Unknown document type '{name}'") from None

    async def get_with_data(self, type_name: str, document_id: str, **options: Any) -> Document:
        return await self.associations.get_with_data(type_name, document_id, **options)
