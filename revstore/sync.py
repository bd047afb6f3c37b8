"""
Metadata sync between things and external sources.

A thing's ``sync`` field maps a synced field name to an entry
``{"active": bool, "source": str, "updated": int}`` (``updated`` is Unix
milliseconds). Which source is responsible for a field is decided from the
thing's URLs by set_urls(); update_active_syncs() then refreshes every
active field from its source.

Adapters are external collaborators. This module defines their interface
and the registry they are looked up in, and merges what they return:

    description, subtitle, authors -> thing["metadata"][field]
    any other supported field      -> thing[field]

Invariants:
    - Functions here only mutate the in-memory document; callers save it
      (usually as a new revision)
    - A failing or slow adapter never aborts a sync; it is logged and its
      fields keep their previous values
    - A field is owned by at most one source at a time

Example:
    >>> registry = AdapterRegistry()
    >>> registry.register(OpenLibraryAdapter())
    >>> set_urls(thing, ["https://openlibrary.org/works/OL1W"], registry)
    >>> outcome = await update_active_syncs(thing, registry, SyncConfig())
"""

from __future__ import annotations

import asyncio
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from .config import SyncConfig
from .schema.codec import to_millis, utcnow
from .store.documents import Document

logger = logging.getLogger(__name__)

METADATA_FIELDS = frozenset({"description", "subtitle", "authors"})


class LookupResult(BaseModel):
    """Data returned by one adapter lookup."""

    data: dict[str, Any] = Field(..., description="Field values keyed by thing field name")
    source_id: str = Field(..., description="Source the data came from")


class MetadataAdapter(ABC):
    """Base class for adapters that fetch metadata for a URL.

    Subclasses set the class attributes and implement _lookup(). Calls to
    lookup() on one adapter are spaced at least ``throttle_s`` apart.

    Attributes:
        source_id: Stable identifier stored in sync entries
        source_url: Home page of the source
        supported_pattern: URLs this adapter can look up
        fields: Thing fields this adapter can provide
        throttle_s: Minimum delay between two lookups
    """

    source_id: str = ""
    source_url: str = ""
    supported_pattern: re.Pattern[str] = re.compile(r"(?!)")
    fields: tuple[str, ...] = ()
    throttle_s: float = 0.0

    def __init__(self) -> None:
        self._throttle_lock = asyncio.Lock()
        self._last_request = 0.0

    def matches(self, url: str) -> bool:
        return bool(self.supported_pattern.search(url))

    def supported_fields(self) -> list[str]:
        return list(self.fields)

    async def lookup(self, url: str) -> LookupResult:
        """Look up a URL, waiting out the throttle delay first."""
        async with self._throttle_lock:
            wait = self._last_request + self.throttle_s - time.monotonic()
            if wait > 0:
                await asyncio.sleep(wait)
            self._last_request = time.monotonic()
        return await self._lookup(url)

    @abstractmethod
    async def _lookup(self, url: str) -> LookupResult:
        ...


class AdapterRegistry:
    """Explicit collection of adapters, keyed by source id."""

    def __init__(self) -> None:
        self._adapters: dict[str, MetadataAdapter] = {}

    def register(self, adapter: MetadataAdapter) -> MetadataAdapter:
        """Register an adapter.

        Raises:
            ValueError: If the adapter has no source id or it is taken
        """
        if not adapter.source_id:
            raise ValueError(f"{type(adapter).__name__} has no source_id")
        if adapter.source_id in self._adapters:
            raise ValueError(f"Adapter for source '{adapter.source_id}' already registered")
        self._adapters[adapter.source_id] = adapter
        return adapter

    def get_for_source(self, source_id: str) -> MetadataAdapter | None:
        return self._adapters.get(source_id)

    def get_matching(self, url: str) -> list[MetadataAdapter]:
        return [adapter for adapter in self._adapters.values() if adapter.matches(url)]

    def all(self) -> list[MetadataAdapter]:
        return list(self._adapters.values())


@dataclass
class SyncOutcome:
    """What update_active_syncs changed.

    Attributes:
        updated_fields: Fields that received a value from their source
        failed_sources: Sources with at least one failed lookup
        label_changed: The label differs from its value before the sync
    """

    updated_fields: list[str] = field(default_factory=list)
    failed_sources: list[str] = field(default_factory=list)
    label_changed: bool = False


def _apply_value(thing: Document, name: str, value: Any) -> None:
    if name in METADATA_FIELDS:
        metadata = dict(thing.get("metadata") or {})
        metadata[name] = value
        thing["metadata"] = metadata
    else:
        thing[name] = value


def initialize_fields_from_adapter(
    thing: Document,
    result: LookupResult,
    registry: AdapterRegistry,
) -> list[str]:
    """Fill a new thing from a lookup result and mark the fields as synced.

    Only fields the responsible adapter declares are taken.

    Returns:
        Names of the fields that were set
    """
    adapter = registry.get_for_source(result.source_id)
    supported = adapter.supported_fields() if adapter else []
    sync = dict(thing.get("sync") or {})
    updated = to_millis(utcnow())

    applied = []
    for name, value in result.data.items():
        if value is None or name not in supported:
            continue
        _apply_value(thing, name, value)
        sync[name] = {"active": True, "source": result.source_id, "updated": updated}
        applied.append(name)

    thing["sync"] = sync
    return applied


def set_urls(thing: Document, urls: list[str], registry: AdapterRegistry) -> None:
    """Replace a thing's URLs and recompute which source owns each field.

    Every sync entry is deactivated, then each URL hands the fields of the
    adapters matching it to that adapter, unless an earlier URL already
    claimed the field. Previous ``updated`` stamps are kept.
    """
    sync = {name: {**entry, "active": False} for name, entry in (thing.get("sync") or {}).items()}
    for url in urls:
        for adapter in registry.all():
            if not adapter.matches(url):
                continue
            for name in adapter.supported_fields():
                if sync.get(name, {}).get("active"):
                    continue
                sync[name] = {**sync.get(name, {}), "active": True, "source": adapter.source_id}
    thing["sync"] = sync
    thing["urls"] = list(urls)


def get_source_ids_of_active_syncs(thing: Document) -> list[str]:
    """Sources owning at least one active field, in first-seen order."""
    sources: dict[str, None] = {}
    for entry in (thing.get("sync") or {}).values():
        if entry and entry.get("active") and entry.get("source"):
            sources[entry["source"]] = None
    return list(sources)


async def safe_lookup(
    adapter: MetadataAdapter, url: str, timeout_s: float
) -> LookupResult | None:
    try:
        return await asyncio.wait_for(adapter.lookup(url), timeout_s)
    except asyncio.TimeoutError:
        logger.warning(
            f"Adapter '{adapter.source_id}' timed out for {url}",
            extra={"source": adapter.source_id, "url": url, "timeout_s": timeout_s},
        )
    except Exception as exc:
        logger.warning(
            f"Problem contacting adapter '{adapter.source_id}' for {url}: {exc}",
            extra={"source": adapter.source_id, "url": url},
            exc_info=True,
        )
    return None


async def update_active_syncs(
    thing: Document,
    registry: AdapterRegistry,
    config: SyncConfig | None = None,
) -> SyncOutcome:
    """Refresh every actively synced field of a thing from its source.

    Lookups for all relevant URLs run concurrently, each bounded by
    ``config.lookup_timeout_s``. The thing must be an unsaved revision;
    the caller saves it and updates the slug if the label changed.

    Returns:
        SyncOutcome describing the changes
    """
    config = config or SyncConfig()
    outcome = SyncOutcome()
    urls = thing.get("urls") or []
    if not urls:
        return outcome

    sources = get_source_ids_of_active_syncs(thing)
    calls = []
    for source in sources:
        adapter = registry.get_for_source(source)
        if adapter is None:
            logger.warning(f"No adapter registered for sync source '{source}'")
            continue
        calls.extend((adapter, url) for url in urls if adapter.matches(url))
    if not calls:
        return outcome

    logger.info(
        f"Retrieving metadata for {thing.id}",
        extra={"document_id": thing.id, "urls": sorted({url for _, url in calls})},
    )
    results = await asyncio.gather(
        *(safe_lookup(adapter, url, config.lookup_timeout_s) for adapter, url in calls)
    )

    data_by_source: dict[str, list[dict[str, Any]]] = {}
    for (adapter, _), result in zip(calls, results):
        if result is None:
            if adapter.source_id not in outcome.failed_sources:
                outcome.failed_sources.append(adapter.source_id)
            continue
        data_by_source.setdefault(result.source_id, []).append(result.data)

    previous_label = thing.get("label")
    sync = dict(thing.get("sync") or {})
    updated = to_millis(utcnow())
    for name, entry in sync.items():
        if not entry or not entry.get("active"):
            continue
        # Earlier URLs take precedence over later ones for the same source.
        for data in reversed(data_by_source.get(entry.get("source"), [])):
            value = data.get(name)
            if value is None:
                continue
            _apply_value(thing, name, value)
            sync[name] = {**entry, "updated": updated}
            if name not in outcome.updated_fields:
                outcome.updated_fields.append(name)
    thing["sync"] = sync

    outcome.label_changed = thing.get("label") != previous_label
    logger.debug(
        "Applied metadata sync",
        extra={
            "document_id": thing.id,
            "updated_fields": outcome.updated_fields,
            "failed_sources": outcome.failed_sources,
        },
    )
    return outcome
