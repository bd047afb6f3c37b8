"""
Unit tests for metadata sync.

Thing documents are built in memory and adapters are fakes.
"""

import uuid

import pytest

from revstore.config import SyncConfig
from revstore.models import THING_TYPE
from revstore.schema.codec import utcnow
from revstore.store.documents import Document, DocumentModel
from revstore.sync import (
    AdapterRegistry,
    LookupResult,
    get_source_ids_of_active_syncs,
    initialize_fields_from_adapter,
    set_urls,
    update_active_syncs,
)
from tests.conftest import FakeAdapter

OL_URL = "https://openlibrary.org/works/OL1W"
WD_URL = "https://www.wikidata.org/wiki/Q190192"


def make_thing(**payload):
    return Document(
        DocumentModel(None, THING_TYPE),
        payload,
        id=str(uuid.uuid4()),
        revision_id=str(uuid.uuid4()),
        revision_user=str(uuid.uuid4()),
        revision_date=utcnow(),
        revision_tags=["edit"],
    )


class TestAdapterRegistry:
    """Tests for AdapterRegistry."""

    def test_lookup_by_source_and_url(self, adapters):
        assert adapters.get_for_source("wikidata").source_id == "wikidata"
        assert adapters.get_for_source("imdb") is None
        assert [a.source_id for a in adapters.get_matching(OL_URL)] == ["openlibrary"]
        assert adapters.get_matching("https://example.com") == []

    def test_duplicate_source_rejected(self, adapters):
        with pytest.raises(ValueError, match="already registered"):
            adapters.register(FakeAdapter("wikidata", r"x", ["label"]))

    def test_source_id_required(self):
        with pytest.raises(ValueError, match="no source_id"):
            AdapterRegistry().register(FakeAdapter("", r"x", ["label"]))


class TestSetUrls:
    """Tests for set_urls()."""

    def test_assigns_fields_to_matching_adapters(self, adapters):
        thing = make_thing()
        set_urls(thing, [WD_URL, OL_URL], adapters)
        assert thing["urls"] == [WD_URL, OL_URL]
        sync = thing["sync"]
        # The first URL claims the fields its adapter supports.
        assert sync["label"] == {"active": True, "source": "wikidata"}
        assert sync["description"] == {"active": True, "source": "wikidata"}
        assert sync["authors"] == {"active": True, "source": "openlibrary"}
        assert sync["subtitle"] == {"active": True, "source": "openlibrary"}

    def test_deactivates_fields_without_source(self, adapters):
        thing = make_thing(sync={"label": {"active": True, "source": "wikidata", "updated": 1}})
        set_urls(thing, ["https://example.com/book"], adapters)
        assert thing["sync"] == {"label": {"active": False, "source": "wikidata", "updated": 1}}
        assert get_source_ids_of_active_syncs(thing) == []

    def test_active_source_ids(self, adapters):
        thing = make_thing()
        set_urls(thing, [OL_URL, WD_URL], adapters)
        assert get_source_ids_of_active_syncs(thing) == ["openlibrary", "wikidata"]


class TestInitializeFieldsFromAdapter:
    """Tests for initialize_fields_from_adapter()."""

    def test_only_supported_fields(self, adapters):
        thing = make_thing()
        result = LookupResult(
            data={"label": {"en": "Dune"}, "description": {"en": "novel"}, "subtitle": {"en": "x"}},
            source_id="openlibrary",
        )
        applied = initialize_fields_from_adapter(thing, result, adapters)
        assert applied == ["label", "subtitle"]
        assert thing["label"] == {"en": "Dune"}
        assert thing["metadata"] == {"subtitle": {"en": "x"}}
        assert set(thing["sync"]) == {"label", "subtitle"}
        assert thing["sync"]["label"]["source"] == "openlibrary"
        assert isinstance(thing["sync"]["label"]["updated"], int)

    def test_unknown_source_sets_nothing(self, adapters):
        thing = make_thing()
        result = LookupResult(data={"label": {"en": "Dune"}}, source_id="imdb")
        assert initialize_fields_from_adapter(thing, result, adapters) == []
        assert "label" not in thing


class TestUpdateActiveSyncs:
    """Tests for update_active_syncs()."""

    @pytest.mark.asyncio
    async def test_merges_data_from_active_sources(self, adapters):
        thing = make_thing(label={"en": "Old"})
        set_urls(thing, [WD_URL, OL_URL], adapters)

        outcome = await update_active_syncs(thing, adapters, SyncConfig())

        assert thing["label"] == {"en": "Dune"}
        assert thing["metadata"]["description"] == {"en": "1965 novel by Frank Herbert"}
        assert thing["metadata"]["authors"] == [{"en": "Frank Herbert"}]
        assert set(outcome.updated_fields) == {"label", "description", "authors", "subtitle"}
        assert outcome.label_changed is True
        assert outcome.failed_sources == []
        assert all("updated" in entry for entry in thing["sync"].values())

    @pytest.mark.asyncio
    async def test_unchanged_label(self, adapters):
        thing = make_thing(label={"en": "Dune"})
        set_urls(thing, [WD_URL], adapters)
        outcome = await update_active_syncs(thing, adapters)
        assert outcome.label_changed is False
        assert "label" in outcome.updated_fields

    @pytest.mark.asyncio
    async def test_failing_adapter_is_skipped(self):
        registry = AdapterRegistry()
        registry.register(FakeAdapter("broken", r"broken\.example", ["label"], error=RuntimeError("down")))
        registry.register(
            FakeAdapter("ok", r"ok\.example", ["description"], responses={"https://ok.example/1": {"description": {"en": "fine"}}})
        )
        thing = make_thing(label={"en": "Keep"})
        set_urls(thing, ["https://broken.example/1", "https://ok.example/1"], registry)

        outcome = await update_active_syncs(thing, registry)

        assert thing["label"] == {"en": "Keep"}
        assert thing["metadata"] == {"description": {"en": "fine"}}
        assert outcome.failed_sources == ["broken"]
        assert outcome.updated_fields == ["description"]
        assert "updated" not in thing["sync"]["label"]

    @pytest.mark.asyncio
    async def test_slow_adapter_times_out(self):
        registry = AdapterRegistry()
        slow = registry.register(
            FakeAdapter("slow", r"slow\.example", ["label"], responses={"https://slow.example/1": {"label": {"en": "Late"}}}, delay_s=1.0)
        )
        thing = make_thing(label={"en": "Keep"})
        set_urls(thing, ["https://slow.example/1"], registry)

        outcome = await update_active_syncs(thing, registry, SyncConfig(lookup_timeout_s=0.05))

        assert slow.calls == ["https://slow.example/1"]
        assert outcome.failed_sources == ["slow"]
        assert thing["label"] == {"en": "Keep"}

    @pytest.mark.asyncio
    async def test_no_urls(self, adapters):
        thing = make_thing()
        outcome = await update_active_syncs(thing, adapters)
        assert outcome.updated_fields == []
