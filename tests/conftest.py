"""
Shared fixtures for revstore tests.

Integration fixtures build a fresh SQLite store (WAL off) in a temporary
directory for every test.
"""

import asyncio
import re
import tempfile
import uuid
from datetime import timedelta

import pytest
import pytest_asyncio

from revstore.models import ReviewService, TeamService, ThingService, UserService, build_registry
from revstore.schema.codec import utcnow
from revstore.store import Database, DocumentStore
from revstore.sync import AdapterRegistry, LookupResult, MetadataAdapter


class FakeAdapter(MetadataAdapter):
    """Adapter answering from a dict of URL -> data, or failing on demand."""

    def __init__(self, source_id, pattern, fields, responses=None, error=None, delay_s=0.0):
        super().__init__()
        self.source_id = source_id
        self.supported_pattern = re.compile(pattern)
        self.fields = tuple(fields)
        self.responses = responses or {}
        self.error = error
        self.delay_s = delay_s
        self.calls = []

    async def _lookup(self, url):
        self.calls.append(url)
        if self.delay_s:
            await asyncio.sleep(self.delay_s)
        if self.error is not None:
            raise self.error
        return LookupResult(data=self.responses.get(url, {}), source_id=self.source_id)


def review_data(author_id, thing_id=None, **overrides):
    """Valid review payload."""
    data = {
        "thingID": thing_id or str(uuid.uuid4()),
        "title": {"en": "A classic"},
        "text": {"en": "Still worth reading."},
        "html": {"en": "<p>Still worth reading.</p>"},
        "starRating": 4,
        "createdOn": utcnow(),
        "createdBy": author_id,
        "originalLanguage": "en",
    }
    data.update(overrides)
    return data


def team_data(**overrides):
    """Valid team payload (without createdBy/createdOn)."""
    data = {
        "name": {"en": "Book Club"},
        "motto": {"en": "Read more"},
        "originalLanguage": "en",
    }
    data.update(overrides)
    return data


@pytest.fixture
def data_dir():
    """Create temporary data directory."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield tmpdir


@pytest_asyncio.fixture
async def store(data_dir):
    """Initialized store with the built-in document types."""
    store = DocumentStore(Database(data_dir, wal_mode=False), build_registry())
    await store.initialize()
    return store


@pytest.fixture
def adapters():
    registry = AdapterRegistry()
    registry.register(
        FakeAdapter(
            "openlibrary",
            r"^https://openlibrary\.org/",
            ["label", "authors", "subtitle"],
            responses={
                "https://openlibrary.org/works/OL1W": {
                    "label": {"en": "Dune"},
                    "authors": [{"en": "Frank Herbert"}],
                    "subtitle": {"en": "A novel"},
                }
            },
        )
    )
    registry.register(
        FakeAdapter(
            "wikidata",
            r"^https://www\.wikidata\.org/",
            ["label", "description"],
            responses={
                "https://www.wikidata.org/wiki/Q190192": {
                    "label": {"en": "Dune"},
                    "description": {"en": "1965 novel by Frank Herbert"},
                }
            },
        )
    )
    return registry


@pytest.fixture
def users(store):
    return UserService(store)


@pytest.fixture
def things(store, adapters):
    return ThingService(store, adapters)


@pytest.fixture
def reviews(store, things):
    return ReviewService(store, things)


@pytest.fixture
def teams(store):
    return TeamService(store)


@pytest_asyncio.fixture
async def alice(users):
    return await users.create("Alice")


@pytest_asyncio.fixture
async def bob(users):
    return await users.create("Bob")


@pytest_asyncio.fixture
async def carol(users):
    return await users.create("Carol", isTrusted=True)


@pytest_asyncio.fixture
async def site_moderator(users):
    return await users.create("Mod", isSiteModerator=True)


@pytest.fixture
def make_review(store):
    """Factory saving a review directly through the review model."""

    async def _make(author, thing_id=None, offset_s=0, **overrides):
        model = store.model("review")
        created_on = utcnow() + timedelta(seconds=offset_s)
        review = await model.create_first_revision(author, date=created_on)
        review.update(review_data(author.id, thing_id, createdOn=created_on, **overrides))
        return await review.save()

    return _make
