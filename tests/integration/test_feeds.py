"""
Integration tests for lazy queries and timestamp-keyed feeds.
"""

import uuid

import pytest
import pytest_asyncio

from revstore.config import FeedConfig
from revstore.models import ReviewService


class TestDocumentQuery:
    """Tests for DocumentQuery."""

    @pytest.mark.asyncio
    async def test_query_is_restartable(self, store, alice, bob, make_review):
        """Iterating a query twice re-runs it and sees new rows."""
        await make_review(alice)
        query = store.model("review").filter_where(createdBy=alice.id)

        first = [doc.id async for doc in query]
        second = [doc.id async for doc in query]
        assert first == second
        assert len(first) == 1

        await make_review(alice)
        await make_review(bob)
        assert len(await query.run()) == 2
        assert await query.count() == 2

    @pytest.mark.asyncio
    async def test_only_current_revisions(self, store, alice, make_review):
        review = await make_review(alice)
        edited = await review.new_revision(alice)
        edited["starRating"] = 2
        await edited.save()

        docs = await store.model("review").filter_not_stale_or_deleted().run()
        assert [doc.revision_id for doc in docs] == [edited.revision_id]

    @pytest.mark.asyncio
    async def test_average_and_count(self, store, alice, bob, carol, make_review):
        thing_id = str(uuid.uuid4())
        await make_review(alice, thing_id, starRating=5)
        await make_review(bob, thing_id, starRating=2)
        await make_review(carol, starRating=1)
        query = store.model("review").filter_where(thingID=thing_id)
        assert await query.count() == 2
        assert await query.average("starRating") == 3.5
        assert await store.model("review").filter_where(thingID=str(uuid.uuid4())).average("starRating") is None

    @pytest.mark.asyncio
    async def test_exclude_and_where_in(self, store, alice, bob, carol, make_review):
        await make_review(alice)
        await make_review(bob)
        await make_review(carol)
        model = store.model("review")
        assert await model.filter_not_stale_or_deleted().exclude(createdBy=alice.id).count() == 2
        assert await model.filter_not_stale_or_deleted().where_in("createdBy", [alice.id, bob.id]).count() == 2
        assert await model.filter_not_stale_or_deleted().where_in("createdBy", []).count() == 0

    @pytest.mark.asyncio
    async def test_order_by_and_first(self, store, alice, make_review):
        await make_review(alice, offset_s=0, starRating=3)
        await make_review(alice, offset_s=1, starRating=1)
        await make_review(alice, offset_s=2, starRating=5)
        model = store.model("review")
        lowest = await model.filter_not_stale_or_deleted().order_by("starRating", descending=False).first()
        assert lowest["starRating"] == 1
        newest = await model.filter_not_stale_or_deleted().first()
        assert newest["starRating"] == 5

    @pytest.mark.asyncio
    async def test_where_contains(self, store, alice, things):
        thing = await things.build("https://example.com/a", alice)
        thing["urls"] = ["https://example.com/a", "https://example.com/b"]
        await things.create(thing)

        query = store.model("thing").filter_not_stale_or_deleted()
        assert await query.where_contains("urls", "https://example.com/b").count() == 1
        assert await query.where_contains("urls", "https://example.com").count() == 0

    def test_unknown_field(self, store):
        with pytest.raises(ValueError, match="no field 'rating'"):
            store.model("review").filter_where(rating=5)

    def test_negative_limit(self, store):
        with pytest.raises(ValueError):
            store.model("review").filter_not_stale_or_deleted().limit(-1)


class TestPagination:
    """Tests for DocumentQuery.page()."""

    @pytest.mark.asyncio
    async def test_pages_walk_newest_first(self, store, alice, make_review):
        """Five reviews one second apart, two per page."""
        created = [await make_review(alice, offset_s=i) for i in range(5)]
        query = store.model("review").filter_not_stale_or_deleted()

        page1 = await query.page(2)
        assert [doc.id for doc in page1.items] == [created[4].id, created[3].id]
        assert page1.offset_date == page1.items[-1]["createdOn"]

        page2 = await query.page(2, offset_date=page1.offset_date)
        assert [doc.id for doc in page2.items] == [created[2].id, created[1].id]
        assert page2.offset_date == page2.items[-1]["createdOn"]

        page3 = await query.page(2, offset_date=page2.offset_date)
        assert [doc.id for doc in page3.items] == [created[0].id]
        assert page3.offset_date is None

    @pytest.mark.asyncio
    async def test_exact_fit_has_no_next_page(self, store, alice, make_review):
        for i in range(2):
            await make_review(alice, offset_s=i)
        page = await store.model("review").filter_not_stale_or_deleted().page(2)
        assert len(page.items) == 2
        assert page.offset_date is None

    @pytest.mark.asyncio
    async def test_empty(self, store):
        page = await store.model("review").filter_not_stale_or_deleted().page(10)
        assert page.items == []
        assert page.offset_date is None

    @pytest.mark.asyncio
    async def test_revision_date_for_types_without_created_on(self, store, users):
        for name in ("Ann", "Ben", "Cal"):
            await users.create(name)
        page = await store.model("user").filter_not_stale_or_deleted().page(2)
        assert [u["displayName"] for u in page.items] == ["Cal", "Ben"]
        assert page.offset_date == page.items[-1].revision_date


class TestReviewFeed:
    """Tests for ReviewService.get_feed()."""

    @pytest.fixture
    def thing_id(self):
        return str(uuid.uuid4())

    @pytest_asyncio.fixture
    async def feed(self, alice, bob, carol, make_review, thing_id):
        await make_review(alice, thing_id, offset_s=0)
        await make_review(alice, offset_s=1)
        await make_review(bob, thing_id, offset_s=2)
        await make_review(carol, offset_s=3)

    @pytest.mark.asyncio
    async def test_filters(self, reviews, alice, carol, thing_id, feed):
        assert len((await reviews.get_feed(thing_id=thing_id)).items) == 2
        assert len((await reviews.get_feed(created_by=alice.id)).items) == 2
        without = await reviews.get_feed(without_creator=alice.id)
        assert alice.id not in {r["createdBy"] for r in without.items}
        assert len(without.items) == 2
        trusted = await reviews.get_feed(only_trusted=True)
        assert [r["createdBy"] for r in trusted.items] == [carol.id]

    @pytest.mark.asyncio
    async def test_follow_up_page_is_strictly_older(self, reviews, feed):
        first = await reviews.get_feed(limit=2)
        rest = await reviews.get_feed(limit=3, offset_date=first.offset_date)
        assert len(first.items) == 2
        assert len(rest.items) == 2
        assert all(r["createdOn"] < first.offset_date for r in rest.items)
        assert rest.offset_date is None

    @pytest.mark.asyncio
    async def test_hydration(self, reviews, carol, feed):
        page = await reviews.get_feed(limit=1)
        (review,) = page.items
        assert review.virtual["creator"].id == carol.id
        assert review.virtual["thing"] is None
        assert review.relations["teams"] == []
        assert page.offset_date == review["createdOn"]

    @pytest.mark.asyncio
    async def test_hydration_can_be_skipped(self, reviews, feed):
        page = await reviews.get_feed(with_thing=False, with_teams=False, with_creator=False)
        assert len(page.items) == 4
        assert all(not r.virtual and not r.relations for r in page.items)

    @pytest.mark.asyncio
    async def test_page_size_from_config(self, store, things, feed):
        small = ReviewService(store, things, FeedConfig(page_size=3, max_page_size=3))
        page = await small.get_feed()
        assert len(page.items) == 3
        assert page.offset_date is not None

    @pytest.mark.asyncio
    @pytest.mark.parametrize("limit", [0, 101])
    async def test_limit_bounds(self, reviews, limit):
        with pytest.raises(ValueError, match="limit must be between"):
            await reviews.get_feed(limit=limit)
