"""
Integration tests for the user, thing, review and team services.

Tests cover:
- Creating a review together with a new thing and team tags
- Rollback of multi-document creates
- Team membership
- Metadata sync saved as a new revision
- User names
"""

import sqlite3
from datetime import timedelta

import pytest
import pytest_asyncio

from revstore.errors import ConflictError, DocumentNotFound, PersistenceError, ValidationError
from revstore.models import AlreadyReviewedError, JoinOutcome, get_label
from revstore.permissions import Viewer, populate_user_info
from revstore.schema.codec import utcnow
from revstore.sync import set_urls
from tests.conftest import team_data

OL_URL = "https://openlibrary.org/works/OL1W"
WD_URL = "https://www.wikidata.org/wiki/Q190192"


def review_fields(**overrides):
    data = {
        "title": {"en": "Spice must flow"},
        "text": {"en": "A long *desert* story."},
        "html": {"en": "<p>A long <em>desert</em> story.</p>"},
        "starRating": 5,
        "originalLanguage": "en",
    }
    data.update(overrides)
    return data


def broken_sync(*args, **kwargs):
    raise sqlite3.OperationalError("database disk image is malformed")


class TestReviewCreate:
    """Tests for ReviewService.create()."""

    @pytest.mark.asyncio
    async def test_creates_thing_from_url(self, store, reviews, things, teams, alice):
        team = await teams.create(team_data(), alice)

        review = await reviews.create(review_fields(), alice, url=OL_URL, teams=[team])

        thing = review.virtual["thing"]
        assert review["thingID"] == thing.id
        assert review["createdBy"] == alice.id
        assert thing.is_new is False
        assert thing["label"] == {"en": "Dune"}
        assert thing["metadata"]["authors"] == [{"en": "Frank Herbert"}]
        assert thing["canonicalSlugName"] == "dune"
        assert thing.revision_tags == ["create-via-review"]

        stored = await things.model.get_not_stale_or_deleted(thing.id)
        assert stored["sync"]["label"]["source"] == "openlibrary"
        loaded = await store.get_with_data("review", review.id, with_teams=True)
        assert [t.id for t in loaded.relations["teams"]] == [team.id]

        team_page = await teams.get_with_data(team.id, with_reviews=True)
        assert [r.id for r in team_page.virtual["reviews"]] == [review.id]
        assert team_page.virtual["reviewOffsetDate"] is None

    @pytest.mark.asyncio
    async def test_user_label_overrides_adapter(self, reviews, alice):
        review = await reviews.create(
            review_fields(), alice, url=OL_URL, label={"en": "Dune (1965)"}
        )
        assert review.virtual["thing"]["label"] == {"en": "Dune (1965)"}

    @pytest.mark.asyncio
    async def test_url_without_adapter(self, reviews, alice):
        review = await reviews.create(review_fields(), alice, url="https://example.com/book/")
        thing = review.virtual["thing"]
        assert "label" not in thing
        assert "canonicalSlugName" not in thing
        assert get_label(thing, "en") == "example.com/book"

    @pytest.mark.asyncio
    async def test_existing_thing_is_reused(self, reviews, things, alice, bob):
        first = await reviews.create(review_fields(), alice, url=OL_URL)
        second = await reviews.create(review_fields(starRating=3), bob, url=OL_URL)
        assert first["thingID"] == second["thingID"]
        assert len(await things.lookup_by_url(OL_URL)) == 1

        thing = await things.get_with_data(first["thingID"])
        assert thing.virtual["numberOfReviews"] == 2
        assert thing.virtual["averageStarRating"] == 4.0

    @pytest.mark.asyncio
    async def test_thing_created_meanwhile_is_reused(self, reviews, things, alice, bob, monkeypatch):
        """A thing written for the URL after the lookup is reused, not duplicated."""
        first = await reviews.create(review_fields(), alice, url=OL_URL)

        async def missed_lookup(url, user=None):
            return []

        monkeypatch.setattr(things, "lookup_by_url", missed_lookup)
        second = await reviews.create(review_fields(), bob, url=OL_URL)
        found = await things.find_or_create(OL_URL, bob)
        monkeypatch.undo()

        assert second["thingID"] == first["thingID"]
        assert second.virtual["thing"].id == first["thingID"]
        assert found.id == first["thingID"]
        assert len(await things.lookup_by_url(OL_URL)) == 1
        assert [s.name for s in await things.slugs.get_for_document(first["thingID"])] == ["dune"]

    @pytest.mark.asyncio
    async def test_already_reviewed(self, reviews, alice):
        first = await reviews.create(review_fields(), alice, url=OL_URL)
        with pytest.raises(AlreadyReviewedError) as exc_info:
            await reviews.create(review_fields(starRating=1), alice, thing=first.virtual["thing"])
        assert exc_info.value.review_id == first.id
        assert exc_info.value.code == "ALREADY_REVIEWED"
        assert await reviews.model.filter_not_stale_or_deleted().count() == 1

    @pytest.mark.asyncio
    async def test_invalid_review_creates_no_thing(self, reviews, things, alice):
        with pytest.raises(ValidationError):
            await reviews.create(review_fields(starRating=6), alice, url=OL_URL)
        assert await things.lookup_by_url(OL_URL) == []

    @pytest.mark.asyncio
    async def test_thing_or_url_required(self, reviews, alice):
        with pytest.raises(ValidationError):
            await reviews.create(review_fields(), alice)

    @pytest.mark.asyncio
    async def test_failure_leaves_no_thing_review_or_slug(self, store, reviews, things, teams, alice, monkeypatch):
        """A store failure while tagging teams rolls back the new thing too."""
        team = await teams.create(team_data(), alice)
        monkeypatch.setattr(store.associations, "sync_relation", broken_sync)

        with pytest.raises(PersistenceError):
            await reviews.create(review_fields(), alice, url=OL_URL, teams=[team])

        assert await things.lookup_by_url(OL_URL) == []
        assert await things.slugs.get_by_name("dune") is None
        assert await reviews.model.filter_not_stale_or_deleted().count() == 0


class TestReviewQueries:
    """Tests for has_reviewed, lookup_by_url and deletion."""

    @pytest.mark.asyncio
    async def test_has_reviewed(self, reviews, alice, bob):
        review = await reviews.create(review_fields(), alice, url=OL_URL)
        assert await reviews.has_reviewed(review["thingID"], alice) is True
        assert await reviews.has_reviewed(review["thingID"], bob.id) is False

    @pytest.mark.asyncio
    async def test_lookup_by_url_with_user_reviews(self, reviews, things, alice, bob):
        review = await reviews.create(review_fields(), alice, url=OL_URL)
        await reviews.create(review_fields(), bob, url=OL_URL)

        (thing,) = await things.lookup_by_url(OL_URL, user=Viewer(alice.id))
        (own,) = thing.virtual["reviews"]
        assert own.id == review.id
        assert own.permissions["userCanEdit"] is True

        (anonymous,) = await things.lookup_by_url(OL_URL)
        assert "reviews" not in anonymous.virtual

    @pytest.mark.asyncio
    async def test_delete_with_thing(self, store, reviews, things, alice):
        review = await reviews.create(review_fields(), alice, url=OL_URL)
        thing_id = review["thingID"]

        deletion = await reviews.delete_all_revisions_with_thing(review, alice)

        assert deletion.revision_tags == ["delete", "delete-with-thing"]
        assert review.deleted is True
        assert review.virtual["thing"].deleted is True
        with pytest.raises(DocumentNotFound):
            await reviews.model.get_not_stale_or_deleted(review.id)
        with pytest.raises(DocumentNotFound):
            await things.model.get_not_stale_or_deleted(thing_id)
        deleted_thing = await things.model.get(thing_id)
        assert deleted_thing.revision_tags == ["delete", "delete-via-review"]
        assert deleted_thing.revision_user == alice.id


class TestTeams:
    """Tests for TeamService."""

    @pytest.mark.asyncio
    async def test_founder_is_member_and_moderator(self, teams, alice):
        team = await teams.create(team_data(), alice)
        assert team["createdBy"] == alice.id
        loaded = await teams.get_with_data(team.id)
        assert [u.id for u in loaded.relations["members"]] == [alice.id]
        assert [u.id for u in loaded.relations["moderators"]] == [alice.id]

    @pytest.mark.asyncio
    async def test_invalid_team_writes_nothing(self, teams, alice):
        with pytest.raises(ValidationError):
            await teams.create(team_data(name={"de": "Buchklub"}), alice)
        assert await teams.model.filter_not_stale_or_deleted().count() == 0
        assert await teams.slugs.get_by_name("buchklub") is None

    @pytest.mark.asyncio
    async def test_create_failure_rolls_back(self, store, teams, alice, monkeypatch):
        monkeypatch.setattr(store.associations, "sync_relation", broken_sync)
        with pytest.raises(PersistenceError):
            await teams.create(team_data(), alice)
        assert await teams.model.filter_not_stale_or_deleted().count() == 0
        assert await teams.slugs.get_by_name("book-club") is None

    @pytest.mark.asyncio
    async def test_join_and_leave(self, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        assert await teams.join(team, bob) is JoinOutcome.JOINED
        assert await teams.join(team, bob) is JoinOutcome.ALREADY_MEMBER

        loaded = await teams.get_with_data(team.id)
        assert {u.id for u in loaded.relations["members"]} == {alice.id, bob.id}

        await teams.model.associations.add_relation(loaded, "moderators", bob)
        assert await teams.leave(loaded, bob) is True
        assert await teams.leave(loaded, bob) is False

        reloaded = await teams.get_with_data(team.id)
        assert [u.id for u in reloaded.relations["members"]] == [alice.id]
        assert [u.id for u in reloaded.relations["moderators"]] == [alice.id]

    @pytest.mark.asyncio
    async def test_founder_cannot_leave(self, teams, alice):
        team = await teams.create(team_data(), alice)
        with pytest.raises(ValidationError, match="founder"):
            await teams.leave(team, alice)

    @pytest.mark.asyncio
    async def test_rename_redirects(self, teams, alice):
        team = await teams.create(team_data(), alice)
        revision = await team.new_revision(alice)
        revision["name"] = {"en": "Night Readers"}
        await teams.update_slug(revision, alice)

        loaded = await teams.resolve_and_load_team("/team/night-readers", "", "night-readers")
        assert loaded.revision_id == revision.revision_id


class TestTeamJoinRequests:
    """Joining teams that require moderator approval."""

    @pytest_asyncio.fixture
    async def closed_team(self, teams, alice):
        return await teams.create(team_data(modApprovalToJoin=True), alice)

    @pytest.mark.asyncio
    async def test_join_files_request(self, teams, closed_team, alice, bob):
        assert await teams.join(closed_team, bob, message="Keen reader") is JoinOutcome.REQUESTED
        assert await teams.join(closed_team, bob) is JoinOutcome.ALREADY_REQUESTED

        loaded = await teams.get_with_data(closed_team.id, with_join_request_details=True)
        assert [u.id for u in loaded.relations["members"]] == [alice.id]
        (request,) = loaded.virtual["joinRequests"]
        assert request["userID"] == bob.id
        assert request["status"] == "pending"
        assert request["requestMessage"] == "Keen reader"
        assert request.virtual["user"].id == bob.id

    @pytest.mark.asyncio
    async def test_pending_request_clears_can_join(self, teams, closed_team, bob, carol):
        await teams.join(closed_team, bob)
        loaded = await teams.get_with_data(closed_team.id)
        assert populate_user_info(loaded, Viewer(bob.id))["userCanJoin"] is False
        assert populate_user_info(loaded, Viewer(carol.id))["userCanJoin"] is True

    @pytest.mark.asyncio
    async def test_founder_join_is_already_member(self, teams, closed_team, alice):
        assert await teams.join(closed_team, alice) is JoinOutcome.ALREADY_MEMBER
        assert await teams.get_join_requests(closed_team.id) == []

    @pytest.mark.asyncio
    async def test_approve_adds_member(self, teams, closed_team, alice, bob):
        await teams.join(closed_team, bob)
        (request,) = await teams.get_join_requests(closed_team.id)

        approved = await teams.approve_join_request(request, alice)

        assert approved["status"] == "approved"
        assert approved.revision_user == alice.id
        assert approved.revision_tags == ["approve"]
        loaded = await teams.get_with_data(closed_team.id)
        assert {u.id for u in loaded.relations["members"]} == {alice.id, bob.id}
        assert loaded.virtual["joinRequests"] == []
        assert populate_user_info(loaded, Viewer(bob.id))["userIsMember"] is True
        assert await teams.join(loaded, bob) is JoinOutcome.ALREADY_MEMBER

    @pytest.mark.asyncio
    async def test_reject_with_cooldown(self, teams, closed_team, alice, bob):
        await teams.join(closed_team, bob)
        (request,) = await teams.get_join_requests(closed_team.id)

        rejected = await teams.reject_join_request(
            request, alice, message="Full for now", until=utcnow() + timedelta(days=7)
        )

        assert rejected["status"] == "rejected"
        assert rejected["rejectedBy"] == alice.id
        assert rejected.revision_tags == ["reject"]
        assert await teams.get_join_requests(closed_team.id) == []
        (stored,) = await teams.get_join_requests(closed_team.id, status="rejected")
        assert stored["rejectionMessage"] == "Full for now"
        with pytest.raises(ValidationError, match="again yet"):
            await teams.join(closed_team, bob)
        loaded = await teams.get_with_data(closed_team.id)
        assert [u.id for u in loaded.relations["members"]] == [alice.id]

    @pytest.mark.asyncio
    async def test_reject_without_cooldown_allows_new_request(self, teams, closed_team, alice, bob):
        await teams.join(closed_team, bob)
        (request,) = await teams.get_join_requests(closed_team.id)
        await teams.reject_join_request(request, alice)
        assert await teams.join(closed_team, bob) is JoinOutcome.REQUESTED

    @pytest.mark.asyncio
    async def test_request_is_decided_once(self, teams, closed_team, alice, bob):
        await teams.join(closed_team, bob)
        (request,) = await teams.get_join_requests(closed_team.id)
        rejected = await teams.reject_join_request(request, alice)

        with pytest.raises(ValidationError, match="not pending"):
            await teams.approve_join_request(rejected, alice)
        with pytest.raises(ConflictError):
            await teams.approve_join_request(request, alice)

        loaded = await teams.get_with_data(closed_team.id)
        assert [u.id for u in loaded.relations["members"]] == [alice.id]


class TestThingSync:
    """Tests for ThingService.update_active_syncs()."""

    @pytest.mark.asyncio
    async def test_sync_saves_new_revision(self, things, adapters, alice):
        thing = await things.find_or_create(OL_URL, alice)
        adapters.get_for_source("openlibrary").responses[OL_URL] = {
            "label": {"en": "Dune Messiah"},
            "subtitle": {"en": "Book two"},
        }

        updated = await things.update_active_syncs(thing, alice)

        assert updated.revision_id != thing.revision_id
        assert updated.revision_tags == ["update-sync"]
        assert updated["label"] == {"en": "Dune Messiah"}
        assert updated["metadata"]["subtitle"] == {"en": "Book two"}
        assert updated["metadata"]["authors"] == [{"en": "Frank Herbert"}]
        assert updated["canonicalSlugName"] == "dune-messiah"
        stored = await things.model.get_not_stale_or_deleted(thing.id)
        assert stored.revision_id == updated.revision_id

    @pytest.mark.asyncio
    async def test_failed_sources_save_nothing(self, things, adapters, alice):
        thing = await things.find_or_create(OL_URL, alice)
        adapters.get_for_source("openlibrary").error = RuntimeError("service unavailable")

        result = await things.update_active_syncs(thing, alice)

        assert result is thing
        history = await things.model.get_revisions(thing.id)
        assert len(history) == 1

    @pytest.mark.asyncio
    async def test_second_source_added_later(self, things, adapters, alice):
        thing = await things.find_or_create(OL_URL, alice)
        revision = await thing.new_revision(alice)
        set_urls(revision, [OL_URL, WD_URL], adapters)
        saved = await revision.save()

        updated = await things.update_active_syncs(saved, alice)
        assert updated["metadata"]["description"] == {"en": "1965 novel by Frank Herbert"}
        assert updated["sync"]["description"]["source"] == "wikidata"
        assert updated["sync"]["label"]["source"] == "openlibrary"


class TestUsers:
    """Tests for UserService."""

    @pytest.mark.asyncio
    async def test_first_revision_is_self_authored(self, users):
        user = await users.create("Jane Doe", email="jane@example.com")
        assert user.revision_user == user.id
        assert user["canonicalName"] == "JANE DOE"
        assert user["isTrusted"] is False

    @pytest.mark.asyncio
    async def test_names_are_unique_case_insensitively(self, users, alice):
        with pytest.raises(ValidationError, match="already exists"):
            await users.create("ALICE")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("name", ["", "   ", "a/b", "who?", "x_y"])
    async def test_invalid_names(self, users, name):
        with pytest.raises(ValidationError):
            await users.create(name)

    @pytest.mark.asyncio
    async def test_find_by_url_name(self, users, teams):
        jane = await users.create("Jane Doe")
        team = await teams.create(team_data(), jane)

        found = await users.find_by_url_name("Jane_Doe")
        assert found.id == jane.id
        with_teams = await users.find_by_url_name("jane_doe", with_teams=True)
        assert [t.id for t in with_teams.relations["teams"]] == [team.id]

        with pytest.raises(DocumentNotFound):
            await users.find_by_url_name("Nobody")
