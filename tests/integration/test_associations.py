"""
Integration tests for join-table relations and atomic multi-table writes.
"""

import sqlite3
import uuid

import pytest

from revstore.errors import ConflictError, DocumentNotFound, PersistenceError
from revstore.schema.codec import utcnow
from tests.conftest import team_data


def join_rows(store, table, column, value):
    with store.db.connection() as conn:
        return conn.execute(f"SELECT * FROM {table} WHERE {column} = ?", (value,)).fetchall()


class TestSaveAll:
    """Tests for AssociationManager.save_all()."""

    @pytest.mark.asyncio
    async def test_members_and_moderators(self, store, teams, alice, bob, carol):
        team = await teams.create(team_data(), alice)
        team.relations["members"] = [alice, bob, carol, bob]
        team.relations["moderators"] = [alice, bob.id]
        await team.save_all({"members": True, "moderators": True})

        loaded = await store.get_with_data("team", team.id, with_members=True, with_moderators=True)
        members = [u.id for u in loaded.relations["members"]]
        # Founder joined first; duplicates collapse to one row.
        assert members[0] == alice.id
        assert sorted(members) == sorted([alice.id, bob.id, carol.id])
        assert {u.id for u in loaded.relations["moderators"]} == {alice.id, bob.id}
        assert len(join_rows(store, "team_members", "team_id", team.id)) == 3

    @pytest.mark.asyncio
    async def test_resave_keeps_timestamps(self, store, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        (founder_row,) = join_rows(store, "team_members", "team_id", team.id)

        team.relations["members"] = [alice, bob]
        await team.save_all({"members": True})
        rows = {row["user_id"]: row["joined_on"] for row in join_rows(store, "team_members", "team_id", team.id)}
        assert rows[alice.id] == founder_row["joined_on"]
        assert set(rows) == {alice.id, bob.id}

        team.relations["members"] = [alice]
        await team.save_all({"members": True})
        assert [row["user_id"] for row in join_rows(store, "team_members", "team_id", team.id)] == [alice.id]

    @pytest.mark.asyncio
    async def test_unlisted_relations_untouched(self, store, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        team.relations["members"] = [alice, bob]
        team.relations["moderators"] = []
        await team.save_all({"members": True, "moderators": False})
        assert len(join_rows(store, "team_moderators", "team_id", team.id)) == 1

    @pytest.mark.asyncio
    async def test_new_anchor_with_relations(self, store, alice, bob):
        model = store.model("team")
        team = await model.create_first_revision(alice)
        team.update(team_data(createdBy=alice.id, createdOn=utcnow()))
        team.relations["members"] = [alice, bob]
        await store.associations.create(team, {"members": True})

        assert team.is_new is False
        loaded = await store.get_with_data("team", team.id, with_members=True)
        assert len(loaded.relations["members"]) == 2

    @pytest.mark.asyncio
    async def test_failure_rolls_back_everything(self, store, alice, bob, monkeypatch):
        """A store failure while writing relations leaves no anchor row."""
        model = store.model("team")
        team = await model.create_first_revision(alice)
        team.update(team_data(createdBy=alice.id, createdOn=utcnow()))
        team.relations["members"] = [alice, bob]

        def broken_sync(*args, **kwargs):
            raise sqlite3.OperationalError("disk I/O error")

        monkeypatch.setattr(store.associations, "sync_relation", broken_sync)
        with pytest.raises(PersistenceError) as exc_info:
            await team.save_all({"members": True})

        assert exc_info.value.operation == "save_all team"
        assert team.is_new is True
        with pytest.raises(DocumentNotFound):
            await model.get(team.id)
        assert join_rows(store, "team_members", "team_id", team.id) == []

    @pytest.mark.asyncio
    async def test_stale_anchor_conflicts(self, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        edited = await team.new_revision(alice)
        edited["motto"] = {"en": "Read even more"}
        await edited.save()

        team.relations["members"] = [alice, bob]
        with pytest.raises(ConflictError):
            await team.save_all({"members": True})

    @pytest.mark.asyncio
    async def test_unknown_relation(self, teams, alice):
        team = await teams.create(team_data(), alice)
        with pytest.raises(ValueError, match="no relation 'followers'"):
            await team.save_all({"followers": True})

    @pytest.mark.asyncio
    async def test_relation_survives_new_revision(self, store, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        await teams.join(team, bob)
        edited = await team.new_revision(alice)
        edited["motto"] = {"en": "New motto"}
        await edited.save()

        loaded = await store.get_with_data("team", team.id, with_members=True)
        assert loaded.revision_id == edited.revision_id
        assert {u.id for u in loaded.relations["members"]} == {alice.id, bob.id}


class TestGetWithData:
    """Tests for AssociationManager.get_with_data()."""

    @pytest.mark.asyncio
    async def test_unknown_option(self, store, teams, alice):
        team = await teams.create(team_data(), alice)
        with pytest.raises(TypeError, match="with_followers"):
            await store.get_with_data("team", team.id, with_followers=True)

    @pytest.mark.asyncio
    async def test_missing_document(self, store):
        with pytest.raises(DocumentNotFound):
            await store.get_with_data("team", str(uuid.uuid4()), with_members=True)

    @pytest.mark.asyncio
    async def test_deleted_members_are_skipped(self, store, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        await teams.join(team, bob)
        await bob.delete_all_revisions(bob)
        loaded = await store.get_with_data("team", team.id, with_members=True)
        assert [u.id for u in loaded.relations["members"]] == [alice.id]

    @pytest.mark.asyncio
    async def test_inverse_relation(self, users, teams, alice, bob):
        first = await teams.create(team_data(), alice)
        second = await teams.create(team_data(name={"en": "Poetry Circle"}), bob)
        await teams.join(second, alice)

        loaded = await users.get_with_teams(alice.id)
        assert {t.id for t in loaded.relations["teams"]} == {first.id, second.id}
        assert [t.id for t in loaded.relations["moderatorOf"]] == [first.id]


class TestSingleRelationEdits:
    """Tests for add_relation / remove_relation."""

    @pytest.mark.asyncio
    async def test_add_and_remove(self, store, teams, alice, bob):
        team = await teams.create(team_data(), alice)
        associations = store.associations
        assert await associations.add_relation(team, "moderators", bob) is True
        assert await associations.add_relation(team, "moderators", bob) is False
        assert await associations.remove_relation(team, "moderators", bob) is True
        assert await associations.remove_relation(team, "moderators", bob) is False
        assert len(join_rows(store, "team_moderators", "team_id", team.id)) == 1

    @pytest.mark.asyncio
    async def test_loaded_relation_updated_in_memory(self, store, teams, alice, bob):
        team = await teams.get_with_data((await teams.create(team_data(), alice)).id)
        await store.associations.add_relation(team, "members", bob)
        assert bob in team.relations["members"]
        await store.associations.remove_relation(team, "members", bob)
        assert [u.id for u in team.relations["members"]] == [alice.id]
