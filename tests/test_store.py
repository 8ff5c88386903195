"""
Tests for the local role stores (in-memory and SQLite).
"""

import pytest

from rolechat.auth.models import User
from rolechat.roles.database import SQLiteRoleStore
from rolechat.roles.store import AssignmentStatus, InMemoryRoleStore, find_resource_instance

CHANNELS = ["general", "random", "mod"]


@pytest.fixture(params=["memory", "sqlite"])
def role_store(request, tmp_path):
    if request.param == "sqlite":
        return SQLiteRoleStore(tmp_path / "roles.db", "default", CHANNELS)
    return InMemoryRoleStore("default", CHANNELS)


def alice():
    return User(key="alice@example.com", email="alice@example.com", first_name="Alice", last_name="Liddell")


class TestUsers:
    """Test user sync and lookup."""

    @pytest.mark.asyncio
    async def test_sync_and_get(self, role_store):
        """A synced user can be fetched back."""
        await role_store.sync_user(alice())

        user = await role_store.get_user("alice@example.com")

        assert user.first_name == "Alice"
        assert user.name == "Alice Liddell"
        assert user.id == "alice@example.com"

    @pytest.mark.asyncio
    async def test_sync_updates(self, role_store):
        """Syncing again updates the stored profile."""
        await role_store.sync_user(alice())
        await role_store.sync_user(User(key="alice@example.com", email="alice@example.com", first_name="Al"))

        user = await role_store.get_user("alice@example.com")

        assert user.first_name == "Al"
        assert len(await role_store.list_users()) == 1

    @pytest.mark.asyncio
    async def test_unknown_user(self, role_store):
        """Unknown keys return None."""
        assert await role_store.get_user("nobody@example.com") is None

    @pytest.mark.asyncio
    async def test_list_sorted(self, role_store):
        """Users are listed by key."""
        await role_store.sync_user(User(key="zed@example.com", email="zed@example.com"))
        await role_store.sync_user(alice())

        keys = [u.key for u in await role_store.list_users()]

        assert keys == ["alice@example.com", "zed@example.com"]


class TestAssignments:
    """Test role assignment bookkeeping."""

    @pytest.mark.asyncio
    async def test_assign_is_idempotent(self, role_store):
        """Assigning twice reports EXISTS the second time."""
        first = await role_store.assign("alice@example.com", "participant", "channel:general")
        second = await role_store.assign("alice@example.com", "participant", "channel:general")

        assert first.status is AssignmentStatus.CREATED
        assert second.status is AssignmentStatus.EXISTS
        assert second.ok
        assert len(await role_store.get_assignments("alice@example.com")) == 1

    @pytest.mark.asyncio
    async def test_global_and_scoped_are_distinct(self, role_store):
        """The same role globally and on a channel are separate assignments."""
        await role_store.assign("alice@example.com", "admin")
        await role_store.assign("alice@example.com", "admin", "channel:general")

        scopes = {a.resource_instance for a in await role_store.get_assignments("alice@example.com")}

        assert scopes == {None, "channel:general"}

    @pytest.mark.asyncio
    async def test_unassign(self, role_store):
        """Unassigning reports REMOVED, then ABSENT."""
        await role_store.assign("alice@example.com", "moderator", "channel:general")

        first = await role_store.unassign("alice@example.com", "moderator", "channel:general")
        second = await role_store.unassign("alice@example.com", "moderator", "channel:general")

        assert first.status is AssignmentStatus.REMOVED
        assert second.status is AssignmentStatus.ABSENT
        assert await role_store.get_assignments("alice@example.com") == []

    @pytest.mark.asyncio
    async def test_assignments_per_user(self, role_store):
        """Assignments are listed per user."""
        await role_store.assign("alice@example.com", "viewer")
        await role_store.assign("bob@example.com", "admin")

        roles = [a.role for a in await role_store.get_assignments("bob@example.com")]

        assert roles == ["admin"]

    @pytest.mark.asyncio
    async def test_result_dict(self, role_store):
        """Assignment results serialize with status and assignment fields."""
        result = await role_store.assign("alice@example.com", "viewer")

        assert result.to_dict() == {
            "status": "created",
            "ok": True,
            "user": "alice@example.com",
            "role": "viewer",
            "tenant": "default",
            "resource_instance": None,
        }


class TestResourcesAndPolicy:
    """Test resource instances and permission checks."""

    @pytest.mark.asyncio
    async def test_seeded_channels(self, role_store):
        """Configured channels exist as resource instances."""
        instances = await role_store.list_resource_instances()

        assert sorted(i.key for i in instances) == sorted(CHANNELS)
        general = find_resource_instance(instances, "general")
        assert general.identifier == "channel:general"
        assert find_resource_instance(instances, "nope") is None

    @pytest.mark.asyncio
    async def test_admin_may_promote(self, role_store):
        """Global admins pass the promote check."""
        await role_store.assign("alice@example.com", "admin")

        assert await role_store.check("alice@example.com", "promote", "channel")

    @pytest.mark.asyncio
    async def test_scoped_admin_may_not_promote(self, role_store):
        """Only unscoped roles count for the tenant policy."""
        await role_store.assign("alice@example.com", "admin", "channel:general")
        await role_store.assign("alice@example.com", "viewer")

        assert not await role_store.check("alice@example.com", "promote", "channel")


class TestSQLitePersistence:
    """Test that the SQLite store survives reopening."""

    @pytest.mark.asyncio
    async def test_reopen(self, tmp_path):
        """Assignments and channels persist across instances."""
        path = tmp_path / "roles.db"
        first = SQLiteRoleStore(path, "default", CHANNELS)
        await first.sync_user(alice())
        await first.assign("alice@example.com", "viewer")

        second = SQLiteRoleStore(path, "default", CHANNELS)

        assert (await second.get_user("alice@example.com")).first_name == "Alice"
        assert [a.role for a in await second.get_assignments("alice@example.com")] == ["viewer"]
        assert len(await second.list_resource_instances()) == len(CHANNELS)
