"""Tests for the company, player and user facades."""

import asyncio

import pytest

from core.durable_store import StorageKeys
from core.errors import ErrorKind

PLAYERS = [
    {"id": "p1", "name": "Lobby", "company_id": "c1"},
    {"id": "p2", "name": "Bar", "company_id": "c2"},
    {"_id": "p3", "name": "Entrance", "company_id": "c1"},
]

COMPANIES = [{"id": "c1", "name": "Acme"}, {"id": "c2", "name": "Globex"}]


class TestList:
    @pytest.mark.asyncio
    async def test_concurrent_lists_share_one_request(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)

        first, second = await asyncio.gather(runtime.players.list(), runtime.players.list())

        assert transport.count("GET", "/players") == 1
        assert first.data == second.data == PLAYERS

    @pytest.mark.asyncio
    async def test_second_list_served_from_cache(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        await runtime.players.list()
        result = await runtime.players.list()
        assert result.ok
        assert transport.count("GET", "/players") == 1
        assert runtime.cache.stats()["hits"] == 1

    @pytest.mark.asyncio
    async def test_wrapped_list_response(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/companies", 200, {"companies": COMPANIES})
        result = await runtime.companies.list()
        assert result.data == COMPANIES

    @pytest.mark.asyncio
    async def test_filters(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        by_dict = await runtime.players.list({"company_id": "c2"})
        by_callable = await runtime.players.list(lambda p: p["name"].startswith("E"))
        assert [p["id"] for p in by_dict.data] == ["p2"]
        assert [p["_id"] for p in by_callable.data] == ["p3"]
        assert transport.count("GET", "/players") == 1

    @pytest.mark.asyncio
    async def test_logged_out_list(self, runtime, transport):
        result = await runtime.players.list()
        assert result.error.kind is ErrorKind.AUTH_REQUIRED
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_revoke_while_pending_cancels(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)

        pending = asyncio.ensure_future(runtime.players.list())
        await asyncio.sleep(0.005)
        await runtime.lifecycle.revoke("expired")
        result = await pending

        assert result.error.kind is ErrorKind.SESSION_EXPIRED
        assert runtime.cache.read_mirror("players") is None


class TestTenantScoping:
    @pytest.mark.asyncio
    async def test_company_admin_sees_own_players(self, runtime, transport, login_as, company_admin_user):
        login_as(company_admin_user)
        transport.add("GET", "/players", 200, PLAYERS)
        result = await runtime.players.list()
        assert sorted(p.get("id", p.get("_id")) for p in result.data) == ["p1", "p3"]

    @pytest.mark.asyncio
    async def test_company_admin_sees_own_company(self, runtime, transport, login_as, company_admin_user):
        login_as(company_admin_user)
        transport.add("GET", "/companies", 200, COMPANIES)
        result = await runtime.companies.list()
        assert result.data == [{"id": "c1", "name": "Acme"}]

    @pytest.mark.asyncio
    async def test_superadmin_sees_all(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        result = await runtime.players.list()
        assert len(result.data) == 3

    @pytest.mark.asyncio
    async def test_write_forces_company(self, runtime, transport, login_as, company_admin_user):
        login_as(company_admin_user)
        transport.add("POST", "/players", 201, {"player": {"id": "p9", "name": "New", "company_id": "c1"}})
        await runtime.players.create({"name": "New", "company_id": "c2"})
        assert transport.last("POST", "/players").json["company_id"] == "c1"

    @pytest.mark.asyncio
    async def test_get_outside_tenant_is_not_found(self, runtime, transport, login_as, company_admin_user):
        login_as(company_admin_user)
        transport.add("GET", "/players", 200, PLAYERS)
        result = await runtime.players.get("p2")
        assert result.error.kind is ErrorKind.SERVER
        assert result.error.status == 404


class TestDegradedReads:
    @pytest.mark.asyncio
    async def test_cold_start_serves_mirror(self, runtime, store, transport, login_as, network_error):
        store.set_json(StorageKeys.cached("players"), PLAYERS)
        login_as()
        transport.add("GET", "/players", error=network_error())

        result = await runtime.players.list()

        assert result.ok
        assert result.used_fallback is True
        assert result.data == PLAYERS

    @pytest.mark.asyncio
    async def test_no_mirror_returns_network_error(self, runtime, transport, login_as, network_error):
        login_as()
        transport.add("GET", "/players", error=network_error())
        result = await runtime.players.list()
        assert result.error.kind is ErrorKind.NETWORK
        assert result.used_fallback is True

    @pytest.mark.asyncio
    async def test_server_error_does_not_use_mirror(self, runtime, store, transport, login_as):
        store.set_json(StorageKeys.cached("players"), PLAYERS)
        login_as()
        transport.add("GET", "/players", 500, {"error": "Database unavailable"})
        result = await runtime.players.list()
        assert result.error.kind is ErrorKind.SERVER


class TestWrites:
    @pytest.mark.asyncio
    async def test_create_updates_fresh_cache(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        transport.add("POST", "/players", 201, {"id": "p4", "name": "Hall", "company_id": "c1"})
        await runtime.players.list()

        created = await runtime.players.create({"name": "Hall", "company_id": "c1"})
        listed = await runtime.players.list()

        assert created.data["id"] == "p4"
        assert any(p.get("id") == "p4" for p in listed.data)
        assert transport.count("GET", "/players") == 1

    @pytest.mark.asyncio
    async def test_update_merges_when_server_returns_no_record(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        transport.add("PUT", "/players/p1", 200, {"message": "updated"})
        await runtime.players.list()

        result = await runtime.players.update("p1", {"name": "Lobby 2"})

        assert result.data == {"id": "p1", "name": "Lobby 2", "company_id": "c1"}
        cached = {p.get("id"): p for p in runtime.cache.read("players").data}
        assert cached["p1"]["name"] == "Lobby 2"

    @pytest.mark.asyncio
    async def test_delete_removes_from_cache(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        transport.add("DELETE", "/players/p1", 200, {"message": "deleted"})
        await runtime.players.list()

        result = await runtime.players.delete("p1")

        assert result.ok
        assert all(p.get("id") != "p1" for p in runtime.cache.read("players").data)

    @pytest.mark.asyncio
    async def test_conflict_is_returned(self, runtime, transport, login_as):
        login_as()
        transport.add("POST", "/users", 409, {"error": "Email already registered"})
        result = await runtime.users.create({"email": "a@b.nl"})
        assert result.error.kind is ErrorKind.CONFLICT
        assert result.provisional is False

    @pytest.mark.asyncio
    async def test_company_update_invalidates_dependents(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/players", 200, PLAYERS)
        transport.add("GET", "/users", 200, [])
        transport.add("PUT", "/companies/c1", 200, {"company": {"id": "c1", "name": "Acme BV"}})
        await runtime.players.list()
        await runtime.users.list()

        await runtime.companies.update("c1", {"name": "Acme BV"})

        assert runtime.cache.read("players") is None
        assert runtime.cache.read("users") is None


class TestShadowWrites:
    @pytest.mark.asyncio
    async def test_create_offline_is_provisional(self, runtime, transport, login_as, network_error, company_admin_user):
        login_as(company_admin_user)
        transport.add("POST", "/players", error=network_error())

        result = await runtime.players.create({"name": "Offline"})

        assert result.ok
        assert result.provisional is True
        assert result.data["id"].startswith("local_")
        assert result.data["company_id"] == "c1"
        assert runtime.cache.read_mirror("players") == [result.data]

    @pytest.mark.asyncio
    async def test_update_offline_patches_mirror(self, runtime, store, transport, login_as, network_error):
        store.set_json(StorageKeys.cached("players"), PLAYERS)
        login_as()
        transport.add("PUT", "/players/p1", error=network_error())

        result = await runtime.players.update("p1", {"name": "Renamed"})

        assert result.provisional is True
        assert result.data["name"] == "Renamed"
        assert result.data["company_id"] == "c1"
        mirror = {p.get("id", p.get("_id")): p for p in runtime.cache.read_mirror("players")}
        assert mirror["p1"]["name"] == "Renamed"

    @pytest.mark.asyncio
    async def test_delete_offline_removes_from_mirror(self, runtime, store, transport, login_as, network_error):
        store.set_json(StorageKeys.cached("players"), PLAYERS)
        login_as()
        transport.add("DELETE", "/players/p2", error=network_error())

        result = await runtime.players.delete("p2")

        assert result.provisional is True
        assert [p.get("id", p.get("_id")) for p in runtime.cache.read_mirror("players")] == ["p1", "p3"]

    @pytest.mark.asyncio
    async def test_logged_out_write_is_not_shadowed(self, runtime, transport):
        result = await runtime.players.create({"name": "Nope"})
        assert result.error.kind is ErrorKind.AUTH_REQUIRED
        assert runtime.cache.read_mirror("players") is None


class TestPlayerCommands:
    @pytest.mark.asyncio
    async def test_reboot(self, runtime, transport, login_as):
        login_as()
        transport.add("POST", "/players/p1/commands", 201, {"id": "cmd1", "status": "pending"})

        result = await runtime.players.send_command("p1", "reboot")

        assert result.ok
        assert transport.last("POST", "/players/p1/commands").json == {"command_type": "reboot", "payload": {}}

    @pytest.mark.asyncio
    async def test_url_command_requires_url(self, runtime, transport, login_as):
        login_as()
        result = await runtime.players.send_command("p1", "url", {"url": "ftp://example.com"})
        assert result.error.kind is ErrorKind.VALIDATION
        assert "url" in result.error.message
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_unknown_command_type(self, runtime, login_as):
        login_as()
        result = await runtime.players.send_command("p1", "selfdestruct")
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.field == "command_type"

    @pytest.mark.asyncio
    async def test_update_command_payload(self, runtime, transport, login_as):
        login_as()
        transport.add("POST", "/players/p1/commands", 201, {"id": "cmd2"})
        await runtime.players.send_command("p1", "update", {"url": "https://cdn.example.com/app.apk"})
        sent = transport.last("POST", "/players/p1/commands").json
        assert sent["payload"]["url"] == "https://cdn.example.com/app.apk"


class TestUsers:
    @pytest.mark.asyncio
    async def test_get_by_email_case_insensitive(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/users", 200, [{"id": "u7", "email": "Jan@Acme.nl", "company_id": "c1"}])
        result = await runtime.users.get_by_email("jan@acme.nl")
        assert result.data["id"] == "u7"

    @pytest.mark.asyncio
    async def test_update_password_validates_strength(self, runtime, transport, login_as):
        login_as()
        result = await runtime.users.update_password("Old-pass1", "weak")
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.field == "new_password"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_update_password_sends_camel_case(self, runtime, transport, login_as):
        login_as()
        transport.add("POST", "/users/update-password", 200, {"message": "Password updated"})
        result = await runtime.users.update_password("Old-pass1", "New-pass2!")
        assert result.ok
        assert transport.last("POST", "/users/update-password").json == {
            "currentPassword": "Old-pass1",
            "newPassword": "New-pass2!",
        }
