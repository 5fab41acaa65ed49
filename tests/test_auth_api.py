"""Tests for the authentication facade and login throttling."""

import pytest

from api.auth import LoginThrottle, TwoFactorChallenge
from core.durable_store import MemoryStore, StorageKeys
from core.errors import ErrorKind
from core.types import Credentials


@pytest.fixture
def login_ok(transport, token_for, clock, admin_user):
    """Script a successful /auth/login response. Returns the access token."""
    def _ok(user=None):
        token = token_for(clock() + 3600)
        transport.add("POST", "/auth/login", 200, {
            "token": token,
            "refreshToken": "R1",
            "user": user or admin_user,
        })
        return token
    return _ok


class TestLogin:
    @pytest.mark.asyncio
    async def test_success_stores_credentials(self, runtime, transport, login_ok):
        token = login_ok()

        result = await runtime.auth.login("Admin@Example.com ", "Secret-123")

        assert result.ok
        assert isinstance(result.data, Credentials)
        assert runtime.credentials.get_token() == token
        assert runtime.credentials.get_refresh_token() == "R1"
        sent = transport.last("POST", "/auth/login")
        assert sent.json == {"email": "admin@example.com", "password": "Secret-123"}
        assert "Authorization" not in sent.headers

    @pytest.mark.asyncio
    async def test_two_factor_challenge(self, runtime, transport, token_for, clock, admin_user):
        transport.add("POST", "/auth/login", 200, {"requires2FA": True, "tempToken": "tmp-1"})
        transport.add("POST", "/auth/2fa/verify-login", 200, {
            "token": token_for(clock() + 3600),
            "user": admin_user,
        })

        first = await runtime.auth.login("admin@example.com", "Secret-123")
        assert first.data == TwoFactorChallenge(temp_token="tmp-1", email="admin@example.com")
        assert runtime.credentials.is_authenticated is False

        second = await runtime.auth.verify_2fa_login("123456", first.data.temp_token)
        assert second.ok
        assert runtime.credentials.is_authenticated is True
        assert transport.last("POST", "/auth/2fa/verify-login").json == {"token": "123456", "tempToken": "tmp-1"}

    @pytest.mark.asyncio
    async def test_two_factor_code_format(self, runtime, transport):
        result = await runtime.auth.verify_2fa_login("12ab", "tmp-1")
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.field == "code"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_malformed_login_response(self, runtime, transport):
        transport.add("POST", "/auth/login", 200, {"token": "T1"})
        result = await runtime.auth.login("admin@example.com", "Secret-123")
        assert result.error.kind is ErrorKind.SERVER
        assert runtime.credentials.is_authenticated is False

    @pytest.mark.asyncio
    async def test_login_as_other_user_drops_caches(self, runtime, transport, login_ok, company_admin_user):
        login_ok(user=company_admin_user)
        await runtime.auth.login("boss@acme.nl", "Secret-123")
        transport.add("GET", "/players", 200, [{"id": "p1", "company_id": "c1"}])
        await runtime.players.list()
        assert runtime.cache.read_mirror("players") is not None

        transport.routes.clear()
        login_ok()
        await runtime.auth.login("admin@example.com", "Secret-123")

        assert runtime.cache.read("players") is None
        assert runtime.cache.read_mirror("players") is None

    @pytest.mark.asyncio
    async def test_login_as_same_user_keeps_caches(self, runtime, transport, login_ok):
        login_ok()
        await runtime.auth.login("admin@example.com", "Secret-123")
        transport.add("GET", "/players", 200, [{"id": "p1", "company_id": "c1"}])
        await runtime.players.list()

        await runtime.auth.login("admin@example.com", "Secret-123")

        assert runtime.cache.read("players") is not None

    @pytest.mark.asyncio
    async def test_login_resets_inactivity(self, runtime, login_ok, mono):
        login_ok()
        mono.advance(900)
        await runtime.auth.login("admin@example.com", "Secret-123")
        assert runtime.activity.idle_for() == 0


class TestThrottle:
    @pytest.mark.asyncio
    async def test_captcha_after_three_failures(self, runtime, transport):
        transport.add("POST", "/auth/login", 401, {"error": "Invalid credentials"})
        for _ in range(3):
            result = await runtime.auth.login("admin@example.com", "wrong")
            assert result.error.message == "Invalid credentials"

        blocked = await runtime.auth.login("admin@example.com", "wrong")
        assert blocked.error.kind is ErrorKind.VALIDATION
        assert blocked.error.field == "captcha_token"
        assert transport.count("POST", "/auth/login") == 3

        await runtime.auth.login("admin@example.com", "wrong", captcha_token="cap-1")
        assert transport.last("POST", "/auth/login").json["captchaToken"] == "cap-1"

    @pytest.mark.asyncio
    async def test_lockout_and_expiry(self, runtime, transport, clock, login_ok):
        transport.add("POST", "/auth/login", 401, {"error": "Invalid credentials"})
        for _ in range(5):
            await runtime.auth.login("admin@example.com", "wrong", captcha_token="cap")

        locked = await runtime.auth.login("admin@example.com", "Secret-123", captcha_token="cap")
        assert locked.error.kind is ErrorKind.VALIDATION
        assert locked.error.message == "Too many login attempts. Try again in 5 minutes"
        assert transport.count("POST", "/auth/login") == 5

        clock.advance(301)
        transport.routes.clear()
        login_ok()
        result = await runtime.auth.login("admin@example.com", "Secret-123")
        assert result.ok
        assert runtime.auth.throttle.attempts == 0

    @pytest.mark.asyncio
    async def test_network_failure_not_counted(self, runtime, transport, network_error):
        transport.add("POST", "/auth/login", error=network_error())
        result = await runtime.auth.login("admin@example.com", "Secret-123")
        assert result.error.kind is ErrorKind.NETWORK
        assert runtime.auth.throttle.attempts == 0

    def test_throttle_persists_across_instances(self, clock):
        durable = MemoryStore()
        LoginThrottle(durable, clock=clock).record_failure()
        LoginThrottle(durable, clock=clock).record_failure()
        throttle = LoginThrottle(durable, clock=clock)
        assert throttle.attempts == 2
        assert throttle.remaining_attempts == 3
        assert durable.get(StorageKeys.LOGIN_ATTEMPTS) == "2"

    def test_lockout_stored_as_epoch_millis(self, clock):
        durable = MemoryStore()
        throttle = LoginThrottle(durable, threshold=1, lockout_seconds=60, clock=clock)
        throttle.record_failure()
        assert int(durable.get(StorageKeys.LOGIN_LOCKOUT_UNTIL)) == int((clock() + 60) * 1000)
        assert throttle.locked_for() == pytest.approx(60)


class TestLogout:
    @pytest.mark.asyncio
    async def test_logout_notifies_server_and_clears(self, runtime, transport, login_as, store):
        token = login_as()
        store.set_json(StorageKeys.cached("players"), [{"id": "p1"}])
        expired = []
        runtime.events.on_auth_expired(expired.append)
        transport.add("POST", "/auth/logout", 200, {"message": "ok"})

        result = await runtime.auth.logout()

        assert result.ok
        sent = transport.last("POST", "/auth/logout")
        assert sent.headers["Authorization"] == f"Bearer {token}"
        assert sent.json == {"refreshToken": "R1"}
        assert runtime.credentials.current is None
        assert runtime.cache.read_mirror("players") is None
        assert expired == []

    @pytest.mark.asyncio
    async def test_logout_offline_still_clears(self, runtime, transport, login_as, network_error):
        login_as()
        transport.add("POST", "/auth/logout", error=network_error())
        await runtime.auth.logout()
        assert runtime.credentials.current is None

    @pytest.mark.asyncio
    async def test_logout_when_logged_out(self, runtime, transport):
        result = await runtime.auth.logout()
        assert result.ok
        assert transport.calls == []


class TestAccount:
    @pytest.mark.asyncio
    async def test_current_user(self, runtime, login_as):
        assert runtime.auth.current_user().error.kind is ErrorKind.AUTH_REQUIRED
        login_as()
        assert runtime.auth.current_user().data.email == "admin@example.com"

    @pytest.mark.asyncio
    async def test_invitation_forced_into_own_company(self, runtime, transport, login_as, company_admin_user):
        login_as(company_admin_user)
        transport.add("POST", "/auth/register-invitation", 201, {"message": "Invitation sent"})

        result = await runtime.auth.register_invitation("New@Acme.nl", role="user", company_id="c2")

        assert result.ok
        assert transport.last("POST", "/auth/register-invitation").json == {
            "email": "new@acme.nl",
            "role": "user",
            "company_id": "c1",
            "sender_role": "company_admin",
            "sender_company_id": "c1",
        }

    @pytest.mark.asyncio
    async def test_invitation_rejects_unknown_role(self, runtime, login_as):
        login_as()
        result = await runtime.auth.register_invitation("a@b.nl", role="owner")
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.field == "role"

    @pytest.mark.asyncio
    async def test_verify_token_uses_query(self, runtime, transport):
        transport.add("GET", "/auth/verify-token", 200, {"valid": True, "email": "a@b.nl"})
        result = await runtime.auth.verify_token("inv-123")
        assert result.data["valid"] is True
        assert transport.last("GET", "/auth/verify-token").params == {"token": "inv-123"}

    @pytest.mark.asyncio
    async def test_complete_registration_logs_in(self, runtime, transport, token_for, clock, company_admin_user):
        transport.add("POST", "/auth/complete-registration", 200, {
            "token": token_for(clock() + 3600),
            "user": company_admin_user,
        })

        result = await runtime.auth.complete_registration("inv-123", "Welkom-2024!")

        assert result.ok
        assert runtime.credentials.get_user().company_id == "c1"
        sent = transport.last("POST", "/auth/complete-registration")
        assert sent.headers["Authorization"] == "Bearer inv-123"

    @pytest.mark.asyncio
    async def test_reset_password_weak(self, runtime, transport):
        result = await runtime.auth.reset_password("reset-1", "password")
        assert result.error.kind is ErrorKind.VALIDATION
        assert result.error.field == "password"
        assert transport.calls == []

    @pytest.mark.asyncio
    async def test_forgot_password(self, runtime, transport):
        transport.add("POST", "/auth/forgot-password", 200, {"message": "sent"})
        result = await runtime.auth.forgot_password(" A@B.nl")
        assert result.ok
        assert transport.last("POST", "/auth/forgot-password").json == {"email": "a@b.nl"}

    @pytest.mark.asyncio
    async def test_two_factor_management(self, runtime, transport, login_as):
        login_as()
        transport.add("GET", "/auth/2fa/status", 200, {"enabled": False})
        transport.add("POST", "/auth/2fa/verify-setup", 200, {"enabled": True})

        status = await runtime.auth.two_factor_status()
        setup = await runtime.auth.two_factor_verify_setup("654321")

        assert status.data == {"enabled": False}
        assert setup.ok
        assert transport.last("POST", "/auth/2fa/verify-setup").json == {"token": "654321"}

    @pytest.mark.asyncio
    async def test_two_factor_requires_login(self, runtime):
        result = await runtime.auth.two_factor_generate()
        assert result.error.kind is ErrorKind.AUTH_REQUIRED
