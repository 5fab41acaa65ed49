"""
Authentication facade: login (with optional 2FA step), logout, invitations,
password reset and 2FA management.

Failed logins are throttled client-side: after 3 failures a captcha token
is required, after 5 the login is locked for 5 minutes. The counters live
in durable storage (loginAttempts, loginLockoutUntil) so a restart does not
reset them.
"""

import logging
import math
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

from pydantic import ValidationError as SchemaValidationError

from api.base import validation_failure
from core.credentials import CredentialStore
from core.durable_store import DurableStore, StorageKeys
from core.errors import ApiResult, ErrorKind, safe_result
from core.gateway import HttpGateway
from core.types import User
from schemas.auth import (
    ForgotPasswordRequest,
    InvitationRequest,
    LoginRequest,
    SetPasswordRequest,
    TwoFactorCodeRequest,
    TwoFactorLoginRequest,
)

logger = logging.getLogger(__name__)

CAPTCHA_AFTER_ATTEMPTS = 3

# Statuses that mean "wrong credentials" rather than an outage
REJECTED_LOGIN_STATUSES = (400, 401, 403)


@dataclass(frozen=True)
class TwoFactorChallenge:
    """First login step succeeded; a TOTP code is required to finish."""
    temp_token: str
    email: Optional[str] = None


class LoginThrottle:
    """Failed-login counter and lockout, persisted in the durable store."""

    def __init__(
        self,
        durable: DurableStore,
        threshold: int = 5,
        lockout_seconds: float = 300.0,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self._durable = durable
        self._threshold = threshold
        self._lockout_seconds = lockout_seconds
        self._clock = clock

    @property
    def attempts(self) -> int:
        try:
            return int(self._durable.get(StorageKeys.LOGIN_ATTEMPTS) or 0)
        except ValueError:
            return 0

    @property
    def remaining_attempts(self) -> int:
        return max(0, self._threshold - self.attempts)

    @property
    def captcha_required(self) -> bool:
        return self.attempts >= CAPTCHA_AFTER_ATTEMPTS

    def locked_for(self) -> float:
        """Seconds left in the lockout (0 when not locked). Expired lockouts are cleared."""
        raw = self._durable.get(StorageKeys.LOGIN_LOCKOUT_UNTIL)
        if not raw:
            return 0.0
        try:
            until = int(raw) / 1000.0
        except ValueError:
            until = 0.0
        remaining = until - self._clock()
        if remaining <= 0:
            self.reset()
            return 0.0
        return remaining

    def record_failure(self) -> int:
        attempts = self.attempts + 1
        values = {StorageKeys.LOGIN_ATTEMPTS: str(attempts)}
        if attempts >= self._threshold:
            until_ms = int((self._clock() + self._lockout_seconds) * 1000)
            values[StorageKeys.LOGIN_LOCKOUT_UNTIL] = str(until_ms)
            logger.warning(f"Login locked for {self._lockout_seconds:.0f}s after {attempts} failures")
        self._durable.replace(values)
        return attempts

    def reset(self) -> None:
        self._durable.delete(StorageKeys.LOGIN_ATTEMPTS, StorageKeys.LOGIN_LOCKOUT_UNTIL)


class AuthAPI:
    """Session-establishing and account operations."""

    def __init__(
        self,
        gateway: HttpGateway,
        credentials: CredentialStore,
        throttle: LoginThrottle,
        *,
        end_session: Optional[Callable[[], Awaitable[Any]]] = None,
        on_login: Optional[Callable[[Optional[User], User], None]] = None,
    ):
        self._gateway = gateway
        self._credentials = credentials
        self._throttle = throttle
        self._end_session = end_session
        self._on_login = on_login

    @property
    def throttle(self) -> LoginThrottle:
        return self._throttle

    # =========================================================================
    # Login / logout
    # =========================================================================

    async def login(self, email: str, password: str, captcha_token: Optional[str] = None) -> ApiResult:
        """
        Log in with email and password.

        Returns Credentials on success, or a TwoFactorChallenge when the
        account has 2FA enabled (finish with verify_2fa_login()).
        """
        locked = self._throttle.locked_for()
        if locked:
            minutes = math.ceil(locked / 60)
            return ApiResult.failure(
                ErrorKind.VALIDATION,
                f"Too many login attempts. Try again in {minutes} minute{'s' if minutes != 1 else ''}",
                field="email",
            )
        if self._throttle.captcha_required and not captcha_token:
            return ApiResult.failure(ErrorKind.VALIDATION, "Captcha required", field="captcha_token")

        try:
            request = LoginRequest(email=email, password=password, captcha_token=captcha_token)
        except SchemaValidationError as e:
            return validation_failure(e)

        try:
            result = await self._gateway.request(
                "POST", "/auth/login", request.model_dump(by_alias=True, exclude_none=True), auth=False
            )
            if not result.ok:
                if result.error.status in REJECTED_LOGIN_STATUSES:
                    attempts = self._throttle.record_failure()
                    logger.info(f"Login rejected for {request.email} ({attempts} failed attempts)")
                return result

            data = result.data if isinstance(result.data, dict) else {}
            if data.get("requires2FA"):
                temp_token = data.get("tempToken")
                if not temp_token:
                    return ApiResult.failure(ErrorKind.SERVER, "Malformed 2FA challenge")
                return ApiResult.success(TwoFactorChallenge(temp_token=temp_token, email=request.email))
            return self._establish(data)
        except Exception as e:
            return safe_result(e, "login")

    async def verify_2fa_login(self, code: str, temp_token: str) -> ApiResult:
        """Second login step for 2FA accounts."""
        try:
            request = TwoFactorLoginRequest(code=code, temp_token=temp_token)
        except SchemaValidationError as e:
            return validation_failure(e)

        try:
            result = await self._gateway.request(
                "POST", "/auth/2fa/verify-login", request.model_dump(by_alias=True), auth=False
            )
            if not result.ok:
                return result
            return self._establish(result.data if isinstance(result.data, dict) else {})
        except Exception as e:
            return safe_result(e, "verify 2FA login")

    def _establish(self, data: dict) -> ApiResult:
        token = data.get("token")
        user = data.get("user")
        if not token or not isinstance(user, dict):
            return ApiResult.failure(ErrorKind.SERVER, "Malformed login response")
        previous = self._credentials.get_user()
        try:
            credentials = self._credentials.set(token, data.get("refreshToken"), user)
        except ValueError as e:
            return ApiResult.failure(ErrorKind.SERVER, f"Malformed login response: {e}")
        self._throttle.reset()
        if self._on_login is not None:
            self._on_login(previous, credentials.user)
        logger.info(f"Logged in as {credentials.user.email} ({credentials.user.role})")
        return ApiResult.success(credentials)

    async def logout(self) -> ApiResult:
        """Tell the server (best effort) and end the local session."""
        token = self._credentials.get_token()
        refresh_token = self._credentials.get_refresh_token()
        try:
            if token:
                result = await self._gateway.request(
                    "POST",
                    "/auth/logout",
                    {"refreshToken": refresh_token} if refresh_token else {},
                    auth=False,
                    headers={"Authorization": f"Bearer {token}"},
                )
                if not result.ok:
                    logger.info(f"Server logout failed ({result.error}), ending session locally")
        except Exception:
            logger.exception("Server logout raised, ending session locally")

        if self._end_session is not None:
            await self._end_session()
        else:
            self._credentials.clear()
        return ApiResult.success(None)

    async def verify(self) -> ApiResult:
        """Validate the current bearer with the server."""
        try:
            return await self._gateway.request("GET", "/auth/verify")
        except Exception as e:
            return safe_result(e, "verify session")

    def current_user(self) -> ApiResult:
        user = self._credentials.get_user()
        if user is None:
            return ApiResult.failure(ErrorKind.AUTH_REQUIRED)
        return ApiResult.success(user)

    # =========================================================================
    # Invitations and passwords
    # =========================================================================

    async def register_invitation(self, email: str, role: str = "user", company_id: Optional[str] = None) -> ApiResult:
        """Invite a user; non-superadmins can only invite into their own company."""
        sender = self._credentials.get_user()
        if sender is not None and not sender.is_superadmin:
            company_id = sender.company_id
        try:
            request = InvitationRequest(email=email, role=role, company_id=company_id)
        except SchemaValidationError as e:
            return validation_failure(e)

        body = request.model_dump()
        if sender is not None:
            body["sender_role"] = sender.role
            body["sender_company_id"] = sender.company_id
        try:
            return await self._gateway.request("POST", "/auth/register-invitation", body)
        except Exception as e:
            return safe_result(e, "send invitation")

    async def verify_token(self, token: str) -> ApiResult:
        """Check an invitation or reset token."""
        try:
            return await self._gateway.request(
                "GET", "/auth/verify-token", params={"token": token}, auth=False
            )
        except Exception as e:
            return safe_result(e, "verify token")

    async def complete_registration(self, token: str, password: str) -> ApiResult:
        """Set the password for an invited account; logs the user in on success."""
        try:
            request = SetPasswordRequest(token=token, password=password)
        except SchemaValidationError as e:
            return validation_failure(e)

        try:
            result = await self._gateway.request(
                "POST",
                "/auth/complete-registration",
                request.model_dump(),
                auth=False,
                headers={"Authorization": f"Bearer {token}"},
            )
            if result.ok and isinstance(result.data, dict) and result.data.get("token"):
                return self._establish(result.data)
            return result
        except Exception as e:
            return safe_result(e, "complete registration")

    async def forgot_password(self, email: str) -> ApiResult:
        try:
            request = ForgotPasswordRequest(email=email)
        except SchemaValidationError as e:
            return validation_failure(e)
        try:
            return await self._gateway.request("POST", "/auth/forgot-password", request.model_dump(), auth=False)
        except Exception as e:
            return safe_result(e, "request password reset")

    async def reset_password(self, token: str, password: str) -> ApiResult:
        try:
            request = SetPasswordRequest(token=token, password=password)
        except SchemaValidationError as e:
            return validation_failure(e)
        try:
            return await self._gateway.request("POST", "/auth/reset-password", request.model_dump(), auth=False)
        except Exception as e:
            return safe_result(e, "reset password")

    # =========================================================================
    # Two-factor authentication
    # =========================================================================

    async def two_factor_generate(self) -> ApiResult:
        """Start 2FA setup; returns the secret / QR code data."""
        try:
            return await self._gateway.request("POST", "/auth/2fa/generate")
        except Exception as e:
            return safe_result(e, "generate 2FA secret")

    async def two_factor_verify_setup(self, code: str) -> ApiResult:
        return await self._two_factor_code("/auth/2fa/verify-setup", code, "verify 2FA setup")

    async def two_factor_disable(self, code: str) -> ApiResult:
        return await self._two_factor_code("/auth/2fa/disable", code, "disable 2FA")

    async def two_factor_status(self) -> ApiResult:
        try:
            return await self._gateway.request("GET", "/auth/2fa/status")
        except Exception as e:
            return safe_result(e, "get 2FA status")

    async def _two_factor_code(self, path: str, code: str, operation: str) -> ApiResult:
        try:
            request = TwoFactorCodeRequest(code=code)
        except SchemaValidationError as e:
            return validation_failure(e)
        try:
            return await self._gateway.request("POST", path, request.model_dump(by_alias=True))
        except Exception as e:
            return safe_result(e, operation)
