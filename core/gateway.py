"""
HTTP gateway: the single entry point for requests to the JSON API.

Every call returns an ApiResult. The gateway attaches the bearer token,
refreshes it through the token lifecycle when it is about to expire, and
classifies failures:

    2xx                          -> data
    401 / expired-token body     -> revoke("expired"), session_expired
    409                          -> conflict
    400/422 naming a field       -> validation
    other non-2xx                -> server (message from `error` or `message`)
    transport failure / timeout  -> network, used_fallback=True

Usage:
    gateway = HttpGateway(settings.api, credentials, lifecycle)
    result = await gateway.request("GET", "/players")
    if result.used_fallback:
        ...  # serve mirrored cache or shadow-write
"""

import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Optional

import aiohttp

from config.settings import ApiSettings
from core.credentials import CredentialStore
from core.errors import ApiResult, ErrorKind
from core.token_lifecycle import RevocationReason, TokenLifecycle, indicates_expired_token

logger = logging.getLogger(__name__)

# (method, url, json=..., params=..., headers=...) -> (status, payload)
Transport = Callable[..., Awaitable[tuple[int, Any]]]

TRANSPORT_ERRORS = (aiohttp.ClientError, asyncio.TimeoutError, OSError)

REFRESH_PATH = "/auth/refresh-token"


class AiohttpTransport:
    """Default transport backed by one shared aiohttp.ClientSession."""

    def __init__(self, timeout_seconds: float = 10.0):
        self._timeout = aiohttp.ClientTimeout(total=timeout_seconds)
        self._session: Optional[aiohttp.ClientSession] = None

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(timeout=self._timeout)
        return self._session

    async def __call__(self, method: str, url: str, *, json=None, params=None, headers=None):
        async with self.session.request(method, url, json=json, params=params, headers=headers) as resp:
            text = await resp.text()
            return resp.status, _parse_body(text)

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


def _parse_body(text: str) -> Any:
    if not text:
        return None
    try:
        return json.loads(text)
    except ValueError:
        return {"message": text}


def _server_message(payload: Any, status: int) -> str:
    if isinstance(payload, dict):
        for key in ("error", "message"):
            value = payload.get(key)
            if isinstance(value, str) and value:
                return value
    return f"Request failed with status {status}"


def _error_field(payload: Any) -> Optional[str]:
    if not isinstance(payload, dict):
        return None
    field = payload.get("field") or payload.get("param")
    if field:
        return str(field)
    errors = payload.get("errors")
    if isinstance(errors, list) and errors and isinstance(errors[0], dict):
        first = errors[0].get("field") or errors[0].get("param") or errors[0].get("path")
        return str(first) if first else None
    return None


class HttpGateway:
    """Authenticated JSON requests with uniform result classification."""

    def __init__(
        self,
        settings: ApiSettings,
        credentials: CredentialStore,
        lifecycle: TokenLifecycle,
        transport: Optional[Transport] = None,
    ):
        self._base_url = settings.api_url
        self._credentials = credentials
        self._lifecycle = lifecycle
        self._owns_transport = transport is None
        self._transport = transport or AiohttpTransport(settings.request_timeout_seconds)
        self._stats = {"requests": 0, "network_errors": 0, "dropped": 0}

    def url(self, path: str) -> str:
        return f"{self._base_url}/{path.lstrip('/')}"

    async def request(
        self,
        method: str,
        path: str,
        body: Any = None,
        *,
        params: Optional[dict] = None,
        auth: bool = True,
        headers: Optional[dict] = None,
    ) -> ApiResult:
        """
        Issue one request and classify the outcome.

        Args:
            method: HTTP method
            path: Path below the API base, e.g. "/players/42"
            body: JSON body
            params: Query parameters
            auth: Attach the bearer token and apply session checks
            headers: Extra headers (e.g. a caller-supplied registration token)
        """
        method = method.upper()
        request_headers = {"Content-Type": "application/json"}
        if headers:
            request_headers.update(headers)

        epoch = None
        if auth:
            if not self._credentials.is_authenticated:
                return ApiResult.failure(ErrorKind.AUTH_REQUIRED, used_fallback=True)
            if self._lifecycle.needs_refresh():
                if not await self._lifecycle.refresh():
                    return ApiResult.failure(ErrorKind.SESSION_EXPIRED, used_fallback=True)
            token = self._credentials.get_token()
            if token is None:
                return ApiResult.failure(ErrorKind.SESSION_EXPIRED, used_fallback=True)
            request_headers["Authorization"] = f"Bearer {token}"
            epoch = self._lifecycle.epoch

        self._stats["requests"] += 1
        try:
            status, payload = await self._transport(
                method, self.url(path), json=body, params=params, headers=request_headers
            )
        except TRANSPORT_ERRORS as e:
            self._stats["network_errors"] += 1
            logger.warning(f"{method} {path} failed: {e!r}", extra={"method": method, "path": path})
            if epoch is not None and self._lifecycle.epoch != epoch:
                return ApiResult.failure(ErrorKind.SESSION_EXPIRED)
            return ApiResult.failure(ErrorKind.NETWORK, used_fallback=True)

        if epoch is not None and self._lifecycle.epoch != epoch:
            self._stats["dropped"] += 1
            logger.info(f"Dropping {method} {path} response from a revoked session")
            return ApiResult.failure(ErrorKind.SESSION_EXPIRED)

        return await self._classify(method, path, status, payload, auth)

    async def _classify(self, method: str, path: str, status: int, payload: Any, auth: bool) -> ApiResult:
        log_extra = {"method": method, "path": path, "status_code": status}

        if 200 <= status < 300 and not (auth and _is_error_body(payload)):
            logger.debug(f"{method} {path} -> {status}", extra=log_extra)
            return ApiResult.success(payload)

        if auth and (status == 401 or indicates_expired_token(payload)):
            logger.warning(f"{method} {path} rejected the session ({status})", extra=log_extra)
            await self._lifecycle.revoke(RevocationReason.EXPIRED)
            return ApiResult.failure(ErrorKind.SESSION_EXPIRED, status=status)

        message = _server_message(payload, status)
        logger.info(f"{method} {path} -> {status}: {message}", extra=log_extra)

        if status == 409:
            return ApiResult.failure(ErrorKind.CONFLICT, message, status=status)
        field = _error_field(payload)
        if status in (400, 422) and field:
            return ApiResult.failure(ErrorKind.VALIDATION, message, field=field, status=status)
        return ApiResult.failure(ErrorKind.SERVER, message, status=status)

    async def refresh_token(self, refresh_token: str) -> ApiResult:
        """POST the refresh token; used by the token lifecycle."""
        return await self.request(
            "POST", REFRESH_PATH, {"refreshToken": refresh_token}, auth=False
        )

    def get_stats(self) -> dict:
        return dict(self._stats)

    async def close(self) -> None:
        if self._owns_transport:
            await self._transport.close()


def _is_error_body(payload: Any) -> bool:
    """2xx bodies that still report an expired token."""
    return isinstance(payload, dict) and "error" in payload and indicates_expired_token(payload)
