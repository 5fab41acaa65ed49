"""
Shared composition for entity facades (companies, players, users).

    list:   fresh cache -> coalesced gateway GET -> cache write
            used_fallback -> mirrored cache (degraded read)
    writes: gateway call -> optimistic cache update
            network failure -> shadow mutation on the mirror, provisional result

Tenant scoping: callers that are not superadmin only see records of their
own company, and writes have company_id forced to that company.

Facades never raise. Every public method returns an ApiResult.
"""

import logging
from typing import Any, Callable, Optional, Union

from pydantic import ValidationError as SchemaValidationError

from core.coalescer import RequestCoalescer, request_key
from core.credentials import CredentialStore
from core.entity_cache import EntityCache, record_id
from core.errors import ApiResult, ErrorKind, SessionError, safe_result
from core.gateway import HttpGateway
from core.timestamps import epoch_millis

logger = logging.getLogger(__name__)

RecordFilter = Union[dict, Callable[[dict], bool], None]

LOCAL_ID_PREFIX = "local_"


def validation_failure(exc: SchemaValidationError) -> ApiResult:
    """First pydantic error as a `validation` result."""
    first = exc.errors()[0]
    field = ".".join(str(part) for part in first.get("loc", ())) or None
    message = first.get("msg", "Invalid input")
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return ApiResult.failure(ErrorKind.VALIDATION, message, field=field)


def is_local_id(rid: Any) -> bool:
    """True for ids assigned by a shadow create."""
    return isinstance(rid, str) and rid.startswith(LOCAL_ID_PREFIX)


def apply_filter(records: list, filter: RecordFilter) -> list:
    if filter is None:
        return records
    if callable(filter):
        return [r for r in records if filter(r)]
    return [r for r in records if all(r.get(k) == v for k, v in filter.items())]


class EntityAPI:
    """Base facade. Subclasses set `family`, `path` and `record_key`."""

    family = ""
    path = ""
    record_key = ""
    force_company_on_write = True

    def __init__(
        self,
        gateway: HttpGateway,
        cache: EntityCache,
        coalescer: RequestCoalescer,
        credentials: CredentialStore,
    ):
        self._gateway = gateway
        self._cache = cache
        self._coalescer = coalescer
        self._credentials = credentials

    # =========================================================================
    # Tenant scoping
    # =========================================================================

    def _tenant(self) -> Optional[str]:
        """Company the caller is scoped to, or None for superadmins."""
        user = self._credentials.get_user()
        if user is None or user.is_superadmin:
            return None
        return user.company_id or ""

    def _in_tenant(self, record: dict, company_id: str) -> bool:
        value = record.get("company_id")
        return value is not None and str(value) == company_id

    def _scope(self, records: list) -> list:
        company_id = self._tenant()
        if company_id is None:
            return records
        return [r for r in records if isinstance(r, dict) and self._in_tenant(r, company_id)]

    def _prepare_write(self, record: dict) -> dict:
        company_id = self._tenant()
        if company_id and self.force_company_on_write:
            record["company_id"] = company_id
        return record

    # =========================================================================
    # Reads
    # =========================================================================

    async def list(self, filter: RecordFilter = None) -> ApiResult:
        """All records visible to the caller, optionally filtered."""
        try:
            result = await self._fetch_all()
            if not result.ok:
                return result
            return result.with_data(apply_filter(self._scope(result.data), filter))
        except Exception as e:
            return safe_result(e, f"list {self.family}")

    async def get(self, rid: str) -> ApiResult:
        """One record by id, from the cached list when possible."""
        try:
            result = await self._fetch_all()
            if not result.ok:
                return result
            for record in self._scope(result.data):
                if record_id(record) == str(rid):
                    return result.with_data(record)
            return ApiResult.failure(
                ErrorKind.SERVER, f"{self.record_key.capitalize()} not found", status=404,
                used_fallback=result.used_fallback,
            )
        except Exception as e:
            return safe_result(e, f"get {self.record_key}")

    async def _fetch_all(self) -> ApiResult:
        entry = self._cache.read(self.family)
        if entry is not None:
            return ApiResult.success(list(entry.data))

        try:
            result = await self._coalescer.coalesce(request_key(self.family, op="list"), self._load)
        except SessionError as e:
            return ApiResult.from_exception(e)

        if result.used_fallback:
            mirror = self._cache.read_mirror(self.family)
            if mirror is not None:
                logger.info(f"Serving mirrored {self.family} ({result.error})")
                return ApiResult.success(list(mirror), used_fallback=True)
        return result

    async def _load(self) -> ApiResult:
        result = await self._gateway.request("GET", self.path)
        if not result.ok:
            return result
        records = self._extract_list(result.data)
        if records is None:
            return ApiResult.failure(ErrorKind.SERVER, f"Unexpected {self.family} response")
        self._cache.write(self.family, records)
        return result.with_data(records)

    def _extract_list(self, data: Any) -> Optional[list]:
        if isinstance(data, list):
            return data
        if isinstance(data, dict):
            for key in ("data", self.family):
                if isinstance(data.get(key), list):
                    return data[key]
        return None

    def _extract_record(self, data: Any) -> Optional[dict]:
        if isinstance(data, dict):
            for key in (self.record_key, "data"):
                nested = data.get(key)
                if isinstance(nested, dict) and record_id(nested) is not None:
                    return nested
            if record_id(data) is not None:
                return data
        return None

    # =========================================================================
    # Writes
    # =========================================================================

    async def create(self, record: dict) -> ApiResult:
        try:
            payload = self._prepare_write(dict(record))
            result = await self._gateway.request("POST", self.path, payload)
            if result.ok:
                created = self._extract_record(result.data) or payload
                self._after_upsert(created, created=True)
                return result.with_data(created)
            if self._should_shadow(result):
                return self._shadow_create(payload)
            return result
        except Exception as e:
            return safe_result(e, f"create {self.record_key}")

    async def update(self, rid: str, patch: dict) -> ApiResult:
        try:
            payload = self._prepare_write(dict(patch))
            result = await self._gateway.request("PUT", f"{self.path}/{rid}", payload)
            if result.ok:
                updated = self._extract_record(result.data) or self._merged(rid, payload)
                self._after_upsert(updated, created=False)
                return result.with_data(updated)
            if self._should_shadow(result):
                return self._shadow_update(rid, payload)
            return result
        except Exception as e:
            return safe_result(e, f"update {self.record_key}")

    async def delete(self, rid: str) -> ApiResult:
        try:
            result = await self._gateway.request("DELETE", f"{self.path}/{rid}")
            if result.ok:
                self._after_remove(str(rid))
                return result.with_data(result.data if result.data is not None else {"id": rid})
            if self._should_shadow(result):
                return self._shadow_delete(rid)
            return result
        except Exception as e:
            return safe_result(e, f"delete {self.record_key}")

    def _merged(self, rid: str, patch: dict) -> dict:
        entry = self._cache.read(self.family)
        for record in entry.data if entry else ():
            if record_id(record) == str(rid):
                return {**record, **patch}
        return {"id": rid, **patch}

    def _after_upsert(self, record: dict, created: bool) -> None:
        self._cache.upsert(self.family, record)

    def _after_remove(self, rid: str) -> None:
        self._cache.remove(self.family, rid)

    # =========================================================================
    # Shadow mutations (server unreachable)
    # =========================================================================

    @staticmethod
    def _should_shadow(result: ApiResult) -> bool:
        return result.used_fallback and result.error is not None and result.error.kind is ErrorKind.NETWORK

    def _shadow_create(self, payload: dict) -> ApiResult:
        record = {**payload, "id": f"{LOCAL_ID_PREFIX}{epoch_millis()}"}
        self._cache.apply_shadow(self.family, lambda records: records + [record])
        logger.info(f"Server unreachable, created provisional {self.record_key} {record['id']}")
        return ApiResult.success(record, used_fallback=True, provisional=True)

    def _shadow_update(self, rid: str, patch: dict) -> ApiResult:
        shadow = {"id": rid, **patch}

        def mutate(records: list) -> list:
            out = []
            for record in records:
                if record_id(record) == str(rid):
                    shadow.update({**record, **patch})
                    out.append(dict(shadow))
                else:
                    out.append(record)
            return out

        self._cache.apply_shadow(self.family, mutate)
        logger.info(f"Server unreachable, updated {self.record_key} {rid} locally")
        return ApiResult.success(shadow, used_fallback=True, provisional=True)

    def _shadow_delete(self, rid: str) -> ApiResult:
        self._cache.apply_shadow(
            self.family, lambda records: [r for r in records if record_id(r) != str(rid)]
        )
        logger.info(f"Server unreachable, deleted {self.record_key} {rid} locally")
        return ApiResult.success({"id": rid}, used_fallback=True, provisional=True)

    # =========================================================================
    # Fallback poller support
    # =========================================================================

    async def refresh(self) -> ApiResult:
        """Drop the cached list and fetch it again."""
        self._cache.invalidate(self.family)
        return await self.list()
