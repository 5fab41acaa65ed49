"""Company facade.

Companies own users and players, so company mutations also drop those
cached families.
"""

from api.base import EntityAPI
from core.entity_cache import record_id


class CompanyAPI(EntityAPI):
    family = "companies"
    path = "/companies"
    record_key = "company"
    force_company_on_write = False

    def _in_tenant(self, record: dict, company_id: str) -> bool:
        return record_id(record) == company_id

    def _after_upsert(self, record: dict, created: bool) -> None:
        if created:
            self._cache.invalidate_all()
            return
        self._cache.upsert(self.family, record)
        self._cache.invalidate("users")
        self._cache.invalidate("players")

    def _after_remove(self, rid: str) -> None:
        self._cache.invalidate_all()
