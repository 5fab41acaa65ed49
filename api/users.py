"""User facade."""

import logging

from pydantic import ValidationError as SchemaValidationError

from api.base import EntityAPI, validation_failure
from core.errors import ApiResult, ErrorKind, safe_result
from schemas.auth import ChangePasswordRequest

logger = logging.getLogger(__name__)


class UserAPI(EntityAPI):
    family = "users"
    path = "/users"
    record_key = "user"

    async def get_by_email(self, email: str) -> ApiResult:
        result = await self.list()
        if not result.ok:
            return result
        wanted = email.strip().lower()
        for record in result.data:
            if str(record.get("email", "")).lower() == wanted:
                return result.with_data(record)
        return ApiResult.failure(ErrorKind.SERVER, "User not found", status=404)

    async def update_password(self, current_password: str, new_password: str) -> ApiResult:
        """Change the logged-in user's password."""
        try:
            request = ChangePasswordRequest(current_password=current_password, new_password=new_password)
        except SchemaValidationError as e:
            return validation_failure(e)

        try:
            return await self._gateway.request(
                "POST", f"{self.path}/update-password", request.model_dump(by_alias=True)
            )
        except Exception as e:
            return safe_result(e, "update password")
