"""Identity types shared across the session core."""

from dataclasses import dataclass, field
from typing import Any, Optional

SUPERADMIN = "superadmin"
COMPANY_ADMIN = "company_admin"
USER = "user"


@dataclass(frozen=True)
class User:
    """Authenticated user as returned by the server."""
    id: str
    email: str
    role: str = USER
    company_id: Optional[str] = None
    extra: dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def is_superadmin(self) -> bool:
        return self.role == SUPERADMIN

    @classmethod
    def from_dict(cls, data: dict) -> "User":
        """Build from a server payload. Accepts `id` or `_id`."""
        if not isinstance(data, dict):
            raise ValueError("user payload must be an object")
        user_id = data.get("id", data.get("_id"))
        if user_id is None or not data.get("email"):
            raise ValueError("user payload requires id and email")
        company_id = data.get("company_id")
        known = {"id", "_id", "email", "role", "company_id"}
        return cls(
            id=str(user_id),
            email=data["email"],
            role=data.get("role") or USER,
            company_id=str(company_id) if company_id is not None else None,
            extra={k: v for k, v in data.items() if k not in known},
        )

    def to_dict(self) -> dict:
        data = dict(self.extra)
        data.update({
            "id": self.id,
            "email": self.email,
            "role": self.role,
            "company_id": self.company_id,
        })
        return data


@dataclass(frozen=True)
class Credentials:
    """Access token, optional refresh token and the user they belong to."""
    access_token: str
    user: User
    refresh_token: Optional[str] = None
