"""Entity API facades. Every operation returns an ApiResult and never raises."""

from api.auth import AuthAPI, LoginThrottle, TwoFactorChallenge
from api.base import EntityAPI
from api.companies import CompanyAPI
from api.players import PlayerAPI
from api.users import UserAPI

__all__ = [
    "AuthAPI",
    "CompanyAPI",
    "EntityAPI",
    "LoginThrottle",
    "PlayerAPI",
    "TwoFactorChallenge",
    "UserAPI",
]
